"""
Activation functions and their derivatives.

Every function works elementwise on a numpy (or cupy) array and returns a new array.
The derivatives are evaluated on the activity z (the layer output before the activation),
not on the activation itself.
"""

from enum import Enum

import numpy as np

from .errors import ConfigurationError


class ActivationType(Enum):
    SIGMOID = 'sigmoid'
    TANH = 'tanh'
    LECUN_TANH = 'lecun_tanh'
    RELU = 'relu'
    LEAKY_RELU = 'leaky_relu'
    ABSOLUTE_RELU = 'absolute_relu'
    SOFTMAX = 'softmax'
    SOFTPLUS = 'softplus'
    ELU = 'elu'
    IDENTITY = 'identity'


LEAKY_RELU_SLOPE = 0.01
ABSOLUTE_RELU_SLOPE = 0.01
ELU_ALPHA = 1.0

# Scaled tanh from LeCun et al., "Efficient BackProp": 1.7159 * tanh(2x/3)
LECUN_SCALE = 1.7159
LECUN_SLOPE = 0.666


def sigmoid(x):
    # Split by sign so exp never overflows
    e = np.exp(-np.abs(x))
    return np.where(x >= 0, 1 / (1 + e), e / (1 + e)).astype(x.dtype)


def sigmoid_prime(x):
    s = sigmoid(x)
    return s * (1 - s)


def tanh(x):
    return np.tanh(x)


def tanh_prime(x):
    t = np.tanh(x)
    return 1 - t * t


def lecun_tanh(x):
    return (LECUN_SCALE * np.tanh(LECUN_SLOPE * x)).astype(x.dtype)


def lecun_tanh_prime(x):
    t = np.tanh(LECUN_SLOPE * x)
    return (LECUN_SCALE * LECUN_SLOPE * (1 - t * t)).astype(x.dtype)


def relu(x):
    return np.maximum(x, 0).astype(x.dtype)


def relu_prime(x):
    return (x > 0).astype(x.dtype)


def leaky_relu(x):
    return np.where(x > 0, x, LEAKY_RELU_SLOPE * x).astype(x.dtype)


def leaky_relu_prime(x):
    return np.where(x > 0, 1.0, LEAKY_RELU_SLOPE).astype(x.dtype)


def absolute_relu(x):
    return np.where(x >= 0, x, -ABSOLUTE_RELU_SLOPE * x).astype(x.dtype)


def absolute_relu_prime(x):
    return np.where(x >= 0, 1.0, -ABSOLUTE_RELU_SLOPE).astype(x.dtype)


def softmax(x):
    """Only the exponential: the normalization is done by the softmax primitive"""
    return np.exp(x)


def softplus(x):
    return np.logaddexp(0, x).astype(x.dtype)


def elu(x):
    return np.where(x >= 0, x, ELU_ALPHA * np.expm1(np.minimum(x, 0))).astype(x.dtype)


def elu_prime(x):
    return np.where(x >= 0, 1.0, ELU_ALPHA * np.exp(np.minimum(x, 0))).astype(x.dtype)


def identity(x):
    return x.copy()


def identity_prime(x):
    return np.ones_like(x)


_ACTIVATIONS = {
    ActivationType.SIGMOID: (sigmoid, sigmoid_prime),
    ActivationType.TANH: (tanh, tanh_prime),
    ActivationType.LECUN_TANH: (lecun_tanh, lecun_tanh_prime),
    ActivationType.RELU: (relu, relu_prime),
    ActivationType.LEAKY_RELU: (leaky_relu, leaky_relu_prime),
    ActivationType.ABSOLUTE_RELU: (absolute_relu, absolute_relu_prime),
    # The softmax derivative is never evaluated on its own: see the log-likelihood cost
    ActivationType.SOFTMAX: (softmax, None),
    ActivationType.SOFTPLUS: (softplus, sigmoid),
    ActivationType.ELU: (elu, elu_prime),
    ActivationType.IDENTITY: (identity, identity_prime),
}


def get_activations(activation):
    """Returns the (activation, activation prime) pair for an activation type or name"""
    try:
        return _ACTIVATIONS[ActivationType(activation)]
    except ValueError as e:
        raise ConfigurationError(f"Unknown activation function: {activation}") from e
