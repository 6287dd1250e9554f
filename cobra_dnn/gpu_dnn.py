"""
Whole-array versions of the layer primitives.

Same signatures and results as cpu_dnn, but every primitive is a single vectorized
expression on the tensor's own array module, so the same code runs on cupy arrays
when the tensors live on a CUDA device.
"""

from .cpu_dnn import EPSILON, NormalizationMode, _check_normalization
from .errors import ShapeMismatch


def activation_forward(x, f, y):
    if not y.match_shape(x):
        raise ShapeMismatch("The target tensor must have the same shape as the input")
    y.data[...] = f(x.data)


def softmax_forward(x, y):
    if not y.match_shape(x):
        raise ShapeMismatch("The input tensor doesn't have the same shape as the output tensor")
    xp = x.xp
    e = xp.exp(x.data - x.data.max(axis=1, keepdims=True))
    y.data[...] = e / e.sum(axis=1, keepdims=True)


def activation_backward(y, dy, f_, dx):
    if not dy.match_shape(y) or not dx.match_shape(y):
        raise ShapeMismatch("The input tensors must have the same shape")
    dx.data[...] = f_(y.data) * dy.data


def fully_connected_forward(x, w, b, y):
    if x.length != w.entities:
        raise ShapeMismatch(f"Invalid tensors shapes: {x.shape} x {w.shape}")
    if not b.match_shape(1, w.length) or not y.match_shape(x.entities, w.length):
        raise ShapeMismatch("Invalid biases or output shape")
    y.data[...] = x.data @ w.data + b.data


def fully_connected_backward_data(w, dy, dx):
    if w.length != dy.length or not dx.match_shape(dy.entities, w.entities):
        raise ShapeMismatch("Invalid weights or delta shape")
    dx.data[...] = dy.data @ w.data.T


def fully_connected_backward_filter(x, dy, dw):
    if x.entities != dy.entities or not dw.match_shape(x.length, dy.length):
        raise ShapeMismatch("Invalid input or gradient shape")
    dw.data[...] = x.data.T @ dy.data


def fully_connected_backward_bias(dy, db):
    if not db.match_shape(1, dy.length):
        raise ShapeMismatch("Invalid result tensor shape")
    db.data[...] = dy.data.sum(axis=0, keepdims=True)


def _statistics_view(mode, info, tensor):
    """Lays the values out as (n, features, positions) so the statistics are a reduction over axes 0 and 2"""
    if mode == NormalizationMode.SPATIAL:
        return tensor.data.reshape(tensor.entities, info.channels, info.slice_size)
    return tensor.data.reshape(tensor.entities, tensor.length, 1)


def batch_normalization_forward(mode, info, x, mu, sigma2, gamma, beta, y):
    _check_normalization(mode, info, x, mu, sigma2)
    if not gamma.match_shape(sigma2) or not beta.match_shape(gamma) or not x.match_shape(y):
        raise ShapeMismatch("Invalid gamma, beta or output shape")
    px = _statistics_view(mode, info, x).astype('float64')
    m = px.mean(axis=(0, 2))
    s = ((px - m[None, :, None]) ** 2).mean(axis=(0, 2))
    mu.data[0] = m
    sigma2.data[0] = s
    hat = (px - m[None, :, None]) / x.xp.sqrt(s + EPSILON)[None, :, None]
    out = gamma.data[0, :, None] * hat + beta.data[0, :, None]
    y.data[...] = out.reshape(y.shape)


def batch_normalization_inference(mode, info, x, mu, sigma2, gamma, beta, y):
    _check_normalization(mode, info, x, mu, sigma2)
    if not x.match_shape(y):
        raise ShapeMismatch("The input and output tensors must have the same shape")
    px = _statistics_view(mode, info, x)
    scale = gamma.data[0, :, None] / x.xp.sqrt(sigma2.data[0, :, None] + EPSILON)
    out = scale * (px - mu.data[0, :, None]) + beta.data[0, :, None]
    y.data[...] = out.reshape(y.shape)


def batch_normalization_backward_data(mode, info, x, mu, sigma2, gamma, dy, dx):
    _check_normalization(mode, info, x, mu, sigma2)
    if not gamma.match_shape(sigma2) or not x.match_shape(dy) or not x.match_shape(dx):
        raise ShapeMismatch("Invalid gamma or delta shape")
    xp = x.xp
    px = _statistics_view(mode, info, x)
    pdy = _statistics_view(mode, info, dy).astype('float64')
    count = px.shape[0] * px.shape[2]
    m = mu.data[0, :, None].astype('float64')
    s = sigma2.data[0, :, None].astype('float64')
    centered = px - m
    sum_dy = pdy.sum(axis=(0, 2))[:, None]
    sum_dy_x = (pdy * centered).sum(axis=(0, 2))[:, None]
    left = gamma.data[0, :, None] / xp.sqrt(s + EPSILON) / count
    out = left * (count * pdy - sum_dy - centered / (s + EPSILON) * sum_dy_x)
    dx.data[...] = out.reshape(dx.shape)


def batch_normalization_backward_gamma(mode, info, x, mu, sigma2, dy, dgamma):
    _check_normalization(mode, info, x, mu, sigma2)
    if not dgamma.match_shape(sigma2) or not x.match_shape(dy):
        raise ShapeMismatch("Invalid gamma gradient or delta shape")
    px = _statistics_view(mode, info, x)
    pdy = _statistics_view(mode, info, dy).astype('float64')
    hat = (px - mu.data[0, :, None]) / x.xp.sqrt(sigma2.data[0, :, None] + EPSILON)
    dgamma.data[0] = (pdy * hat).sum(axis=(0, 2))


def batch_normalization_backward_beta(mode, info, dy, dbeta):
    if info.size != dy.length:
        raise ShapeMismatch("The tensor shape doesn't match the input info")
    features = info.channels if mode == NormalizationMode.SPATIAL else dy.length
    if not dbeta.match_shape(1, features):
        raise ShapeMismatch("Invalid beta gradient shape")
    dbeta.data[0] = _statistics_view(mode, info, dy).sum(axis=(0, 2))


def depth_concatenation_forward(inputs, y):
    if len(inputs) == 0:
        raise ShapeMismatch("The inputs can't be empty")
    if any(t.entities != y.entities for t in inputs) or sum(t.length for t in inputs) != y.length:
        raise ShapeMismatch("The inputs don't match the target tensor")
    y.data[...] = y.xp.concatenate([t.data for t in inputs], axis=1)


def depth_concatenation_backward(dy, offset, dx):
    if dy.entities != dx.entities or offset < 0 or dy.length - offset < dx.length:
        raise ShapeMismatch("Invalid offset value")
    dx.data[...] = dy.data[:, offset:offset + dx.length]