"""
CPU primitives for the network layers.

Every primitive reads its inputs and writes the result into a caller-provided output tensor.
Work is split across the shared worker pool along an axis whose output locations are
disjoint (samples, features or channels), and each call returns only once all of it is done.
"""

from dataclasses import dataclass
from enum import Enum

import numpy as np

from .errors import ConfigurationError, ShapeMismatch
from .parallel import parallel_for

# Added to the variance before taking the square root
EPSILON = float(np.finfo(np.float32).eps)


class NormalizationMode(Enum):
    SPATIAL = 'spatial'
    PER_ACTIVATION = 'per_activation'


@dataclass(frozen=True)
class ConvolutionInfo:
    vertical_padding: int = 0
    horizontal_padding: int = 0
    vertical_stride: int = 1
    horizontal_stride: int = 1

    def __post_init__(self):
        if self.vertical_padding < 0 or self.horizontal_padding < 0:
            raise ConfigurationError("The padding can't be negative")
        if self.vertical_stride < 1 or self.horizontal_stride < 1:
            raise ConfigurationError("The stride must be at least 1")

    def output_shape(self, height, width, kernel_height, kernel_width):
        h = (height - kernel_height + 2 * self.vertical_padding) // self.vertical_stride + 1
        w = (width - kernel_width + 2 * self.horizontal_padding) // self.horizontal_stride + 1
        return h, w


@dataclass(frozen=True)
class PoolingInfo:
    window_height: int = 2
    window_width: int = 2
    vertical_stride: int = 2
    horizontal_stride: int = 2

    def __post_init__(self):
        if min(self.window_height, self.window_width, self.vertical_stride, self.horizontal_stride) < 1:
            raise ConfigurationError("Invalid pooling window")

    def output_shape(self, height, width):
        return ((height - self.window_height) // self.vertical_stride + 1,
                (width - self.window_width) // self.horizontal_stride + 1)


# ===========================
# Activation
# ===========================

def activation_forward(x, f, y):
    """y = f(x), elementwise. y can be the same tensor as x"""
    if not y.match_shape(x):
        raise ShapeMismatch("The target tensor must have the same shape as the input")
    px, py = x.data, y.data

    def kernel(lo, hi):
        py[lo:hi] = f(px[lo:hi])
    parallel_for(0, x.entities, kernel)


def softmax_forward(x, y):
    """Row-wise exponential normalization"""
    if not y.match_shape(x):
        raise ShapeMismatch("The input tensor doesn't have the same shape as the output tensor")
    px, py = x.data, y.data

    def kernel(lo, hi):
        # Shifting by the row max leaves the result unchanged and keeps exp finite
        e = np.exp(px[lo:hi] - px[lo:hi].max(axis=1, keepdims=True))
        py[lo:hi] = e / e.sum(axis=1, keepdims=True)
    parallel_for(0, x.entities, kernel)


def activation_backward(y, dy, f_, dx):
    """
    dx = f'(y) * dy, elementwise.

    Args:
        y: the activity computed in the forward pass
        dy: the error delta to backpropagate
        f_: the derivative of the activation used in the forward pass
        dx: the resulting delta, it can be the same tensor as y or dy
    """
    if not dy.match_shape(y):
        raise ShapeMismatch("The input tensors must have the same shape")
    if not dx.match_shape(y):
        raise ShapeMismatch("The output tensor must have the same shape as the input")
    py, pdy, pdx = y.data, dy.data, dx.data

    def kernel(lo, hi):
        pdx[lo:hi] = f_(py[lo:hi]) * pdy[lo:hi]
    parallel_for(0, y.entities, kernel)


# ===========================
# Fully connected
# ===========================

def fully_connected_forward(x, w, b, y):
    """y = x * w + b"""
    if x.length != w.entities:
        raise ShapeMismatch(f"Invalid tensors shapes: {x.shape} x {w.shape}")
    if not b.match_shape(1, w.length):
        raise ShapeMismatch("Invalid biases shape")
    if not y.match_shape(x.entities, w.length):
        raise ShapeMismatch("The output tensor doesn't have the right shape")
    px, pw, pb, py = x.data, w.data, b.data, y.data

    def kernel(lo, hi):
        py[lo:hi] = px[lo:hi] @ pw + pb
    parallel_for(0, x.entities, kernel)


def fully_connected_backward_data(w, dy, dx):
    """dx = dy * w'"""
    if w.length != dy.length:
        raise ShapeMismatch("The weights tensor doesn't have a valid shape")
    if not dx.match_shape(dy.entities, w.entities):
        raise ShapeMismatch("The input tensor doesn't have the right shape")
    pw, pdy, pdx = w.data, dy.data, dx.data

    def kernel(lo, hi):
        pdx[lo:hi] = pdy[lo:hi] @ pw.T
    parallel_for(0, dy.entities, kernel)


def fully_connected_backward_filter(x, dy, dw):
    """dw = x' * dy"""
    if x.entities != dy.entities:
        raise ShapeMismatch("The input tensor doesn't match the number of samples from the delta")
    if not dw.match_shape(x.length, dy.length):
        raise ShapeMismatch("The weights gradient doesn't have the right shape")
    px, pdy, pdw = x.data, dy.data, dw.data

    def kernel(lo, hi):
        pdw[lo:hi] = px[:, lo:hi].T @ pdy
    parallel_for(0, x.length, kernel)


def fully_connected_backward_bias(dy, db):
    """db[j] = sum(dy[:, j])"""
    if not db.match_shape(1, dy.length):
        raise ShapeMismatch("Invalid result tensor shape")
    pdy, pdb = dy.data, db.data

    def kernel(lo, hi):
        pdb[0, lo:hi] = pdy[:, lo:hi].sum(axis=0)
    parallel_for(0, dy.length, kernel)


# ===========================
# Batch normalization
# ===========================

def _check_normalization(mode, info, x, mu, sigma2):
    if info.size != x.length:
        raise ShapeMismatch("The tensor info doesn't match the length of the input tensor")
    if not sigma2.match_shape(mu):
        raise ShapeMismatch("Invalid variance tensor shape")
    if mode == NormalizationMode.SPATIAL:
        if not mu.match_shape(1, info.channels):
            raise ShapeMismatch("Invalid mu tensor size")
    elif mode == NormalizationMode.PER_ACTIVATION:
        if not mu.match_shape(1, x.length):
            raise ShapeMismatch("Invalid mu tensor size")
    else:
        raise ConfigurationError(f"Invalid normalization mode: {mode}")


def batch_normalization_forward(mode, info, x, mu, sigma2, gamma, beta, y):
    """
    y = gamma * (x - mu) / sqrt(sigma2 + eps) + beta, using the batch statistics.

    The batch mean and variance are written into mu and sigma2, and the backward
    primitives expect to find them there unchanged.
    """
    _check_normalization(mode, info, x, mu, sigma2)
    if not gamma.match_shape(sigma2):
        raise ShapeMismatch("The gamma tensor doesn't have the right shape")
    if not beta.match_shape(gamma):
        raise ShapeMismatch("The beta tensor doesn't have the right shape")
    if not x.match_shape(y):
        raise ShapeMismatch("The input and output tensors must have the same shape")
    n = x.entities
    pmu, psigma2, pg, pb = mu.data, sigma2.data, gamma.data, beta.data
    if mode == NormalizationMode.SPATIAL:
        # A single mean and variance value per input channel
        px = x.data.reshape(n, info.channels, info.slice_size)
        py = y.data.reshape(n, info.channels, info.slice_size)

        def kernel(lo, hi):
            xc = px[:, lo:hi, :].astype(np.float64)
            mc = xc.mean(axis=(0, 2))
            sc = ((xc - mc[None, :, None]) ** 2).mean(axis=(0, 2))
            pmu[0, lo:hi] = mc
            psigma2[0, lo:hi] = sc
            hat = (xc - mc[None, :, None]) / np.sqrt(sc + EPSILON)[None, :, None]
            py[:, lo:hi, :] = pg[0, lo:hi, None] * hat + pb[0, lo:hi, None]
        parallel_for(0, info.channels, kernel)
    else:
        # Each individual activation has its own mean and variance
        px, py = x.data, y.data

        def kernel(lo, hi):
            xj = px[:, lo:hi].astype(np.float64)
            mj = xj.mean(axis=0)
            sj = ((xj - mj) ** 2).mean(axis=0)
            pmu[0, lo:hi] = mj
            psigma2[0, lo:hi] = sj
            py[:, lo:hi] = pg[0, lo:hi] * ((xj - mj) / np.sqrt(sj + EPSILON)) + pb[0, lo:hi]
        parallel_for(0, x.length, kernel)


def batch_normalization_inference(mode, info, x, mu, sigma2, gamma, beta, y):
    """Same as the forward pass, but with fixed (running) statistics"""
    _check_normalization(mode, info, x, mu, sigma2)
    if not x.match_shape(y):
        raise ShapeMismatch("The input and output tensors must have the same shape")
    n = x.entities
    pmu, psigma2, pg, pb = mu.data, sigma2.data, gamma.data, beta.data
    if mode == NormalizationMode.SPATIAL:
        px = x.data.reshape(n, info.channels, info.slice_size)
        py = y.data.reshape(n, info.channels, info.slice_size)

        def kernel(lo, hi):
            scale = pg[0, lo:hi] / np.sqrt(psigma2[0, lo:hi] + EPSILON)
            py[:, lo:hi, :] = scale[None, :, None] * (px[:, lo:hi, :] - pmu[0, lo:hi, None]) + pb[0, lo:hi, None]
        parallel_for(0, info.channels, kernel)
    else:
        px, py = x.data, y.data

        def kernel(lo, hi):
            py[lo:hi] = pg * (px[lo:hi] - pmu) / np.sqrt(psigma2 + EPSILON) + pb
        parallel_for(0, n, kernel)


def batch_normalization_backward_data(mode, info, x, mu, sigma2, gamma, dy, dx):
    """Error delta with respect to the input of a batch normalization pass"""
    _check_normalization(mode, info, x, mu, sigma2)
    if not gamma.match_shape(sigma2):
        raise ShapeMismatch("The gamma tensor doesn't have the right shape")
    if not x.match_shape(dy):
        raise ShapeMismatch("The input and output tensors must have the same shape")
    if not x.match_shape(dx):
        raise ShapeMismatch("The input and the resulting error tensor must have the same shape")
    n = x.entities
    pmu, psigma2, pg = mu.data, sigma2.data, gamma.data
    if mode == NormalizationMode.SPATIAL:
        nhw = n * info.slice_size
        px = x.data.reshape(n, info.channels, info.slice_size)
        pdy = dy.data.reshape(n, info.channels, info.slice_size)
        pdx = dx.data.reshape(n, info.channels, info.slice_size)

        def kernel(lo, hi):
            mc = pmu[0, lo:hi, None].astype(np.float64)
            sc = psigma2[0, lo:hi, None].astype(np.float64)
            left = pg[0, lo:hi, None] / np.sqrt(sc + EPSILON) / nhw
            dyc = pdy[:, lo:hi, :].astype(np.float64)
            centered = px[:, lo:hi, :] - mc
            sum_dy = dyc.sum(axis=(0, 2))[:, None]
            sum_dy_x = (dyc * centered).sum(axis=(0, 2))[:, None]
            pdx[:, lo:hi, :] = left * (nhw * dyc - sum_dy - centered / (sc + EPSILON) * sum_dy_x)
        parallel_for(0, info.channels, kernel)
    else:
        px, pdy, pdx = x.data, dy.data, dx.data

        def kernel(lo, hi):
            mj = pmu[0, lo:hi].astype(np.float64)
            sj = psigma2[0, lo:hi].astype(np.float64)
            left = pg[0, lo:hi] / np.sqrt(sj + EPSILON) / n
            dyj = pdy[:, lo:hi].astype(np.float64)
            centered = px[:, lo:hi] - mj
            sum_dy = dyj.sum(axis=0)
            sum_dy_x = (dyj * centered).sum(axis=0)
            pdx[:, lo:hi] = left * (n * dyj - sum_dy - centered / (sj + EPSILON) * sum_dy_x)
        parallel_for(0, x.length, kernel)


def batch_normalization_backward_gamma(mode, info, x, mu, sigma2, dy, dgamma):
    """dgamma = sum(dy * x_hat)"""
    _check_normalization(mode, info, x, mu, sigma2)
    if not dgamma.match_shape(sigma2):
        raise ShapeMismatch("Invalid gamma gradient tensor size")
    if not x.match_shape(dy):
        raise ShapeMismatch("The input and output tensors must have the same shape")
    n = x.entities
    pmu, psigma2, pdg = mu.data, sigma2.data, dgamma.data
    if mode == NormalizationMode.SPATIAL:
        px = x.data.reshape(n, info.channels, info.slice_size)
        pdy = dy.data.reshape(n, info.channels, info.slice_size)

        def kernel(lo, hi):
            hat = (px[:, lo:hi, :] - pmu[0, lo:hi, None]) / np.sqrt(psigma2[0, lo:hi, None] + EPSILON)
            pdg[0, lo:hi] = (pdy[:, lo:hi, :].astype(np.float64) * hat).sum(axis=(0, 2))
        parallel_for(0, info.channels, kernel)
    else:
        px, pdy = x.data, dy.data

        def kernel(lo, hi):
            hat = (px[:, lo:hi] - pmu[0, lo:hi]) / np.sqrt(psigma2[0, lo:hi] + EPSILON)
            pdg[0, lo:hi] = (pdy[:, lo:hi].astype(np.float64) * hat).sum(axis=0)
        parallel_for(0, x.length, kernel)


def batch_normalization_backward_beta(mode, info, dy, dbeta):
    """dbeta = sum(dy), per channel or per activation"""
    if info.size != dy.length:
        raise ShapeMismatch("The tensor shape doesn't match the input info")
    if mode == NormalizationMode.SPATIAL:
        if not dbeta.match_shape(1, info.channels):
            raise ShapeMismatch("The beta tensor must have a value for each input channel")
        pdy = dy.data.reshape(dy.entities, info.channels, info.slice_size)
        pdb = dbeta.data

        def kernel(lo, hi):
            pdb[0, lo:hi] = pdy[:, lo:hi, :].sum(axis=(0, 2))
        parallel_for(0, info.channels, kernel)
    elif mode == NormalizationMode.PER_ACTIVATION:
        if not dbeta.match_shape(1, dy.length):
            raise ShapeMismatch("The beta tensor must have a value for each output feature")
        fully_connected_backward_bias(dy, dbeta)
    else:
        raise ConfigurationError(f"Invalid normalization mode: {mode}")


# ===========================
# Depth concatenation
# ===========================

def depth_concatenation_forward(inputs, y):
    """Stacks the inputs side by side along the feature axis"""
    if len(inputs) == 0:
        raise ShapeMismatch("The inputs can't be empty")
    offsets, count = [], 0
    for tensor in inputs:
        if tensor.entities != y.entities:
            raise ShapeMismatch("The number of samples must be the same for all tensors")
        offsets.append(count)
        count += tensor.length
    if y.length != count:
        raise ShapeMismatch("The target tensor doesn't have the right size")
    py = y.data
    sources = [tensor.data for tensor in inputs]

    def kernel(lo, hi):
        for i in range(lo, hi):
            py[:, offsets[i]:offsets[i] + sources[i].shape[1]] = sources[i]
    parallel_for(0, len(inputs), kernel)


def depth_concatenation_backward(dy, offset, dx):
    """Extracts the slice of dy that starts at offset and is as wide as dx"""
    if dy.entities != dx.entities:
        raise ShapeMismatch("The number of samples must be the same for both tensors")
    if offset < 0 or dy.length - offset < dx.length:
        raise ShapeMismatch("Invalid offset value")
    pdy, pdx = dy.data, dx.data
    end = offset + dx.length

    def kernel(lo, hi):
        pdx[lo:hi] = pdy[lo:hi, offset:end]
    parallel_for(0, dy.entities, kernel)


# ===========================
# Convolution
# ===========================

def _padded(x4, operation):
    ph, pw = operation.vertical_padding, operation.horizontal_padding
    if ph == 0 and pw == 0:
        return np.ascontiguousarray(x4)
    return np.pad(x4, ((0, 0), (0, 0), (ph, ph), (pw, pw)))


def _im2col(x4, kh, kw, operation, oh, ow):
    """(n, C, H, W) -> (n, C * kh * kw, oh * ow)"""
    xp = _padded(x4, operation)
    n, c = xp.shape[:2]
    s = xp.strides
    windows = np.lib.stride_tricks.as_strided(
        xp,
        shape=(n, c, oh, ow, kh, kw),
        strides=(s[0], s[1], operation.vertical_stride * s[2], operation.horizontal_stride * s[3], s[2], s[3]),
        writeable=False)
    return windows.transpose(0, 1, 4, 5, 2, 3).reshape(n, c * kh * kw, oh * ow)


def _check_convolution(x_info, w_info, y_info, operation):
    if w_info.channels != x_info.channels:
        raise ShapeMismatch("The kernels depth doesn't match the input channels")
    oh, ow = operation.output_shape(x_info.height, x_info.width, w_info.height, w_info.width)
    if (y_info.height, y_info.width) != (oh, ow):
        raise ShapeMismatch(f"Invalid convolution output shape {y_info}, expected {oh}x{ow}")


def convolution_forward(x, x_info, w, w_info, b, operation, y, y_info):
    """
    y = x (*) w + b, a cross-correlation of each sample with every kernel.

    Args:
        x: (n, C * H * W) input, channels first
        w: (K, C * kh * kw) kernels, w_info being the shape of a single kernel
        b: (1, K) biases
        y: (n, K * oh * ow) output
    """
    _check_convolution(x_info, w_info, y_info, operation)
    if x.length != x_info.size or not w.match_shape(y_info.channels, w_info.size):
        raise ShapeMismatch("The input or kernels don't match their shape info")
    if not b.match_shape(1, y_info.channels) or not y.match_shape(x.entities, y_info.size):
        raise ShapeMismatch("Invalid biases or output shape")
    px, pw, pb, py = x.data, w.data, b.data, y.data

    def kernel(lo, hi):
        x4 = px[lo:hi].reshape(hi - lo, x_info.channels, x_info.height, x_info.width)
        cols = _im2col(x4, w_info.height, w_info.width, operation, y_info.height, y_info.width)
        out = np.matmul(pw, cols) + pb.reshape(1, -1, 1)
        py[lo:hi] = out.reshape(hi - lo, y_info.size)
    parallel_for(0, x.entities, kernel)


def convolution_backward_data(dy, y_info, w, w_info, operation, dx, x_info):
    """Backpropagates the output delta through the kernels, dx = col2im(w' * dy)"""
    _check_convolution(x_info, w_info, y_info, operation)
    if not dy.match_shape(dx.entities, y_info.size) or dx.length != x_info.size:
        raise ShapeMismatch("Invalid delta tensors shapes")
    if not w.match_shape(y_info.channels, w_info.size):
        raise ShapeMismatch("The kernels don't match their shape info")
    pdy, pw, pdx = dy.data, w.data, dx.data
    kh, kw = w_info.height, w_info.width
    oh, ow = y_info.height, y_info.width
    sh, sw = operation.vertical_stride, operation.horizontal_stride
    ph, pwd = operation.vertical_padding, operation.horizontal_padding
    c, h, wd = x_info.channels, x_info.height, x_info.width

    def kernel(lo, hi):
        m = hi - lo
        dcols = np.matmul(pw.T, pdy[lo:hi].reshape(m, y_info.channels, oh * ow))
        dcols = dcols.reshape(m, c, kh, kw, oh, ow)
        padded = np.zeros((m, c, h + 2 * ph, wd + 2 * pwd), dtype=pdx.dtype)
        for i in range(kh):
            for j in range(kw):
                padded[:, :, i:i + sh * oh:sh, j:j + sw * ow:sw] += dcols[:, :, i, j]
        pdx[lo:hi] = padded[:, :, ph:ph + h, pwd:pwd + wd].reshape(m, x_info.size)
    parallel_for(0, dy.entities, kernel)


def convolution_backward_filter(x, x_info, dy, y_info, operation, dw, w_info):
    """dw[k] = sum over the samples of dy[k] (*) x"""
    _check_convolution(x_info, w_info, y_info, operation)
    if x.entities != dy.entities or dy.length != y_info.size:
        raise ShapeMismatch("The input tensor doesn't match the delta")
    if not dw.match_shape(y_info.channels, w_info.size):
        raise ShapeMismatch("The kernels gradient doesn't have the right shape")
    n = x.entities
    cols = _im2col(x.data.reshape(n, x_info.channels, x_info.height, x_info.width),
                   w_info.height, w_info.width, operation, y_info.height, y_info.width)
    pdy = dy.data.reshape(n, y_info.channels, y_info.slice_size)
    pdw = dw.data

    def kernel(lo, hi):
        pdw[lo:hi] = np.tensordot(pdy[:, lo:hi, :], cols, axes=([0, 2], [0, 2]))
    parallel_for(0, y_info.channels, kernel)


def convolution_backward_bias(dy, y_info, db):
    """db[k] = sum of dy over the samples and the spatial positions of the k-th channel"""
    if dy.length != y_info.size or not db.match_shape(1, y_info.channels):
        raise ShapeMismatch("Invalid delta or biases gradient shape")
    pdy = dy.data.reshape(dy.entities, y_info.channels, y_info.slice_size)
    pdb = db.data

    def kernel(lo, hi):
        pdb[0, lo:hi] = pdy[:, lo:hi, :].sum(axis=(0, 2))
    parallel_for(0, y_info.channels, kernel)


# ===========================
# Pooling
# ===========================

def _pooling_windows(x4, operation, oh, ow):
    s = x4.strides
    return np.lib.stride_tricks.as_strided(
        x4,
        shape=x4.shape[:2] + (oh, ow, operation.window_height, operation.window_width),
        strides=(s[0], s[1], operation.vertical_stride * s[2], operation.horizontal_stride * s[3], s[2], s[3]),
        writeable=False)


def pooling_forward(x, x_info, operation, y):
    """Max pooling over each channel"""
    oh, ow = operation.output_shape(x_info.height, x_info.width)
    if x.length != x_info.size or not y.match_shape(x.entities, x_info.channels * oh * ow):
        raise ShapeMismatch("Invalid pooling tensors shapes")
    px, py = x.data, y.data

    def kernel(lo, hi):
        x4 = np.ascontiguousarray(px[lo:hi]).reshape(hi - lo, x_info.channels, x_info.height, x_info.width)
        py[lo:hi] = _pooling_windows(x4, operation, oh, ow).max(axis=(4, 5)).reshape(hi - lo, -1)
    parallel_for(0, x.entities, kernel)


def pooling_backward(x, x_info, dy, operation, dx):
    """Routes each output delta back to the position of the max value in its window"""
    oh, ow = operation.output_shape(x_info.height, x_info.width)
    if x.length != x_info.size or not dy.match_shape(x.entities, x_info.channels * oh * ow):
        raise ShapeMismatch("Invalid pooling delta shape")
    if not dx.match_shape(x):
        raise ShapeMismatch("The resulting delta must have the same shape as the input")
    px, pdy, pdx = x.data, dy.data, dx.data
    pw_ = operation.window_width
    rows = np.arange(oh)[:, None] * operation.vertical_stride
    cols = np.arange(ow)[None, :] * operation.horizontal_stride

    def kernel(lo, hi):
        m, c = hi - lo, x_info.channels
        x4 = np.ascontiguousarray(px[lo:hi]).reshape(m, c, x_info.height, x_info.width)
        windows = _pooling_windows(x4, operation, oh, ow).reshape(m, c, oh, ow, -1)
        index = windows.argmax(axis=4)
        r = rows + index // pw_
        q = cols + index % pw_
        target = np.zeros((m, c, x_info.height, x_info.width), dtype=pdx.dtype)
        ni = np.arange(m)[:, None, None, None]
        ci = np.arange(c)[None, :, None, None]
        # Overlapping windows can select the same input twice
        np.add.at(target, (ni, ci, r, q), pdy[lo:hi].reshape(m, c, oh, ow))
        pdx[lo:hi] = target.reshape(m, -1)
    parallel_for(0, x.entities, kernel)
