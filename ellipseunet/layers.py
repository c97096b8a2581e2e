"""Neural-network layers with explicit forward and backward passes.

Every layer caches what it needs during ``forward`` and accumulates parameter
gradients during ``backward``, which returns the gradient of its input.
"""

from __future__ import annotations

import math

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view


def _rng(rng: np.random.Generator | None) -> np.random.Generator:
    return rng if rng is not None else np.random.default_rng()


def _kaiming_uniform(rng, shape, fan_in: int, dtype) -> np.ndarray:
    bound = 1.0 / math.sqrt(fan_in)
    return rng.uniform(-bound, bound, size=shape).astype(dtype)


def _channel(v: np.ndarray) -> np.ndarray:
    return v[None, :, None, None]


class Parameter:
    """A trainable array together with its accumulated gradient."""

    def __init__(self, value) -> None:
        self.value = np.asarray(value)
        self.grad = np.zeros_like(self.value)

    def zero_grad(self) -> None:
        self.grad = np.zeros_like(self.value)

    def accumulate(self, grad: np.ndarray) -> None:
        self.grad = self.grad + grad


class Conv2d:
    """2-D convolution with stride 1, ``"valid"`` or ``"same"`` padding."""

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        kernel_size: int,
        *,
        padding: str = "valid",
        bias: bool = True,
        rng: np.random.Generator | None = None,
        dtype=np.float32,
    ) -> None:
        if padding not in ("valid", "same"):
            raise ValueError(f"unknown padding {padding!r}")
        if padding == "same" and kernel_size % 2 == 0:
            raise ValueError("'same' padding needs an odd kernel size")
        rng = _rng(rng)
        self.in_channels = in_channels
        self.out_channels = out_channels
        self.kernel_size = kernel_size
        self.pad = (kernel_size - 1) // 2 if padding == "same" else 0
        fan_in = in_channels * kernel_size * kernel_size
        self.weight = Parameter(
            _kaiming_uniform(rng, (out_channels, in_channels, kernel_size, kernel_size), fan_in, dtype)
        )
        self.bias = Parameter(_kaiming_uniform(rng, (out_channels,), fan_in, dtype)) if bias else None
        self._cache = None

    def forward(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x)
        if x.ndim != 4 or x.shape[1] != self.in_channels:
            raise ValueError(f"expected input (N, {self.in_channels}, H, W), got {x.shape}")
        p, k = self.pad, self.kernel_size
        xp = np.pad(x, ((0, 0), (0, 0), (p, p), (p, p)))
        windows = sliding_window_view(xp, (k, k), axis=(2, 3))
        out = np.tensordot(windows, self.weight.value, axes=([1, 4, 5], [1, 2, 3]))
        out = out.transpose(0, 3, 1, 2)
        if self.bias is not None:
            out = out + _channel(self.bias.value)
        self._cache = (x.shape, windows)
        return np.ascontiguousarray(out)

    def backward(self, grad: np.ndarray) -> np.ndarray:
        if self._cache is None:
            raise RuntimeError("backward called before forward")
        shape, windows = self._cache
        grad = np.asarray(grad)
        self.weight.accumulate(np.tensordot(grad, windows, axes=([0, 2, 3], [0, 2, 3])))
        if self.bias is not None:
            self.bias.accumulate(grad.sum(axis=(0, 2, 3)))

        cols = np.tensordot(grad, self.weight.value, axes=([1], [0]))
        n, c, h, w = shape
        p, k = self.pad, self.kernel_size
        ho, wo = grad.shape[2:]
        dxp = np.zeros((n, c, h + 2 * p, w + 2 * p), dtype=cols.dtype)
        for i in range(k):
            for j in range(k):
                dxp[:, :, i : i + ho, j : j + wo] += cols[..., i, j].transpose(0, 3, 1, 2)
        return dxp[:, :, p : p + h, p : p + w]

    def parameters(self) -> list[Parameter]:
        return [self.weight] if self.bias is None else [self.weight, self.bias]


class BatchNorm2d:
    """Batch normalisation over the channel axis of NCHW inputs."""

    def __init__(
        self, num_features: int, *, momentum: float = 0.1, epsilon: float = 1e-5, dtype=np.float32
    ) -> None:
        self.num_features = num_features
        self.momentum = momentum
        self.epsilon = epsilon
        self.gamma = Parameter(np.ones(num_features, dtype=dtype))
        self.beta = Parameter(np.zeros(num_features, dtype=dtype))
        self.running_mean = np.zeros(num_features, dtype=dtype)
        self.running_var = np.ones(num_features, dtype=dtype)
        self.training = True
        self._cache = None

    def forward(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x)
        if x.ndim != 4 or x.shape[1] != self.num_features:
            raise ValueError(f"expected input (N, {self.num_features}, H, W), got {x.shape}")
        if self.training:
            mean = x.mean(axis=(0, 2, 3))
            var = x.var(axis=(0, 2, 3))
            m = self.momentum
            self.running_mean = ((1 - m) * self.running_mean + m * mean).astype(self.running_mean.dtype)
            self.running_var = ((1 - m) * self.running_var + m * var).astype(self.running_var.dtype)
        else:
            mean, var = self.running_mean, self.running_var
        inv_std = 1.0 / np.sqrt(var + self.epsilon)
        xhat = (x - _channel(mean)) * _channel(inv_std)
        self._cache = (xhat, inv_std, self.training)
        return _channel(self.gamma.value) * xhat + _channel(self.beta.value)

    def backward(self, grad: np.ndarray) -> np.ndarray:
        if self._cache is None:
            raise RuntimeError("backward called before forward")
        xhat, inv_std, training = self._cache
        grad = np.asarray(grad)
        self.gamma.accumulate((grad * xhat).sum(axis=(0, 2, 3)))
        self.beta.accumulate(grad.sum(axis=(0, 2, 3)))
        dxhat = grad * _channel(self.gamma.value)
        if not training:
            return dxhat * _channel(inv_std)
        mean_d = dxhat.mean(axis=(0, 2, 3), keepdims=True)
        mean_dx = (dxhat * xhat).mean(axis=(0, 2, 3), keepdims=True)
        return (dxhat - mean_d - xhat * mean_dx) * _channel(inv_std)

    def parameters(self) -> list[Parameter]:
        return [self.gamma, self.beta]


class ReLU:
    """Rectified linear unit."""

    def __init__(self) -> None:
        self._mask = None

    def forward(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x)
        self._mask = x > 0
        return np.where(self._mask, x, 0).astype(x.dtype)

    def backward(self, grad: np.ndarray) -> np.ndarray:
        if self._mask is None:
            raise RuntimeError("backward called before forward")
        return np.where(self._mask, grad, 0).astype(np.asarray(grad).dtype)


class MaxPool2d:
    """Max pooling over square windows without padding."""

    def __init__(self, kernel_size: int = 2, stride: int | None = None) -> None:
        self.kernel_size = kernel_size
        self.stride = stride if stride is not None else kernel_size
        self._cache = None

    def forward(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x)
        if x.ndim != 4:
            raise ValueError(f"expected an NCHW input, got {x.shape}")
        k, s = self.kernel_size, self.stride
        if x.shape[2] < k or x.shape[3] < k:
            raise ValueError("input is smaller than the pooling window")
        windows = sliding_window_view(x, (k, k), axis=(2, 3))[:, :, ::s, ::s]
        flat = windows.reshape(*windows.shape[:4], k * k)
        idx = flat.argmax(axis=-1)
        self._cache = (x.shape, x.dtype, idx)
        return np.take_along_axis(flat, idx[..., None], axis=-1)[..., 0]

    def backward(self, grad: np.ndarray) -> np.ndarray:
        if self._cache is None:
            raise RuntimeError("backward called before forward")
        shape, dtype, idx = self._cache
        grad = np.asarray(grad)
        k, s = self.kernel_size, self.stride
        ho, wo = idx.shape[2:]
        dx = np.zeros(shape, dtype=np.result_type(dtype, grad.dtype))
        for i in range(k):
            for j in range(k):
                dx[:, :, i : i + s * (ho - 1) + 1 : s, j : j + s * (wo - 1) + 1 : s] += np.where(
                    idx == i * k + j, grad, 0
                )
        return dx


def _bins(size: int, out: int) -> list[tuple[int, int]]:
    return [((i * size) // out, -((-(i + 1) * size) // out)) for i in range(out)]


class AdaptiveAvgPool2d:
    """Average pooling to a fixed output size."""

    def __init__(self, output_size: int | tuple[int, int] = (1, 1)) -> None:
        if isinstance(output_size, int):
            output_size = (output_size, output_size)
        self.output_size = tuple(output_size)
        self._cache = None

    def _regions(self, h: int, w: int):
        oh, ow = self.output_size
        for a, (hs, he) in enumerate(_bins(h, oh)):
            for b, (ws, we) in enumerate(_bins(w, ow)):
                yield a, b, slice(hs, he), slice(ws, we), (he - hs) * (we - ws)

    def forward(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x)
        if x.ndim != 4:
            raise ValueError(f"expected an NCHW input, got {x.shape}")
        n, c, h, w = x.shape
        out = np.empty((n, c, *self.output_size), dtype=np.result_type(x.dtype, np.float32))
        for a, b, hs, ws, _ in self._regions(h, w):
            out[:, :, a, b] = x[:, :, hs, ws].mean(axis=(2, 3))
        self._cache = x.shape
        return out

    def backward(self, grad: np.ndarray) -> np.ndarray:
        if self._cache is None:
            raise RuntimeError("backward called before forward")
        grad = np.asarray(grad)
        n, c, h, w = self._cache
        dx = np.zeros(self._cache, dtype=grad.dtype)
        for a, b, hs, ws, area in self._regions(h, w):
            dx[:, :, hs, ws] += grad[:, :, a, b][..., None, None] / area
        return dx


class Linear:
    """Fully connected layer; the weight has shape ``(in_features, out_features)``."""

    def __init__(
        self,
        in_features: int,
        out_features: int,
        *,
        bias: bool = True,
        rng: np.random.Generator | None = None,
        dtype=np.float32,
    ) -> None:
        rng = _rng(rng)
        self.in_features = in_features
        self.out_features = out_features
        self.weight = Parameter(_kaiming_uniform(rng, (in_features, out_features), in_features, dtype))
        self.bias = Parameter(_kaiming_uniform(rng, (out_features,), in_features, dtype)) if bias else None
        self._input = None

    def forward(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x)
        if x.shape[-1] != self.in_features:
            raise ValueError(f"expected last dimension {self.in_features}, got {x.shape}")
        self._input = x
        out = x @ self.weight.value
        return out if self.bias is None else out + self.bias.value

    def backward(self, grad: np.ndarray) -> np.ndarray:
        if self._input is None:
            raise RuntimeError("backward called before forward")
        grad = np.asarray(grad)
        x2 = self._input.reshape(-1, self.in_features)
        g2 = grad.reshape(-1, self.out_features)
        self.weight.accumulate(x2.T @ g2)
        if self.bias is not None:
            self.bias.accumulate(g2.sum(axis=0))
        return grad @ self.weight.value.T

    def parameters(self) -> list[Parameter]:
        return [self.weight] if self.bias is None else [self.weight, self.bias]


def upsample_2x(x: np.ndarray) -> np.ndarray:
    """Nearest-neighbour 2x upsampling of an NCHW array."""
    x = np.asarray(x)
    return np.repeat(np.repeat(x, 2, axis=2), 2, axis=3)


def upsample_2x_backward(grad: np.ndarray) -> np.ndarray:
    """Gradient of :func:`upsample_2x` with respect to its input."""
    grad = np.asarray(grad)
    n, c, h, w = grad.shape
    if h % 2 or w % 2:
        raise ValueError("gradient spatial size must be even")
    return grad.reshape(n, c, h // 2, 2, w // 2, 2).sum(axis=(3, 5))


def sigmoid(x: np.ndarray) -> np.ndarray:
    """Numerically stable logistic function."""
    x = np.asarray(x)
    e = np.exp(-np.abs(x))
    return np.where(x >= 0, 1.0 / (1.0 + e), e / (1.0 + e))


def binary_cross_entropy_with_logits(
    logits: np.ndarray, targets: np.ndarray
) -> tuple[float, np.ndarray]:
    """Mean binary cross-entropy on logits.

    Returns the loss and its gradient with respect to ``logits``.
    """
    logits = np.asarray(logits)
    targets = np.asarray(targets)
    if logits.shape != targets.shape:
        raise ValueError(f"shape mismatch: {logits.shape} vs {targets.shape}")
    if logits.size == 0:
        raise ValueError("cannot compute a loss over no elements")
    elems = np.maximum(logits, 0) - logits * targets + np.log1p(np.exp(-np.abs(logits)))
    grad = (sigmoid(logits) - targets) / logits.size
    return float(elems.mean()), grad.astype(np.result_type(logits.dtype, np.float32))