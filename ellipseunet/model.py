"""A small UNet-like segmentation network with auxiliary heads.

The network has two encoder stages, a bottleneck and two decoder stages with
skip connections, followed by a 1x1 convolution that yields one-channel
segmentation logits. A classification head and a regression head operate on
globally pooled bottleneck features.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Mapping

import numpy as np

from ellipseunet.data import SegmentationBatch
from ellipseunet.layers import (
    AdaptiveAvgPool2d,
    BatchNorm2d,
    Conv2d,
    Linear,
    MaxPool2d,
    Parameter,
    ReLU,
    binary_cross_entropy_with_logits,
    upsample_2x,
    upsample_2x_backward,
)

DEFAULT_BASE_CHANNELS = 32

_PARAM_ATTRS = ("weight", "bias", "gamma", "beta")
_BUFFER_ATTRS = ("running_mean", "running_var")


def _layer_entries(layer) -> Iterator[tuple[str, np.ndarray]]:
    """Yield the persistent arrays of a layer: parameters, then buffers."""
    for attr in _PARAM_ATTRS:
        param = getattr(layer, attr, None)
        if isinstance(param, Parameter):
            yield attr, param.value
    for attr in _BUFFER_ATTRS:
        if hasattr(layer, attr):
            yield attr, getattr(layer, attr)


def _layer_parameters(layer) -> list[Parameter]:
    return [
        p for p in (getattr(layer, a, None) for a in _PARAM_ATTRS) if isinstance(p, Parameter)
    ]


def _model_file(path) -> Path:
    path = Path(path)
    return path if path.suffix == ".npz" else path.with_name(path.name + ".npz")


@dataclass
class ConvBlockConfig:
    """Channel counts of a :class:`ConvBlock`."""

    in_channels: int
    out_channels: int
    dtype: Any = np.float32

    def init(self, rng: np.random.Generator | None = None) -> ConvBlock:
        """Build a :class:`ConvBlock` with freshly initialised weights."""
        return ConvBlock(self, rng)


class ConvBlock:
    """``Conv -> BatchNorm -> ReLU -> Conv -> BatchNorm -> ReLU``."""

    def __init__(self, config: ConvBlockConfig, rng: np.random.Generator | None = None) -> None:
        rng = rng if rng is not None else np.random.default_rng()
        cin, cout, dtype = config.in_channels, config.out_channels, config.dtype
        self.conv1 = Conv2d(cin, cout, 3, padding="same", rng=rng, dtype=dtype)
        self.bn1 = BatchNorm2d(cout, dtype=dtype)
        self.relu1 = ReLU()
        self.conv2 = Conv2d(cout, cout, 3, padding="same", rng=rng, dtype=dtype)
        self.bn2 = BatchNorm2d(cout, dtype=dtype)
        self.relu2 = ReLU()

    def _pipeline(self):
        return (self.conv1, self.bn1, self.relu1, self.conv2, self.bn2, self.relu2)

    def _named_layers(self) -> Iterator[tuple[str, object]]:
        yield "conv1", self.conv1
        yield "bn1", self.bn1
        yield "conv2", self.conv2
        yield "bn2", self.bn2

    def forward(self, x: np.ndarray) -> np.ndarray:
        for layer in self._pipeline():
            x = layer.forward(x)
        return x

    def backward(self, grad: np.ndarray) -> np.ndarray:
        for layer in reversed(self._pipeline()):
            grad = layer.backward(grad)
        return grad

    def parameters(self) -> list[Parameter]:
        return [p for _, layer in self._named_layers() for p in _layer_parameters(layer)]

    def set_training(self, training: bool) -> None:
        """Switch batch normalisation between batch and running statistics."""
        self.bn1.training = training
        self.bn2.training = training


@dataclass
class UNetConfig:
    """Hyperparameters of :class:`UNet`."""

    base_channels: int = DEFAULT_BASE_CHANNELS

    def __post_init__(self) -> None:
        if (
            not isinstance(self.base_channels, int)
            or isinstance(self.base_channels, bool)
            or self.base_channels < 1
        ):
            raise ValueError(f"base_channels must be a positive integer, got {self.base_channels!r}")

    def init(self, seed: int | None = None) -> UNet:
        """Build a :class:`UNet` whose weights are drawn from ``seed``."""
        return UNet(self, rng=np.random.default_rng(seed))

    def to_dict(self) -> dict[str, Any]:
        return {"base_channels": self.base_channels}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> UNetConfig:
        return cls(base_channels=data.get("base_channels", DEFAULT_BASE_CHANNELS))


@dataclass
class UNetOutput:
    """Segmentation logits ``(B, 1, H, W)``, class logits and regression outputs ``(B, 1)``."""

    seg_logits: np.ndarray
    cls_logits: np.ndarray
    reg_preds: np.ndarray


@dataclass
class StepOutput:
    """Losses of one step; ``loss`` is the sum of the three task losses."""

    loss: float
    seg_loss: float
    cls_loss: float
    reg_loss: float
    output: UNetOutput


class UNet:
    """UNet with two resolution levels and auxiliary classification/regression heads."""

    def __init__(
        self,
        config: UNetConfig | None = None,
        rng: np.random.Generator | None = None,
        *,
        dtype=np.float32,
    ) -> None:
        self.config = config if config is not None else UNetConfig()
        self.dtype = np.dtype(dtype)
        rng = rng if rng is not None else np.random.default_rng()
        c1 = self.config.base_channels
        c2 = c1 * 2
        c3 = c2 * 2
        self._channels = (c1, c2, c3)

        def block(cin: int, cout: int) -> ConvBlock:
            return ConvBlockConfig(cin, cout, dtype=self.dtype).init(rng)

        self.enc1 = block(3, c1)
        self.pool1 = MaxPool2d(2, 2)
        self.enc2 = block(c1, c2)
        self.pool2 = MaxPool2d(2, 2)
        self.bottleneck = block(c2, c3)
        self.up_conv2 = Conv2d(c3 + c2, c2, 1, rng=rng, dtype=self.dtype)
        self.dec2 = block(c2, c2)
        self.up_conv1 = Conv2d(c2 + c1, c1, 1, rng=rng, dtype=self.dtype)
        self.dec1 = block(c1, c1)
        self.seg_head = Conv2d(c1, 1, 1, rng=rng, dtype=self.dtype)
        self.aux_pool = AdaptiveAvgPool2d((1, 1))
        self.aux_cls = Linear(c3, 1, rng=rng, dtype=self.dtype)
        self.aux_reg = Linear(c3, 1, rng=rng, dtype=self.dtype)
        self.training = True
        self._batch_size: int | None = None

    def _blocks(self) -> list[tuple[str, ConvBlock]]:
        return [
            ("enc1", self.enc1),
            ("enc2", self.enc2),
            ("bottleneck", self.bottleneck),
            ("dec2", self.dec2),
            ("dec1", self.dec1),
        ]

    def _named_layers(self) -> Iterator[tuple[str, object]]:
        for name, blk in self._blocks():
            for sub, layer in blk._named_layers():
                yield f"{name}.{sub}", layer
        yield "up_conv2", self.up_conv2
        yield "up_conv1", self.up_conv1
        yield "seg_head", self.seg_head
        yield "aux_cls", self.aux_cls
        yield "aux_reg", self.aux_reg

    def forward(self, x: np.ndarray) -> UNetOutput:
        """Run the network on an ``(B, 3, H, W)`` input with H and W divisible by 4."""
        x = np.asarray(x, dtype=self.dtype)
        if x.ndim != 4 or x.shape[1] != 3:
            raise ValueError(f"expected input (B, 3, H, W), got {x.shape}")
        if x.shape[2] % 4 or x.shape[3] % 4:
            raise ValueError(f"spatial size must be divisible by 4, got {x.shape[2:]}")
        batch = x.shape[0]

        skip1 = self.enc1.forward(x)
        h = self.pool1.forward(skip1)
        skip2 = self.enc2.forward(h)
        h = self.pool2.forward(skip2)
        h = self.bottleneck.forward(h)

        aux_flat = self.aux_pool.forward(h).reshape(batch, -1)
        cls_logits = self.aux_cls.forward(aux_flat)
        reg_preds = self.aux_reg.forward(aux_flat)

        h = np.concatenate([upsample_2x(h), skip2], axis=1)
        h = self.dec2.forward(self.up_conv2.forward(h))
        h = np.concatenate([upsample_2x(h), skip1], axis=1)
        h = self.dec1.forward(self.up_conv1.forward(h))
        seg_logits = self.seg_head.forward(h)

        self._batch_size = batch
        return UNetOutput(seg_logits=seg_logits, cls_logits=cls_logits, reg_preds=reg_preds)

    def backward(self, grad_seg, grad_cls, grad_reg) -> np.ndarray:
        """Back-propagate head gradients, accumulate parameter gradients, return input gradient.

        A gradient given as None counts as zero.
        """
        if self._batch_size is None:
            raise RuntimeError("backward called before forward")
        c1, c2, c3 = self._channels
        b = self._batch_size
        if grad_cls is None:
            grad_cls = np.zeros((b, 1), dtype=self.dtype)
        if grad_reg is None:
            grad_reg = np.zeros((b, 1), dtype=self.dtype)
        if grad_seg is None:
            grad_seg = np.zeros(self.seg_head._cache[0][:1] + (1,) + self.seg_head._cache[0][2:], dtype=self.dtype)

        g = self.dec1.backward(self.seg_head.backward(grad_seg))
        g = self.up_conv1.backward(g)
        g_up, g_skip1 = g[:, :c2], g[:, c2:]
        g = self.dec2.backward(upsample_2x_backward(g_up))
        g = self.up_conv2.backward(g)
        g_up, g_skip2 = g[:, :c3], g[:, c3:]
        g_bottleneck = upsample_2x_backward(g_up)

        g_flat = self.aux_cls.backward(grad_cls) + self.aux_reg.backward(grad_reg)
        g_bottleneck = g_bottleneck + self.aux_pool.backward(g_flat.reshape(b, c3, 1, 1))

        g = self.bottleneck.backward(g_bottleneck)
        g = self.enc2.backward(self.pool2.backward(g) + g_skip2)
        return self.enc1.backward(self.pool1.backward(g) + g_skip1)

    def _losses(self, batch: SegmentationBatch):
        out = self.forward(batch.images)
        masks = np.asarray(batch.masks, dtype=out.seg_logits.dtype)
        seg_loss, g_seg = binary_cross_entropy_with_logits(out.seg_logits, masks)

        b = out.cls_logits.shape[0]
        cls_targets = np.asarray(batch.binary_targets).astype(out.cls_logits.dtype).reshape(b, 1)
        cls_loss, g_cls = binary_cross_entropy_with_logits(out.cls_logits, cls_targets)

        reg_targets = np.asarray(batch.regression_targets, dtype=out.reg_preds.dtype).reshape(b, 1)
        diff = out.reg_preds - reg_targets
        reg_loss = float(np.mean(diff**2))
        g_reg = 2.0 * diff / diff.size

        step = StepOutput(
            loss=seg_loss + cls_loss + reg_loss,
            seg_loss=seg_loss,
            cls_loss=cls_loss,
            reg_loss=reg_loss,
            output=out,
        )
        return step, (g_seg, g_cls, g_reg)

    def forward_step(self, batch: SegmentationBatch) -> StepOutput:
        """Compute ``BCE(seg) + BCE(cls) + MSE(reg)`` for a batch."""
        step, _ = self._losses(batch)
        return step

    def train_step(self, batch: SegmentationBatch) -> StepOutput:
        """Compute the losses and accumulate their gradients into the parameters."""
        step, grads = self._losses(batch)
        self.backward(*grads)
        return step

    def parameters(self) -> list[Parameter]:
        return [p for _, layer in self._named_layers() for p in _layer_parameters(layer)]

    def set_training(self, training: bool) -> None:
        self.training = training
        for _, blk in self._blocks():
            blk.set_training(training)

    def state_dict(self) -> dict[str, np.ndarray]:
        """Copies of all parameters and batch-norm running statistics."""
        return {
            f"{name}.{attr}": np.array(value, copy=True)
            for name, layer in self._named_layers()
            for attr, value in _layer_entries(layer)
        }

    def load_state_dict(self, state: Mapping[str, np.ndarray]) -> None:
        """Replace all weights and statistics; keys and shapes must match exactly."""
        targets = {
            f"{name}.{attr}": (layer, attr, value)
            for name, layer in self._named_layers()
            for attr, value in _layer_entries(layer)
        }
        missing = sorted(set(targets) - set(state))
        unexpected = sorted(set(state) - set(targets))
        if missing:
            raise KeyError(f"missing keys in state: {', '.join(missing)}")
        if unexpected:
            raise KeyError(f"unexpected keys in state: {', '.join(unexpected)}")
        for key, (_, _, current) in targets.items():
            new = np.asarray(state[key])
            if new.shape != current.shape:
                raise ValueError(f"shape mismatch for {key}: {new.shape} vs {current.shape}")
        for key, (layer, attr, current) in targets.items():
            new = np.array(state[key], dtype=current.dtype, copy=True)
            target = getattr(layer, attr)
            if isinstance(target, Parameter):
                target.value = new
                target.zero_grad()
            else:
                setattr(layer, attr, new)

    def save(self, path) -> Path:
        """Write the state to ``path`` (``.npz`` is appended if missing); return the file path."""
        file = _model_file(path)
        file.parent.mkdir(parents=True, exist_ok=True)
        with file.open("wb") as fh:
            np.savez(fh, **self.state_dict())
        return file

    @classmethod
    def load(cls, path, config: UNetConfig | None = None) -> UNet:
        """Build a model from ``config`` and load saved weights; it is returned in eval mode."""
        model = cls(config if config is not None else UNetConfig())
        with np.load(_model_file(path), allow_pickle=False) as data:
            state = {key: data[key] for key in data.files}
        model.load_state_dict(state)
        model.set_training(False)
        return model