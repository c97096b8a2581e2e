"""Synthetic ellipse-segmentation dataset.

Each sample is a random RGB image with several filled ellipses drawn on it,
a binary mask for one chosen ellipse layer, a binary classification target
and a scalar regression target.
"""

from __future__ import annotations

import dataclasses
import threading
from dataclasses import dataclass

import numpy as np
from PIL import Image

MIN_IMG_LEN = 80
"""Minimum spatial dimension (inclusive) of generated images."""
MAX_IMG_LEN = 120
"""Maximum spatial dimension (exclusive) of generated images."""
NUM_LAYERS = 8
"""Number of ellipse layers drawn on every image."""
GT_LAYER_IDX = 5
"""Ellipse layer (0-indexed) that provides the ground-truth mask."""

FIXED_H = 96
FIXED_W = 96
"""Size every image and mask is resized to so that they can be batched."""

_CHANNELS = 3
_SEED_MODULUS = 2**64


@dataclass
class EllipseItem:
    """A single sample.

    ``image`` is a float32 array of shape ``(3, FIXED_H, FIXED_W)`` with values
    in [0, 255]; ``mask`` is a float32 array of shape ``(1, FIXED_H, FIXED_W)``
    holding 0.0 or 1.0.
    """

    image: np.ndarray
    mask: np.ndarray
    binary_target: int
    regression_target: float
    original_height: int
    original_width: int


def draw_ellipse(
    img: np.ndarray,
    hlen_frac: float,
    vlen_frac: float,
    intensity: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw a filled ellipse on ``img`` (HWC or HW, in place) and return its mask.

    The ellipse axes are fractions of the smaller image side; its centre is
    sampled so that it stays within the image.
    """
    if img.ndim not in (2, 3):
        raise ValueError(f"expected an HW or HWC image, got shape {img.shape}")
    height, width = img.shape[:2]
    if height < 1 or width < 1:
        raise ValueError("image must not be empty")

    img_size = min(height, width)
    hlen = int(img_size * hlen_frac)
    vlen = int(img_size * vlen_frac)
    hrad = min(max(hlen // 2, 1), width // 2)
    vrad = min(max(vlen // 2, 1), height // 2)
    if hrad == 0 or vrad == 0:
        raise ValueError("image is too small to hold an ellipse")

    ctr_h = int(rng.integers(hrad, max(width - hrad, hrad + 1)))
    ctr_v = int(rng.integers(vrad, max(height - vrad, vrad + 1)))

    ys = np.arange(height, dtype=np.float64)[:, None]
    xs = np.arange(width, dtype=np.float64)[None, :]
    dx = (xs - ctr_h) / hrad
    dy = (ys - ctr_v) / vrad
    mask = dx * dx + dy * dy <= 1.0

    img[mask] = intensity
    return mask


def resize_rgb_to_chw(src: np.ndarray, h_out: int, w_out: int) -> np.ndarray:
    """Resize an HWC uint8 RGB image with Lanczos filtering; return CHW float32."""
    src = np.asarray(src)
    if src.ndim != 3 or src.shape[2] != _CHANNELS:
        raise ValueError(f"RGB buffer size mismatch: shape {src.shape}")
    rgb = Image.fromarray(np.ascontiguousarray(src, dtype=np.uint8), "RGB")
    resized = rgb.resize((w_out, h_out), Image.Resampling.LANCZOS)
    hwc = np.asarray(resized, dtype=np.float32)
    return np.ascontiguousarray(hwc.transpose(2, 0, 1))


def resize_mask_to_chw(mask: np.ndarray, h_out: int, w_out: int) -> np.ndarray:
    """Resize a boolean HW mask with nearest-neighbour; return (1, H, W) float32."""
    mask = np.asarray(mask)
    if mask.ndim != 2:
        raise ValueError(f"mask buffer size mismatch: shape {mask.shape}")
    buf = np.ascontiguousarray(mask.astype(np.float32))
    resized = Image.fromarray(buf).resize((w_out, h_out), Image.Resampling.NEAREST)
    return np.asarray(resized, dtype=np.float32)[None, :, :].copy()


def sample_element(rng: np.random.Generator) -> EllipseItem:
    """Generate one sample from ``rng``."""
    height = int(rng.integers(MIN_IMG_LEN, MAX_IMG_LEN))
    width = int(rng.integers(MIN_IMG_LEN, MAX_IMG_LEN))

    img = rng.integers(0, 256, size=(height, width, _CHANNELS), dtype=np.uint8)
    layer_vals = np.sort(rng.integers(0, 256, size=NUM_LAYERS, dtype=np.uint8))

    gt_mask = np.zeros((height, width), dtype=bool)
    for layer_idx, layer_val in enumerate(layer_vals):
        hlen_frac = rng.random() / 2.0 + 0.1
        mask = draw_ellipse(img, hlen_frac, hlen_frac, int(layer_val), rng)
        if layer_idx == GT_LAYER_IDX:
            gt_mask = mask

    masked = img[gt_mask]
    masked_mean = float(masked.mean()) if masked.size else 0.0
    img_mean = float(img.mean(dtype=np.float64))

    return EllipseItem(
        image=resize_rgb_to_chw(img, FIXED_H, FIXED_W),
        mask=resize_mask_to_chw(gt_mask, FIXED_H, FIXED_W),
        binary_target=1 if masked_mean < 128.0 else 0,
        regression_target=float(np.float32(masked_mean - img_mean)),
        original_height=height,
        original_width=width,
    )


def _clone(item: EllipseItem) -> EllipseItem:
    return dataclasses.replace(item, image=item.image.copy(), mask=item.mask.copy())


class SyntheticEllipseDataset:
    """A lazily generated, reproducible synthetic dataset.

    Index ``i`` is generated from the seed ``seed + i``, so an item does not
    depend on access order. Generated items are cached.
    """

    def __init__(self, size: int, seed: int = 0) -> None:
        if size < 0:
            raise ValueError("size must not be negative")
        self.size = size
        self.base_seed = seed
        self._cache: list[EllipseItem | None] = [None] * size
        self._lock = threading.Lock()

    @classmethod
    def train(cls, size: int) -> SyntheticEllipseDataset:
        return cls(size, 0)

    @classmethod
    def validation(cls, size: int) -> SyntheticEllipseDataset:
        return cls(size, 1_000_000)

    @classmethod
    def test(cls, size: int) -> SyntheticEllipseDataset:
        return cls(size, 2_000_000)

    def get(self, index: int) -> EllipseItem | None:
        """Return the item at ``index``, or None when it is out of range."""
        if index < 0 or index >= self.size:
            return None

        with self._lock:
            cached = self._cache[index]
        if cached is not None:
            return _clone(cached)

        seed = (self.base_seed + index) % _SEED_MODULUS
        item = sample_element(np.random.default_rng(seed))

        with self._lock:
            self._cache[index] = item
        return _clone(item)

    def __len__(self) -> int:
        return self.size

    def __getitem__(self, index: int) -> EllipseItem:
        if index < 0:
            index += self.size
        item = self.get(index)
        if item is None:
            raise IndexError("dataset index out of range")
        return item