"""Per-item transforms, transformed dataset views and mini-batch assembly."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

import numpy as np

from ellipseunet.dataset import FIXED_H, FIXED_W, EllipseItem

_U32 = 2**32
_HASH_PIXELS = 8


class ItemDataset(Protocol):
    """Anything that yields :class:`EllipseItem` values by index."""

    def get(self, index: int) -> EllipseItem | None: ...

    def __len__(self) -> int: ...


def flip_chw(data: np.ndarray, channels: int, height: int, width: int) -> np.ndarray:
    """Mirror a CHW buffer along its width; the result keeps the input's shape."""
    arr = np.asarray(data)
    if arr.size != channels * height * width:
        raise ValueError(
            f"buffer of {arr.size} values does not match {channels}x{height}x{width}"
        )
    flipped = arr.reshape(channels, height, width)[:, :, ::-1]
    return np.ascontiguousarray(flipped).reshape(arr.shape)


def _clone(item: EllipseItem) -> EllipseItem:
    return dataclasses.replace(
        item, image=np.array(item.image, copy=True), mask=np.array(item.mask, copy=True)
    )


class NormalizeTransform:
    """Scale image values from [0, 255] to [0, 1]; the mask is left unchanged."""

    def __call__(self, item: EllipseItem) -> EllipseItem:
        image = np.asarray(item.image, dtype=np.float32) / np.float32(255.0)
        return dataclasses.replace(item, image=image, mask=np.array(item.mask, copy=True))


def _coin_flip(image: np.ndarray) -> int:
    """Deterministic hash of the first few pixel values (unsigned 32-bit arithmetic)."""
    head = np.asarray(image, dtype=np.float64).ravel()[:_HASH_PIXELS]
    head = np.nan_to_num(head, nan=0.0, posinf=float(_U32 - 1), neginf=0.0)
    as_u32 = np.clip(np.trunc(head), 0, _U32 - 1).astype(np.uint64)
    return sum(int(v) * weight for weight, v in enumerate(as_u32, start=1)) % _U32


class FlipHorizontalTransform:
    """Mirror image and mask horizontally for about half of the items.

    The decision is derived from the item's first pixel values, so the same
    item is always treated the same way.
    """

    def __call__(self, item: EllipseItem) -> EllipseItem:
        if _coin_flip(item.image) % 2 == 0:
            return _clone(item)
        return dataclasses.replace(
            item,
            image=flip_chw(item.image, 3, FIXED_H, FIXED_W),
            mask=flip_chw(item.mask, 1, FIXED_H, FIXED_W),
        )


class MappedDataset:
    """A view of a dataset with a transform applied to every item it yields."""

    def __init__(
        self, dataset: ItemDataset, mapper: Callable[[EllipseItem], EllipseItem]
    ) -> None:
        self.dataset = dataset
        self.mapper = mapper

    def get(self, index: int) -> EllipseItem | None:
        """Return the transformed item at ``index``, or None when out of range."""
        item = self.dataset.get(index)
        return None if item is None else self.mapper(item)

    def __len__(self) -> int:
        return len(self.dataset)

    def __getitem__(self, index: int) -> EllipseItem:
        if index < 0:
            index += len(self)
        item = self.get(index)
        if item is None:
            raise IndexError("dataset index out of range")
        return item


def with_transforms(dataset: ItemDataset) -> MappedDataset:
    """Wrap ``dataset`` with normalisation followed by the horizontal flip."""
    normalized = MappedDataset(dataset, NormalizeTransform())
    return MappedDataset(normalized, FlipHorizontalTransform())


@dataclass
class SegmentationBatch:
    """A mini-batch of samples.

    ``images`` has shape ``(B, 3, FIXED_H, FIXED_W)``, ``masks`` has shape
    ``(B, 1, FIXED_H, FIXED_W)``, ``binary_targets`` and
    ``regression_targets`` have shape ``(B,)``.
    """

    images: np.ndarray
    masks: np.ndarray
    binary_targets: np.ndarray
    regression_targets: np.ndarray

    def __len__(self) -> int:
        return int(self.images.shape[0])


def _stack(arrays: list[np.ndarray], shape: tuple[int, ...], dtype) -> np.ndarray:
    out = np.empty((len(arrays), *shape), dtype=dtype)
    for slot, arr in zip(out, arrays):
        slot[...] = np.asarray(arr, dtype=dtype).reshape(shape)
    return out


class SegmentationBatcher:
    """Collate a list of items into a :class:`SegmentationBatch`."""

    def batch(self, items: Iterable[EllipseItem]) -> SegmentationBatch:
        items = list(items)
        return SegmentationBatch(
            images=_stack([it.image for it in items], (3, FIXED_H, FIXED_W), np.float32),
            masks=_stack([it.mask for it in items], (1, FIXED_H, FIXED_W), np.float32),
            binary_targets=np.array([it.binary_target for it in items], dtype=np.int64),
            regression_targets=np.array(
                [it.regression_target for it in items], dtype=np.float32
            ),
        )