import numpy as np
import pytest

from ellipseunet.dataset import (
    FIXED_H,
    FIXED_W,
    GT_LAYER_IDX,
    MAX_IMG_LEN,
    MIN_IMG_LEN,
    NUM_LAYERS,
    EllipseItem,
    SyntheticEllipseDataset,
    draw_ellipse,
    resize_mask_to_chw,
    resize_rgb_to_chw,
    sample_element,
)


def test_documented_constants_shape_generated_items():
    assert (MIN_IMG_LEN, MAX_IMG_LEN) == (80, 120)
    assert (NUM_LAYERS, GT_LAYER_IDX) == (8, 5)
    item = SyntheticEllipseDataset(1, 0).get(0)
    assert item.image.shape == (3, 96, 96)
    assert item.mask.shape == (1, 96, 96)
    assert (FIXED_H, FIXED_W) == item.image.shape[1:]
    assert 80 <= item.original_height < 120
    assert 80 <= item.original_width < 120


def test_draw_ellipse_full_size_is_centred():
    img = np.zeros((10, 10, 3), dtype=np.uint8)
    mask = draw_ellipse(img, 1.0, 1.0, 200, np.random.default_rng(0))
    assert mask.shape == (10, 10)
    assert mask[5, 5]
    assert mask[0, 5] and mask[5, 0]
    assert not mask[0, 0]


def test_draw_ellipse_only_touches_masked_pixels():
    rng = np.random.default_rng(3)
    img = rng.integers(0, 100, size=(40, 50, 3), dtype=np.uint8)
    original = img.copy()
    mask = draw_ellipse(img, 0.4, 0.3, 250, np.random.default_rng(7))
    assert mask.any()
    assert np.all(img[mask] == 250)
    assert np.array_equal(img[~mask], original[~mask])


def test_draw_ellipse_is_deterministic_for_seed():
    a = np.zeros((30, 30, 3), dtype=np.uint8)
    b = np.zeros((30, 30, 3), dtype=np.uint8)
    ma = draw_ellipse(a, 0.5, 0.5, 9, np.random.default_rng(11))
    mb = draw_ellipse(b, 0.5, 0.5, 9, np.random.default_rng(11))
    assert np.array_equal(ma, mb)
    assert np.array_equal(a, b)


def test_draw_ellipse_rejects_bad_shape():
    with pytest.raises(ValueError):
        draw_ellipse(np.zeros(5, dtype=np.uint8), 0.5, 0.5, 1, np.random.default_rng(0))


def test_resize_rgb_constant_image_stays_constant():
    src = np.full((40, 30, 3), 77, dtype=np.uint8)
    out = resize_rgb_to_chw(src, FIXED_H, FIXED_W)
    assert out.shape == (3, FIXED_H, FIXED_W)
    assert out.dtype == np.float32
    assert np.all(out == 77.0)


def test_resize_rgb_keeps_channel_order():
    src = np.zeros((20, 20, 3), dtype=np.uint8)
    src[..., 0] = 10
    src[..., 1] = 20
    src[..., 2] = 30
    out = resize_rgb_to_chw(src, 8, 12)
    assert out.shape == (3, 8, 12)
    assert np.all(out[0] == 10) and np.all(out[1] == 20) and np.all(out[2] == 30)


def test_resize_rgb_rejects_wrong_channels():
    with pytest.raises(ValueError):
        resize_rgb_to_chw(np.zeros((4, 4, 2), dtype=np.uint8), 8, 8)


def test_resize_mask_is_binary():
    rng = np.random.default_rng(5)
    mask = rng.random((83, 101)) > 0.5
    out = resize_mask_to_chw(mask, FIXED_H, FIXED_W)
    assert out.shape == (1, FIXED_H, FIXED_W)
    assert set(np.unique(out)).issubset({0.0, 1.0})


def test_resize_mask_all_true_and_all_false():
    ones = resize_mask_to_chw(np.ones((50, 60), dtype=bool), 10, 10)
    zeros = resize_mask_to_chw(np.zeros((50, 60), dtype=bool), 10, 10)
    assert np.all(ones == 1.0)
    assert np.all(zeros == 0.0)


def test_resize_mask_rejects_wrong_rank():
    with pytest.raises(ValueError):
        resize_mask_to_chw(np.zeros((2, 3, 4), dtype=bool), 8, 8)


def test_sample_element_shapes_and_ranges():
    item = sample_element(np.random.default_rng(123))
    assert isinstance(item, EllipseItem)
    assert item.image.shape == (3, FIXED_H, FIXED_W)
    assert item.mask.shape == (1, FIXED_H, FIXED_W)
    assert item.image.min() >= 0.0 and item.image.max() <= 255.0
    assert set(np.unique(item.mask)).issubset({0.0, 1.0})
    assert item.binary_target in (0, 1)
    assert MIN_IMG_LEN <= item.original_height < MAX_IMG_LEN
    assert MIN_IMG_LEN <= item.original_width < MAX_IMG_LEN
    assert -255.0 <= item.regression_target <= 255.0


def test_sample_element_deterministic():
    a = sample_element(np.random.default_rng(9))
    b = sample_element(np.random.default_rng(9))
    assert np.array_equal(a.image, b.image)
    assert np.array_equal(a.mask, b.mask)
    assert a.regression_target == b.regression_target
    assert a.binary_target == b.binary_target


def test_dataset_length_and_bounds():
    ds = SyntheticEllipseDataset(3, 42)
    assert len(ds) == 3
    assert ds.get(3) is None
    assert ds.get(-1) is None
    with pytest.raises(IndexError):
        ds[3]


def test_dataset_negative_index_wraps():
    ds = SyntheticEllipseDataset(2, 42)
    assert np.array_equal(ds[-1].image, ds[1].image)


def test_dataset_same_index_same_item_across_instances():
    first = SyntheticEllipseDataset(2, 42).get(1)
    second = SyntheticEllipseDataset(2, 42).get(1)
    assert np.array_equal(first.image, second.image)
    assert np.array_equal(first.mask, second.mask)


def test_dataset_index_is_seed_offset():
    shifted = SyntheticEllipseDataset(1, 43).get(0)
    original = SyntheticEllipseDataset(2, 42).get(1)
    assert np.array_equal(shifted.image, original.image)


def test_cache_returns_independent_copies():
    ds = SyntheticEllipseDataset(1, 7)
    item = ds.get(0)
    snapshot = item.image.copy()
    item.image[:] = -1.0
    again = ds.get(0)
    assert np.array_equal(again.image, snapshot)


def test_splits_use_distinct_seeds():
    train = SyntheticEllipseDataset.train(1)
    valid = SyntheticEllipseDataset.validation(1)
    test = SyntheticEllipseDataset.test(1)
    assert (train.base_seed, valid.base_seed, test.base_seed) == (0, 1_000_000, 2_000_000)
    assert not np.array_equal(train.get(0).image, valid.get(0).image)
    assert len(test) == 1


def test_negative_size_rejected():
    with pytest.raises(ValueError):
        SyntheticEllipseDataset(-1)