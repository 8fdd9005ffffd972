from __future__ import annotations

import dataclasses
import os
import sys

import numpy as np
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from accumulator import (Accumulator, LabelStats, NumericOverflowError, accumulate_image,
                         check_safe_extent, max_coordinate)


def _brute_force(image: np.ndarray, z_origin: int = 1) -> dict[int, LabelStats]:
    stack = image[np.newaxis] if image.ndim == 2 else image
    out: dict[int, LabelStats] = {}
    for k in range(stack.shape[0]):
        for y in range(stack.shape[1]):
            for x in range(stack.shape[2]):
                out.setdefault(int(stack[k, y, x]), LabelStats()).update(x, y, k + z_origin)
    return out


def test_update_creates_record_lazily():
    acc = Accumulator()
    assert len(acc) == 0
    acc.update(-3, 2, 5, 1)
    acc.update(-3, 4, 1, 1)
    assert -3 in acc and len(acc) == 1
    rec = acc.finalize()[-3]
    assert rec.n == 2
    assert (rec.sum_x, rec.sum_y, rec.sum_z) == (6, 6, 2)
    assert (rec.sum_xx, rec.sum_yy, rec.sum_zz) == (20, 26, 2)
    assert (rec.sum_xy, rec.sum_xz, rec.sum_yz) == (14, 6, 6)


def test_finalize_is_read_only_and_closes_pass():
    acc = Accumulator()
    acc.update(1, 0, 0, 0)
    stats = acc.finalize()
    with pytest.raises(TypeError):
        stats[2] = LabelStats()
    with pytest.raises(RuntimeError):
        acc.update(1, 1, 1, 1)
    with pytest.raises(RuntimeError):
        acc.update_plane(np.zeros((2, 2), dtype=np.int32), z=1)
    assert acc.finalized


def test_finalized_records_are_frozen():
    acc = Accumulator()
    acc.update(1, 0, 0, 0)
    acc.update(1, 2, 1, 0)
    stats = acc.finalize()
    with pytest.raises(dataclasses.FrozenInstanceError):
        stats[1].n = 0
    assert acc.finalize() is stats
    assert acc.finalize()[1].n == 2
    assert not hasattr(stats[1], "merge")


def test_two_labels_do_not_mix():
    acc = Accumulator()
    for x in range(4):
        acc.update(1, x, 0, 0)
    for x, y in ((10, 10), (11, 11)):
        acc.update(2, x, y, 0)
    stats = acc.finalize()
    assert stats[1].n == 4 and stats[1].sum_x == 6 and stats[1].sum_y == 0
    assert stats[2].n == 2 and stats[2].sum_x == 21 and stats[2].sum_xy == 100 + 121


def test_image_matches_per_sample_updates():
    rng = np.random.default_rng(7)
    image = rng.integers(-2, 4, size=(3, 5, 6)).astype(np.int16)
    acc = accumulate_image(image, z_origin=1)
    stats = acc.finalize()
    expected = _brute_force(image, z_origin=1)
    assert set(stats) == set(expected)
    for label, rec in expected.items():
        assert stats[label] == rec.freeze()


def test_distinct_label_count_preserved():
    rng = np.random.default_rng(3)
    image = rng.integers(0, 50, size=(40, 30)).astype(np.int32)
    stats = accumulate_image(image).finalize()
    assert len(stats) == np.unique(image).size
    assert sum(r.n for r in stats.values()) == image.size


def test_order_independent():
    rng = np.random.default_rng(11)
    pts = [(int(rng.integers(0, 3)), int(rng.integers(0, 20)), int(rng.integers(0, 20)), int(rng.integers(1, 4)))
           for _ in range(200)]
    a = Accumulator()
    for p in pts:
        a.update(*p)
    b = Accumulator()
    for idx in rng.permutation(len(pts)):
        b.update(*pts[idx])
    assert dict(a.finalize()) == dict(b.finalize())


def test_merge_equals_single_pass():
    rng = np.random.default_rng(5)
    image = rng.integers(0, 5, size=(4, 9, 7)).astype(np.uint8)
    whole = accumulate_image(image).finalize()

    first = accumulate_image(image[:2], z_origin=1)
    second = Accumulator()
    for k in range(2, 4):
        second.update_plane(image[k], z=k + 1)
    first.merge(second)
    assert dict(first.finalize()) == dict(whole)


def test_bool_image_accepted_float_rejected():
    stats = accumulate_image(np.eye(3, dtype=bool)).finalize()
    assert stats[1].n == 3 and stats[0].n == 6
    with pytest.raises(TypeError):
        accumulate_image(np.zeros((3, 3), dtype=np.float32))
    with pytest.raises(ValueError):
        accumulate_image(np.zeros((3,), dtype=np.int32))


def test_progress_called_per_plane():
    calls = []
    accumulate_image(np.zeros((3, 4, 4), dtype=np.uint8), progress=lambda d, t: calls.append((d, t)))
    assert calls == [(1, 3), (2, 3), (3, 3)]


def test_overflow_guard():
    assert max_coordinate((4, 10, 7), z_origin=1) == 9
    assert max_coordinate((10, 7), z_origin=1) == 9
    check_safe_extent((512, 2048, 2048))
    with pytest.raises(NumericOverflowError):
        check_safe_extent((100_000, 100_000, 100_000))


def test_stats_field_sums_are_python_ints():
    stats = accumulate_image(np.full((2, 2), 9, dtype=np.uint16)).finalize()
    rec = stats[9]
    assert all(type(getattr(rec, name)) is int for name in ("n", "sum_x", "sum_xx", "sum_yz"))
    np.testing.assert_array_equal(rec.as_array(), [4, 2, 2, 4, 2, 2, 4, 1, 2, 2])
