"""
accumulator.py

Single-pass accumulation of per-label coordinate moments.

- Labels are arbitrary integers (negative and zero included); storage is sparse.
- Each record holds N and the first and second raw moment sums of (x, y, z).
- Images are shaped [height, width] or [depth, height, width]; x is the column
  index, y the row index and z the plane index offset by ``z_origin``.
- Per-plane sums come from a Numba kernel in int64 and are folded into
  Python ints, so the finalized sums are exact.

Primary API
-----------

    from accumulator import accumulate_image

    acc = accumulate_image(labels, z_origin=1)
    stats = acc.finalize()          # read-only {label: FrozenLabelStats}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from types import MappingProxyType
from typing import Callable, Dict, Iterator, Mapping, Optional, Tuple

import numpy as np
from numba import njit

logger = logging.getLogger(__name__)

INT64_MAX = int(np.iinfo(np.int64).max)

# Column order of the kernel output and of LabelStats.as_array()
MOMENT_FIELDS = ("n", "sum_x", "sum_y", "sum_z",
                 "sum_xx", "sum_yy", "sum_zz",
                 "sum_xy", "sum_xz", "sum_yz")

ProgressFn = Callable[[int, int], None]


class NumericOverflowError(OverflowError):
    """Image extent too large for exact int64 moment accumulation."""


@dataclass
class LabelStats:
    n: int = 0
    sum_x: int = 0
    sum_y: int = 0
    sum_z: int = 0
    sum_xx: int = 0
    sum_yy: int = 0
    sum_zz: int = 0
    sum_xy: int = 0
    sum_xz: int = 0
    sum_yz: int = 0

    def update(self, x: int, y: int, z: int) -> None:
        self.n += 1
        self.sum_x += x
        self.sum_y += y
        self.sum_z += z

        self.sum_xx += x * x
        self.sum_yy += y * y
        self.sum_zz += z * z

        self.sum_xy += x * y
        self.sum_xz += x * z
        self.sum_yz += y * z

    def merge(self, other: "LabelStats") -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    def add_row(self, row: np.ndarray) -> None:
        """Fold one kernel output row (ordered as MOMENT_FIELDS)."""
        self.n += int(row[0])
        self.sum_x += int(row[1])
        self.sum_y += int(row[2])
        self.sum_z += int(row[3])
        self.sum_xx += int(row[4])
        self.sum_yy += int(row[5])
        self.sum_zz += int(row[6])
        self.sum_xy += int(row[7])
        self.sum_xz += int(row[8])
        self.sum_yz += int(row[9])

    def as_array(self) -> np.ndarray:
        return np.array([getattr(self, name) for name in MOMENT_FIELDS], dtype=np.int64)

    def freeze(self) -> "FrozenLabelStats":
        return FrozenLabelStats(**{name: getattr(self, name) for name in MOMENT_FIELDS})


@dataclass(frozen=True)
class FrozenLabelStats:
    """Read-only snapshot of a LabelStats record, handed out once the pass is finalized."""

    n: int = 0
    sum_x: int = 0
    sum_y: int = 0
    sum_z: int = 0
    sum_xx: int = 0
    sum_yy: int = 0
    sum_zz: int = 0
    sum_xy: int = 0
    sum_xz: int = 0
    sum_yz: int = 0

    as_array = LabelStats.as_array


@njit(cache=True)
def _plane_moments(idx: np.ndarray, K: int, z: int, x0: int, y0: int) -> np.ndarray:
    """Accumulate moment sums for one plane of compact label indices.

    idx is (height, width) int64 with values in [0, K). Returns (K, 10) int64
    ordered as MOMENT_FIELDS.
    """
    nj, ni = idx.shape
    out = np.zeros((K, 10), dtype=np.int64)
    zz = np.int64(z)
    for j in range(nj):
        y = np.int64(y0 + j)
        for i in range(ni):
            x = np.int64(x0 + i)
            lbl = idx[j, i]
            out[lbl, 0] += 1
            out[lbl, 1] += x
            out[lbl, 2] += y
            out[lbl, 3] += zz
            out[lbl, 4] += x * x
            out[lbl, 5] += y * y
            out[lbl, 6] += zz * zz
            out[lbl, 7] += x * y
            out[lbl, 8] += x * zz
            out[lbl, 9] += y * zz
    return out


class Accumulator:
    """Sparse per-label moment accumulator with an accumulate-then-finalize life cycle."""

    __slots__ = ("_stats", "_finalized", "_snapshot")

    def __init__(self):
        self._stats: Dict[int, LabelStats] = {}
        self._finalized = False
        self._snapshot: Optional[Mapping[int, FrozenLabelStats]] = None

    def __len__(self) -> int:
        return len(self._stats)

    def __contains__(self, label) -> bool:
        return label in self._stats

    def labels(self) -> Iterator[int]:
        return iter(self._stats)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def _check_open(self):
        if self._finalized:
            raise RuntimeError("accumulator already finalized; start a new pass")

    def _record(self, label: int) -> LabelStats:
        rec = self._stats.get(label)
        if rec is None:
            rec = LabelStats()
            self._stats[label] = rec
        return rec

    def update(self, label: int, x: int, y: int, z: int) -> None:
        self._check_open()
        self._record(int(label)).update(int(x), int(y), int(z))

    def update_plane(self, plane: np.ndarray, z: int, x0: int = 0, y0: int = 0) -> None:
        """Fold every pixel of one label plane (rows = y, columns = x) at depth z."""
        self._check_open()
        plane = np.asarray(plane)
        if plane.ndim != 2:
            raise ValueError(f"plane must be 2-D, got shape {plane.shape}")
        if plane.size == 0:
            return
        uniq, inv = np.unique(plane, return_inverse=True)
        idx = inv.reshape(plane.shape).astype(np.int64, copy=False)
        sums = _plane_moments(idx, int(uniq.size), int(z), int(x0), int(y0))
        for k in range(uniq.size):
            self._record(int(uniq[k])).add_row(sums[k])

    def merge(self, other: "Accumulator") -> None:
        """Add another (partial) accumulator's records into this one."""
        self._check_open()
        for label, rec in other._stats.items():
            self._record(label).merge(rec)

    def finalize(self) -> Mapping[int, FrozenLabelStats]:
        """Close the pass and return a read-only {label: FrozenLabelStats} view."""
        if self._snapshot is None:
            self._finalized = True
            self._snapshot = MappingProxyType({k: v.freeze() for k, v in self._stats.items()})
        return self._snapshot


def validate_label_image(image: np.ndarray) -> np.ndarray:
    image = np.asarray(image)
    if image.dtype == np.bool_:
        image = image.astype(np.uint8)
    if not np.issubdtype(image.dtype, np.integer):
        raise TypeError(f"label image must have an integer dtype, got {image.dtype}")
    if image.ndim not in (2, 3):
        raise ValueError(f"label image must be 2-D or 3-D, got shape {image.shape}")
    return image


def as_stack(image: np.ndarray) -> np.ndarray:
    """View a [height, width] image as a one-plane [1, height, width] stack."""
    return image[np.newaxis, :, :] if image.ndim == 2 else image


def max_coordinate(shape: Tuple[int, ...], z_origin: int = 1) -> int:
    """Largest coordinate value any sample of an image with this shape can take."""
    if len(shape) == 2:
        shape = (1,) + tuple(shape)
    depth, height, width = shape
    return max(width - 1, height - 1, depth - 1 + z_origin, 0)


def check_safe_extent(shape: Tuple[int, ...], z_origin: int = 1) -> None:
    """Raise NumericOverflowError if a second-moment sum could exceed int64.

    Worst case for any sum is voxels * max_coordinate**2 (every voxel in one
    label at the far corner).
    """
    voxels = int(np.prod(shape, dtype=object))
    m = max_coordinate(shape, z_origin)
    if voxels * m * m > INT64_MAX:
        raise NumericOverflowError(
            f"image shape {tuple(shape)} exceeds the exact int64 range "
            f"({voxels} voxels, max coordinate {m})"
        )


def accumulate_image(image: np.ndarray,
                     z_origin: int = 1,
                     progress: Optional[ProgressFn] = None) -> Accumulator:
    """Visit every voxel of a label image once and return the filled accumulator."""
    image = validate_label_image(image)
    if z_origin < 0:
        raise ValueError("z_origin must be >= 0")
    check_safe_extent(image.shape, z_origin)

    stack = as_stack(image)
    depth = stack.shape[0]
    acc = Accumulator()
    for k in range(depth):
        acc.update_plane(stack[k], z=k + z_origin)
        if progress is not None:
            progress(k + 1, depth)
    logger.debug("accumulated %d planes, %d labels", depth, len(acc))
    return acc
