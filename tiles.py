"""
Partitioned accumulation.

Splits a label image into boxes, accumulates each box into its own
Accumulator using global coordinates, and reduces the partial accumulators
with one sequential merge. Moment sums add per label, so the result is
identical to a single accumulate_image pass.
"""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, Optional, Sequence, Tuple

import numpy as np

from accumulator import (Accumulator, ProgressFn, as_stack, check_safe_extent,
                         validate_label_image)

logger = logging.getLogger(__name__)

Box3D = Tuple[Tuple[int, int], Tuple[int, int], Tuple[int, int]]


def split_axis(n: int, p: int, coord: int) -> Tuple[int, int]:
    base = n // p
    rem = n % p
    start = coord * base + min(coord, rem)
    length = base + (1 if coord < rem else 0)
    return start, start + length


def tile_bounds(shape: Sequence[int], tile_shape: Sequence[int]) -> Iterator[Box3D]:
    """Yield ((z0, z1), (y0, y1), (x0, x1)) boxes covering a [depth, height, width] shape.

    A 2-entry tile_shape is read as (height, width) with one plane per tile.
    """
    if len(tile_shape) == 2:
        tile_shape = (1,) + tuple(tile_shape)
    if len(shape) == 2:
        shape = (1,) + tuple(shape)
    if any(int(t) < 1 for t in tile_shape):
        raise ValueError(f"tile_shape entries must be >= 1, got {tuple(tile_shape)}")
    nk, nj, ni = (int(s) for s in shape)
    lk, lj, li = (int(t) for t in tile_shape)
    counts = [-(-n // t) for n, t in ((nk, lk), (nj, lj), (ni, li))]
    for ck in range(counts[0]):
        zr = split_axis(nk, counts[0], ck)
        for cj in range(counts[1]):
            yr = split_axis(nj, counts[1], cj)
            for ci in range(counts[2]):
                yield zr, yr, split_axis(ni, counts[2], ci)


def merge_accumulators(parts: Iterable[Accumulator]) -> Accumulator:
    total = Accumulator()
    for part in parts:
        total.merge(part)
    return total


def accumulate_tiled(image: np.ndarray,
                     tile_shape: Sequence[int],
                     z_origin: int = 1,
                     progress: Optional[ProgressFn] = None) -> Accumulator:
    image = validate_label_image(image)
    if z_origin < 0:
        raise ValueError("z_origin must be >= 0")
    check_safe_extent(image.shape, z_origin)
    stack = as_stack(image)

    boxes = list(tile_bounds(stack.shape, tile_shape))
    parts = []
    for n_done, ((z0, z1), (y0, y1), (x0, x1)) in enumerate(boxes, start=1):
        part = Accumulator()
        for k in range(z0, z1):
            part.update_plane(stack[k, y0:y1, x0:x1], z=k + z_origin, x0=x0, y0=y0)
        parts.append(part)
        if progress is not None:
            progress(n_done, len(boxes))
    logger.debug("reducing %d tile accumulators", len(parts))
    return merge_accumulators(parts)
