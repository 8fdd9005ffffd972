from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple, Union

import numpy as np

from accumulator import FrozenLabelStats, LabelStats

logger = logging.getLogger(__name__)

Moments = Union[LabelStats, FrozenLabelStats]

STATUS_OK = "ok"
STATUS_DEGENERATE = "degenerate"
STATUS_FAILED = "failed"


class DivisionUndefinedError(ZeroDivisionError):
    """Statistics with N == 0 reached the extractor (internal invariant broken)."""


class DegenerateOrientationError(ArithmeticError):
    """Covariance is exactly zero, so no principal axis exists."""


@dataclass(frozen=True)
class LabelOrientation:
    label: int
    n: int
    orientation: np.ndarray
    centroid: Optional[Tuple[float, float]]
    status: str = STATUS_OK
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


def _expect(total: int, n: int, integer_means: bool):
    return total // n if integer_means else total / n


def build_covariance(stats: Moments, dimension: int, integer_means: bool = False) -> np.ndarray:
    """Covariance of a label's coordinates from its raw moment sums.

    Uses Cov(X, Y) = E[XY] - E[X]E[Y]. With exact integer sums this is
    evaluated as (N*Sxy - Sx*Sy) / N**2, which avoids cancellation.
    ``integer_means=True`` truncates every expectation to an integer first,
    matching the legacy ImageJ output.
    """
    if dimension not in (2, 3):
        raise ValueError(f"dimension must be 2 or 3, got {dimension}")
    n = stats.n
    if n <= 0:
        raise DivisionUndefinedError(f"cannot build covariance from {n} samples")

    if integer_means:
        xb = _expect(stats.sum_x, n, True)
        yb = _expect(stats.sum_y, n, True)
        zb = _expect(stats.sum_z, n, True)

        def cov(sab, ma, mb):
            return float(_expect(sab, n, True) - ma * mb)
    else:
        xb, yb, zb = stats.sum_x, stats.sum_y, stats.sum_z
        nn = n * n

        def cov(sab, sa, sb):
            return (n * sab - sa * sb) / nn

    cxx = cov(stats.sum_xx, xb, xb)
    cyy = cov(stats.sum_yy, yb, yb)
    cxy = cov(stats.sum_xy, xb, yb)
    if dimension == 2:
        return np.array([[cxx, cxy],
                         [cxy, cyy]], dtype=np.float64)

    czz = cov(stats.sum_zz, zb, zb)
    cxz = cov(stats.sum_xz, xb, zb)
    cyz = cov(stats.sum_yz, yb, zb)
    return np.array([[cxx, cxy, cxz],
                     [cxy, cyy, cyz],
                     [cxz, cyz, czz]], dtype=np.float64)


def normalize(vector: np.ndarray) -> np.ndarray:
    v = np.asarray(vector, dtype=np.float64)
    norm = float(np.sqrt(np.sum(v * v)))
    if norm == 0.0:
        raise DegenerateOrientationError("cannot normalize a zero vector")
    return v / norm


def get_orientation(matrix: np.ndarray) -> np.ndarray:
    """Unit eigenvector of the largest eigenvalue of a symmetric matrix.

    eigh returns eigenvalues in ascending order; among equal maxima the last
    emitted eigenvector is taken.
    """
    C = np.asarray(matrix, dtype=np.float64)
    if C.ndim != 2 or C.shape[0] != C.shape[1]:
        raise ValueError(f"covariance must be square, got shape {C.shape}")
    if not np.any(C):
        raise DegenerateOrientationError("covariance matrix is zero (single-point label)")
    vals, vecs = np.linalg.eigh(C)
    last = vals.size - 1 - int(np.argmax(vals[::-1]))
    return normalize(vecs[:, last])


def get_centroid(stats: Moments, integer_means: bool = False) -> Tuple[float, float]:
    if stats.n <= 0:
        raise DivisionUndefinedError(f"cannot compute centroid from {stats.n} samples")
    return (float(_expect(stats.sum_x, stats.n, integer_means)),
            float(_expect(stats.sum_y, stats.n, integer_means)))


def measure_orientations(stats: Mapping[int, Moments],
                         dimension: int,
                         integer_means: bool = False) -> List[LabelOrientation]:
    """Extract one orientation per label; a failing label never stops the others.

    Degenerate labels fall back to the zero vector. Labels whose statistics are
    unusable get an all-NaN vector and status ``failed``.
    """
    if dimension not in (2, 3):
        raise ValueError(f"dimension must be 2 or 3, got {dimension}")
    out: List[LabelOrientation] = []
    for label in sorted(stats):
        rec = stats[label]
        try:
            centroid = get_centroid(rec, integer_means)
            C = build_covariance(rec, dimension, integer_means)
            vec = get_orientation(C)
        except DegenerateOrientationError as exc:
            logger.info("label %d: degenerate orientation (%s)", label, exc)
            out.append(LabelOrientation(label, rec.n, np.zeros(dimension), centroid,
                                        STATUS_DEGENERATE, str(exc)))
            continue
        except (DivisionUndefinedError, np.linalg.LinAlgError) as exc:
            logger.error("label %d: orientation failed: %s", label, exc)
            out.append(LabelOrientation(label, rec.n, np.full(dimension, np.nan), None,
                                        STATUS_FAILED, f"{type(exc).__name__}: {exc}"))
            continue
        out.append(LabelOrientation(label, rec.n, vec, centroid))
    return out
