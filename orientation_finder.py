from __future__ import annotations

import argparse
import json
import logging
import os
import subprocess
import time
from dataclasses import asdict, dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import yaml

from accumulator import MOMENT_FIELDS, FrozenLabelStats, ProgressFn, accumulate_image, validate_label_image
from orientation import STATUS_DEGENERATE, STATUS_FAILED, STATUS_OK, LabelOrientation, measure_orientations
from tiles import accumulate_tiled

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrientationConfig:
    """Immutable context for one measurement pass.

    - z_origin: coordinate of the first plane (1 in the ImageJ plugin); cancels in the covariance.
    - integer_means: truncate expectations to integers like the legacy tool.
    - background: label value dropped from the results (None keeps every label).
    - tile_shape: accumulate per tile and merge when set.
    """

    z_origin: int = 1
    integer_means: bool = False
    background: Optional[int] = None
    tile_shape: Optional[Tuple[int, ...]] = None


@dataclass
class OrientationReport:
    dimension: int
    shape: Tuple[int, ...]
    results: List[LabelOrientation]
    stats: Mapping[int, FrozenLabelStats]
    times: Dict[str, float] = field(default_factory=dict)

    @property
    def degenerate(self) -> List[LabelOrientation]:
        return [r for r in self.results if r.status == STATUS_DEGENERATE]

    @property
    def failed(self) -> List[LabelOrientation]:
        return [r for r in self.results if r.status == STATUS_FAILED]

    def by_label(self) -> Dict[int, LabelOrientation]:
        return {r.label: r for r in self.results}


def setup_logging(verbose: bool = False):
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


def parse_config(path: str) -> dict:
    with open(path, "r") as f:
        cfg = yaml.safe_load(f)
    return cfg or {}


def config_from_dict(cfg: dict) -> OrientationConfig:
    tile_shape = cfg.get("tile_shape")
    background = cfg.get("background")
    z_origin = cfg.get("z_origin")
    return OrientationConfig(
        z_origin=1 if z_origin is None else int(z_origin),
        integer_means=bool(cfg.get("integer_means") or False),
        background=None if background is None else int(background),
        tile_shape=None if tile_shape is None else tuple(int(t) for t in tile_shape),
    )


def image_dimension(image: np.ndarray) -> int:
    """2 for a single plane, 3 for a multi-plane stack."""
    if image.ndim == 2 or image.shape[0] == 1:
        return 2
    return 3


def load_label_image(path: str, key: Optional[str] = None) -> np.ndarray:
    ext = os.path.splitext(path)[1].lower()
    if ext == ".npy":
        return np.load(path)
    if ext == ".npz":
        with np.load(path) as d:
            if key is None:
                if not d.files:
                    raise ValueError(f"{path} contains no arrays")
                key = d.files[0]
            if key not in d.files:
                raise KeyError(f"{path} has no array '{key}' (available: {', '.join(d.files)})")
            return d[key]
    raise ValueError(f"unsupported label image format '{ext}' (expected .npy or .npz)")


def measure_image(image: np.ndarray,
                  config: Optional[OrientationConfig] = None,
                  progress: Optional[ProgressFn] = None) -> OrientationReport:
    """Accumulate every voxel once, then extract one orientation per label."""
    config = config or OrientationConfig()
    image = validate_label_image(image)
    dimension = image_dimension(image)

    t0 = time.time()
    if config.tile_shape is not None:
        acc = accumulate_tiled(image, config.tile_shape, z_origin=config.z_origin, progress=progress)
    else:
        acc = accumulate_image(image, z_origin=config.z_origin, progress=progress)
    stats = acc.finalize()
    if config.background is not None and config.background in stats:
        stats = MappingProxyType({k: v for k, v in stats.items() if k != config.background})
    t_acc = time.time()

    results = measure_orientations(stats, dimension, integer_means=config.integer_means)
    t_done = time.time()

    report = OrientationReport(
        dimension=dimension,
        shape=tuple(int(s) for s in image.shape),
        results=results,
        stats=stats,
        times={"accumulate": t_acc - t0, "extract": t_done - t_acc},
    )
    if report.degenerate:
        logger.warning("%d of %d labels are degenerate: %s", len(report.degenerate), len(results),
                       ", ".join(str(r.label) for r in report.degenerate))
    if report.failed:
        logger.error("%d of %d labels failed: %s", len(report.failed), len(results),
                     ", ".join(str(r.label) for r in report.failed))
    return report


def _fmt(values) -> str:
    return ", ".join(f"{v:.5f}" for v in values)


def format_report(report: OrientationReport, title: str = "image") -> str:
    lines = [f"Results of orientation analysis of image {title}:"]
    for r in report.results:
        if r.status == STATUS_OK:
            lines.append(f"Class {r.label} has orientation : {_fmt(r.orientation)}")
        elif r.status == STATUS_FAILED:
            lines.append(f"Class {r.label} failed : {r.error}")
        else:
            lines.append(f"Class {r.label} is degenerate ({r.n} samples) : {_fmt(r.orientation)}")
    return "\n".join(lines)


def _git_rev():
    try:
        return subprocess.check_output(["git", "rev-parse", "HEAD"], stderr=subprocess.DEVNULL).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def save_report(report: OrientationReport,
                out_dir: str,
                stem: str,
                config: Optional[OrientationConfig] = None,
                meta_extra: Optional[dict] = None) -> str:
    """Write <stem>_orientation.npz plus a .meta.json sidecar. Returns the npz path."""
    os.makedirs(out_dir, exist_ok=True)
    config = config or OrientationConfig()
    K = len(report.results)
    d = report.dimension

    orientation = np.zeros((K, d), dtype=np.float64)
    centroid = np.full((K, 2), np.nan, dtype=np.float64)
    moments = np.zeros((K, len(MOMENT_FIELDS)), dtype=np.int64)
    for idx, r in enumerate(report.results):
        orientation[idx, :] = r.orientation
        if r.centroid is not None:
            centroid[idx, :] = r.centroid
        moments[idx, :] = report.stats[r.label].as_array()

    out = {
        "label_ids": np.array([r.label for r in report.results], dtype=np.int64),
        "cell_count": np.array([r.n for r in report.results], dtype=np.int64),
        "orientation": orientation,
        "centroid": centroid,
        "status": np.array([r.status for r in report.results]),
        "dimension": np.int32(d),
        "image_shape": np.array(report.shape, dtype=np.int64),
        "z_origin": np.int32(config.z_origin),
    }
    for col, name in enumerate(MOMENT_FIELDS[1:], start=1):
        out[name] = moments[:, col]

    npz_path = os.path.join(out_dir, f"{stem}_orientation.npz")
    np.savez(npz_path, **out)

    meta = {
        "image_shape": list(report.shape),
        "dimension": int(d),
        "K": int(K),
        "degenerate": {str(r.label): r.error for r in report.degenerate},
        "failed": {str(r.label): r.error for r in report.failed},
        "times": {k: float(v) for k, v in report.times.items()},
        "config": asdict(config),
        "git_rev": _git_rev(),
        "output_npz": os.path.basename(npz_path),
    }
    if meta_extra:
        meta.update(meta_extra)
    with open(os.path.join(out_dir, f"{stem}_orientation.meta.json"), "w") as f:
        json.dump(meta, f, indent=2)
    return npz_path


def main(argv=None):
    ap = argparse.ArgumentParser(description="Per-label principal orientation of a labeled 2-D/3-D image.")
    ap.add_argument("--config", default=None, help="YAML file; command-line flags take precedence")
    ap.add_argument("--input", default=None, help="label image (.npy or .npz)")
    ap.add_argument("--key", default=None, help="array name inside an .npz input")
    ap.add_argument("--output-dir", default=None)
    ap.add_argument("--plot", dest="plot", action="store_true", default=None,
                    help="draw orientation vectors (2-D images only; default on for 2-D)")
    ap.add_argument("--no-plot", dest="plot", action="store_false")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    cfg = parse_config(args.config) if args.config else {}
    setup_logging(args.verbose or bool(cfg.get("verbose", False)))

    input_path = args.input or cfg.get("input_path")
    if not input_path:
        raise ValueError("an input label image is required (--input or input_path in the config)")
    key = args.key or cfg.get("dataset_key")
    out_dir = args.output_dir or cfg.get("output_dir", "./orientation_out")
    config = config_from_dict(cfg)

    image = load_label_image(str(input_path), key=key)
    logger.info("Measuring orientation of %s, shape %s", input_path, tuple(image.shape))

    def _progress(done, total):
        logger.debug("progress %d/%d", done, total)

    report = measure_image(image, config=config, progress=_progress)
    title = os.path.basename(str(input_path))
    print(format_report(report, title=title))

    stem = os.path.splitext(title)[0]
    npz_path = save_report(report, out_dir, stem, config=config,
                           meta_extra={"input": str(input_path), "dataset_key": key})

    do_plot = args.plot if args.plot is not None else cfg.get("plot")
    if do_plot is None:
        do_plot = report.dimension == 2
    if do_plot:
        if report.dimension != 2:
            logger.warning("Plotting is only available for single-plane images; skipping.")
        else:
            from plot_orientation import draw_vectors
            png_path = os.path.join(out_dir, f"{stem}_orientation.png")
            try:
                draw_vectors(image, report.results, png_path,
                             vector_length=float(cfg.get("plot_vector_length", 75.0)))
            except (OSError, ValueError) as exc:
                logger.error("There was a problem visualizing the vectors: %s", exc)
            else:
                logger.info("Wrote %s", png_path)

    print(f"Measured {len(report.results)} labels ({len(report.degenerate)} degenerate, {len(report.failed)} failed) -> {npz_path}")
    return report


if __name__ == "__main__":
    main()
