from __future__ import annotations

import argparse
import os
from typing import Sequence

import numpy as np
import matplotlib
matplotlib.use("agg")
import matplotlib.pyplot as plt
from matplotlib.patches import Circle

from orientation import STATUS_OK, LabelOrientation


def _load(path: str) -> dict[str, np.ndarray]:
    with np.load(path) as d:
        return {k: d[k] for k in d.files}


def results_from_npz(data: dict[str, np.ndarray]) -> list[LabelOrientation]:
    out = []
    for idx, label in enumerate(data["label_ids"]):
        c = data["centroid"][idx]
        out.append(LabelOrientation(
            label=int(label),
            n=int(data["cell_count"][idx]),
            orientation=np.asarray(data["orientation"][idx], dtype=np.float64),
            centroid=None if not np.all(np.isfinite(c)) else (float(c[0]), float(c[1])),
            status=str(data["status"][idx]),
        ))
    return out


def draw_vectors(image: np.ndarray,
                 results: Sequence[LabelOrientation],
                 output_path: str,
                 vector_length: float = 75.0,
                 centroid_width: float = 6.0,
                 color: str = "magenta") -> int:
    """Draw each label's centroid and orientation vector over a single-plane image.

    Labels without a valid orientation are skipped. Returns the number drawn.
    """
    img = np.asarray(image)
    if img.ndim == 3 and img.shape[0] == 1:
        img = img[0]
    if img.ndim != 2:
        raise ValueError(f"vector plots need a single-plane image, got shape {img.shape}")

    h, w = img.shape
    fig, ax = plt.subplots(figsize=(max(4.0, w / 100.0), max(4.0, h / 100.0)))
    ax.imshow(img, cmap="gray", interpolation="nearest")
    n_drawn = 0
    for r in results:
        if r.status != STATUS_OK or r.centroid is None:
            continue
        cx, cy = r.centroid
        ex = cx + vector_length * float(r.orientation[0])
        ey = cy + vector_length * float(r.orientation[1])
        ax.add_patch(Circle((cx, cy), radius=centroid_width / 2.0, color=color, fill=True))
        ax.plot([cx, ex], [cy, ey], color=color, linewidth=1)
        n_drawn += 1
    ax.set_xlim(-0.5, w - 0.5)
    ax.set_ylim(h - 0.5, -0.5)
    ax.set_title("Orientation vector display")
    ax.set_axis_off()
    fig.savefig(output_path, bbox_inches="tight")
    plt.close(fig)
    return n_drawn


def main(argv=None):
    from orientation_finder import load_label_image

    ap = argparse.ArgumentParser()
    ap.add_argument("--results", required=True, help="*_orientation.npz written by orientation_finder")
    ap.add_argument("--image", required=True, help="label image (.npy or .npz)")
    ap.add_argument("--key", default=None, help="array name inside an .npz image")
    ap.add_argument("--output", default=None, help="PNG path (default next to results)")
    ap.add_argument("--vector-length", type=float, default=75.0)
    args = ap.parse_args(argv)

    data = _load(args.results)
    if int(data["dimension"]) != 2:
        raise ValueError("vector plots are only available for 2-D results")
    image = load_label_image(args.image, key=args.key)
    out = args.output or os.path.splitext(args.results)[0] + ".png"
    n = draw_vectors(image, results_from_npz(data), out, vector_length=args.vector_length)
    print(f"Drew {n} orientation vectors -> {out}")
    return out


if __name__ == "__main__":
    main()
