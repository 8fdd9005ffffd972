from __future__ import annotations

import numpy as np

from orientation_finder import OrientationConfig, format_report, measure_image


def make_ellipse_labels(shape, specs):
    """Label image of filled ellipses: (label, (cx, cy), (a, b), angle_deg) each."""
    labels = np.zeros(shape, dtype=np.uint16)
    yy, xx = np.mgrid[0:shape[0], 0:shape[1]]
    for label, (cx, cy), (a, b), ang in specs:
        t = np.deg2rad(ang)
        u = (xx - cx) * np.cos(t) + (yy - cy) * np.sin(t)
        v = -(xx - cx) * np.sin(t) + (yy - cy) * np.cos(t)
        labels[(u / a) ** 2 + (v / b) ** 2 <= 1.0] = label
    return labels


def main():
    specs = ((1, (40, 40), (30, 8), 0.0),
             (2, (90, 80), (25, 6), 45.0),
             (3, (40, 100), (20, 5), 120.0))
    labels = make_ellipse_labels((128, 128), specs)
    report = measure_image(labels, OrientationConfig(background=0))
    print(format_report(report, title="synthetic ellipses"))

    by_label = report.by_label()
    for label, (cx, cy), _, ang in specs:
        r = by_label[label]
        t = np.deg2rad(ang)
        expected = np.array([np.cos(t), np.sin(t)])
        # sign of an eigenvector is arbitrary
        err = 1.0 - abs(float(np.dot(r.orientation, expected)))
        print(f"label={label} angle={ang:6.1f} 1-|cos|={err:.2e} centroid={r.centroid} expected=({cx}, {cy})")
        assert err < 1e-3, f"label {label} orientation off by {err}"


if __name__ == "__main__":
    main()
