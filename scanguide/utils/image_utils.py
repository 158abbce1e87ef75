"""Image processing utilities for luma frames."""

import numpy as np
from typing import Optional, Sequence, Tuple

Roi = Tuple[int, int, int, int]  # (x, y, w, h)

def center_roi(width: int, height: int, frac: float, min_px: int) -> Roi:
    """Centered ROI of frac * size, at least min_px per side and never larger than the frame."""
    roi_w = min(max(int(width * frac), min_px), width)
    roi_h = min(max(int(height * frac), min_px), height)
    x = max((width - roi_w) // 2, 0)
    y = max((height - roi_h) // 2, 0)
    return x, y, roi_w, roi_h

def crop_image(image: np.ndarray, roi: Roi) -> np.ndarray:
    """Crop image to an (x, y, w, h) ROI, clamped to the image bounds."""
    x, y, w, h = roi
    ih, iw = image.shape[:2]

    x1 = max(0, min(x, iw))
    y1 = max(0, min(y, ih))
    x2 = max(x1, min(x + w, iw))
    y2 = max(y1, min(y + h, ih))

    return image[y1:y2, x1:x2]

def downsample_into(image: np.ndarray, roi: Roi, step: int, out: Optional[np.ndarray] = None) -> np.ndarray:
    """Sub-sample every step-th row/column of the ROI into a contiguous working buffer.

    `out` is reused when its shape matches, otherwise a new buffer is allocated.
    """
    view = crop_image(image, roi)[::step, ::step]
    if out is None or out.shape != view.shape:
        out = np.empty(view.shape, dtype=np.uint8)
    np.copyto(out, view)
    return out

def polygon_area(points: Sequence[Tuple[float, float]]) -> float:
    """Shoelace area of a simple polygon."""
    if len(points) < 3:
        return 0.0
    pts = np.asarray(points, dtype=np.float64)
    x = pts[:, 0]
    y = pts[:, 1]
    return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))) / 2.0)
