"""Helpers shared by the capture and calibration guidance trackers."""
from __future__ import annotations

from typing import List, Optional

from ..core.entities import FrameClassification, FrozenMarkerSnapshot, SidecarDetection, TagDetection
from ..utils import geometry


def distance_ok(distance_cm: Optional[float], min_cm: float, max_cm: float) -> bool:
    """An unknown distance is not held against the capture."""
    if distance_cm is None:
        return True
    return min_cm <= distance_cm <= max_cm


def snapshot_framing_ok(snapshot: FrozenMarkerSnapshot, edge_margin_frac: float) -> bool:
    """Re-derive framing with this tracker's margin; falls back to the snapshot flag without a frame size."""
    w, h = snapshot.frame_width, snapshot.frame_height
    if w <= 0 or h <= 0:
        return snapshot.framing_ok
    return geometry.framing_ok(snapshot.detections, w, h, edge_margin_frac)


def classify_frame(detections, width: int, height: int, cross_arch_spread: float) -> Optional[FrameClassification]:
    center = geometry.mean_center_norm(detections, width, height)
    if center is None:
        return None
    x_norm, y_norm = center
    return FrameClassification(
        grid_cell=geometry.grid_index_3x3(x_norm, y_norm),
        lateral_bin=geometry.lateral_bin(x_norm),
        height_bin=geometry.height_bin(y_norm),
        cross_arch=geometry.is_cross_arch(detections, width, cross_arch_spread),
    )


def sidecar_detections(snapshot: FrozenMarkerSnapshot) -> List[SidecarDetection]:
    """Detections ordered by id, then x, then y."""
    w, h = snapshot.frame_width, snapshot.frame_height
    ordered: List[TagDetection] = sorted(snapshot.detections, key=lambda d: (d.id, d.center_x, d.center_y))
    out = []
    for d in ordered:
        out.append(SidecarDetection(
            id=d.id,
            center_px=(d.center_x, d.center_y),
            center_norm=(d.center_x / w, d.center_y / h) if w > 0 and h > 0 else None,
            corners_px=list(d.corners or ()),
            quality=d.quality,
        ))
    return out
