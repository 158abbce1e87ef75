"""Coordinate normalization, binning and marker-set geometry."""

from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.entities import HeightBin, LateralBin, TagDetection

GRID_CELLS = 9
STABLE_IDS_N_DEFAULT = 8

_ROW_NAMES = ("top", "mid", "bottom")
_COL_NAMES = ("left", "center", "right")


def clamp01(v: float) -> float:
    return max(0.0, min(1.0, v))


def lateral_bin(x_norm: float) -> LateralBin:
    if x_norm < 0.33:
        return LateralBin.LEFT
    if x_norm > 0.66:
        return LateralBin.RIGHT
    return LateralBin.CENTER


def height_bin(y_norm: float) -> HeightBin:
    if y_norm < 0.33:
        return HeightBin.LOW
    if y_norm > 0.66:
        return HeightBin.HIGH
    return HeightBin.MID


def grid_index_3x3(x_norm: float, y_norm: float) -> int:
    """Map a normalized point to a row-major cell 0..8.

    Columns and rows use half-open intervals [0, 0.333333), [0.333333, 0.666666),
    [0.666666, 1], so a boundary value belongs to the upper cell.
    """
    if x_norm < 0.333333:
        col = 0
    elif x_norm < 0.666666:
        col = 1
    else:
        col = 2
    if y_norm < 0.333333:
        row = 0
    elif y_norm < 0.666666:
        row = 1
    else:
        row = 2
    return row * 3 + col


def filled_grid_cells(counts: Sequence[int]) -> int:
    return sum(1 for c in counts if c > 0)


def first_empty_grid_cell(counts: Sequence[int]) -> Optional[int]:
    for i in range(GRID_CELLS):
        if counts[i] <= 0:
            return i
    return None


def cell_name(index: int) -> str:
    """'top-left' .. 'bottom-right' for a row-major cell index."""
    return f"{_ROW_NAMES[min(index // 3, 2)]}-{_COL_NAMES[index % 3]}"


def mean_center_norm(detections: Sequence[TagDetection], width: int, height: int) -> Optional[Tuple[float, float]]:
    """Mean detection center normalized to [0,1]x[0,1], or None if undefined."""
    if not detections or width <= 0 or height <= 0:
        return None
    sx = sum(d.center_x for d in detections)
    sy = sum(d.center_y for d in detections)
    n = len(detections)
    return clamp01(sx / n / width), clamp01(sy / n / height)


def spread_x_norm(detections: Sequence[TagDetection], width: int) -> float:
    """Horizontal extent of detection centers as a fraction of frame width."""
    if not detections or width <= 0:
        return 0.0
    xs = [d.center_x for d in detections]
    return clamp01((max(xs) - min(xs)) / float(width))


def has_both_sides(detections: Sequence[TagDetection], width: int) -> bool:
    """True when detections sit in both the left and the right third of the frame."""
    if not detections or width <= 0:
        return False
    xs = [clamp01(d.center_x / float(width)) for d in detections]
    return any(x < 0.33 for x in xs) and any(x > 0.66 for x in xs)


def is_cross_arch(detections: Sequence[TagDetection], width: int, min_spread: float = 0.65) -> bool:
    return spread_x_norm(detections, width) >= min_spread and has_both_sides(detections, width)


def within_margin(points: Iterable[Tuple[float, float]], width: int, height: int, margin_frac: float) -> bool:
    """True if every point lies at least margin_frac * size away from each frame edge."""
    mx = width * margin_frac
    my = height * margin_frac
    for x, y in points:
        if x < mx or x > (width - mx) or y < my or y > (height - my):
            return False
    return True


def framing_ok(detections: Sequence[TagDetection], width: int, height: int, margin_frac: float) -> bool:
    """Corner-based framing check, falling back to centers when corners are unknown."""
    for d in detections:
        if not within_margin(d.points(), width, height, margin_frac):
            return False
    return True


def choose_stable_ids(per_tag_count: Mapping[int, int], n: int) -> List[int]:
    """Pick the n most frequently seen ids, ordered by count desc then id asc."""
    ranked = sorted(per_tag_count.items(), key=lambda kv: (-kv[1], kv[0]))
    return [tag_id for tag_id, _ in ranked[:max(0, n)]]
