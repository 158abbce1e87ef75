"""Utility functions package."""

from .geometry import (
    clamp01, lateral_bin, height_bin, grid_index_3x3, filled_grid_cells,
    first_empty_grid_cell, cell_name, spread_x_norm, has_both_sides, choose_stable_ids
)
from .image_utils import center_roi, crop_image, downsample_into, polygon_area
from .serialization import dumps_deterministic

__all__ = [
    "clamp01", "lateral_bin", "height_bin", "grid_index_3x3", "filled_grid_cells",
    "first_empty_grid_cell", "cell_name", "spread_x_norm", "has_both_sides", "choose_stable_ids",
    "center_roi", "crop_image", "downsample_into", "polygon_area", "dumps_deterministic"
]
