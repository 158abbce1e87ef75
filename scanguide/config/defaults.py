"""Default configuration values."""

from typing import Any, Dict

DEFAULT_CONFIG: Dict[str, Any] = {
    # Frame quality analyzer
    "quality_target_fps": 12,
    "quality_roi_frac": 0.40,
    "quality_roi_min_px": 64,
    "blur_threshold": 150.0,  # tune per device
    "clip_high": 245,
    "clip_low": 10,
    "over_threshold": 0.02,
    "under_threshold": 0.02,
    "specular_max_clusters": 5,
    "specular_max_cluster_px": 100,

    # Marker detection
    "marker_mode": "WARN",  # OFF | WARN | BLOCK
    "marker_dictionary": "APRILTAG_36h11",
    "marker_roi_frac": 0.60,
    "marker_roi_min_px": 160,
    "marker_downsample_step": 2,
    "edge_margin_frac": 0.10,
    "required_ids": [],

    # Capture guidance
    "stable_ids_n": 8,
    "distance_min_cm": 20.0,
    "distance_max_cm": 30.0,
    "good_captures_target": 60,
    "per_tag_target": 10,
    "grid_target_filled": 7,
    "cross_arch_required": True,
    "cross_arch_spread": 0.65,
    "phase_anchor_per_bin": 2,
    "phase_anchor_high_low": 2,
    "phase_sweep_mid": 5,
    "phase_sweep_high_low": 3,
    "phase_cross_arch_total": 6,
    "phase_cross_arch_high_low": 2,

    # Calibration guidance
    "calibration_distance_target_cm": 25.0,
    "calibration_good_captures_target": 25,
    "calibration_grid_target_filled": 8,

    # Logging
    "debug": False,
    "log_level": "INFO",
    "log_dir": "logs",
    "file_logging": False,
    "structured_logging": False,
}
