"""Configuration dataclass and loading utilities.

Provides a strongly-typed configuration object that is injected into the
analyzers and guidance trackers instead of module-level constants.
"""
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional
import json, os, logging
from .defaults import DEFAULT_CONFIG

ENV_PREFIX = "SCANGUIDE_"

@dataclass(slots=True)
class Config:
    # Frame quality analyzer
    quality_target_fps: int = DEFAULT_CONFIG["quality_target_fps"]
    quality_roi_frac: float = DEFAULT_CONFIG["quality_roi_frac"]
    quality_roi_min_px: int = DEFAULT_CONFIG["quality_roi_min_px"]
    blur_threshold: float = DEFAULT_CONFIG["blur_threshold"]
    clip_high: int = DEFAULT_CONFIG["clip_high"]
    clip_low: int = DEFAULT_CONFIG["clip_low"]
    over_threshold: float = DEFAULT_CONFIG["over_threshold"]
    under_threshold: float = DEFAULT_CONFIG["under_threshold"]
    specular_max_clusters: int = DEFAULT_CONFIG["specular_max_clusters"]
    specular_max_cluster_px: int = DEFAULT_CONFIG["specular_max_cluster_px"]

    # Marker detection
    marker_mode: str = DEFAULT_CONFIG["marker_mode"]
    marker_dictionary: str = DEFAULT_CONFIG["marker_dictionary"]
    marker_roi_frac: float = DEFAULT_CONFIG["marker_roi_frac"]
    marker_roi_min_px: int = DEFAULT_CONFIG["marker_roi_min_px"]
    marker_downsample_step: int = DEFAULT_CONFIG["marker_downsample_step"]
    edge_margin_frac: float = DEFAULT_CONFIG["edge_margin_frac"]
    required_ids: List[int] = field(default_factory=lambda: list(DEFAULT_CONFIG["required_ids"]))

    # Capture guidance
    stable_ids_n: int = DEFAULT_CONFIG["stable_ids_n"]
    distance_min_cm: float = DEFAULT_CONFIG["distance_min_cm"]
    distance_max_cm: float = DEFAULT_CONFIG["distance_max_cm"]
    good_captures_target: int = DEFAULT_CONFIG["good_captures_target"]
    per_tag_target: int = DEFAULT_CONFIG["per_tag_target"]
    grid_target_filled: int = DEFAULT_CONFIG["grid_target_filled"]
    cross_arch_required: bool = DEFAULT_CONFIG["cross_arch_required"]
    cross_arch_spread: float = DEFAULT_CONFIG["cross_arch_spread"]
    phase_anchor_per_bin: int = DEFAULT_CONFIG["phase_anchor_per_bin"]
    phase_anchor_high_low: int = DEFAULT_CONFIG["phase_anchor_high_low"]
    phase_sweep_mid: int = DEFAULT_CONFIG["phase_sweep_mid"]
    phase_sweep_high_low: int = DEFAULT_CONFIG["phase_sweep_high_low"]
    phase_cross_arch_total: int = DEFAULT_CONFIG["phase_cross_arch_total"]
    phase_cross_arch_high_low: int = DEFAULT_CONFIG["phase_cross_arch_high_low"]

    # Calibration guidance
    calibration_distance_target_cm: float = DEFAULT_CONFIG["calibration_distance_target_cm"]
    calibration_good_captures_target: int = DEFAULT_CONFIG["calibration_good_captures_target"]
    calibration_grid_target_filled: int = DEFAULT_CONFIG["calibration_grid_target_filled"]

    # Logging
    debug: bool = DEFAULT_CONFIG["debug"]
    log_level: str = DEFAULT_CONFIG["log_level"]
    log_dir: str = DEFAULT_CONFIG["log_dir"]
    file_logging: bool = DEFAULT_CONFIG["file_logging"]
    structured_logging: bool = DEFAULT_CONFIG["structured_logging"]

    # Arbitrary extra values retained for forward compatibility
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        extra = d.pop("extra", {})
        d.update(extra)
        return d

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, self.extra.get(key, default))


def load_config(path: str = "scanguide.json", environ: Optional[Dict[str, str]] = None) -> Config:
    """Load configuration from a JSON file, falling back to defaults on any problem.

    Args:
        path: Path to the JSON configuration file
        environ: Environment mapping used for overrides (defaults to os.environ)

    Returns:
        Config: Loaded and sanitized configuration
    """
    data: Dict[str, Any] = {}

    if os.path.isfile(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded_data = json.load(f)
            if loaded_data is None:
                logging.warning(f"Configuration file '{path}' is empty, using defaults")
            elif not isinstance(loaded_data, dict):
                logging.error(f"Configuration file '{path}' does not contain a JSON object, using defaults")
            else:
                data = loaded_data
                logging.info(f"Loaded configuration from '{path}'")
        except json.JSONDecodeError as e:
            logging.error(f"Failed to parse JSON configuration file '{path}': {e}. Using defaults.")
        except PermissionError:
            logging.error(f"Permission denied reading configuration file '{path}'. Using defaults.")
        except OSError as e:
            logging.error(f"Error reading configuration file '{path}': {e}. Using defaults.")
    else:
        logging.info(f"Configuration file '{path}' does not exist. Using defaults.")

    merged = {**DEFAULT_CONFIG, **data}
    merged = _apply_environment_overrides(merged, os.environ if environ is None else environ)
    merged = _sanitize_config_values(merged)

    extra = {k: v for k, v in merged.items() if k not in Config.__dataclass_fields__}
    if extra:
        logging.info(f"Found extra configuration keys: {list(extra.keys())}")

    try:
        return Config(**{k: merged[k] for k in Config.__dataclass_fields__ if k != "extra"}, extra=extra)
    except TypeError as e:
        logging.error(f"Failed to create configuration object: {e}. Falling back to pure defaults.")
        return Config()


def _apply_environment_overrides(config_dict: Dict[str, Any], environ) -> Dict[str, Any]:
    """Apply SCANGUIDE_* environment variable overrides."""
    out = dict(config_dict)

    if environ.get(f"{ENV_PREFIX}DEBUG", "").lower() in ("1", "true", "yes"):
        out["debug"] = True
        out["log_level"] = "DEBUG"

    level = environ.get(f"{ENV_PREFIX}LOG_LEVEL")
    if level:
        out["log_level"] = level.upper()

    log_dir = environ.get(f"{ENV_PREFIX}LOG_DIR")
    if log_dir:
        out["log_dir"] = log_dir
        out["file_logging"] = True

    mode = environ.get(f"{ENV_PREFIX}MARKER_MODE")
    if mode:
        out["marker_mode"] = mode.upper()

    return out


def _sanitize_config_values(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Replace out-of-range or mistyped values with their defaults."""
    sanitized = config_dict.copy()

    numeric_validations = {
        'quality_target_fps': (1, 120),
        'quality_roi_frac': (0.05, 1.0),
        'quality_roi_min_px': (8, 4096),
        'blur_threshold': (0.0, 100000.0),
        'clip_high': (1, 255),
        'clip_low': (0, 254),
        'over_threshold': (0.0, 1.0),
        'under_threshold': (0.0, 1.0),
        'specular_max_clusters': (0, 10000),
        'specular_max_cluster_px': (0, 10_000_000),
        'marker_roi_frac': (0.05, 1.0),
        'marker_roi_min_px': (16, 8192),
        'marker_downsample_step': (1, 8),
        'edge_margin_frac': (0.0, 0.45),
        'stable_ids_n': (0, 1000),
        'distance_min_cm': (0.0, 1000.0),
        'distance_max_cm': (0.0, 1000.0),
        'good_captures_target': (0, 100000),
        'per_tag_target': (0, 100000),
        'grid_target_filled': (0, 9),
        'cross_arch_spread': (0.0, 1.0),
        'phase_anchor_per_bin': (0, 10000),
        'phase_anchor_high_low': (0, 10000),
        'phase_sweep_mid': (0, 10000),
        'phase_sweep_high_low': (0, 10000),
        'phase_cross_arch_total': (0, 10000),
        'phase_cross_arch_high_low': (0, 10000),
        'calibration_distance_target_cm': (0.0, 1000.0),
        'calibration_good_captures_target': (0, 100000),
        'calibration_grid_target_filled': (0, 9),
    }

    for key, (min_val, max_val) in numeric_validations.items():
        value = sanitized.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            logging.warning(f"Value {key}={value!r} is not numeric, using default")
            sanitized[key] = DEFAULT_CONFIG[key]
        elif not (min_val <= value <= max_val):
            logging.warning(f"Value {key}={value} out of range [{min_val}, {max_val}], using default")
            sanitized[key] = DEFAULT_CONFIG[key]

    if sanitized["distance_min_cm"] > sanitized["distance_max_cm"]:
        logging.warning("distance_min_cm exceeds distance_max_cm, using default distance range")
        sanitized["distance_min_cm"] = DEFAULT_CONFIG["distance_min_cm"]
        sanitized["distance_max_cm"] = DEFAULT_CONFIG["distance_max_cm"]

    mode = str(sanitized.get("marker_mode", "")).upper()
    if mode not in ("OFF", "WARN", "BLOCK"):
        logging.warning(f"Unknown marker_mode {sanitized.get('marker_mode')!r}, using default")
        mode = DEFAULT_CONFIG["marker_mode"]
    sanitized["marker_mode"] = mode

    ids = sanitized.get("required_ids") or []
    try:
        sanitized["required_ids"] = sorted({int(i) for i in ids})
    except (TypeError, ValueError):
        logging.warning(f"Invalid required_ids {ids!r}, using none")
        sanitized["required_ids"] = []

    return sanitized
