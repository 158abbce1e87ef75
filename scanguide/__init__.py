"""
Capture guidance core for close-range photogrammetry sessions.
"""

__version__ = "1.0.0"

from .config.settings import Config, load_config
from .core.entities import (
    RawFrame, TagDetection, MarkerStatus, QualityResult, QualityStatus, MarkerMode, CapturePhase,
)

__all__ = [
    "Config", "load_config",
    "RawFrame", "TagDetection", "MarkerStatus", "QualityResult", "QualityStatus", "MarkerMode", "CapturePhase",
]
