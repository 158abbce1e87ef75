"""Core domain entities, exceptions and logging."""

from .entities import (
    RawFrame, TagDetection, MarkerStatus, QualityResult, QualityStatus, MarkerMode,
    FrozenMarkerSnapshot, FrozenQualitySnapshot, MarkerSessionSummary,
    CapturePhase, LateralBin, HeightBin,
)
from .exceptions import ApplicationError, ConfigError, FrameFormatError, DetectionError, ValidationError

__all__ = [
    "RawFrame", "TagDetection", "MarkerStatus", "QualityResult", "QualityStatus", "MarkerMode",
    "FrozenMarkerSnapshot", "FrozenQualitySnapshot", "MarkerSessionSummary",
    "CapturePhase", "LateralBin", "HeightBin",
    "ApplicationError", "ConfigError", "FrameFormatError", "DetectionError", "ValidationError",
]
