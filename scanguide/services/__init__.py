"""Analyzers, guidance trackers and the frame pipeline."""

from .quality_analyzer import QualityAnalyzer
from .marker_detector import MarkerDetector, DisabledMarkerDetector, FiducialMarkerDetector, create_marker_detector
from .capture_guidance import CaptureGuidanceTracker, LiveGuidance, PhaseTargets
from .calibration_guidance import CalibrationGuidanceTracker, CalibrationLiveGuidance
from .capture_metadata import CaptureMetadata, CaptureMetadataStore, format_focus_distance
from .frame_pipeline import FramePipeline, CaptureSnapshot

__all__ = [
    "QualityAnalyzer",
    "MarkerDetector", "DisabledMarkerDetector", "FiducialMarkerDetector", "create_marker_detector",
    "CaptureGuidanceTracker", "LiveGuidance", "PhaseTargets",
    "CalibrationGuidanceTracker", "CalibrationLiveGuidance",
    "CaptureMetadata", "CaptureMetadataStore", "format_focus_distance",
    "FramePipeline", "CaptureSnapshot",
]
