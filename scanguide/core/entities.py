"""Domain entities (data-only structures) shared by analyzers and trackers."""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import cv2
import numpy as np

from .exceptions import FrameFormatError, ValidationError

Point = Tuple[float, float]

# Formats whose first plane is an 8-bit luma channel.
LUMA_FORMATS = frozenset({"Y8", "GRAY8", "YUV_420_888", "NV21"})


class QualityStatus(Enum):
    OK = "OK"
    BLUR = "BLUR"
    OVER = "OVER"
    UNDER = "UNDER"
    SPECULAR = "SPECULAR"
    UNKNOWN = "UNKNOWN"


class MarkerMode(Enum):
    OFF = "OFF"
    WARN = "WARN"
    BLOCK = "BLOCK"


class LateralBin(Enum):
    LEFT = "LEFT"
    CENTER = "CENTER"
    RIGHT = "RIGHT"


class HeightBin(Enum):
    LOW = "LOW"
    MID = "MID"
    HIGH = "HIGH"


class CapturePhase(Enum):
    """Capture session phases, strictly ordered."""
    ANCHOR = 0
    LEFT_SWEEP = 1
    RIGHT_SWEEP = 2
    CROSS_ARCH = 3
    CLEANUP = 4


@dataclass(frozen=True, slots=True, eq=False)
class RawFrame:
    """Read-only view over one camera luma plane.

    The buffer belongs to the frame source and must not be retained past a
    single analysis call.
    """
    width: int
    height: int
    row_stride: int
    pixel_stride: int
    data: Any  # bytes-like or numpy uint8 buffer
    timestamp_ns: int
    pixel_format: str = "Y8"

    def luma(self) -> np.ndarray:
        """Return a (height, width) uint8 view of the luma plane."""
        if self.pixel_format not in LUMA_FORMATS:
            raise FrameFormatError(f"Unsupported pixel format: {self.pixel_format}")
        if self.pixel_stride != 1:
            raise FrameFormatError(f"Unsupported pixel stride: {self.pixel_stride}")
        if self.width <= 0 or self.height <= 0:
            raise ValidationError(f"Invalid frame size {self.width}x{self.height}")
        if self.row_stride < self.width:
            raise FrameFormatError(f"Row stride {self.row_stride} smaller than width {self.width}")

        if isinstance(self.data, np.ndarray):
            buf = np.ascontiguousarray(self.data, dtype=np.uint8).reshape(-1)
        else:
            buf = np.frombuffer(self.data, dtype=np.uint8)

        needed = (self.height - 1) * self.row_stride + self.width
        if buf.size < needed:
            raise FrameFormatError(f"Buffer too small: {buf.size} < {needed}")

        return np.lib.stride_tricks.as_strided(
            buf, shape=(self.height, self.width), strides=(self.row_stride, 1), writeable=False
        )

    @classmethod
    def from_gray(cls, gray: np.ndarray, timestamp_ns: int) -> "RawFrame":
        """Wrap a 2-D uint8 grayscale image."""
        if gray.ndim != 2:
            raise FrameFormatError(f"Expected a single-channel image, got shape {gray.shape}")
        gray = np.ascontiguousarray(gray, dtype=np.uint8)
        h, w = gray.shape
        return cls(width=w, height=h, row_stride=w, pixel_stride=1, data=gray, timestamp_ns=timestamp_ns)

    @classmethod
    def from_bgr(cls, image: np.ndarray, timestamp_ns: int) -> "RawFrame":
        """Convert a BGR frame (as read by OpenCV) to a luma frame."""
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        return cls.from_gray(gray, timestamp_ns)


@dataclass(frozen=True, slots=True)
class TagDetection:
    id: int
    center_x: float
    center_y: float
    corners: Optional[Tuple[Point, ...]] = None  # ordered, >= 4 points
    quality: Optional[float] = None  # 0..1

    def __post_init__(self):
        if self.corners is not None and len(self.corners) < 4:
            raise ValidationError(f"Tag {self.id}: expected at least 4 corners, got {len(self.corners)}")
        if self.quality is not None and not (0.0 <= self.quality <= 1.0):
            raise ValidationError(f"Tag {self.id}: quality {self.quality} outside [0, 1]")

    def points(self) -> Tuple[Point, ...]:
        """Corners if known, otherwise the center alone."""
        if self.corners:
            return self.corners
        return ((self.center_x, self.center_y),)


@dataclass(frozen=True, slots=True)
class MarkerStatus:
    timestamp_ns: int
    mode: MarkerMode
    frame_width: int
    frame_height: int
    detections: Tuple[TagDetection, ...] = ()
    required_ids: Tuple[int, ...] = ()
    missing_required_ids: Tuple[int, ...] = ()
    all_required_visible: bool = True
    framing_ok: bool = True
    guidance_text: str = ""
    display_text: str = ""

    @property
    def detected_ids(self) -> Tuple[int, ...]:
        return tuple(d.id for d in self.detections)

    @property
    def detected_count(self) -> int:
        return len(self.detections)

    @classmethod
    def idle(cls, mode: MarkerMode = MarkerMode.OFF) -> "MarkerStatus":
        return cls(timestamp_ns=0, mode=mode, frame_width=0, frame_height=0,
                   guidance_text="", display_text="Markers: N/A")


@dataclass(frozen=True, slots=True)
class QualityResult:
    status: QualityStatus
    blur_score: float          # Laplacian variance over the ROI
    over_fraction: float       # clipped highlights fraction
    under_fraction: float      # clipped shadows fraction
    specular_clusters: int = 0
    largest_specular_cluster: int = 0
    distance_cm: Optional[float] = None  # best effort, None if unavailable
    timestamp_ns: int = 0

    @property
    def exposure_flags(self) -> Tuple[str, ...]:
        if self.status in (QualityStatus.OVER, QualityStatus.UNDER, QualityStatus.SPECULAR):
            return (self.status.name,)
        return ()

    @classmethod
    def unknown(cls) -> "QualityResult":
        return cls(status=QualityStatus.UNKNOWN, blur_score=0.0, over_fraction=0.0, under_fraction=0.0)


@dataclass(frozen=True, slots=True)
class FrozenMarkerSnapshot:
    """Copy of a MarkerStatus taken at the instant of a committed capture."""
    timestamp_ns: int
    mode: MarkerMode
    frame_width: int
    frame_height: int
    required_ids: Tuple[int, ...]
    detected_ids: Tuple[int, ...]
    missing_required_ids: Tuple[int, ...]
    all_required_visible: bool
    framing_ok: bool
    detections: Tuple[TagDetection, ...]

    @classmethod
    def from_status(cls, status: MarkerStatus) -> "FrozenMarkerSnapshot":
        return cls(
            timestamp_ns=status.timestamp_ns,
            mode=status.mode,
            frame_width=status.frame_width,
            frame_height=status.frame_height,
            required_ids=tuple(status.required_ids),
            detected_ids=status.detected_ids,
            missing_required_ids=tuple(status.missing_required_ids),
            all_required_visible=status.all_required_visible,
            framing_ok=status.framing_ok,
            detections=tuple(status.detections),
        )


@dataclass(frozen=True, slots=True)
class FrozenQualitySnapshot:
    status: QualityStatus
    blur_score: float
    exposure_flags: Tuple[str, ...]
    distance_cm: Optional[float]

    @classmethod
    def from_result(cls, result: Optional[QualityResult]) -> "FrozenQualitySnapshot":
        if result is None:
            result = QualityResult.unknown()
        return cls(
            status=result.status,
            blur_score=result.blur_score,
            exposure_flags=result.exposure_flags,
            distance_cm=result.distance_cm,
        )


@dataclass(frozen=True, slots=True)
class MarkerSessionSummary:
    frames_processed: int = 0
    frames_all_required_visible: int = 0
    per_tag_count: Dict[int, int] = field(default_factory=dict)  # insertion ordered

    def to_dict(self) -> Dict[str, Any]:
        return {
            "framesProcessed": self.frames_processed,
            "framesAllRequiredVisible": self.frames_all_required_visible,
            "perTagCount": {str(k): v for k, v in self.per_tag_count.items()},
        }


@dataclass(frozen=True, slots=True)
class FrameClassification:
    """Where the mean marker center of one frame falls."""
    grid_cell: int
    lateral_bin: LateralBin
    height_bin: HeightBin
    cross_arch: bool


# ---- summary records handed to persistence collaborators ----

@dataclass(slots=True)
class SidecarDetection:
    id: int
    center_px: Point
    center_norm: Optional[Point]
    corners_px: List[Point]
    quality: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "centerPx": list(self.center_px),
            "centerNorm": list(self.center_norm) if self.center_norm is not None else None,
            "cornersPx": [list(c) for c in self.corners_px],
            "quality": self.quality,
        }


@dataclass(slots=True)
class CaptureTargets:
    good_captures: int
    per_tag: int
    grid_filled: int
    cross_arch_required: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "goodCaptures": self.good_captures,
            "perTag": self.per_tag,
            "gridFilled": self.grid_filled,
            "crossArchRequired": self.cross_arch_required,
        }


@dataclass(slots=True)
class PhaseProgress:
    center_mid: int = 0
    left_mid: int = 0
    right_mid: int = 0
    high_any: int = 0
    low_any: int = 0
    b_left_mid: int = 0
    b_left_high: int = 0
    b_left_low: int = 0
    c_right_mid: int = 0
    c_right_high: int = 0
    c_right_low: int = 0
    cross_arch_total: int = 0
    cross_arch_high: int = 0
    cross_arch_low: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phaseA": {
                "centerMid": self.center_mid,
                "leftMid": self.left_mid,
                "rightMid": self.right_mid,
                "highAny": self.high_any,
                "lowAny": self.low_any,
            },
            "phaseB_left": {"leftMid": self.b_left_mid, "leftHigh": self.b_left_high, "leftLow": self.b_left_low},
            "phaseC_right": {"rightMid": self.c_right_mid, "rightHigh": self.c_right_high, "rightLow": self.c_right_low},
            "phaseD_crossArch": {"total": self.cross_arch_total, "high": self.cross_arch_high, "low": self.cross_arch_low},
        }


@dataclass(slots=True)
class CaptureManifestSummary:
    version: int
    stable_ids_n: int
    tracked_ids: List[int]
    distance_range_cm: Tuple[float, float]
    edge_margin_frac: float
    good_captures: int
    targets: CaptureTargets
    coverage_grid_counts: List[int]
    coverage_grid_filled: int
    per_tag_capture_count: Dict[int, int]
    phase_progress: PhaseProgress
    enough: bool
    reasons_if_not_enough: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "stableIdsN": self.stable_ids_n,
            "trackedIds": list(self.tracked_ids),
            "distanceRangeCm": list(self.distance_range_cm),
            "edgeMarginFrac": self.edge_margin_frac,
            "goodCaptures": self.good_captures,
            "targets": self.targets.to_dict(),
            "coverageGridCounts": {str(i): c for i, c in enumerate(self.coverage_grid_counts)},
            "coverageGridFilled": self.coverage_grid_filled,
            "perTagCaptureCount": {str(k): v for k, v in self.per_tag_capture_count.items()},
            "phaseProgress": self.phase_progress.to_dict(),
            "enough": self.enough,
            "reasonsIfNotEnough": list(self.reasons_if_not_enough),
        }


@dataclass(slots=True)
class CalibrationManifestSummary:
    version: int
    distance_target_cm: float
    distance_range_cm: Tuple[float, float]
    edge_margin_frac: float
    good_captures: int
    good_captures_target: int
    grid_filled_target: int
    coverage_grid_counts: List[int]
    coverage_grid_filled: int
    enough: bool
    reasons_if_not_enough: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "distanceTargetCm": self.distance_target_cm,
            "distanceRangeCm": list(self.distance_range_cm),
            "edgeMarginFrac": self.edge_margin_frac,
            "goodCaptures": self.good_captures,
            "targets": {"goodCaptures": self.good_captures_target, "gridFilled": self.grid_filled_target},
            "coverageGridCounts": {str(i): c for i, c in enumerate(self.coverage_grid_counts)},
            "coverageGridFilled": self.coverage_grid_filled,
            "enough": self.enough,
            "reasonsIfNotEnough": list(self.reasons_if_not_enough),
        }


@dataclass(slots=True)
class SidecarMarkerSummary:
    """Per-capture marker summary. Identity and phase fields are only set for capture sessions."""
    mode: str
    dictionary: str
    frame_size: Tuple[int, int]
    framing_ok: bool
    distance_cm: Optional[float]
    distance_ok: bool
    detections: List[SidecarDetection]
    required_ids: Optional[List[int]] = None
    tracked_ids: Optional[List[int]] = None
    missing_required_ids: Optional[List[int]] = None
    detected_ids: Optional[List[int]] = None
    all_required_visible: Optional[bool] = None
    phase: Optional[str] = None
    grid_cell: Optional[int] = None
    lateral_bin: Optional[str] = None
    height_bin: Optional[str] = None
    cross_arch: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "mode": self.mode,
            "dictionary": self.dictionary,
            "frameSize": list(self.frame_size),
        }
        if self.detected_ids is not None:
            out.update({
                "requiredIds": list(self.required_ids or []),
                "trackedIds": list(self.tracked_ids or []),
                "missingRequiredIds": list(self.missing_required_ids or []),
                "detectedIds": list(self.detected_ids),
                "allRequiredVisible": self.all_required_visible,
            })
        out.update({
            "framingOk": self.framing_ok,
            "distanceCm": self.distance_cm,
            "distanceOk": self.distance_ok,
        })
        if self.detected_ids is not None:
            out.update({
                "phase": self.phase,
                "gridCell": self.grid_cell,
                "lateralBin": self.lateral_bin,
                "heightBin": self.height_bin,
                "crossArch": self.cross_arch,
            })
        out["detections"] = [d.to_dict() for d in self.detections]
        return out
