"""Fiducial marker detection adapter.

Runs a detection backend on a downsampled center ROI of each luma frame, maps
detections back to full-frame pixels, checks framing against the edge margin and
keeps session-wide visibility counters. The latest MarkerStatus is published as
a whole immutable object so UI readers never see a partial update.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..backends.base_backend import BaseBackend
from ..core.entities import MarkerMode, MarkerSessionSummary, MarkerStatus, RawFrame, TagDetection
from ..core.exceptions import ConfigError, DetectionError, FrameFormatError, ValidationError
from ..utils.geometry import clamp01, framing_ok
from ..utils.image_utils import Roi, center_roi, downsample_into, polygon_area

logger = logging.getLogger(__name__)

UNSUPPORTED_FORMAT_TEXT = "Unsupported format"


def build_marker_texts(total: int, required: Sequence[int], missing: Sequence[int],
                       framing: bool) -> Tuple[str, str]:
    """Guidance and display strings for a frame; depends only on its four arguments."""
    if total == 0:
        guidance = "No markers: move closer / improve lighting"
    elif missing:
        guidance = "Missing: " + ",".join(str(i) for i in missing)
    elif not framing:
        guidance = "Reframe: keep tags away from edges"
    else:
        guidance = "Markers OK"

    display = f"Markers detected: {total}"
    if required:
        display += f" | required {len(required) - len(missing)}/{len(required)}"
    if total > 0 and not framing:
        display += " | edge"
    return guidance, display


def normalize_ids(ids: Iterable[int]) -> Tuple[int, ...]:
    """De-duplicate and sort identity lists."""
    return tuple(sorted({int(i) for i in ids}))


def remap_detection(det: TagDetection, roi: Roi, step: int) -> TagDetection:
    """Map a detection from reduced ROI coordinates to full-frame pixels."""
    rx, ry, rw, rh = roi
    corners = None
    if det.corners:
        corners = tuple((rx + x * step, ry + y * step) for x, y in det.corners)

    quality = det.quality
    roi_area = float(rw * rh)
    if corners and roi_area > 0:
        quality = clamp01(polygon_area(corners) / roi_area)

    return TagDetection(
        id=det.id,
        center_x=rx + det.center_x * step,
        center_y=ry + det.center_y * step,
        corners=corners,
        quality=quality,
    )


class MarkerDetector(ABC):
    """Capability surface shared by the disabled and the active detector."""

    @abstractmethod
    def process(self, frame: RawFrame) -> None:
        pass

    @abstractmethod
    def latest(self) -> MarkerStatus:
        pass

    @abstractmethod
    def set_mode(self, mode: MarkerMode) -> None:
        pass

    @abstractmethod
    def set_required_ids(self, ids: Iterable[int]) -> None:
        pass

    @abstractmethod
    def reset(self) -> None:
        pass

    @abstractmethod
    def session_summary(self) -> MarkerSessionSummary:
        pass

    def dictionary_name(self) -> str:
        return "N/A"


class DisabledMarkerDetector(MarkerDetector):
    """No-op detector used when fiducial detection is unavailable."""

    def __init__(self):
        self._mode = MarkerMode.OFF

    def process(self, frame: RawFrame) -> None:
        pass

    def latest(self) -> MarkerStatus:
        return MarkerStatus.idle(self._mode)

    def set_mode(self, mode: MarkerMode) -> None:
        self._mode = mode

    def set_required_ids(self, ids: Iterable[int]) -> None:
        pass

    def reset(self) -> None:
        pass

    def session_summary(self) -> MarkerSessionSummary:
        return MarkerSessionSummary()


class FiducialMarkerDetector(MarkerDetector):
    """Active detector backed by a fiducial BaseBackend."""

    def __init__(self,
                 backend: BaseBackend,
                 mode: MarkerMode = MarkerMode.WARN,
                 roi_frac: float = 0.60,
                 roi_min_px: int = 160,
                 downsample_step: int = 2,
                 edge_margin_frac: float = 0.10,
                 required_ids: Iterable[int] = ()):
        self.backend = backend
        self.roi_frac = roi_frac
        self.roi_min_px = roi_min_px
        self.downsample_step = max(1, int(downsample_step))
        self.edge_margin_frac = edge_margin_frac

        self._lock = threading.Lock()
        self._mode = mode
        self._required: Tuple[int, ...] = normalize_ids(required_ids)
        self._generation = 0
        self._frames_processed = 0
        self._frames_all_required = 0
        self._per_tag_count: Dict[int, int] = {}
        self._latest = MarkerStatus.idle(mode)
        self._work = None  # downsampled working buffer, owned by the processing thread
        self._format_warned = False

    def dictionary_name(self) -> str:
        return self.backend.dictionary_name()

    # ---- control surface (any thread) ----

    def set_mode(self, mode: MarkerMode) -> None:
        with self._lock:
            self._mode = mode
        logger.info(f"Marker mode set to {mode.name}")

    def set_required_ids(self, ids: Iterable[int]) -> None:
        required = normalize_ids(ids)
        with self._lock:
            self._required = required
        logger.info(f"Required marker ids: {list(required)}")

    def reset(self) -> None:
        with self._lock:
            self._generation += 1
            self._frames_processed = 0
            self._frames_all_required = 0
            self._per_tag_count = {}
            self._latest = MarkerStatus.idle(self._mode)
            self._format_warned = False
        logger.info("Marker detector session counters reset")

    def latest(self) -> MarkerStatus:
        with self._lock:
            return self._latest

    def session_summary(self) -> MarkerSessionSummary:
        with self._lock:
            return MarkerSessionSummary(
                frames_processed=self._frames_processed,
                frames_all_required_visible=self._frames_all_required,
                per_tag_count=dict(self._per_tag_count),
            )

    # ---- processing (single worker thread) ----

    def process(self, frame: RawFrame) -> None:
        with self._lock:
            mode = self._mode
            required = self._required
            generation = self._generation

        if mode == MarkerMode.OFF:
            self._publish(generation, MarkerStatus(
                timestamp_ns=frame.timestamp_ns, mode=mode,
                frame_width=frame.width, frame_height=frame.height,
                required_ids=required, display_text="Markers: OFF",
            ))
            return

        try:
            luma = frame.luma()
        except (FrameFormatError, ValidationError) as e:
            if not self._format_warned:
                logger.warning(f"Marker detection skipped: {e}")
                self._format_warned = True
            self._publish(generation, MarkerStatus(
                timestamp_ns=frame.timestamp_ns, mode=mode,
                frame_width=frame.width, frame_height=frame.height,
                required_ids=required, missing_required_ids=required,
                all_required_visible=not required,
                guidance_text=UNSUPPORTED_FORMAT_TEXT,
                display_text=f"Markers: {UNSUPPORTED_FORMAT_TEXT.lower()}",
            ))
            return

        detections = self._detect(luma)
        status = self._build_status(frame, mode, required, detections)

        with self._lock:
            if generation != self._generation:
                return  # reset while this frame was in flight
            self._frames_processed += 1
            if required and status.all_required_visible:
                self._frames_all_required += 1
            for tag_id in dict.fromkeys(status.detected_ids):
                self._per_tag_count[tag_id] = self._per_tag_count.get(tag_id, 0) + 1
            self._latest = status

    def _detect(self, luma) -> List[TagDetection]:
        h, w = luma.shape
        roi = center_roi(w, h, self.roi_frac, self.roi_min_px)
        self._work = downsample_into(luma, roi, self.downsample_step, self._work)
        try:
            raw = self.backend.detect(self._work)
        except DetectionError as e:
            logger.warning(f"Marker detection failed, treating as no detections: {e}")
            return []
        except Exception as e:
            logger.error(f"Unexpected marker backend error: {e}", exc_info=True)
            return []
        return [remap_detection(d, roi, self.downsample_step) for d in raw]

    def _build_status(self, frame: RawFrame, mode: MarkerMode, required: Tuple[int, ...],
                      detections: List[TagDetection]) -> MarkerStatus:
        present = {d.id for d in detections}
        missing = tuple(i for i in required if i not in present)
        frame_ok = framing_ok(detections, frame.width, frame.height, self.edge_margin_frac)
        guidance, display = build_marker_texts(len(detections), required, missing, frame_ok)
        return MarkerStatus(
            timestamp_ns=frame.timestamp_ns,
            mode=mode,
            frame_width=frame.width,
            frame_height=frame.height,
            detections=tuple(detections),
            required_ids=required,
            missing_required_ids=missing,
            all_required_visible=not missing,
            framing_ok=frame_ok,
            guidance_text=guidance,
            display_text=display,
        )

    def _publish(self, generation: int, status: MarkerStatus) -> None:
        with self._lock:
            if generation == self._generation:
                self._latest = status


def create_marker_detector(config, backend: Optional[BaseBackend] = None) -> MarkerDetector:
    """Build the active detector, or the disabled one when no backend can be created."""
    try:
        mode = MarkerMode[config.marker_mode]
    except KeyError as e:
        raise ConfigError(f"Unknown marker mode: {config.marker_mode!r}") from e

    if backend is None:
        try:
            from ..backends.aruco_backend import ArucoBackend
            backend = ArucoBackend({"marker_dictionary": config.marker_dictionary})
        except DetectionError as e:
            logger.warning(f"Fiducial detection unavailable, markers disabled: {e}")
            return DisabledMarkerDetector()

    return FiducialMarkerDetector(
        backend,
        mode=mode,
        roi_frac=config.marker_roi_frac,
        roi_min_px=config.marker_roi_min_px,
        downsample_step=config.marker_downsample_step,
        edge_margin_frac=config.edge_margin_frac,
        required_ids=config.required_ids,
    )
