"""Per-frame image quality scoring: blur, exposure clipping and specular highlights."""
from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional, Tuple

import cv2
import numpy as np

from ..core.entities import QualityResult, QualityStatus, RawFrame
from ..core.exceptions import FrameFormatError, ValidationError
from ..utils.image_utils import center_roi, crop_image

logger = logging.getLogger(__name__)

FocusDistanceProvider = Callable[[], Optional[float]]


def laplacian_variance(roi: np.ndarray, step: int = 2) -> float:
    """Population variance of the 4-neighbour Laplacian, sampled every `step` pixels of the ROI interior."""
    h, w = roi.shape
    if h < 3 or w < 3:
        return 0.0
    img = roi.astype(np.int32)
    c = img[1:h - 1:step, 1:w - 1:step]
    up = img[0:h - 2:step, 1:w - 1:step]
    dn = img[2:h:step, 1:w - 1:step]
    lt = img[1:h - 1:step, 0:w - 2:step]
    rt = img[1:h - 1:step, 2:w:step]
    lap = (up + dn + lt + rt - 4 * c).astype(np.float64)
    if lap.size == 0:
        return 0.0
    return float(lap.var())


def exposure_fractions(roi: np.ndarray, clip_high: int, clip_low: int, step: int = 2) -> Tuple[float, float, np.ndarray]:
    """Fractions of sampled pixels at/above clip_high and at/below clip_low, plus the over mask."""
    sampled = roi[::step, ::step]
    if sampled.size == 0:
        return 0.0, 0.0, np.zeros((0, 0), dtype=bool)
    over = sampled >= clip_high
    under = sampled <= clip_low
    total = float(sampled.size)
    return float(over.sum()) / total, float(under.sum()) / total, over


def specular_clusters(over_mask: np.ndarray) -> Tuple[int, int]:
    """8-connected clusters of clipped pixels: (cluster count, largest cluster size)."""
    if over_mask.size == 0 or not over_mask.any():
        return 0, 0
    n_labels, _, stats, _ = cv2.connectedComponentsWithStats(over_mask.astype(np.uint8), connectivity=8)
    if n_labels <= 1:
        return 0, 0
    areas = stats[1:, cv2.CC_STAT_AREA]  # label 0 is background
    return int(n_labels - 1), int(areas.max())


class QualityAnalyzer:
    """Scores luma frames at a throttled rate and publishes the latest QualityResult.

    Frames that arrive sooner than 1/target_fps after the last analyzed frame are
    dropped, not queued.
    """

    def __init__(self,
                 focus_distance_provider: Optional[FocusDistanceProvider] = None,
                 target_fps: int = 12,
                 roi_frac: float = 0.40,
                 roi_min_px: int = 64,
                 blur_threshold: float = 150.0,
                 clip_high: int = 245,
                 clip_low: int = 10,
                 over_threshold: float = 0.02,
                 under_threshold: float = 0.02,
                 specular_max_clusters: int = 5,
                 specular_max_cluster_px: int = 100,
                 sample_step: int = 2):
        self.focus_distance_provider = focus_distance_provider
        self.target_fps = max(1, int(target_fps))
        self.roi_frac = roi_frac
        self.roi_min_px = roi_min_px
        self.blur_threshold = blur_threshold
        self.clip_high = clip_high
        self.clip_low = clip_low
        self.over_threshold = over_threshold
        self.under_threshold = under_threshold
        self.specular_max_clusters = specular_max_clusters
        self.specular_max_cluster_px = specular_max_cluster_px
        self.sample_step = sample_step

        self._interval_ns = 1_000_000_000 // self.target_fps
        self._last_analyze_ns: Optional[int] = None
        self._format_warned = False
        self._latest = QualityResult.unknown()
        self._state_lock = threading.Lock()
        self._listeners: List[Callable[[QualityResult], None]] = []

    @classmethod
    def from_config(cls, config, focus_distance_provider: Optional[FocusDistanceProvider] = None) -> "QualityAnalyzer":
        return cls(
            focus_distance_provider=focus_distance_provider,
            target_fps=config.quality_target_fps,
            roi_frac=config.quality_roi_frac,
            roi_min_px=config.quality_roi_min_px,
            blur_threshold=config.blur_threshold,
            clip_high=config.clip_high,
            clip_low=config.clip_low,
            over_threshold=config.over_threshold,
            under_threshold=config.under_threshold,
            specular_max_clusters=config.specular_max_clusters,
            specular_max_cluster_px=config.specular_max_cluster_px,
        )

    def add_listener(self, callback: Callable[[QualityResult], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[QualityResult], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def latest(self) -> QualityResult:
        with self._state_lock:
            return self._latest

    def reset(self) -> None:
        with self._state_lock:
            self._last_analyze_ns = None
            self._format_warned = False
            self._latest = QualityResult.unknown()

    def analyze(self, frame: RawFrame) -> Optional[QualityResult]:
        """Analyze one frame; returns None when the frame is throttled or unreadable."""
        now_ns = frame.timestamp_ns
        # throttle state is also written by reset() on the control thread
        with self._state_lock:
            if self._last_analyze_ns is not None and (now_ns - self._last_analyze_ns) < self._interval_ns:
                return None
            self._last_analyze_ns = now_ns

        try:
            luma = frame.luma()
        except (FrameFormatError, ValidationError) as e:
            with self._state_lock:
                warn, self._format_warned = not self._format_warned, True
            if warn:
                logger.warning(f"Skipping frames with unsupported layout: {e}")
            return None

        try:
            result = self._score(luma, now_ns)
        except Exception as e:
            logger.error(f"Quality analysis failed: {e}", exc_info=True)
            return None

        with self._state_lock:
            self._latest = result

        for callback in list(self._listeners):
            try:
                callback(result)
            except Exception as e:
                logger.error(f"Error in quality listener: {e}")

        return result

    def _score(self, luma: np.ndarray, timestamp_ns: int) -> QualityResult:
        h, w = luma.shape
        roi = crop_image(luma, center_roi(w, h, self.roi_frac, self.roi_min_px))

        variance = laplacian_variance(roi, self.sample_step)
        over_frac, under_frac, over_mask = exposure_fractions(roi, self.clip_high, self.clip_low, self.sample_step)
        clusters, largest = specular_clusters(over_mask) if over_frac > 0 else (0, 0)

        return QualityResult(
            status=self.classify(variance, over_frac, under_frac, clusters, largest),
            blur_score=variance,
            over_fraction=over_frac,
            under_fraction=under_frac,
            specular_clusters=clusters,
            largest_specular_cluster=largest,
            distance_cm=self.estimate_distance_cm(),
            timestamp_ns=timestamp_ns,
        )

    def classify(self, blur_score: float, over_fraction: float, under_fraction: float,
                 clusters: int, largest_cluster: int) -> QualityStatus:
        """Priority order: blur, over-exposure (specular or blown out), under-exposure, ok."""
        if blur_score < self.blur_threshold:
            return QualityStatus.BLUR
        if over_fraction > self.over_threshold:
            if clusters < self.specular_max_clusters and largest_cluster < self.specular_max_cluster_px:
                return QualityStatus.SPECULAR
            return QualityStatus.OVER
        if under_fraction > self.under_threshold:
            return QualityStatus.UNDER
        return QualityStatus.OK

    def estimate_distance_cm(self) -> Optional[float]:
        """Focus distance is reported in diopters (1/m); distance_cm = 100 / diopters."""
        if self.focus_distance_provider is None:
            return None
        try:
            diopters = self.focus_distance_provider()
        except Exception as e:
            logger.debug(f"Focus distance unavailable: {e}")
            return None
        if diopters is None or diopters <= 0:
            return None
        return 100.0 / float(diopters)
