"""Single-phase guidance for calibration-board sessions."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..core.entities import (
    CalibrationManifestSummary, FrozenMarkerSnapshot, FrozenQualitySnapshot, MarkerStatus,
    QualityResult, QualityStatus, SidecarMarkerSummary,
)
from ..utils.geometry import GRID_CELLS, cell_name, filled_grid_cells, first_empty_grid_cell, grid_index_3x3, mean_center_norm
from .guidance_common import distance_ok, sidecar_detections, snapshot_framing_ok

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1


@dataclass(frozen=True, slots=True)
class CalibrationLiveGuidance:
    message: str
    progress_text: str
    coverage_text: str
    enough: bool


class CalibrationGuidanceTracker:
    """Tracks grid occupancy and good-capture count; no phases and no identity tracking."""

    def __init__(self,
                 distance_target_cm: float = 25.0,
                 distance_min_cm: float = 20.0,
                 distance_max_cm: float = 30.0,
                 edge_margin_frac: float = 0.10,
                 good_captures_target: int = 25,
                 grid_target_filled: int = 8,
                 dictionary: str = "APRILTAG_36h11"):
        self.distance_target_cm = distance_target_cm
        self.distance_min_cm = distance_min_cm
        self.distance_max_cm = distance_max_cm
        self.edge_margin_frac = edge_margin_frac
        self.good_captures_target = good_captures_target
        self.grid_target_filled = grid_target_filled
        self.dictionary = dictionary

        self._lock = threading.Lock()
        self._grid_counts: List[int] = [0] * GRID_CELLS
        self._good_captures = 0

    @classmethod
    def from_config(cls, config) -> "CalibrationGuidanceTracker":
        return cls(
            distance_target_cm=config.calibration_distance_target_cm,
            distance_min_cm=config.distance_min_cm,
            distance_max_cm=config.distance_max_cm,
            edge_margin_frac=config.edge_margin_frac,
            good_captures_target=config.calibration_good_captures_target,
            grid_target_filled=config.calibration_grid_target_filled,
            dictionary=config.marker_dictionary,
        )

    def reset_for_new_session(self) -> None:
        with self._lock:
            self._grid_counts = [0] * GRID_CELLS
            self._good_captures = 0
        logger.info("Calibration guidance reset for new session")

    def on_capture_saved(self, marker_snapshot: FrozenMarkerSnapshot, quality_snapshot: FrozenQualitySnapshot) -> bool:
        """Count a committed capture if it passes the gate. Returns whether it was counted."""
        with self._lock:
            if not self._is_good(marker_snapshot, quality_snapshot.status, quality_snapshot.distance_cm):
                return False
            self._good_captures += 1
            center = mean_center_norm(marker_snapshot.detections, marker_snapshot.frame_width,
                                      marker_snapshot.frame_height)
            if center is not None:
                self._grid_counts[grid_index_3x3(*center)] += 1
            return True

    def build_live_guidance(self, marker_status: MarkerStatus, quality: Optional[QualityResult]) -> CalibrationLiveGuidance:
        with self._lock:
            frozen = FrozenMarkerSnapshot.from_status(marker_status)
            distance = quality.distance_cm if quality is not None else None
            dist_ok = self._distance_ok(distance)
            frame_ok = snapshot_framing_ok(frozen, self.edge_margin_frac)
            filled = filled_grid_cells(self._grid_counts)
            enough, _ = self._sufficiency()

            if marker_status.detected_count == 0:
                msg = "No markers: bring board/flags into view"
            elif not frame_ok:
                msg = "Reframe: keep board away from edges"
            elif not dist_ok:
                if distance is not None and distance < self.distance_min_cm:
                    msg = f"Move farther (target ~{self.distance_target_cm} cm)"
                else:
                    msg = f"Move closer (target ~{self.distance_target_cm} cm)"
            elif filled < self.grid_target_filled:
                empty = first_empty_grid_cell(self._grid_counts)
                msg = f"Move board to {cell_name(empty)}" if empty is not None else "Move board around the frame"
            else:
                msg = "Calibration enough ✅" if enough else "Keep going"

            return CalibrationLiveGuidance(
                message=msg,
                progress_text=f"Calib shots: {self._good_captures}/{self.good_captures_target}",
                coverage_text=f"Coverage: {filled}/{GRID_CELLS}",
                enough=enough,
            )

    def enough(self) -> bool:
        with self._lock:
            return self._sufficiency()[0]

    def reasons_if_not_enough(self) -> List[str]:
        with self._lock:
            return list(self._sufficiency()[1])

    @property
    def good_captures(self) -> int:
        with self._lock:
            return self._good_captures

    def grid_counts(self) -> List[int]:
        with self._lock:
            return list(self._grid_counts)

    def build_manifest_summary(self) -> CalibrationManifestSummary:
        with self._lock:
            enough, reasons = self._sufficiency()
            return CalibrationManifestSummary(
                version=MANIFEST_VERSION,
                distance_target_cm=self.distance_target_cm,
                distance_range_cm=(self.distance_min_cm, self.distance_max_cm),
                edge_margin_frac=self.edge_margin_frac,
                good_captures=self._good_captures,
                good_captures_target=self.good_captures_target,
                grid_filled_target=self.grid_target_filled,
                coverage_grid_counts=list(self._grid_counts),
                coverage_grid_filled=filled_grid_cells(self._grid_counts),
                enough=enough,
                reasons_if_not_enough=list(reasons),
            )

    def build_sidecar_marker_summary(self, marker_snapshot: FrozenMarkerSnapshot,
                                     quality_snapshot: FrozenQualitySnapshot) -> SidecarMarkerSummary:
        with self._lock:
            return SidecarMarkerSummary(
                mode=marker_snapshot.mode.name,
                dictionary=self.dictionary,
                frame_size=(marker_snapshot.frame_width, marker_snapshot.frame_height),
                framing_ok=snapshot_framing_ok(marker_snapshot, self.edge_margin_frac),
                distance_cm=quality_snapshot.distance_cm,
                distance_ok=self._distance_ok(quality_snapshot.distance_cm),
                detections=sidecar_detections(marker_snapshot),
            )

    def _distance_ok(self, distance_cm: Optional[float]) -> bool:
        return distance_ok(distance_cm, self.distance_min_cm, self.distance_max_cm)

    def _is_good(self, snapshot: FrozenMarkerSnapshot, status: QualityStatus, distance_cm: Optional[float]) -> bool:
        return (status == QualityStatus.OK
                and len(snapshot.detections) > 0
                and self._distance_ok(distance_cm)
                and snapshot_framing_ok(snapshot, self.edge_margin_frac))

    def _sufficiency(self) -> Tuple[bool, Tuple[str, ...]]:
        reasons = []
        if self._good_captures < self.good_captures_target:
            reasons.append(f"Need more good shots: {self._good_captures}/{self.good_captures_target}")
        filled = filled_grid_cells(self._grid_counts)
        if filled < self.grid_target_filled:
            reasons.append(f"Coverage: {filled}/{self.grid_target_filled}")
        return not reasons, tuple(reasons)
