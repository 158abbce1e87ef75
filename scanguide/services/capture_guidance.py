"""Deterministic phase guidance and sufficiency evaluation for capture sessions.

Session statistics change only in `on_capture_saved`, i.e. once per committed
capture that passes the good-capture gate; live guidance reads them without
mutating anything. The current phase is derived from the counters each time it
is needed, so it can only move forward while the counters grow.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.entities import (
    CaptureManifestSummary, CapturePhase, CaptureTargets, FrameClassification, FrozenMarkerSnapshot,
    FrozenQualitySnapshot, HeightBin, LateralBin, MarkerMode, MarkerSessionSummary, MarkerStatus,
    PhaseProgress, QualityResult, QualityStatus, SidecarMarkerSummary,
)
from ..utils.geometry import GRID_CELLS, STABLE_IDS_N_DEFAULT, choose_stable_ids, filled_grid_cells
from .guidance_common import classify_frame, distance_ok, sidecar_detections, snapshot_framing_ok

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1


@dataclass(frozen=True, slots=True)
class PhaseTargets:
    anchor_per_bin: int = 2       # center/left/right at mid height
    anchor_high_low: int = 2      # any lateral position, high and low
    sweep_mid: int = 5
    sweep_high_low: int = 3
    cross_arch_total: int = 6
    cross_arch_high_low: int = 2


@dataclass(slots=True)
class CaptureSessionStats:
    """All counters of one capture session. Counts only ever increase until reset."""
    grid_counts: List[int] = field(default_factory=lambda: [0] * GRID_CELLS)
    per_tag_capture_count: Dict[int, int] = field(default_factory=dict)  # insertion ordered
    good_captures: int = 0
    phases: PhaseProgress = field(default_factory=PhaseProgress)
    stable_ids_locked: Optional[Tuple[int, ...]] = None  # None until locked


@dataclass(frozen=True, slots=True)
class LiveGuidance:
    message: str
    phase: CapturePhase
    phase_progress: str
    coverage_text: str
    enough: bool
    block_reason: Optional[str] = None
    frame: Optional[FrameClassification] = None


@dataclass(frozen=True, slots=True)
class Sufficiency:
    enough: bool
    reasons: Tuple[str, ...]


class CaptureGuidanceTracker:
    """Multi-phase capture guidance: ANCHOR, LEFT_SWEEP, RIGHT_SWEEP, CROSS_ARCH, CLEANUP."""

    def __init__(self,
                 stable_ids_n: int = STABLE_IDS_N_DEFAULT,
                 distance_min_cm: float = 20.0,
                 distance_max_cm: float = 30.0,
                 edge_margin_frac: float = 0.10,
                 good_captures_target: int = 60,
                 per_tag_target: int = 10,
                 grid_target_filled: int = 7,
                 cross_arch_required: bool = True,
                 cross_arch_spread: float = 0.65,
                 phase_targets: Optional[PhaseTargets] = None,
                 dictionary: str = "APRILTAG_36h11"):
        self.stable_ids_n = stable_ids_n
        self.distance_min_cm = distance_min_cm
        self.distance_max_cm = distance_max_cm
        self.edge_margin_frac = edge_margin_frac
        self.good_captures_target = good_captures_target
        self.per_tag_target = per_tag_target
        self.grid_target_filled = grid_target_filled
        self.cross_arch_required = cross_arch_required
        self.cross_arch_spread = cross_arch_spread
        self.phase_targets = phase_targets or PhaseTargets()
        self.dictionary = dictionary

        self._lock = threading.Lock()
        self._stats = CaptureSessionStats()
        self._required_ids_active: Tuple[int, ...] = ()

    @classmethod
    def from_config(cls, config) -> "CaptureGuidanceTracker":
        tracker = cls(
            stable_ids_n=config.stable_ids_n,
            distance_min_cm=config.distance_min_cm,
            distance_max_cm=config.distance_max_cm,
            edge_margin_frac=config.edge_margin_frac,
            good_captures_target=config.good_captures_target,
            per_tag_target=config.per_tag_target,
            grid_target_filled=config.grid_target_filled,
            cross_arch_required=config.cross_arch_required,
            cross_arch_spread=config.cross_arch_spread,
            phase_targets=PhaseTargets(
                anchor_per_bin=config.phase_anchor_per_bin,
                anchor_high_low=config.phase_anchor_high_low,
                sweep_mid=config.phase_sweep_mid,
                sweep_high_low=config.phase_sweep_high_low,
                cross_arch_total=config.phase_cross_arch_total,
                cross_arch_high_low=config.phase_cross_arch_high_low,
            ),
            dictionary=config.marker_dictionary,
        )
        if config.required_ids:
            tracker.on_required_ids_changed(config.required_ids)
        return tracker

    # ---- session control ----

    def reset_for_new_session(self) -> None:
        with self._lock:
            self._stats = CaptureSessionStats()
            self._required_ids_active = ()
        logger.info("Capture guidance reset for new session")

    def on_required_ids_changed(self, new_required_ids: Sequence[int]) -> None:
        """Changing required ids makes earlier statistics incomparable, so they are discarded."""
        required = tuple(sorted({int(i) for i in new_required_ids}))
        with self._lock:
            self._required_ids_active = required
            self._stats = CaptureSessionStats()
        logger.info(f"Required ids changed to {list(required)}; capture statistics reset")

    # ---- mutation ----

    def on_capture_saved(self,
                         marker_snapshot: FrozenMarkerSnapshot,
                         quality_snapshot: FrozenQualitySnapshot,
                         session_summary: Optional[MarkerSessionSummary] = None) -> bool:
        """Record a committed capture. Returns False (and changes nothing) if it is not a good capture."""
        with self._lock:
            q_ok = quality_snapshot.status == QualityStatus.OK
            d_ok = self._distance_ok(quality_snapshot.distance_cm)
            f_ok = snapshot_framing_ok(marker_snapshot, self.edge_margin_frac)
            has_markers = len(marker_snapshot.detections) > 0

            if not (q_ok and d_ok and f_ok and has_markers):
                logger.debug(
                    f"Capture not counted: quality={quality_snapshot.status.name} distance_ok={d_ok} "
                    f"framing_ok={f_ok} markers={len(marker_snapshot.detections)}"
                )
                return False

            stats = self._stats
            stats.good_captures += 1

            required = tuple(marker_snapshot.required_ids)
            candidates = self._candidates(session_summary)
            self._lock_stable_ids(required, candidates)
            tracked = self._tracked_ids(required, candidates)

            frame = classify_frame(marker_snapshot.detections, marker_snapshot.frame_width,
                                   marker_snapshot.frame_height, self.cross_arch_spread)
            if frame is not None:
                stats.grid_counts[frame.grid_cell] += 1
                self._count_phase_bins(stats.phases, frame)

            present = set(marker_snapshot.detected_ids)
            for tag_id in tracked:
                if tag_id in present:
                    stats.per_tag_capture_count[tag_id] = stats.per_tag_capture_count.get(tag_id, 0) + 1
                else:
                    stats.per_tag_capture_count.setdefault(tag_id, 0)
            return True

    # ---- read-only views ----

    def build_live_guidance(self,
                            marker_status: MarkerStatus,
                            quality: Optional[QualityResult],
                            session_summary: Optional[MarkerSessionSummary] = None) -> LiveGuidance:
        """Operator-facing hint for the current frame. Never changes session statistics."""
        with self._lock:
            frozen = FrozenMarkerSnapshot.from_status(marker_status)
            distance = quality.distance_cm if quality is not None else None
            dist_ok = self._distance_ok(distance)
            frame_ok = snapshot_framing_ok(frozen, self.edge_margin_frac)

            required = tuple(marker_status.required_ids)
            tracked = self._tracked_ids(required, self._candidates(session_summary))

            phase = self._current_phase()
            sufficiency = self._sufficiency(tracked)
            filled = filled_grid_cells(self._stats.grid_counts)
            frame = classify_frame(frozen.detections, frozen.frame_width, frozen.frame_height,
                                   self.cross_arch_spread)

            if marker_status.detected_count == 0:
                msg = "No markers: move closer / improve lighting"
            elif required and marker_status.missing_required_ids:
                msg = "Missing: " + ",".join(str(i) for i in marker_status.missing_required_ids)
            elif not frame_ok:
                msg = "Reframe: keep tags away from edges"
            elif not dist_ok:
                target = f"(target {int(self.distance_min_cm)}–{int(self.distance_max_cm)} cm)"
                if distance is not None and distance < self.distance_min_cm:
                    msg = f"Move farther {target}"
                else:
                    msg = f"Move closer {target}"
            else:
                msg = self._phase_hint(phase, tracked, sufficiency)

            block_reason = None
            if marker_status.mode == MarkerMode.BLOCK:
                if required and marker_status.missing_required_ids:
                    block_reason = "Missing required"
                elif not frame_ok:
                    block_reason = "Framing"
                elif not dist_ok:
                    block_reason = "Distance"

            return LiveGuidance(
                message=msg,
                phase=phase,
                phase_progress=self._phase_progress_text(phase),
                coverage_text=f"Coverage: {filled}/{GRID_CELLS}",
                enough=sufficiency.enough,
                block_reason=block_reason,
                frame=frame,
            )

    def current_phase(self) -> CapturePhase:
        with self._lock:
            return self._current_phase()

    def is_phase_complete(self, phase: CapturePhase) -> bool:
        with self._lock:
            return self._is_phase_complete(phase)

    def evaluate_sufficiency(self, session_summary: Optional[MarkerSessionSummary] = None) -> Sufficiency:
        with self._lock:
            tracked = self._tracked_ids(self._required_ids_active, self._candidates(session_summary))
            return self._sufficiency(tracked)

    def enough(self, session_summary: Optional[MarkerSessionSummary] = None) -> bool:
        return self.evaluate_sufficiency(session_summary).enough

    @property
    def good_captures(self) -> int:
        with self._lock:
            return self._stats.good_captures

    def grid_counts(self) -> List[int]:
        with self._lock:
            return list(self._stats.grid_counts)

    def per_tag_counts(self) -> Dict[int, int]:
        with self._lock:
            return dict(self._stats.per_tag_capture_count)

    def stable_ids(self) -> Optional[Tuple[int, ...]]:
        with self._lock:
            return self._stats.stable_ids_locked

    def build_manifest_summary(self, session_summary: Optional[MarkerSessionSummary] = None) -> CaptureManifestSummary:
        with self._lock:
            stats = self._stats
            tracked = self._tracked_ids(self._required_ids_active, self._candidates(session_summary))
            sufficiency = self._sufficiency(tracked)
            return CaptureManifestSummary(
                version=MANIFEST_VERSION,
                stable_ids_n=self.stable_ids_n,
                tracked_ids=list(tracked),
                distance_range_cm=(self.distance_min_cm, self.distance_max_cm),
                edge_margin_frac=self.edge_margin_frac,
                good_captures=stats.good_captures,
                targets=CaptureTargets(
                    good_captures=self.good_captures_target,
                    per_tag=self.per_tag_target,
                    grid_filled=self.grid_target_filled,
                    cross_arch_required=self.cross_arch_required,
                ),
                coverage_grid_counts=list(stats.grid_counts),
                coverage_grid_filled=filled_grid_cells(stats.grid_counts),
                per_tag_capture_count={i: stats.per_tag_capture_count.get(i, 0) for i in sorted(tracked)},
                phase_progress=replace(stats.phases),
                enough=sufficiency.enough,
                reasons_if_not_enough=list(sufficiency.reasons),
            )

    def build_sidecar_marker_summary(self,
                                     marker_snapshot: FrozenMarkerSnapshot,
                                     quality_snapshot: FrozenQualitySnapshot,
                                     session_summary: Optional[MarkerSessionSummary] = None) -> SidecarMarkerSummary:
        with self._lock:
            required = tuple(marker_snapshot.required_ids)
            tracked = self._tracked_ids(required, self._candidates(session_summary))
            frame = classify_frame(marker_snapshot.detections, marker_snapshot.frame_width,
                                   marker_snapshot.frame_height, self.cross_arch_spread)
            return SidecarMarkerSummary(
                mode=marker_snapshot.mode.name,
                dictionary=self.dictionary,
                frame_size=(marker_snapshot.frame_width, marker_snapshot.frame_height),
                required_ids=list(required),
                tracked_ids=list(tracked),
                missing_required_ids=list(marker_snapshot.missing_required_ids),
                detected_ids=sorted(marker_snapshot.detected_ids),
                all_required_visible=marker_snapshot.all_required_visible,
                framing_ok=snapshot_framing_ok(marker_snapshot, self.edge_margin_frac),
                distance_cm=quality_snapshot.distance_cm,
                distance_ok=self._distance_ok(quality_snapshot.distance_cm),
                phase=self._current_phase().name,
                grid_cell=frame.grid_cell if frame else None,
                lateral_bin=frame.lateral_bin.name if frame else None,
                height_bin=frame.height_bin.name if frame else None,
                cross_arch=frame.cross_arch if frame else False,
                detections=sidecar_detections(marker_snapshot),
            )

    # ---- internals (caller holds self._lock) ----

    def _distance_ok(self, distance_cm: Optional[float]) -> bool:
        return distance_ok(distance_cm, self.distance_min_cm, self.distance_max_cm)

    def _candidates(self, session_summary: Optional[MarkerSessionSummary]) -> List[int]:
        if session_summary is None:
            return []
        return choose_stable_ids(session_summary.per_tag_count, self.stable_ids_n)

    def _lock_stable_ids(self, required: Tuple[int, ...], candidates: List[int]) -> None:
        stats = self._stats
        if required:
            stats.stable_ids_locked = required
            return
        if stats.stable_ids_locked is not None:
            return
        if len(candidates) >= self.stable_ids_n:
            stats.stable_ids_locked = tuple(candidates[:self.stable_ids_n])
            logger.info(f"Stable marker ids locked: {list(stats.stable_ids_locked)}")

    def _tracked_ids(self, required: Sequence[int], candidates: List[int]) -> Tuple[int, ...]:
        if required:
            return tuple(required)
        if self._stats.stable_ids_locked:
            return self._stats.stable_ids_locked
        return tuple(candidates)

    @staticmethod
    def _count_phase_bins(p: PhaseProgress, frame: FrameClassification) -> None:
        lat, ht = frame.lateral_bin, frame.height_bin
        if ht == HeightBin.MID:
            if lat == LateralBin.CENTER:
                p.center_mid += 1
            elif lat == LateralBin.LEFT:
                p.left_mid += 1
                p.b_left_mid += 1
            else:
                p.right_mid += 1
                p.c_right_mid += 1
        elif ht == HeightBin.HIGH:
            p.high_any += 1
            if lat == LateralBin.LEFT:
                p.b_left_high += 1
            elif lat == LateralBin.RIGHT:
                p.c_right_high += 1
        else:
            p.low_any += 1
            if lat == LateralBin.LEFT:
                p.b_left_low += 1
            elif lat == LateralBin.RIGHT:
                p.c_right_low += 1

        if frame.cross_arch:
            p.cross_arch_total += 1
            if ht == HeightBin.HIGH:
                p.cross_arch_high += 1
            elif ht == HeightBin.LOW:
                p.cross_arch_low += 1

    def _is_phase_complete(self, phase: CapturePhase) -> bool:
        p, t = self._stats.phases, self.phase_targets
        if phase == CapturePhase.ANCHOR:
            return (p.center_mid >= t.anchor_per_bin and p.left_mid >= t.anchor_per_bin
                    and p.right_mid >= t.anchor_per_bin
                    and p.high_any >= t.anchor_high_low and p.low_any >= t.anchor_high_low)
        if phase == CapturePhase.LEFT_SWEEP:
            return (p.b_left_mid >= t.sweep_mid and p.b_left_high >= t.sweep_high_low
                    and p.b_left_low >= t.sweep_high_low)
        if phase == CapturePhase.RIGHT_SWEEP:
            return (p.c_right_mid >= t.sweep_mid and p.c_right_high >= t.sweep_high_low
                    and p.c_right_low >= t.sweep_high_low)
        if phase == CapturePhase.CROSS_ARCH:
            return (p.cross_arch_total >= t.cross_arch_total and p.cross_arch_high >= t.cross_arch_high_low
                    and p.cross_arch_low >= t.cross_arch_high_low)
        return False  # CLEANUP never completes

    def _current_phase(self) -> CapturePhase:
        for phase in (CapturePhase.ANCHOR, CapturePhase.LEFT_SWEEP, CapturePhase.RIGHT_SWEEP, CapturePhase.CROSS_ARCH):
            if not self._is_phase_complete(phase):
                return phase
        return CapturePhase.CLEANUP

    def _phase_progress_text(self, phase: CapturePhase) -> str:
        p, t = self._stats.phases, self.phase_targets
        if phase == CapturePhase.ANCHOR:
            done = (min(p.center_mid, t.anchor_per_bin) + min(p.left_mid, t.anchor_per_bin)
                    + min(p.right_mid, t.anchor_per_bin) + min(p.high_any, t.anchor_high_low)
                    + min(p.low_any, t.anchor_high_low))
            return f"Phase A (Anchor): {done}/{3 * t.anchor_per_bin + 2 * t.anchor_high_low}"
        if phase == CapturePhase.LEFT_SWEEP:
            done = min(p.b_left_mid, t.sweep_mid) + min(p.b_left_high, t.sweep_high_low) + min(p.b_left_low, t.sweep_high_low)
            return f"Phase B (Left sweep): {done}/{t.sweep_mid + 2 * t.sweep_high_low}"
        if phase == CapturePhase.RIGHT_SWEEP:
            done = min(p.c_right_mid, t.sweep_mid) + min(p.c_right_high, t.sweep_high_low) + min(p.c_right_low, t.sweep_high_low)
            return f"Phase C (Right sweep): {done}/{t.sweep_mid + 2 * t.sweep_high_low}"
        if phase == CapturePhase.CROSS_ARCH:
            return f"Phase D (Cross-arch): {p.cross_arch_total}/{t.cross_arch_total} (H:{p.cross_arch_high} L:{p.cross_arch_low})"
        return "Phase E (Cleanup)"

    def _phase_hint(self, phase: CapturePhase, tracked: Sequence[int], sufficiency: Sufficiency) -> str:
        if phase == CapturePhase.ANCHOR:
            return "Next: anchor ring (front/left/right + high/low)"
        if phase == CapturePhase.LEFT_SWEEP:
            return "Next: sweep LEFT posterior (upper+lower rail)"
        if phase == CapturePhase.RIGHT_SWEEP:
            return "Next: sweep RIGHT posterior (upper+lower rail)"
        if phase == CapturePhase.CROSS_ARCH:
            return "Next: cross-arch obliques (high+low)"
        weak = [i for i in tracked if self._stats.per_tag_capture_count.get(i, 0) < self.per_tag_target]
        if weak:
            return f"Cleanup: weak tags {','.join(str(i) for i in weak)} (need {self.per_tag_target} each)"
        if not sufficiency.enough:
            return sufficiency.reasons[0] if sufficiency.reasons else "Keep going"
        return "Enough ✅"

    def _sufficiency(self, tracked: Sequence[int]) -> Sufficiency:
        stats = self._stats
        reasons: List[str] = []
        if stats.good_captures < self.good_captures_target:
            reasons.append(f"Need more good shots: {stats.good_captures}/{self.good_captures_target}")
        filled = filled_grid_cells(stats.grid_counts)
        if filled < self.grid_target_filled:
            reasons.append(f"Coverage: {filled}/{self.grid_target_filled}")
        if self.cross_arch_required and not self._is_phase_complete(CapturePhase.CROSS_ARCH):
            reasons.append("Cross-arch obliques missing")
        for tag_id in tracked:
            count = stats.per_tag_capture_count.get(tag_id, 0)
            if count < self.per_tag_target:
                reasons.append(f"Tag {tag_id}: {count}/{self.per_tag_target}")
        return Sufficiency(enough=not reasons, reasons=tuple(reasons))
