"""Unit tests for the multi-phase capture guidance tracker.

Tests cover the good-capture gate, phase progression, stable identity
locking, sufficiency reasons, live guidance and the summary builders.
"""
import json
import threading

import pytest

from conftest import FRAME_W, FRAME_H, make_quality, make_quality_result, make_snapshot, make_status, make_tag
from scanguide.core.entities import CapturePhase, MarkerMode, MarkerSessionSummary, QualityStatus
from scanguide.services.capture_guidance import CaptureGuidanceTracker
from scanguide.utils.serialization import dumps_deterministic


def tag_at(x_norm, y_norm, tag_id=1):
    return make_tag(tag_id, x_norm * FRAME_W, y_norm * FRAME_H)


def cross_arch_tags(y_norm):
    return [tag_at(0.15, y_norm, tag_id=1), tag_at(0.85, y_norm, tag_id=2)]


@pytest.fixture
def tracker():
    return CaptureGuidanceTracker()


def capture(tracker, tags, times=1, required=(), quality=None, summary=None):
    results = []
    for _ in range(times):
        results.append(tracker.on_capture_saved(make_snapshot(tags, required), quality or make_quality(), summary))
    return results


class TestGoodCaptureGate:
    """A capture that fails any gate condition must not change any counter."""

    @pytest.mark.parametrize("quality", [
        make_quality(QualityStatus.BLUR),
        make_quality(QualityStatus.SPECULAR),
        make_quality(QualityStatus.UNKNOWN),
        make_quality(distance_cm=35.0),
        make_quality(distance_cm=19.9),
    ])
    def test_bad_quality_or_distance(self, tracker, quality):
        assert capture(tracker, [tag_at(0.5, 0.5)], quality=quality) == [False]
        self._assert_untouched(tracker)

    def test_bad_framing(self, tracker):
        assert capture(tracker, [tag_at(0.05, 0.5)]) == [False]
        self._assert_untouched(tracker)

    def test_no_detections(self, tracker):
        assert capture(tracker, []) == [False]
        self._assert_untouched(tracker)

    def test_unknown_distance_is_accepted(self, tracker):
        assert capture(tracker, [tag_at(0.5, 0.5)], quality=make_quality(distance_cm=None)) == [True]
        assert tracker.good_captures == 1

    def test_distance_range_is_inclusive(self, tracker):
        assert capture(tracker, [tag_at(0.5, 0.5)], quality=make_quality(distance_cm=20.0)) == [True]
        assert capture(tracker, [tag_at(0.5, 0.5)], quality=make_quality(distance_cm=30.0)) == [True]

    def test_good_capture_updates_grid(self, tracker):
        capture(tracker, [tag_at(0.2, 0.2)])
        capture(tracker, [tag_at(0.5, 0.5)], times=2)

        assert tracker.good_captures == 3
        assert tracker.grid_counts() == [1, 0, 0, 0, 2, 0, 0, 0, 0]

    @staticmethod
    def _assert_untouched(tracker):
        assert tracker.good_captures == 0
        assert tracker.grid_counts() == [0] * 9
        assert tracker.per_tag_counts() == {}
        assert tracker.current_phase() == CapturePhase.ANCHOR


class TestPhases:
    """Test suite for phase completion and ordering."""

    def run_session(self, tracker):
        """Drive a tracker through all phases, recording the phase after every capture."""
        phases = []
        plan = [
            # anchor ring
            ([tag_at(0.5, 0.5)], 2), ([tag_at(0.2, 0.5)], 2), ([tag_at(0.8, 0.5)], 2),
            ([tag_at(0.5, 0.8)], 2), ([tag_at(0.5, 0.2)], 2),
            # left sweep
            ([tag_at(0.2, 0.5)], 3), ([tag_at(0.2, 0.8)], 3), ([tag_at(0.2, 0.2)], 3),
            # right sweep
            ([tag_at(0.8, 0.5)], 3), ([tag_at(0.8, 0.8)], 3), ([tag_at(0.8, 0.2)], 3),
            # cross-arch obliques
            (cross_arch_tags(0.8), 2), (cross_arch_tags(0.2), 2), (cross_arch_tags(0.5), 2),
        ]
        for tags, times in plan:
            for _ in range(times):
                capture(tracker, tags)
                phases.append(tracker.current_phase())
        return phases

    def test_starts_in_anchor(self, tracker):
        assert tracker.current_phase() == CapturePhase.ANCHOR
        assert not tracker.is_phase_complete(CapturePhase.ANCHOR)

    def test_full_progression(self, tracker):
        phases = self.run_session(tracker)

        assert phases[9] == CapturePhase.LEFT_SWEEP
        assert phases[18] == CapturePhase.RIGHT_SWEEP
        assert phases[27] == CapturePhase.CROSS_ARCH
        assert phases[-1] == CapturePhase.CLEANUP
        for phase in (CapturePhase.ANCHOR, CapturePhase.LEFT_SWEEP, CapturePhase.RIGHT_SWEEP, CapturePhase.CROSS_ARCH):
            assert tracker.is_phase_complete(phase)
        assert not tracker.is_phase_complete(CapturePhase.CLEANUP)

    def test_phase_never_moves_backwards(self, tracker):
        phases = self.run_session(tracker)
        values = [p.value for p in phases]
        assert values == sorted(values)

    def test_rejected_captures_do_not_regress_phase(self, tracker):
        self.run_session(tracker)
        capture(tracker, [tag_at(0.5, 0.5)], quality=make_quality(QualityStatus.BLUR), times=5)
        assert tracker.current_phase() == CapturePhase.CLEANUP

    def test_phase_progress_text(self, tracker):
        status = make_status([tag_at(0.5, 0.5)])
        assert tracker.build_live_guidance(status, make_quality_result()).phase_progress == "Phase A (Anchor): 0/10"

        capture(tracker, [tag_at(0.5, 0.5)], times=3)
        assert tracker.build_live_guidance(status, make_quality_result()).phase_progress == "Phase A (Anchor): 2/10"

    def test_cross_arch_progress_text(self):
        other = CaptureGuidanceTracker()
        for tags, times in [([tag_at(0.5, 0.5)], 2), ([tag_at(0.2, 0.5)], 2), ([tag_at(0.8, 0.5)], 2),
                            ([tag_at(0.5, 0.8)], 2), ([tag_at(0.5, 0.2)], 2),
                            ([tag_at(0.2, 0.5)], 3), ([tag_at(0.2, 0.8)], 3), ([tag_at(0.2, 0.2)], 3),
                            ([tag_at(0.8, 0.5)], 3), ([tag_at(0.8, 0.8)], 3), ([tag_at(0.8, 0.2)], 3),
                            (cross_arch_tags(0.8), 1)]:
            capture(other, tags, times=times)

        guidance = other.build_live_guidance(make_status([tag_at(0.5, 0.5)]), make_quality_result())
        assert guidance.phase == CapturePhase.CROSS_ARCH
        assert guidance.phase_progress == "Phase D (Cross-arch): 1/6 (H:1 L:0)"
        assert guidance.message == "Next: cross-arch obliques (high+low)"


class TestTrackedIds:
    """Test suite for tracked identity selection and per-tag counts."""

    def test_required_ids_get_zero_entries(self, tracker):
        tracker.on_required_ids_changed([2, 1])
        capture(tracker, [tag_at(0.5, 0.5, tag_id=1)], required=(1, 2))
        assert tracker.per_tag_counts() == {1: 1, 2: 0}

    def test_stable_ids_lock_once(self):
        tracker = CaptureGuidanceTracker(stable_ids_n=2)

        capture(tracker, [tag_at(0.5, 0.5, 1)], summary=MarkerSessionSummary(per_tag_count={1: 5}))
        assert tracker.stable_ids() is None

        capture(tracker, [tag_at(0.5, 0.5, 1)], summary=MarkerSessionSummary(per_tag_count={1: 5, 2: 3, 3: 1}))
        assert tracker.stable_ids() == (1, 2)

        capture(tracker, [tag_at(0.5, 0.5, 3)], summary=MarkerSessionSummary(per_tag_count={3: 99, 4: 50, 1: 6}))
        assert tracker.stable_ids() == (1, 2)
        assert tracker.per_tag_counts() == {1: 2, 2: 0}

    def test_live_guidance_does_not_lock(self):
        tracker = CaptureGuidanceTracker(stable_ids_n=1)
        summary = MarkerSessionSummary(per_tag_count={4: 10})
        tracker.build_live_guidance(make_status([tag_at(0.5, 0.5, 4)]), make_quality_result(), summary)
        assert tracker.stable_ids() is None

    def test_required_ids_change_resets_statistics(self, tracker):
        capture(tracker, [tag_at(0.5, 0.5)], times=3)
        tracker.on_required_ids_changed([5])

        assert tracker.good_captures == 0
        assert tracker.grid_counts() == [0] * 9
        assert tracker.per_tag_counts() == {}

    def test_reset_for_new_session(self, tracker):
        capture(tracker, [tag_at(0.5, 0.5)], times=3)
        tracker.reset_for_new_session()
        assert tracker.good_captures == 0
        assert tracker.current_phase() == CapturePhase.ANCHOR


class TestSufficiency:
    """Test suite for the sufficiency verdict and its reasons."""

    def test_reason_order(self, tracker):
        tracker.on_required_ids_changed([2, 1])
        result = tracker.evaluate_sufficiency()

        assert not result.enough
        assert list(result.reasons) == [
            "Need more good shots: 0/60",
            "Coverage: 0/7",
            "Cross-arch obliques missing",
            "Tag 1: 0/10",
            "Tag 2: 0/10",
        ]

    def test_enough_with_small_targets(self):
        tracker = CaptureGuidanceTracker(good_captures_target=2, grid_target_filled=2, per_tag_target=1,
                                         cross_arch_required=False)
        capture(tracker, [tag_at(0.2, 0.2)])
        assert not tracker.enough()

        capture(tracker, [tag_at(0.5, 0.5)])
        result = tracker.evaluate_sufficiency()
        assert result.enough
        assert result.reasons == ()

    def test_per_tag_target_blocks_enough(self):
        tracker = CaptureGuidanceTracker(good_captures_target=1, grid_target_filled=1, per_tag_target=2,
                                         cross_arch_required=False)
        tracker.on_required_ids_changed([1])
        capture(tracker, [tag_at(0.5, 0.5, 1)], required=(1,))

        result = tracker.evaluate_sufficiency()
        assert not result.enough
        assert result.reasons == ("Tag 1: 1/2",)


class TestLiveGuidance:
    """Test suite for operator-facing live guidance."""

    def test_read_only(self, tracker):
        status = make_status([tag_at(0.5, 0.5)])
        for _ in range(20):
            tracker.build_live_guidance(status, make_quality_result())

        assert tracker.good_captures == 0
        assert tracker.grid_counts() == [0] * 9

    def test_no_markers(self, tracker):
        guidance = tracker.build_live_guidance(make_status([]), make_quality_result())
        assert guidance.message == "No markers: move closer / improve lighting"
        assert guidance.coverage_text == "Coverage: 0/9"
        assert guidance.frame is None

    def test_missing_required(self, tracker):
        status = make_status([tag_at(0.5, 0.5, 1)], required=(1, 4, 6))
        assert tracker.build_live_guidance(status, make_quality_result()).message == "Missing: 4,6"

    def test_reframe(self, tracker):
        status = make_status([tag_at(0.02, 0.5)])
        assert tracker.build_live_guidance(status, make_quality_result()).message == "Reframe: keep tags away from edges"

    @pytest.mark.parametrize("distance,message", [
        (15.0, "Move farther (target 20–30 cm)"),
        (45.0, "Move closer (target 20–30 cm)"),
    ])
    def test_distance(self, tracker, distance, message):
        guidance = tracker.build_live_guidance(make_status([tag_at(0.5, 0.5)]), make_quality_result(distance_cm=distance))
        assert guidance.message == message

    def test_phase_hint(self, tracker):
        guidance = tracker.build_live_guidance(make_status([tag_at(0.2, 0.8)]), make_quality_result())
        assert guidance.message == "Next: anchor ring (front/left/right + high/low)"
        assert guidance.frame.grid_cell == 6
        assert guidance.block_reason is None

    def test_block_reasons(self, tracker):
        missing = make_status([tag_at(0.5, 0.5, 1)], required=(1, 2), mode=MarkerMode.BLOCK)
        edge = make_status([tag_at(0.02, 0.5)], mode=MarkerMode.BLOCK)
        ok = make_status([tag_at(0.5, 0.5)], mode=MarkerMode.BLOCK)

        assert tracker.build_live_guidance(missing, make_quality_result()).block_reason == "Missing required"
        assert tracker.build_live_guidance(edge, make_quality_result()).block_reason == "Framing"
        assert tracker.build_live_guidance(ok, make_quality_result(distance_cm=50.0)).block_reason == "Distance"
        assert tracker.build_live_guidance(ok, make_quality_result()).block_reason is None

    def test_cleanup_names_weak_tags(self):
        tracker = CaptureGuidanceTracker(per_tag_target=20)
        tracker.on_required_ids_changed([1, 2])
        TestPhases().run_session(tracker)

        status = make_status([tag_at(0.4, 0.5, 1), tag_at(0.6, 0.5, 2)], required=(1, 2))
        guidance = tracker.build_live_guidance(status, make_quality_result())
        assert guidance.phase == CapturePhase.CLEANUP
        assert guidance.phase_progress == "Phase E (Cleanup)"
        assert guidance.message.startswith("Cleanup: weak tags ")
        assert guidance.message.endswith("(need 20 each)")

    def test_concurrent_reads_and_writes(self, tracker):
        status = make_status([tag_at(0.5, 0.5)])
        errors = []

        def reader():
            try:
                for _ in range(200):
                    tracker.build_live_guidance(status, make_quality_result())
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        capture(tracker, [tag_at(0.5, 0.5)], times=100)
        for t in threads:
            t.join()

        assert not errors
        assert tracker.good_captures == 100
        assert tracker.grid_counts()[4] == 100


class TestSummaries:
    """Test suite for manifest and sidecar summaries."""

    def test_manifest_wire_form(self, tracker):
        tracker.on_required_ids_changed([3, 1])
        capture(tracker, [tag_at(0.2, 0.2, 1), tag_at(0.3, 0.3, 3)], required=(1, 3))

        data = json.loads(dumps_deterministic(tracker.build_manifest_summary()))

        assert data["version"] == 1
        assert data["stableIdsN"] == 8
        assert data["trackedIds"] == [1, 3]
        assert data["distanceRangeCm"] == [20.0, 30.0]
        assert data["edgeMarginFrac"] == 0.1
        assert data["goodCaptures"] == 1
        assert data["coverageGridCounts"] == {str(i): (1 if i == 0 else 0) for i in range(9)}
        assert data["coverageGridFilled"] == 1
        assert data["perTagCaptureCount"] == {"1": 1, "3": 1}
        assert data["phaseProgress"]["phaseA"]["lowAny"] == 1
        assert data["phaseProgress"]["phaseB_left"]["leftLow"] == 1
        assert data["enough"] is False
        assert data["reasonsIfNotEnough"][0] == "Need more good shots: 1/60"
        assert data["targets"]["crossArchRequired"] is True

    def test_manifest_is_deterministic(self, tracker):
        capture(tracker, [tag_at(0.5, 0.5)], times=2)
        assert dumps_deterministic(tracker.build_manifest_summary()) == dumps_deterministic(tracker.build_manifest_summary())

    def test_sidecar(self, tracker):
        tags = [tag_at(0.85, 0.5, 9), tag_at(0.15, 0.5, 2)]
        snap = make_snapshot(tags, required=(2,))
        data = tracker.build_sidecar_marker_summary(snap, make_quality()).to_dict()

        assert data["mode"] == "WARN"
        assert data["dictionary"] == "APRILTAG_36h11"
        assert data["frameSize"] == [FRAME_W, FRAME_H]
        assert data["detectedIds"] == [2, 9]
        assert [d["id"] for d in data["detections"]] == [2, 9]
        assert data["detections"][0]["centerNorm"] == [pytest.approx(0.15), pytest.approx(0.5)]
        assert data["phase"] == "ANCHOR"
        assert data["gridCell"] == 4
        assert data["lateralBin"] == "CENTER"
        assert data["heightBin"] == "MID"
        assert data["crossArch"] is True
        assert data["distanceOk"] is True
        assert data["framingOk"] is True

    def test_from_config(self, default_config):
        default_config.required_ids = [4]
        tracker = CaptureGuidanceTracker.from_config(default_config)
        assert tracker.build_manifest_summary().tracked_ids == [4]

    def test_from_config_phase_targets(self, default_config):
        default_config.phase_anchor_per_bin = 1
        default_config.phase_anchor_high_low = 1
        tracker = CaptureGuidanceTracker.from_config(default_config)

        assert tracker.phase_targets.anchor_per_bin == 1
        assert tracker.phase_targets.sweep_mid == default_config.phase_sweep_mid
        for x, y in ((0.5, 0.5), (0.2, 0.5), (0.8, 0.5), (0.5, 0.8), (0.5, 0.2)):
            capture(tracker, [tag_at(x, y)])
        assert tracker.current_phase() == CapturePhase.LEFT_SWEEP
