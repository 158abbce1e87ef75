"""Unit tests for the single-phase calibration guidance tracker."""
import json

import pytest

from conftest import FRAME_W, FRAME_H, make_quality, make_quality_result, make_snapshot, make_status, make_tag
from scanguide.core.entities import QualityStatus
from scanguide.services.calibration_guidance import CalibrationGuidanceTracker
from scanguide.utils.serialization import dumps_deterministic


def board_at(x_norm, y_norm):
    return [make_tag(0, x_norm * FRAME_W, y_norm * FRAME_H), make_tag(1, x_norm * FRAME_W + 40, y_norm * FRAME_H)]


@pytest.fixture
def tracker():
    return CalibrationGuidanceTracker()


class TestCalibrationSufficiency:
    """Test suite for calibration capture counting and sufficiency."""

    def test_small_targets_scenario(self):
        tracker = CalibrationGuidanceTracker(good_captures_target=2, grid_target_filled=2)
        tracker.reset_for_new_session()

        assert tracker.on_capture_saved(make_snapshot(board_at(0.15, 0.15)), make_quality())
        assert not tracker.enough()

        assert tracker.on_capture_saved(make_snapshot(board_at(0.48, 0.5)), make_quality())
        assert tracker.enough()
        assert tracker.reasons_if_not_enough() == []

        assert tracker.on_capture_saved(make_snapshot(board_at(0.15, 0.15)), make_quality())
        manifest = tracker.build_manifest_summary()
        assert manifest.good_captures == 3
        assert manifest.coverage_grid_filled == 2
        assert manifest.coverage_grid_counts[0] == 2
        assert manifest.coverage_grid_counts[4] == 1

    @pytest.mark.parametrize("tags,quality", [
        (board_at(0.5, 0.5), make_quality(QualityStatus.BLUR)),
        (board_at(0.5, 0.5), make_quality(distance_cm=12.0)),
        ([], make_quality()),
        ([make_tag(0, 30, 500)], make_quality()),
    ])
    def test_gate(self, tracker, tags, quality):
        assert not tracker.on_capture_saved(make_snapshot(tags), quality)
        assert tracker.good_captures == 0
        assert tracker.grid_counts() == [0] * 9

    def test_default_reasons(self, tracker):
        assert tracker.reasons_if_not_enough() == ["Need more good shots: 0/25", "Coverage: 0/8"]


class TestCalibrationLiveGuidance:
    """Test suite for calibration live guidance priority."""

    def test_no_markers(self, tracker):
        guidance = tracker.build_live_guidance(make_status([]), make_quality_result())
        assert guidance.message == "No markers: bring board/flags into view"
        assert guidance.progress_text == "Calib shots: 0/25"
        assert guidance.coverage_text == "Coverage: 0/9"
        assert not guidance.enough

    def test_reframe(self, tracker):
        guidance = tracker.build_live_guidance(make_status([make_tag(0, 30, 500)]), make_quality_result())
        assert guidance.message == "Reframe: keep board away from edges"

    @pytest.mark.parametrize("distance,message", [
        (10.0, "Move farther (target ~25.0 cm)"),
        (60.0, "Move closer (target ~25.0 cm)"),
    ])
    def test_distance(self, tracker, distance, message):
        guidance = tracker.build_live_guidance(make_status(board_at(0.5, 0.5)), make_quality_result(distance_cm=distance))
        assert guidance.message == message

    def test_names_first_empty_cell(self, tracker):
        tracker.on_capture_saved(make_snapshot(board_at(0.15, 0.15)), make_quality())
        guidance = tracker.build_live_guidance(make_status(board_at(0.5, 0.5)), make_quality_result())
        assert guidance.message == "Move board to top-center"
        assert guidance.progress_text == "Calib shots: 1/25"

    def test_keep_going_and_enough(self):
        tracker = CalibrationGuidanceTracker(good_captures_target=3, grid_target_filled=1)
        status = make_status(board_at(0.5, 0.5))

        tracker.on_capture_saved(make_snapshot(board_at(0.48, 0.5)), make_quality())
        assert tracker.build_live_guidance(status, make_quality_result()).message == "Keep going"

        for _ in range(2):
            tracker.on_capture_saved(make_snapshot(board_at(0.48, 0.5)), make_quality())
        guidance = tracker.build_live_guidance(status, make_quality_result())
        assert guidance.message == "Calibration enough ✅"
        assert guidance.enough

    def test_live_guidance_is_read_only(self, tracker):
        for _ in range(5):
            tracker.build_live_guidance(make_status(board_at(0.5, 0.5)), make_quality_result())
        assert tracker.good_captures == 0


class TestCalibrationSummaries:
    """Test suite for calibration manifest and sidecar."""

    def test_manifest_wire_form(self, tracker):
        tracker.on_capture_saved(make_snapshot(board_at(0.48, 0.5)), make_quality())
        data = json.loads(dumps_deterministic(tracker.build_manifest_summary()))

        assert data["version"] == 1
        assert data["distanceTargetCm"] == 25.0
        assert data["distanceRangeCm"] == [20.0, 30.0]
        assert data["targets"] == {"goodCaptures": 25, "gridFilled": 8}
        assert data["coverageGridCounts"]["4"] == 1
        assert data["coverageGridFilled"] == 1
        assert data["enough"] is False
        assert data["reasonsIfNotEnough"] == ["Need more good shots: 1/25", "Coverage: 1/8"]

    def test_sidecar_has_no_identity_fields(self, tracker):
        data = tracker.build_sidecar_marker_summary(make_snapshot(board_at(0.5, 0.5)), make_quality()).to_dict()

        assert set(data.keys()) == {"mode", "dictionary", "frameSize", "framingOk", "distanceCm", "distanceOk", "detections"}
        assert [d["id"] for d in data["detections"]] == [0, 1]

    def test_from_config(self, default_config):
        tracker = CalibrationGuidanceTracker.from_config(default_config)
        assert tracker.good_captures_target == 25
        assert tracker.grid_target_filled == 8
        assert tracker.distance_target_cm == 25.0
