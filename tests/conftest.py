"""Pytest configuration and shared fixtures for the capture guidance core.

Provides synthetic luma frames, marker statuses, frozen snapshots and
configuration objects used across the unit and integration suites.
"""
import os
import sys
import json
import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple
from unittest.mock import Mock

import numpy as np
import cv2
import pytest

# Add the project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from scanguide.config.settings import Config, load_config
from scanguide.backends.base_backend import BaseBackend
from scanguide.core.entities import (
    FrozenMarkerSnapshot, FrozenQualitySnapshot, MarkerMode, MarkerStatus,
    QualityResult, QualityStatus, RawFrame, TagDetection,
)

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()]
)

FRAME_W = 1000
FRAME_H = 1000


@pytest.fixture(scope="session")
def project_root():
    """Provide project root directory path."""
    return PROJECT_ROOT


@pytest.fixture
def default_config():
    """Provide a configuration object with all defaults."""
    return Config()


@pytest.fixture
def config_file(tmp_path):
    """Write a JSON config file and return a loader for it."""
    def _write(data) -> str:
        path = tmp_path / "scanguide.json"
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        return str(path)
    return _write


class FrameFactory:
    """Utility class for building synthetic luma frames."""

    @staticmethod
    def solid(value: int, width: int = 320, height: int = 240, timestamp_ns: int = 0) -> RawFrame:
        gray = np.full((height, width), value, dtype=np.uint8)
        return RawFrame.from_gray(gray, timestamp_ns)

    @staticmethod
    def checkerboard(width: int = 320, height: int = 240, square: int = 4, timestamp_ns: int = 0) -> RawFrame:
        """High-frequency texture with mid-range values (sharp, no clipping)."""
        yy, xx = np.mgrid[0:height, 0:width]
        pattern = ((yy // square + xx // square) % 2).astype(np.uint8)
        gray = np.where(pattern == 1, 200, 50).astype(np.uint8)
        return RawFrame.from_gray(gray, timestamp_ns)

    @staticmethod
    def with_highlights(spots: Sequence[Tuple[int, int, int]], width: int = 320, height: int = 240,
                        timestamp_ns: int = 0) -> RawFrame:
        """Checkerboard texture plus saturated discs (cx, cy, radius)."""
        yy, xx = np.mgrid[0:height, 0:width]
        pattern = ((yy // 4 + xx // 4) % 2).astype(np.uint8)
        gray = np.where(pattern == 1, 200, 50).astype(np.uint8)
        for cx, cy, r in spots:
            cv2.circle(gray, (cx, cy), r, 255, -1)
        return RawFrame.from_gray(gray, timestamp_ns)


@pytest.fixture
def frame_factory():
    """Provide the FrameFactory utility."""
    return FrameFactory


def make_tag(tag_id: int, cx: float, cy: float, half: float = 10.0, quality: Optional[float] = 0.5) -> TagDetection:
    """Square tag centered at (cx, cy) with corner half-size `half`."""
    corners = ((cx - half, cy - half), (cx + half, cy - half), (cx + half, cy + half), (cx - half, cy + half))
    return TagDetection(id=tag_id, center_x=cx, center_y=cy, corners=corners, quality=quality)


def make_status(tags: Iterable[TagDetection], required: Sequence[int] = (), mode: MarkerMode = MarkerMode.WARN,
                width: int = FRAME_W, height: int = FRAME_H, framing: bool = True) -> MarkerStatus:
    tags = tuple(tags)
    present = {t.id for t in tags}
    missing = tuple(i for i in required if i not in present)
    return MarkerStatus(
        timestamp_ns=1,
        mode=mode,
        frame_width=width,
        frame_height=height,
        detections=tags,
        required_ids=tuple(required),
        missing_required_ids=missing,
        all_required_visible=not missing,
        framing_ok=framing,
    )


def make_snapshot(tags: Iterable[TagDetection], required: Sequence[int] = (), **kwargs) -> FrozenMarkerSnapshot:
    return FrozenMarkerSnapshot.from_status(make_status(tags, required, **kwargs))


def make_quality(status: QualityStatus = QualityStatus.OK, distance_cm: Optional[float] = 25.0) -> FrozenQualitySnapshot:
    return FrozenQualitySnapshot.from_result(QualityResult(
        status=status, blur_score=500.0, over_fraction=0.0, under_fraction=0.0, distance_cm=distance_cm,
    ))


def make_quality_result(status: QualityStatus = QualityStatus.OK, distance_cm: Optional[float] = 25.0) -> QualityResult:
    return QualityResult(status=status, blur_score=500.0, over_fraction=0.0, under_fraction=0.0,
                         distance_cm=distance_cm)


@pytest.fixture
def mock_backend():
    """Provide a mock fiducial backend returning no detections."""
    backend = Mock(spec=BaseBackend)
    backend.detect.return_value = []
    backend.dictionary_name.return_value = "APRILTAG_36h11"
    return backend


@pytest.fixture
def focus_provider():
    """Provide a mock focus distance provider reporting 4 diopters (25 cm)."""
    provider = Mock(return_value=4.0)
    return provider


# Test markers and utilities
def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "unit: mark test as unit test")


def pytest_collection_modifyitems(config, items):
    """Add markers based on test file location."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if item.get_closest_marker("slow") and os.getenv("SKIP_SLOW_TESTS"):
            item.add_marker(pytest.mark.skip(reason="Slow tests disabled"))
