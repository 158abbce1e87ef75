"""Latest camera capture metadata (ISO, shutter, focus distance) shared across threads."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True, slots=True)
class CaptureMetadata:
    iso: Optional[int] = None
    shutter_ns: Optional[int] = None
    focus_distance_diopters: Optional[float] = None


class CaptureMetadataStore:
    """Single-slot store updated by the camera metadata callback and read by analyzers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._current = CaptureMetadata()

    def update(self, iso: Optional[int] = None, shutter_ns: Optional[int] = None,
               focus_distance_diopters: Optional[float] = None) -> None:
        with self._lock:
            self._current = CaptureMetadata(iso, shutter_ns, focus_distance_diopters)

    def latest_focus_distance(self) -> Optional[float]:
        with self._lock:
            return self._current.focus_distance_diopters

    def snapshot(self) -> CaptureMetadata:
        with self._lock:
            return self._current


def format_focus_distance(diopters: Optional[float]) -> str:
    if diopters is None:
        return "fd=—"
    if diopters <= 0:
        return "fd=∞"
    cm = round(100.0 / diopters)
    return f"fd≈{cm}cm ({diopters:.2f}D)"
