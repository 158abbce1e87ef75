"""Single-worker frame pipeline with keep-latest hand-off.

Camera callbacks `submit` frames from any thread. A pending frame that has not
been picked up yet is replaced by the newer one, so the analyzers always work on
the most recent frame and the producer never blocks.
"""
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..core.entities import (
    FrozenMarkerSnapshot, FrozenQualitySnapshot, MarkerSessionSummary, MarkerStatus, QualityResult, RawFrame,
)
from ..core.logging_config import logging_manager
from .marker_detector import MarkerDetector
from .quality_analyzer import QualityAnalyzer

logger = logging.getLogger(__name__)

FrameListener = Callable[[Optional[QualityResult], MarkerStatus], None]


@dataclass(frozen=True, slots=True)
class CaptureSnapshot:
    """Everything a guidance tracker needs at the moment a capture is committed."""
    marker: FrozenMarkerSnapshot
    quality: FrozenQualitySnapshot
    session_summary: MarkerSessionSummary


class FramePipeline:
    """Feeds submitted frames to the quality analyzer and the marker detector on one thread."""

    def __init__(self, quality_analyzer: QualityAnalyzer, marker_detector: MarkerDetector,
                 join_timeout_s: float = 2.0):
        self.quality_analyzer = quality_analyzer
        self.marker_detector = marker_detector
        self.join_timeout_s = join_timeout_s

        self._cond = threading.Condition()
        self._pending: Optional[RawFrame] = None
        self._running = False
        self._stop_event: Optional[threading.Event] = None
        self._worker: Optional[threading.Thread] = None
        self._listeners: List[FrameListener] = []
        self._session_id: Optional[str] = None

        self._submitted = 0
        self._processed = 0
        self._dropped = 0
        self._errors = 0

    # ---- lifecycle ----

    def start(self, session_id: Optional[str] = None) -> str:
        """Start the worker. The session id is used as the log correlation id on the worker thread."""
        with self._cond:
            if self._running:
                return self._session_id
            self._session_id = session_id or str(uuid.uuid4())
            self._running = True
            # a worker that outlived stop() finishes its frame before the new one starts
            previous = self._worker if self._worker is not None and self._worker.is_alive() else None
            self._stop_event = threading.Event()
            self._worker = threading.Thread(
                target=self._run, args=(self._stop_event, previous, self._session_id),
                name="FramePipeline", daemon=True,
            )
            self._worker.start()
        logger.info(f"Frame pipeline started (session {self._session_id})")
        return self._session_id

    def stop(self) -> None:
        with self._cond:
            if not self._running:
                return
            self._running = False
            self._pending = None
            self._stop_event.set()
            self._cond.notify_all()
            worker = self._worker

        if worker is not None:
            worker.join(timeout=self.join_timeout_s)
            if worker.is_alive():
                logger.warning("Frame pipeline worker did not stop gracefully")
        with self._cond:
            if not self._running and self._worker is worker and not worker.is_alive():
                self._worker = None
        logger.info(f"Frame pipeline stopped: {self.stats()}")

    @property
    def is_running(self) -> bool:
        with self._cond:
            return self._running

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def __enter__(self) -> "FramePipeline":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    # ---- producer side ----

    def submit(self, frame: RawFrame) -> bool:
        """Hand a frame to the worker. Returns False if the pipeline is not running."""
        with self._cond:
            if not self._running:
                return False
            if self._pending is not None:
                self._dropped += 1
            self._pending = frame
            self._submitted += 1
            self._cond.notify()
        return True

    def add_listener(self, callback: FrameListener) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: FrameListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    # ---- capture side ----

    def freeze_for_capture(self) -> CaptureSnapshot:
        """Freeze the latest analyzer outputs for a committed capture."""
        return CaptureSnapshot(
            marker=FrozenMarkerSnapshot.from_status(self.marker_detector.latest()),
            quality=FrozenQualitySnapshot.from_result(self.quality_analyzer.latest()),
            session_summary=self.marker_detector.session_summary(),
        )

    def stats(self) -> Dict[str, Any]:
        with self._cond:
            return {
                "session_id": self._session_id,
                "running": self._running,
                "frames_submitted": self._submitted,
                "frames_processed": self._processed,
                "frames_dropped": self._dropped,
                "errors": self._errors,
            }

    # ---- worker ----

    def _run(self, stop_event: threading.Event, previous: Optional[threading.Thread], session_id: str) -> None:
        if previous is not None:
            previous.join()
        logging_manager.set_correlation_id(session_id)
        logger.debug("Frame pipeline worker started")
        try:
            while True:
                with self._cond:
                    while not stop_event.is_set() and self._pending is None:
                        self._cond.wait()
                    if stop_event.is_set():
                        break
                    frame, self._pending = self._pending, None

                self._process(frame)
        finally:
            logging_manager.clear_correlation_id()
            logger.debug("Frame pipeline worker stopped")

    def _process(self, frame: RawFrame) -> None:
        try:
            quality = self.quality_analyzer.analyze(frame)
            self.marker_detector.process(frame)
        except Exception as e:
            with self._cond:
                self._errors += 1
            logger.error(f"Frame processing failed: {e}", exc_info=True)
            return

        marker_status = self.marker_detector.latest()
        with self._cond:
            self._processed += 1

        for callback in list(self._listeners):
            try:
                callback(quality, marker_status)
            except Exception as e:
                logger.error(f"Error in frame listener: {e}")
