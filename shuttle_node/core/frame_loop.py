"""
Frame Loop Driver - per-frame entry point of the verification system.

Runs at camera frame rate. Its own work is geometry only: detection,
overlay publishing, the trigger decision. Verification runs on a worker
thread; at most one is in flight, tracked by a VerificationToken that
exists only while a run is outstanding.
"""

import threading
import time
from dataclasses import dataclass
from typing import Optional, Callable
import logging

import numpy as np

from ..storage.face_db import VerificationOutcome
from ..vision.trigger import (
    CaptureEvent,
    decide,
    CAPTURE_COOLDOWN_MS,
    CENTER_TOLERANCE_RATIO,
    MIN_FACE_RATIO,
    MAX_FACE_RATIO,
    TRIGGER_SCORE_THRESHOLD,
)


logger = logging.getLogger(__name__)


@dataclass
class VerificationToken:
    """Held by the driver while a verification is in flight."""
    event: CaptureEvent
    dispatched_at: float


def _spawn_thread(target: Callable, *args):
    thread = threading.Thread(target=target, args=args, name="VerificationWorker", daemon=True)
    thread.start()
    return thread


class FrameLoopDriver:
    """
    Drives detection, trigger and verification dispatch per frame.

    Args:
        detector: is_ready + detect(frame) -> list[Detection]
        pipeline: run(CaptureEvent) -> VerificationOutcome
        dispatcher: dispatcher(fn, *args), runs fn without blocking (default: new thread)
        on_detections: called with every frame's detections (overlay)
        on_outcome: called with each verification outcome
        clock: returns epoch milliseconds
    """

    def __init__(
        self,
        detector,
        pipeline,
        dispatcher: Optional[Callable] = None,
        on_detections: Optional[Callable[[list], None]] = None,
        on_outcome: Optional[Callable[[VerificationOutcome], None]] = None,
        clock: Optional[Callable[[], float]] = None,
        cooldown_ms: float = CAPTURE_COOLDOWN_MS,
        center_tolerance: float = CENTER_TOLERANCE_RATIO,
        min_face_ratio: float = MIN_FACE_RATIO,
        max_face_ratio: float = MAX_FACE_RATIO,
        score_threshold: float = TRIGGER_SCORE_THRESHOLD,
    ):
        self.detector = detector
        self.pipeline = pipeline
        self.on_detections = on_detections
        self.on_outcome = on_outcome

        self.cooldown_ms = cooldown_ms
        self.center_tolerance = center_tolerance
        self.min_face_ratio = min_face_ratio
        self.max_face_ratio = max_face_ratio
        self.score_threshold = score_threshold

        self._dispatch = dispatcher or _spawn_thread
        self._clock = clock or (lambda: time.time() * 1000.0)

        self._lock = threading.Lock()
        self._token: Optional[VerificationToken] = None
        self._last_capture_ts: Optional[float] = None

        # Status for UI
        self.status = "Initializing..."
        self.last_outcome: Optional[VerificationOutcome] = None
        self.last_verified_user: Optional[str] = None
        self.frame_error: Optional[str] = None

        # Stats
        self.stats = {
            "frames_seen": 0,
            "frames_skipped": 0,
            "captures_triggered": 0,
            "verifications_completed": 0,
        }

    @property
    def is_busy(self) -> bool:
        with self._lock:
            return self._token is not None

    @property
    def last_capture_ts(self) -> Optional[float]:
        with self._lock:
            return self._last_capture_ts

    def on_frame(self, frame: np.ndarray) -> Optional[CaptureEvent]:
        """
        Process one video frame.

        Returns:
            The CaptureEvent dispatched for this frame, or None
        """
        self.stats["frames_seen"] += 1

        if self.is_busy:
            self.stats["frames_skipped"] += 1
            return None

        if not self.detector.is_ready:
            self.stats["frames_skipped"] += 1
            self.status = "Face detection model loading..."
            return None

        try:
            detections = self.detector.detect(frame)
        except Exception as e:
            self.frame_error = str(e)
            logger.error(f"Frame processor error: {e}")
            return None

        if self.on_detections:
            try:
                self.on_detections(detections)
            except Exception as e:
                logger.error(f"Overlay callback error: {e}")

        if not detections:
            self.status = "No face detected"
            return None

        frame_height, frame_width = frame.shape[:2]
        now = self._clock()

        event = decide(
            detections,
            frame_width,
            frame_height,
            self.last_capture_ts,
            now,
            cooldown_ms=self.cooldown_ms,
            center_tolerance=self.center_tolerance,
            min_face_ratio=self.min_face_ratio,
            max_face_ratio=self.max_face_ratio,
            score_threshold=self.score_threshold,
        )
        if event is None:
            return None

        if not self._dispatch_event(event, update_cooldown=True):
            return None
        return event

    def request_capture(self, frame_width: int, frame_height: int) -> Optional[CaptureEvent]:
        """
        Manual capture: skips the trigger and cooldown, still one run at a time.
        """
        event = CaptureEvent(
            timestamp=self._clock(),
            frame_width=frame_width,
            frame_height=frame_height,
        )
        if not self._dispatch_event(event, update_cooldown=False):
            logger.info("Capture ignored - verification already in progress")
            return None
        return event

    def _dispatch_event(self, event: CaptureEvent, update_cooldown: bool) -> bool:
        with self._lock:
            if self._token is not None:
                return False
            if update_cooldown:
                self._last_capture_ts = event.timestamp
            token = VerificationToken(event=event, dispatched_at=event.timestamp)
            self._token = token

        self.stats["captures_triggered"] += 1
        self.status = "Processing..."
        self.frame_error = None

        try:
            self._dispatch(self._run_verification, token)
        except Exception as e:
            logger.error(f"Failed to dispatch verification: {e}")
            self._release(token)
            return False
        return True

    def _run_verification(self, token: VerificationToken):
        """Worker body. The token is released on every path."""
        try:
            outcome = self.pipeline.run(token.event)
            self.last_outcome = outcome
            self.stats["verifications_completed"] += 1

            elapsed = getattr(self.pipeline, "last_elapsed_ms", None)
            suffix = f" ({elapsed:.0f}ms)" if elapsed is not None else ""
            if outcome.verified:
                self.last_verified_user = outcome.matched_user_id
                self.status = f"Verified: {outcome.matched_user_id}{suffix}"
            else:
                self.status = outcome.reason or "Verification failed"

            if self.on_outcome:
                self.on_outcome(outcome)
        except Exception as e:
            logger.error(f"Verification worker error: {e}")
            self.status = "Error during verification"
        finally:
            self._release(token)

    def _release(self, token: VerificationToken):
        with self._lock:
            if self._token is token:
                self._token = None
