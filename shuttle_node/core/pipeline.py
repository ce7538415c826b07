"""
Verification Pipeline.

One run per capture event:
1. Capture a high-resolution still (deleted once loaded)
2. Preprocess to the embedding model geometry
3. Extract the embedding
4. Match against the cached population
5. On a match: record the boarding, notify the gate controller
6. Record elapsed time

Never raises; every failure becomes an unverified outcome with a reason.
"""

import os
import time
from collections import deque
from typing import Optional, Callable
import logging

from ..storage.face_db import VerificationOutcome
from ..vision.preprocess import load_image, prepare_embedder_input
from ..vision.trigger import CaptureEvent
from .gate_link import CMD_FACE_DETECTED, SendResult


logger = logging.getLogger(__name__)


REASON_CAPTURE_ERROR = "capture error"
REASON_EMBEDDING_ERROR = "embedding error"


class VerificationPipeline:
    """
    Capture -> embedding -> match -> side effects.

    Collaborators:
        camera: capture_still() -> path or None
        embedder: get_embedding(blob) -> vector or None
        face_db: match(embedding) -> VerificationOutcome
        event_sink: record_verification(user_id, timestamp_ms) -> bool
        gate_link: optional, is_authenticated + send(command)
    """

    def __init__(
        self,
        camera,
        embedder,
        face_db,
        event_sink,
        gate_link=None,
        image_loader: Callable = load_image,
        preprocess: Callable = prepare_embedder_input,
        clock: Callable[[], float] = time.time,
    ):
        self.camera = camera
        self.embedder = embedder
        self.face_db = face_db
        self.event_sink = event_sink
        self.gate_link = gate_link
        self.image_loader = image_loader
        self.preprocess = preprocess
        self._clock = clock

        # Metrics
        self.last_elapsed_ms: Optional[float] = None
        self.recent_durations: deque = deque(maxlen=5)
        self._stats = {
            "runs": 0,
            "verified": 0,
            "unverified": 0,
            "errors": 0,
            "gate_notified": 0,
        }

    def run(self, event: CaptureEvent) -> VerificationOutcome:
        """Run one verification for a capture event."""
        start = self._clock()
        self._stats["runs"] += 1

        try:
            outcome = self._verify()
        except Exception as e:
            logger.error(f"Verification error: {e}")
            outcome = VerificationOutcome(verified=False, reason=f"verification error: {e}")

        if outcome.verified:
            self._stats["verified"] += 1
            self._on_verified(outcome, event)
        else:
            self._stats["unverified"] += 1

        elapsed_ms = (self._clock() - start) * 1000.0
        self.last_elapsed_ms = elapsed_ms
        self.recent_durations.appendleft(elapsed_ms)

        if outcome.verified:
            logger.info(f"Verified: {outcome.matched_user_id} (distance={outcome.distance:.3f}, {elapsed_ms:.0f}ms)")
        else:
            logger.info(f"Not verified: {outcome.reason} ({elapsed_ms:.0f}ms)")

        return outcome

    def _verify(self) -> VerificationOutcome:
        # 1. Capture
        try:
            path = self.camera.capture_still()
        except Exception as e:
            logger.error(f"Capture error: {e}")
            path = None

        try:
            image = self.image_loader(path) if path else None
        finally:
            if path:
                self._discard_still(path)

        if image is None:
            self._stats["errors"] += 1
            return VerificationOutcome(verified=False, reason=REASON_CAPTURE_ERROR)

        # 2. Preprocess
        blob = self.preprocess(image)

        # 3. Embedding
        embedding = self.embedder.get_embedding(blob)
        if embedding is None:
            self._stats["errors"] += 1
            return VerificationOutcome(verified=False, reason=REASON_EMBEDDING_ERROR)

        # 4. Match
        return self.face_db.match(embedding)

    def _discard_still(self, path: str):
        """Delete a loaded still from the capture directory."""
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to delete still {path}: {e}")

    def _on_verified(self, outcome: VerificationOutcome, event: CaptureEvent):
        """Record the boarding and notify the gate. Failures do not change the outcome."""
        try:
            if not self.event_sink.record_verification(outcome.matched_user_id, event.timestamp):
                logger.error(f"Failed to record verification for {outcome.matched_user_id}")
        except Exception as e:
            logger.error(f"Failed to record verification for {outcome.matched_user_id}: {e}")

        if self.gate_link is None or not self.gate_link.is_authenticated:
            return

        try:
            result = self.gate_link.send(CMD_FACE_DETECTED)
        except Exception as e:
            logger.error(f"Error sending {CMD_FACE_DETECTED}: {e}")
            return

        if result == SendResult.SENT:
            self._stats["gate_notified"] += 1
        else:
            logger.warning(f"Gate notification not sent: {result.value}")

    def get_stats(self) -> dict:
        """Get pipeline statistics."""
        stats = self._stats.copy()
        stats["last_elapsed_ms"] = self.last_elapsed_ms
        return stats
