"""
Capture Trigger for unattended verification.

Decides, per frame, whether a detection justifies a full capture:
- Face centered in the frame
- Face size within [MIN_FACE_RATIO, MAX_FACE_RATIO] of frame width
- Detection score above the strict trigger threshold
- Cooldown since the previous capture has elapsed

Pure functions: all state comes in as arguments, the caller owns the
last-capture timestamp.
"""

from dataclasses import dataclass
from typing import Optional, Sequence
import logging

from .detector import Detection


logger = logging.getLogger(__name__)


# Trigger thresholds
CENTER_TOLERANCE_RATIO = 0.2   # Max center offset as fraction of frame width
MIN_FACE_RATIO = 0.3           # Min face width/height as fraction of frame width
MAX_FACE_RATIO = 0.7           # Max face width/height as fraction of frame width
TRIGGER_SCORE_THRESHOLD = 0.7  # Stricter than the 0.5 detection threshold
CAPTURE_COOLDOWN_MS = 3000.0


@dataclass
class CaptureEvent:
    """A decision to capture a high-resolution still."""
    timestamp: float  # epoch ms
    frame_width: int
    frame_height: int
    detection: Optional[Detection] = None


@dataclass
class TriggerCheck:
    """Result of checking one detection against the trigger conditions."""
    passed: bool
    centered: bool
    sized: bool
    confident: bool
    rejection_reason: Optional[str] = None


def check_detection(
    det: Detection,
    frame_width: int,
    frame_height: int,
    center_tolerance: float = CENTER_TOLERANCE_RATIO,
    min_face_ratio: float = MIN_FACE_RATIO,
    max_face_ratio: float = MAX_FACE_RATIO,
    score_threshold: float = TRIGGER_SCORE_THRESHOLD,
) -> TriggerCheck:
    """
    Check one detection against all trigger conditions.

    Both center tolerance and size bounds scale with frame WIDTH,
    on both axes.
    """
    frame_cx = frame_width / 2
    frame_cy = frame_height / 2
    tolerance = frame_width * center_tolerance
    min_size = frame_width * min_face_ratio
    max_size = frame_width * max_face_ratio

    face_cx, face_cy = det.center
    centered = abs(face_cx - frame_cx) < tolerance and abs(face_cy - frame_cy) < tolerance
    sized = (
        min_size <= det.width <= max_size
        and min_size <= det.height <= max_size
    )
    confident = det.score > score_threshold

    reason = None
    if not centered:
        reason = "Face not centered"
    elif not sized:
        reason = "Face too small" if min(det.width, det.height) < min_size else "Face too close"
    elif not confident:
        reason = f"Low confidence ({det.score:.2f})"

    return TriggerCheck(
        passed=centered and sized and confident,
        centered=centered,
        sized=sized,
        confident=confident,
        rejection_reason=reason,
    )


def cooldown_elapsed(
    last_capture_ts: Optional[float],
    now: float,
    cooldown_ms: float = CAPTURE_COOLDOWN_MS
) -> bool:
    """True if no capture yet or at least cooldown_ms since the last one."""
    if last_capture_ts is None:
        return True
    return now - last_capture_ts >= cooldown_ms


def decide(
    detections: Sequence[Detection],
    frame_width: int,
    frame_height: int,
    last_capture_ts: Optional[float],
    now: float,
    cooldown_ms: float = CAPTURE_COOLDOWN_MS,
    center_tolerance: float = CENTER_TOLERANCE_RATIO,
    min_face_ratio: float = MIN_FACE_RATIO,
    max_face_ratio: float = MAX_FACE_RATIO,
    score_threshold: float = TRIGGER_SCORE_THRESHOLD,
) -> Optional[CaptureEvent]:
    """
    Decide whether this frame should trigger a capture.

    The first detection passing every check is chosen; multiple eligible
    faces are not ranked.

    Args:
        detections: Detections for the current frame
        frame_width: Frame width in pixels
        frame_height: Frame height in pixels
        last_capture_ts: Timestamp (ms) of the previous capture, None if never
        now: Current timestamp (ms)

    Returns:
        CaptureEvent timestamped `now`, or None
    """
    if not detections:
        return None

    if not cooldown_elapsed(last_capture_ts, now, cooldown_ms):
        return None

    for det in detections:
        check = check_detection(
            det,
            frame_width,
            frame_height,
            center_tolerance=center_tolerance,
            min_face_ratio=min_face_ratio,
            max_face_ratio=max_face_ratio,
            score_threshold=score_threshold,
        )
        if check.passed:
            return CaptureEvent(
                timestamp=now,
                frame_width=frame_width,
                frame_height=frame_height,
                detection=det,
            )

    return None
