"""Core module: gate link, verification pipeline, frame loop."""

from .gate_link import (
    GateLink,
    LinkState,
    LinkEvent,
    LinkEventType,
    ConnectResult,
    SendResult,
    InboundKind,
    parse_line,
    CMD_FACE_DETECTED,
)
from .pipeline import VerificationPipeline
from .frame_loop import FrameLoopDriver, VerificationToken


def create_gate_link_from_config(config) -> GateLink:
    """Factory function to create GateLink from config object."""
    return GateLink(
        device_name=config.GATE_DEVICE_NAME,
        secret=config.GATE_SECRET,
        port=config.GATE_PORT,
        baudrate=config.GATE_BAUDRATE,
        timeout=config.GATE_TIMEOUT,
    )


def create_frame_loop_from_config(config, detector, pipeline, **kwargs) -> FrameLoopDriver:
    """Factory function to create FrameLoopDriver from config object."""
    return FrameLoopDriver(
        detector=detector,
        pipeline=pipeline,
        cooldown_ms=config.CAPTURE_COOLDOWN_MS,
        center_tolerance=config.CENTER_TOLERANCE_RATIO,
        min_face_ratio=config.MIN_FACE_RATIO,
        max_face_ratio=config.MAX_FACE_RATIO,
        score_threshold=config.TRIGGER_SCORE_THRESHOLD,
        **kwargs,
    )


__all__ = [
    "GateLink",
    "LinkState",
    "LinkEvent",
    "LinkEventType",
    "ConnectResult",
    "SendResult",
    "InboundKind",
    "parse_line",
    "CMD_FACE_DETECTED",
    "VerificationPipeline",
    "FrameLoopDriver",
    "VerificationToken",
    "create_gate_link_from_config",
    "create_frame_loop_from_config",
]
