"""Threads module for background processing."""

from .capture import CaptureThread
from .ui import UIThread, UIFrame
from .location import (
    LocationThread,
    NmeaPositionSource,
    Position,
    haversine_m,
    parse_nmea_sentence,
)


def create_capture_thread_from_config(config) -> CaptureThread:
    """Factory function to create CaptureThread from config object."""
    return CaptureThread(
        camera_index=config.CAMERA_INDEX,
        width=config.CAMERA_WIDTH,
        height=config.CAMERA_HEIGHT,
        fps=config.CAMERA_FPS,
        capture_dir=config.CAPTURE_DIR,
    )


def create_ui_thread_from_config(config) -> UIThread:
    """Factory function to create UIThread from config object."""
    return UIThread(
        display_width=config.DISPLAY_WIDTH,
        display_height=config.DISPLAY_HEIGHT,
        trigger_score=config.TRIGGER_SCORE_THRESHOLD,
        bus_number=config.BUS_NUMBER,
    )


def create_location_thread_from_config(config, position_source=None) -> LocationThread:
    """Factory function to create LocationThread from config object."""
    if position_source is None:
        position_source = NmeaPositionSource(port=config.GPS_PORT, baudrate=config.GPS_BAUDRATE)
    return LocationThread(
        position_source=position_source,
        backend_url=config.BACKEND_URL,
        device_id=config.DEVICE_ID,
        interval_seconds=config.LOCATION_INTERVAL_SECONDS,
        min_distance_m=config.LOCATION_MIN_DISTANCE_M,
    )


__all__ = [
    "CaptureThread",
    "UIThread",
    "UIFrame",
    "LocationThread",
    "NmeaPositionSource",
    "Position",
    "haversine_m",
    "parse_nmea_sentence",
    "create_capture_thread_from_config",
    "create_ui_thread_from_config",
    "create_location_thread_from_config",
]
