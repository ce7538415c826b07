"""
Shuttle Node Configuration
--------------------------
All settings loaded from environment variables or .env file.
"""
import os
import platform
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Config:
    """Shuttle node configuration."""

    # =========================
    # Identity
    # =========================
    DEVICE_ID: str = field(default_factory=lambda: os.getenv("DEVICE_ID", platform.node() or "shuttle-001"))
    BUS_NUMBER: Optional[str] = field(default_factory=lambda: os.getenv("BUS_NUMBER"))

    # =========================
    # Backend API / location reporting
    # =========================
    BACKEND_URL: str = field(default_factory=lambda: os.getenv("BACKEND_URL", "http://localhost:8000"))
    LOCATION_ENABLED: bool = field(default_factory=lambda: os.getenv("LOCATION_ENABLED", "false").lower() == "true")
    LOCATION_INTERVAL_SECONDS: float = field(default_factory=lambda: float(os.getenv("LOCATION_INTERVAL_SECONDS", "1.0")))
    LOCATION_MIN_DISTANCE_M: float = field(default_factory=lambda: float(os.getenv("LOCATION_MIN_DISTANCE_M", "0.5")))
    GPS_PORT: Optional[str] = field(default_factory=lambda: os.getenv("GPS_PORT"))
    GPS_BAUDRATE: int = field(default_factory=lambda: int(os.getenv("GPS_BAUDRATE", "9600")))

    # =========================
    # Camera
    # =========================
    CAMERA_INDEX: int = field(default_factory=lambda: int(os.getenv("CAMERA_INDEX", "0")))
    CAMERA_WIDTH: int = field(default_factory=lambda: int(os.getenv("CAMERA_WIDTH", "1280")))
    CAMERA_HEIGHT: int = field(default_factory=lambda: int(os.getenv("CAMERA_HEIGHT", "720")))
    CAMERA_FPS: int = field(default_factory=lambda: int(os.getenv("CAMERA_FPS", "30")))

    # =========================
    # Models
    # =========================
    DETECTOR_MODEL_PATH: str = field(default_factory=lambda: os.getenv("DETECTOR_MODEL_PATH", "models/face_detection_short_range.onnx"))
    EMBEDDER_MODEL_PATH: str = field(default_factory=lambda: os.getenv("EMBEDDER_MODEL_PATH", "models/mobilefacenet.onnx"))

    # =========================
    # Trigger / recognition
    # =========================
    DETECTION_THRESHOLD: float = field(default_factory=lambda: float(os.getenv("DETECTION_THRESHOLD", "0.5")))
    TRIGGER_SCORE_THRESHOLD: float = field(default_factory=lambda: float(os.getenv("TRIGGER_SCORE_THRESHOLD", "0.7")))
    CENTER_TOLERANCE_RATIO: float = field(default_factory=lambda: float(os.getenv("CENTER_TOLERANCE_RATIO", "0.2")))
    MIN_FACE_RATIO: float = field(default_factory=lambda: float(os.getenv("MIN_FACE_RATIO", "0.3")))
    MAX_FACE_RATIO: float = field(default_factory=lambda: float(os.getenv("MAX_FACE_RATIO", "0.7")))
    CAPTURE_COOLDOWN_MS: float = field(default_factory=lambda: float(os.getenv("CAPTURE_COOLDOWN_MS", "3000")))
    MATCH_THRESHOLD: float = field(default_factory=lambda: float(os.getenv("MATCH_THRESHOLD", "0.6")))

    # =========================
    # Gate link (serial)
    # =========================
    # Disabled = test mode: verifications run and are logged, nothing is sent
    GATE_ENABLED: bool = field(default_factory=lambda: os.getenv("GATE_ENABLED", "true").lower() == "true")
    GATE_DEVICE_NAME: str = field(default_factory=lambda: os.getenv("GATE_DEVICE_NAME", "ESP32_Gate"))
    GATE_PORT: Optional[str] = field(default_factory=lambda: os.getenv("GATE_PORT"))
    GATE_BAUDRATE: int = field(default_factory=lambda: int(os.getenv("GATE_BAUDRATE", "115200")))
    GATE_TIMEOUT: float = field(default_factory=lambda: float(os.getenv("GATE_TIMEOUT", "1.0")))
    GATE_SECRET: str = field(default_factory=lambda: os.getenv("GATE_SECRET", ""))

    # =========================
    # Display
    # =========================
    DISPLAY_ENABLED: bool = field(default_factory=lambda: os.getenv("DISPLAY_ENABLED", "true").lower() == "true")
    DISPLAY_WIDTH: int = field(default_factory=lambda: int(os.getenv("DISPLAY_WIDTH", "1280")))
    DISPLAY_HEIGHT: int = field(default_factory=lambda: int(os.getenv("DISPLAY_HEIGHT", "720")))

    # =========================
    # Storage
    # =========================
    DATA_DIR: str = field(default_factory=lambda: os.getenv("DATA_DIR", "data"))
    DB_PATH: str = field(default_factory=lambda: os.getenv("DB_PATH", "data/shuttle.db"))
    CAPTURE_DIR: str = field(default_factory=lambda: os.getenv("CAPTURE_DIR", "data/captures"))
    LOG_FILE: str = field(default_factory=lambda: os.getenv("LOG_FILE", "shuttle_node.log"))


# Global config instance
config = Config()
