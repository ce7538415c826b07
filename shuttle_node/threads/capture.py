"""
Camera Capture Thread - owns the door camera.

    Camera ──→ frame queue (size 2, oldest dropped) ──→ frame loop
           └─→ latest frame ──→ capture_still() (JPEG on disk)

The camera is reopened after MAX_READ_FAILURES consecutive failed reads.
"""

import os
import threading
import time
import queue
from collections import deque
from typing import Optional
import logging

import numpy as np

try:
    import cv2
except ImportError:
    cv2 = None

logger = logging.getLogger(__name__)


class CaptureThread(threading.Thread):
    """
    Reads the camera at its native rate.

    Consumers:
        get_frame()        next frame for detection (may skip frames)
        get_latest_frame() copy of the newest frame
        capture_still()    newest frame written as JPEG, returns the path
    """

    MAX_READ_FAILURES = 30
    REOPEN_DELAY = 2.0

    def __init__(
        self,
        camera_index: int = 0,
        width: int = 1280,
        height: int = 720,
        fps: int = 30,
        capture_dir: str = "data/captures",
        queue_size: int = 2,
        jpeg_quality: int = 95,
    ):
        super().__init__(name="CaptureThread", daemon=True)

        self.camera_index = camera_index
        self.width = width
        self.height = height
        self.fps = fps
        self.capture_dir = capture_dir
        self.jpeg_quality = jpeg_quality

        self._frames: queue.Queue = queue.Queue(maxsize=queue_size)
        self._latest: Optional[np.ndarray] = None
        self._latest_lock = threading.Lock()
        self._still_lock = threading.Lock()

        self._camera = None
        self._stop_event = threading.Event()
        self._read_times: deque = deque(maxlen=60)

        # Stats
        self.frames_captured = 0
        self.frames_dropped = 0
        self.stills_captured = 0
        self.camera_reopens = 0

        self.is_running = False
        self.camera_opened = False

    @property
    def actual_fps(self) -> float:
        if len(self._read_times) < 2:
            return 0.0
        span = self._read_times[-1] - self._read_times[0]
        return (len(self._read_times) - 1) / span if span > 0 else 0.0

    # ========================
    # Camera
    # ========================

    def _open_camera(self) -> bool:
        if cv2 is None:
            logger.error("OpenCV not available")
            return False

        try:
            camera = cv2.VideoCapture(self.camera_index)
            if not camera.isOpened():
                logger.error(f"Failed to open camera {self.camera_index}")
                camera.release()
                return False

            for prop, value in (
                (cv2.CAP_PROP_FRAME_WIDTH, self.width),
                (cv2.CAP_PROP_FRAME_HEIGHT, self.height),
                (cv2.CAP_PROP_FPS, self.fps),
                (cv2.CAP_PROP_BUFFERSIZE, 1),
            ):
                camera.set(prop, value)

            self._camera = camera
            self.camera_opened = True
            logger.info(
                f"Camera {self.camera_index} opened: "
                f"{int(camera.get(cv2.CAP_PROP_FRAME_WIDTH))}x"
                f"{int(camera.get(cv2.CAP_PROP_FRAME_HEIGHT))}"
            )
            return True

        except Exception as e:
            logger.error(f"Camera open error: {e}")
            return False

    def _close_camera(self):
        if self._camera is not None:
            self._camera.release()
            self._camera = None

    def _reopen_camera(self):
        logger.warning(f"Camera {self.camera_index} stopped delivering frames, reopening")
        self._close_camera()
        self.camera_reopens += 1
        while not self._stop_event.is_set():
            if self._open_camera():
                return
            self._stop_event.wait(timeout=self.REOPEN_DELAY)

    def run(self):
        if not self._open_camera():
            logger.error("Capture thread not started - camera not available")
            return

        self.is_running = True
        failures = 0
        logger.info("Capture thread started")

        while not self._stop_event.is_set():
            ok, frame = self._camera.read()

            if not ok:
                failures += 1
                if failures >= self.MAX_READ_FAILURES:
                    self._reopen_camera()
                    failures = 0
                else:
                    time.sleep(0.01)
                continue

            failures = 0
            self.frames_captured += 1
            self._read_times.append(time.time())
            self._publish(frame)

        self._close_camera()
        self.is_running = False
        logger.info("Capture thread stopped")

    def stop(self):
        """Signal thread to stop."""
        self._stop_event.set()

    def _publish(self, frame: np.ndarray):
        with self._latest_lock:
            self._latest = frame

        while True:
            try:
                self._frames.put_nowait(frame)
                return
            except queue.Full:
                try:
                    self._frames.get_nowait()
                    self.frames_dropped += 1
                except queue.Empty:
                    pass

    # ========================
    # Consumers
    # ========================

    def get_frame(self, timeout: float = 0.1) -> Optional[np.ndarray]:
        try:
            return self._frames.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_latest_frame(self) -> Optional[np.ndarray]:
        with self._latest_lock:
            return None if self._latest is None else self._latest.copy()

    def capture_still(self) -> Optional[str]:
        """
        Write the newest full-resolution frame as a JPEG.

        Returns:
            Path of the file, or None if no frame is available or the write failed
        """
        frame = self.get_latest_frame()
        if frame is None:
            logger.error("No frame available for still capture")
            return None

        with self._still_lock:
            os.makedirs(self.capture_dir, exist_ok=True)
            path = os.path.join(
                self.capture_dir,
                f"still_{time.strftime('%Y%m%d_%H%M%S')}_{self.stills_captured:05d}.jpg",
            )
            if not cv2.imwrite(path, frame, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality]):
                logger.error(f"Failed to write still {path}")
                return None
            self.stills_captured += 1

        logger.debug(f"Still written: {path}")
        return path

    def get_stats(self) -> dict:
        """Get capture statistics."""
        return {
            "frames_captured": self.frames_captured,
            "frames_dropped": self.frames_dropped,
            "stills_captured": self.stills_captured,
            "camera_reopens": self.camera_reopens,
            "actual_fps": round(self.actual_fps, 1),
            "is_running": self.is_running,
            "camera_opened": self.camera_opened,
        }
