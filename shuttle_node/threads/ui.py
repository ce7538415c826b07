"""
UI Thread - Handles the on-board display.
Live video feed with detection boxes, verification status and gate link state.
"""

import threading
import time
import queue
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Callable
import logging

import numpy as np

try:
    import cv2
except ImportError:
    cv2 = None


logger = logging.getLogger(__name__)


@dataclass
class UIFrame:
    """Frame data for UI thread."""
    frame: np.ndarray
    detections: list = field(default_factory=list)
    status: str = ""
    link_state: str = "DISCONNECTED"
    verified_user: Optional[str] = None
    busy: bool = False
    timestamp: float = 0.0


class UIThread(threading.Thread):
    """
    UI Thread for the shuttle display.

    Keys:
        q  quit
        c  manual capture
        r  reconnect gate link
        a  retry gate authentication
        u  reload enrolled users
    """

    # Colors (BGR)
    COLOR_TRIGGER = (157, 255, 0)     # Green - above trigger score
    COLOR_WEAK = (68, 68, 255)        # Red - detection only
    COLOR_TEXT = (255, 255, 255)

    def __init__(
        self,
        display_width: int = 1280,
        display_height: int = 720,
        trigger_score: float = 0.7,
        bus_number: Optional[str] = None,
        window_name: str = "Shuttle Boarding"
    ):
        super().__init__(name="UIThread", daemon=True)

        self.display_width = display_width
        self.display_height = display_height
        self.trigger_score = trigger_score
        self.bus_number = bus_number
        self.window_name = window_name

        self._frame_queue: queue.Queue = queue.Queue(maxsize=2)
        self._stop_event = threading.Event()

        # Key actions, wired by the node
        self.actions: dict[str, Callable[[], None]] = {}
        self.on_quit: Optional[Callable[[], None]] = None

        # Stats
        self.fps = 0.0
        self._frame_count = 0
        self._fps_start_time = time.time()

    def run(self):
        """Main UI loop."""
        if cv2 is None:
            logger.error("OpenCV not available - UI disabled")
            return

        logger.info("UI thread started")

        cv2.namedWindow(self.window_name, cv2.WINDOW_NORMAL)
        cv2.resizeWindow(self.window_name, self.display_width, self.display_height)

        while not self._stop_event.is_set():
            try:
                data = self._frame_queue.get(timeout=0.1)
                display_frame = self._render(data)
            except queue.Empty:
                display_frame = None

            if display_frame is not None:
                cv2.imshow(self.window_name, display_frame)
                self._frame_count += 1

            now = time.time()
            if now - self._fps_start_time >= 1.0:
                self.fps = self._frame_count / (now - self._fps_start_time)
                self._frame_count = 0
                self._fps_start_time = now

            key = cv2.waitKey(1) & 0xFF
            if key == ord('q'):
                self._stop_event.set()
                if self.on_quit:
                    self.on_quit()
            elif key != 0xFF:
                self._handle_key(chr(key))

        cv2.destroyAllWindows()
        logger.info("UI thread stopped")

    def stop(self):
        """Signal thread to stop."""
        self._stop_event.set()

    def _handle_key(self, key: str):
        action = self.actions.get(key.lower())
        if action is None:
            return
        try:
            action()
        except Exception as e:
            logger.error(f"UI action '{key}' failed: {e}")

    def put_frame(self, ui_frame: UIFrame):
        """Queue a frame for display. Drops the oldest frame if the queue is full."""
        try:
            if self._frame_queue.full():
                try:
                    self._frame_queue.get_nowait()
                except queue.Empty:
                    pass
            self._frame_queue.put_nowait(ui_frame)
        except queue.Full:
            pass

    def _render(self, data: UIFrame) -> np.ndarray:
        """Render frame with detection boxes and status bar."""
        frame = data.frame.copy()
        src_h, src_w = frame.shape[:2]

        if src_w != self.display_width or src_h != self.display_height:
            frame = cv2.resize(frame, (self.display_width, self.display_height))
        sx = self.display_width / src_w
        sy = self.display_height / src_h

        for det in data.detections:
            x1, y1, x2, y2 = det.bbox
            color = self.COLOR_TRIGGER if det.score > self.trigger_score else self.COLOR_WEAK
            cv2.rectangle(
                frame,
                (int(x1 * sx), int(y1 * sy)),
                (int(x2 * sx), int(y2 * sy)),
                color, 2
            )

        if self.bus_number:
            cv2.putText(
                frame, f"Bus: {self.bus_number}",
                (self.display_width - 200, 40),
                cv2.FONT_HERSHEY_SIMPLEX, 0.8, self.COLOR_TEXT, 2
            )

        if data.busy:
            cv2.putText(
                frame, "Verifying...",
                (20, 40),
                cv2.FONT_HERSHEY_SIMPLEX, 1.0, self.COLOR_TRIGGER, 2
            )

        if data.verified_user:
            cv2.putText(
                frame, f"Last verified: {data.verified_user}",
                (20, self.display_height - 60),
                cv2.FONT_HERSHEY_SIMPLEX, 0.7, self.COLOR_TRIGGER, 2
            )

        return self._draw_status_bar(frame, data)

    def _draw_status_bar(self, frame: np.ndarray, data: UIFrame) -> np.ndarray:
        """Draw status bar at bottom of frame."""
        bar_height = 40
        bar_y = frame.shape[0] - bar_height

        cv2.rectangle(
            frame,
            (0, bar_y),
            (frame.shape[1], frame.shape[0]),
            (30, 30, 30), -1
        )

        link_color = self.COLOR_TRIGGER if data.link_state == "AUTHENTICATED" else self.COLOR_WEAK
        cv2.putText(
            frame, f"Gate: {data.link_state}",
            (20, bar_y + 28),
            cv2.FONT_HERSHEY_SIMPLEX, 0.6, link_color, 2
        )

        cv2.putText(
            frame, data.status,
            (380, bar_y + 28),
            cv2.FONT_HERSHEY_SIMPLEX, 0.6, self.COLOR_TEXT, 1
        )

        time_str = datetime.now().strftime("%H:%M:%S")
        cv2.putText(
            frame, f"{self.fps:.0f} FPS  {time_str}",
            (frame.shape[1] - 220, bar_y + 28),
            cv2.FONT_HERSHEY_SIMPLEX, 0.6, (150, 150, 150), 1
        )

        return frame
