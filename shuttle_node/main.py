"""
Shuttle Node Main Orchestrator
------------------------------
Central coordinator for the on-board boarding verification components.

This can run on:
- Raspberry Pi / Jetson in the shuttle (production)
- Laptop with webcam (development/demo, gate link disabled)

Architecture:
- Single Python process
- Worker threads: Capture, UI, Location, one verification worker at a time
- Main thread runs the frame loop (detection + trigger)

Flow:
1. Camera capture → Detection → Trigger (centered, sized, confident, cooled down)
2. Trigger dispatches ONE verification at a time
3. Verification: still capture → embedding → match against enrolled users
4. Verified boardings are logged and the gate controller is notified
5. UI displays detections, status and gate link state
6. Location thread reports bus movement to the backend

For laptop demo:
- GATE_ENABLED=false runs in test mode (no gate commands)
- Webcam used instead of the on-board camera
"""

import functools
import signal
import sys
import time
import logging
import threading
from pathlib import Path
from typing import Optional

from .config import config
from .storage import FaceDatabase, UserStore
from .vision import FaceDetector, FaceEmbedder
from .vision.preprocess import prepare_embedder_input
from .core import (
    GateLink,
    LinkEvent,
    LinkState,
    FrameLoopDriver,
    VerificationPipeline,
    create_gate_link_from_config,
    create_frame_loop_from_config,
)
from .threads import (
    CaptureThread,
    UIThread,
    UIFrame,
    LocationThread,
    create_capture_thread_from_config,
    create_ui_thread_from_config,
    create_location_thread_from_config,
)


logger = logging.getLogger("ShuttleNode")


def setup_logging(log_file: str = config.LOG_FILE):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file),
        ]
    )


class ShuttleNode:
    """
    Main shuttle node application.

    Coordinates all components and runs the frame loop on the main thread.
    """

    def __init__(self):
        # Core state
        self._running = False
        self._shutdown_event = threading.Event()
        self._stopped = False

        # Data directory
        self.data_dir = Path(config.DATA_DIR)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        # Components (initialized in start())
        self.user_store: Optional[UserStore] = None
        self.face_db: Optional[FaceDatabase] = None
        self.detector: Optional[FaceDetector] = None
        self.embedder: Optional[FaceEmbedder] = None
        self.gate_link: Optional[GateLink] = None
        self.pipeline: Optional[VerificationPipeline] = None
        self.driver: Optional[FrameLoopDriver] = None
        self.test_mode = not config.GATE_ENABLED

        # Threads
        self.capture_thread: Optional[CaptureThread] = None
        self.ui_thread: Optional[UIThread] = None
        self.location_thread: Optional[LocationThread] = None

        # Latest overlay data (written by the frame loop)
        self._last_detections: list = []

        self.stats = {
            "frames_processed": 0,
            "start_time": None,
        }

    def _init_storage(self) -> bool:
        """Initialize storage components."""
        try:
            logger.info("Initializing storage...")

            Path(config.DB_PATH).parent.mkdir(parents=True, exist_ok=True)
            self.user_store = UserStore(db_path=config.DB_PATH)

            self.face_db = FaceDatabase(threshold=config.MATCH_THRESHOLD)
            self.face_db.refresh(self.user_store)

            logger.info(f"Storage initialized: {self.face_db.count()} users enrolled")
            return True

        except Exception as e:
            logger.error(f"Failed to initialize storage: {e}")
            return False

    def _init_vision(self) -> bool:
        """Initialize detection and embedding models."""
        try:
            logger.info("Initializing vision pipeline...")

            detector_path = Path(config.DETECTOR_MODEL_PATH)
            embedder_path = Path(config.EMBEDDER_MODEL_PATH)

            if not detector_path.exists():
                logger.error(f"Face detection model not found: {detector_path}")
                return False

            if not embedder_path.exists():
                logger.error(f"Embedding model not found: {embedder_path}")
                return False

            self.detector = FaceDetector(
                model_path=str(detector_path),
                conf_threshold=config.DETECTION_THRESHOLD,
            )
            self.embedder = FaceEmbedder(model_path=str(embedder_path))

            if not self.embedder.is_ready:
                logger.error("Embedding model failed to load")
                return False

            logger.info("Vision pipeline initialized")
            return True

        except Exception as e:
            logger.error(f"Failed to initialize vision: {e}")
            return False

    def _init_gate(self) -> bool:
        """Initialize the gate controller link. A missing gate is not fatal."""
        if self.test_mode:
            logger.info("Gate link disabled - running in test mode")
            return True

        try:
            logger.info(f"Connecting to gate controller {config.GATE_DEVICE_NAME}...")
            self.gate_link = create_gate_link_from_config(config)
            self.gate_link.on_state_change = self._on_link_state
            self.gate_link.on_event = self._on_link_event

            result = self.gate_link.connect()
            logger.info(f"Gate link connect: {result.value}")
            return True

        except Exception as e:
            logger.error(f"Failed to initialize gate link: {e}")
            return False

    def _init_camera(self) -> bool:
        """Initialize camera via CaptureThread."""
        try:
            logger.info(f"Opening camera {config.CAMERA_INDEX} via capture thread...")

            self.capture_thread = create_capture_thread_from_config(config)
            self.capture_thread.start()

            # Wait for camera to open (up to 3 seconds)
            for _ in range(30):
                if self.capture_thread.camera_opened:
                    break
                time.sleep(0.1)

            if not self.capture_thread.camera_opened:
                logger.error(f"Failed to open camera {config.CAMERA_INDEX}")
                return False

            return True

        except Exception as e:
            logger.error(f"Failed to initialize camera: {e}")
            return False

    def _init_threads(self) -> bool:
        """Initialize the verification pipeline, frame loop and worker threads."""
        try:
            logger.info("Initializing worker threads...")

            self.pipeline = VerificationPipeline(
                camera=self.capture_thread,
                embedder=self.embedder,
                face_db=self.face_db,
                event_sink=self.user_store,
                gate_link=self.gate_link,
                preprocess=functools.partial(
                    prepare_embedder_input,
                    channels_first=self.embedder.channels_first,
                ),
            )

            self.driver = create_frame_loop_from_config(
                config,
                self.detector,
                self.pipeline,
                on_detections=self._on_detections,
            )

            if config.DISPLAY_ENABLED:
                self.ui_thread = create_ui_thread_from_config(config)
                self.ui_thread.on_quit = self.request_shutdown
                self.ui_thread.actions = {
                    "c": self.manual_capture,
                    "r": self.reconnect_gate,
                    "a": self.retry_authentication,
                    "u": self.reload_users,
                }

            if config.LOCATION_ENABLED:
                if config.GPS_PORT:
                    self.location_thread = create_location_thread_from_config(config)
                else:
                    logger.warning("Location reporting enabled but GPS_PORT not set")
            else:
                logger.info("Location reporting disabled")

            logger.info("Worker threads initialized")
            return True

        except Exception as e:
            logger.error(f"Failed to initialize threads: {e}")
            return False

    # ========================
    # Callbacks
    # ========================

    def _on_detections(self, detections: list):
        self._last_detections = detections

    def _on_link_state(self, state: LinkState):
        logger.info(f"Gate link state: {state.value}")

    def _on_link_event(self, event: LinkEvent):
        logger.info(f"Gate link event: {event.type.value} - {event.message}")

    # ========================
    # Operator actions
    # ========================

    def manual_capture(self):
        """Verify the current frame regardless of the trigger."""
        frame = self.capture_thread.get_latest_frame() if self.capture_thread else None
        if frame is None or self.driver is None:
            logger.warning("Manual capture unavailable - no frame")
            return
        h, w = frame.shape[:2]
        self.driver.request_capture(w, h)

    def reconnect_gate(self):
        if self.gate_link is None:
            logger.info("Gate link disabled (test mode)")
            return
        result = self.gate_link.reconnect()
        logger.info(f"Gate link reconnect: {result.value}")

    def retry_authentication(self):
        if self.gate_link is None:
            logger.info("Gate link disabled (test mode)")
            return
        result = self.gate_link.authenticate()
        logger.info(f"Gate authentication retry: {result.value}")

    def reload_users(self) -> int:
        """Refresh the matcher snapshot from the user store."""
        count = self.face_db.refresh(self.user_store)
        logger.info(f"Reloaded {count} users")
        return count

    def request_shutdown(self):
        self._running = False
        self._shutdown_event.set()

    # ========================
    # Lifecycle
    # ========================

    def start(self) -> bool:
        """
        Start the shuttle node.

        Returns:
            True if started successfully
        """
        logger.info("=" * 50)
        logger.info(f"Shuttle Node starting: {config.DEVICE_ID}")
        if config.BUS_NUMBER:
            logger.info(f"Bus: {config.BUS_NUMBER}")
        logger.info("=" * 50)

        if not self._init_storage():
            return False

        if not self._init_vision():
            return False

        if not self._init_gate():
            return False

        if not self._init_camera():
            return False

        if not self._init_threads():
            return False

        if self.ui_thread:
            self.ui_thread.start()

        if self.location_thread:
            self.location_thread.start()

        self.stats["start_time"] = time.time()
        self._running = True

        logger.info("Shuttle Node started successfully")
        return True

    def run(self):
        """
        Main frame loop.

        Pulls the most recent frames from the capture thread; the driver
        decides whether to dispatch a verification.
        """
        if not self._running:
            logger.error("Shuttle Node not started")
            return

        logger.info("Starting main frame loop...")

        while self._running and not self._shutdown_event.is_set():
            frame = self.capture_thread.get_frame(timeout=0.5)
            if frame is None:
                continue

            self.stats["frames_processed"] += 1
            self.driver.on_frame(frame)

            if self.ui_thread:
                self.ui_thread.put_frame(UIFrame(
                    frame=frame,
                    detections=self._last_detections,
                    status=self.driver.status,
                    link_state="TEST MODE" if self.test_mode else self.gate_link.state.value,
                    verified_user=self.driver.last_verified_user,
                    busy=self.driver.is_busy,
                    timestamp=time.time(),
                ))

        logger.info("Main frame loop ended")

    def stop(self):
        """Stop the shuttle node gracefully."""
        if self._stopped:
            return
        self._stopped = True

        logger.info("Shuttle Node shutting down...")

        self._running = False
        self._shutdown_event.set()

        if self.location_thread:
            self.location_thread.stop()
            self.location_thread.join(timeout=5.0)

        if self.ui_thread:
            self.ui_thread.stop()
            self.ui_thread.join(timeout=2.0)

        # Stop capture last to avoid starving an in-flight verification
        if self.capture_thread:
            self.capture_thread.stop()
            self.capture_thread.join(timeout=2.0)

        if self.gate_link:
            self.gate_link.disconnect()

        logger.info("Shuttle Node stopped")
        self._print_stats()

    def _print_stats(self):
        """Log final session statistics."""
        if not self.stats["start_time"]:
            return

        runtime = time.time() - self.stats["start_time"]
        fps = self.stats["frames_processed"] / runtime if runtime > 0 else 0

        logger.info("=" * 50)
        logger.info("Session Statistics:")
        logger.info(f"  Runtime: {runtime:.1f}s")
        logger.info(f"  Frames processed: {self.stats['frames_processed']}")
        logger.info(f"  Average loop FPS: {fps:.1f}")

        if self.capture_thread:
            cap_stats = self.capture_thread.get_stats()
            logger.info("  Camera capture:")
            logger.info(f"    - Frames captured: {cap_stats['frames_captured']}")
            logger.info(f"    - Capture FPS: {cap_stats['actual_fps']}")
            logger.info(f"    - Frames dropped: {cap_stats['frames_dropped']}")

        if self.driver:
            logger.info(f"  Captures triggered: {self.driver.stats['captures_triggered']}")

        if self.pipeline:
            p_stats = self.pipeline.get_stats()
            logger.info(f"  Verifications: {p_stats['runs']}")
            logger.info(f"    - Verified: {p_stats['verified']}")
            logger.info(f"    - Not verified: {p_stats['unverified']}")
            logger.info(f"    - Errors: {p_stats['errors']}")
            logger.info(f"    - Gate notified: {p_stats['gate_notified']}")
            if self.pipeline.recent_durations:
                recent = ", ".join(f"{d:.0f}" for d in self.pipeline.recent_durations)
                logger.info(f"    - Recent durations (ms): {recent}")

        if self.gate_link:
            g_stats = self.gate_link.get_stats()
            logger.info(f"  Gate link: {g_stats['state']}")
            logger.info(f"    - Commands sent: {g_stats['commands_sent']}")
            logger.info(f"    - Commands rejected: {g_stats['commands_rejected']}")
            logger.info(f"    - Auth failures: {g_stats['auth_failures']}")

        if self.location_thread:
            l_stats = self.location_thread.get_stats()
            logger.info(f"  Location updates sent: {l_stats['updates_sent']}")

        logger.info("=" * 50)


def main():
    """Entry point."""
    setup_logging()
    node = ShuttleNode()

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        node.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not node.start():
        logger.error("Failed to start Shuttle Node")
        node.stop()
        sys.exit(1)

    try:
        node.run()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
    finally:
        node.stop()


if __name__ == "__main__":
    main()
