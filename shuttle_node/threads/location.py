"""
Location Thread - Periodically reports the shuttle position to the backend.

Positions come from a position source (a serial GPS by default). An update
is only sent when the shuttle has moved at least `min_distance_m` since the
last reported point.
"""

import math
import threading
import time
import logging
from dataclasses import dataclass
from typing import Optional

import requests

try:
    import serial
except ImportError:
    serial = None


logger = logging.getLogger(__name__)


MOVEMENT_ENDPOINT = "/api/transport/update_bus_movement"
EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True)
class Position:
    latitude: float
    longitude: float


def haversine_m(a: Position, b: Position) -> float:
    """Great-circle distance between two positions in meters."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def _nmea_coordinate(value: str, hemisphere: str) -> Optional[float]:
    """ddmm.mmmm / dddmm.mmmm + N/S/E/W -> signed decimal degrees."""
    if not value or not hemisphere:
        return None
    try:
        raw = float(value)
    except ValueError:
        return None

    degrees = int(raw // 100)
    minutes = raw - degrees * 100
    decimal = degrees + minutes / 60.0
    if hemisphere in ("S", "W"):
        decimal = -decimal
    return decimal


def parse_nmea_sentence(line: str) -> Optional[Position]:
    """
    Extract a fix from a GGA or RMC sentence.

    Returns None for other sentences, invalid fixes or malformed input.
    """
    line = line.strip()
    if not line.startswith("$"):
        return None

    body = line[1:].split("*", 1)[0]
    fields = body.split(",")
    if not fields or len(fields[0]) < 5:
        return None

    sentence = fields[0][-3:]

    if sentence == "GGA":
        # $xxGGA,time,lat,N,lon,E,quality,...
        if len(fields) < 7 or fields[6] in ("", "0"):
            return None
        lat = _nmea_coordinate(fields[2], fields[3])
        lon = _nmea_coordinate(fields[4], fields[5])
    elif sentence == "RMC":
        # $xxRMC,time,status,lat,N,lon,E,...
        if len(fields) < 7 or fields[2] != "A":
            return None
        lat = _nmea_coordinate(fields[3], fields[4])
        lon = _nmea_coordinate(fields[5], fields[6])
    else:
        return None

    if lat is None or lon is None:
        return None
    return Position(latitude=lat, longitude=lon)


class NmeaPositionSource:
    """
    Serial GPS receiver speaking NMEA 0183.

    get_position() drains what the receiver has buffered and returns the
    most recent fix, or None.
    """

    def __init__(self, port: str, baudrate: int = 9600, timeout: float = 1.0, max_lines: int = 20):
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.max_lines = max_lines
        self._serial = None

    def open(self) -> bool:
        if serial is None:
            logger.error("pyserial not available - GPS disabled")
            return False
        try:
            self._serial = serial.Serial(self.port, self.baudrate, timeout=self.timeout)
            logger.info(f"GPS opened on {self.port} @ {self.baudrate}")
            return True
        except Exception as e:
            logger.error(f"Failed to open GPS on {self.port}: {e}")
            self._serial = None
            return False

    def close(self):
        if self._serial is not None:
            try:
                self._serial.close()
            except Exception as e:
                logger.warning(f"Error closing GPS port: {e}")
            self._serial = None

    def get_position(self) -> Optional[Position]:
        if self._serial is None and not self.open():
            return None

        latest = None
        try:
            for _ in range(self.max_lines):
                raw = self._serial.readline()
                if not raw:
                    break
                position = parse_nmea_sentence(raw.decode("ascii", errors="ignore"))
                if position is not None:
                    latest = position
                if not self._serial.in_waiting:
                    break
        except Exception as e:
            logger.warning(f"GPS read error: {e}")
            self.close()
        return latest


class LocationThread(threading.Thread):
    """
    Background thread reporting bus movement.

    Args:
        position_source: get_position() -> Position or None
        backend_url: backend base URL
        device_id: identifier sent with every update
        interval_seconds: polling period
        min_distance_m: updates closer than this to the last sent point are dropped
        session: requests-compatible session (post)
    """

    def __init__(
        self,
        position_source,
        backend_url: str,
        device_id: str,
        interval_seconds: float = 1.0,
        min_distance_m: float = 0.5,
        request_timeout: float = 10.0,
        session=None,
    ):
        super().__init__(name="LocationThread", daemon=True)

        self.position_source = position_source
        self.backend_url = backend_url.rstrip("/")
        self.device_id = device_id
        self.interval = interval_seconds
        self.min_distance_m = min_distance_m
        self.request_timeout = request_timeout
        self.session = session or requests.Session()

        self._stop_event = threading.Event()

        self.last_sent: Optional[Position] = None
        self.last_sent_time: Optional[float] = None
        self.last_error: Optional[str] = None

        # Stats
        self.updates_sent = 0
        self.updates_skipped = 0
        self.updates_failed = 0

    def run(self):
        """Main reporting loop."""
        logger.info(f"Location thread started (device {self.device_id})")

        while not self._stop_event.is_set():
            self.report_once()
            self._stop_event.wait(timeout=self.interval)

        close = getattr(self.position_source, "close", None)
        if close is not None:
            try:
                close()
            except Exception as e:
                logger.warning(f"Error closing position source: {e}")

        logger.info("Location thread stopped")

    def stop(self):
        """Signal thread to stop."""
        self._stop_event.set()

    def should_send(self, position: Position) -> bool:
        """False when the position repeats, or is within min_distance_m of, the last sent one."""
        if self.last_sent is None:
            return True
        if position == self.last_sent:
            return False
        return haversine_m(self.last_sent, position) >= self.min_distance_m

    def report_once(self) -> bool:
        """
        Poll the position source and send one update if the bus moved.

        Returns:
            True if an update was delivered to the backend
        """
        try:
            position = self.position_source.get_position()
        except Exception as e:
            logger.warning(f"Position source error: {e}")
            return False

        if position is None:
            return False

        if not self.should_send(position):
            self.updates_skipped += 1
            return False

        payload = {
            "device_id": self.device_id,
            "latitude": position.latitude,
            "longitude": position.longitude,
        }

        try:
            response = self.session.post(
                f"{self.backend_url}{MOVEMENT_ENDPOINT}",
                json=payload,
                timeout=self.request_timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Location update failed (network): {e}")
            self.updates_failed += 1
            self.last_error = str(e)
            return False

        self.last_sent = position
        self.last_sent_time = time.time()
        self.last_error = None
        self.updates_sent += 1
        logger.debug(f"Location sent: {position.latitude:.6f}, {position.longitude:.6f}")
        return True

    def get_stats(self) -> dict:
        """Get reporting statistics."""
        return {
            "updates_sent": self.updates_sent,
            "updates_skipped": self.updates_skipped,
            "updates_failed": self.updates_failed,
            "last_error": self.last_error,
        }
