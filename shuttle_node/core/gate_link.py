"""
Gate Link - authenticated command channel to the remote gate controller.

Line-oriented ASCII protocol over a serial byte stream:
    out: AUTHENTICATE <secret>, FACE_DETECTED
    in:  AUTH_SUCCESS, AUTH_FAILED, NOT_AUTHENTICATED, anything else = diagnostic

State machine:
    DISCONNECTED --connect()--> CONNECTING --open--> CONNECTED_UNAUTHENTICATED
    CONNECTED_UNAUTHENTICATED --AUTH_SUCCESS--> AUTHENTICATED
    CONNECTED_UNAUTHENTICATED --AUTH_FAILED--> CONNECTED_UNAUTHENTICATED
    any --transport error / disconnect()--> DISCONNECTED
    CONNECTING --failure--> FAILED --> DISCONNECTED

The link owns the transport exclusively. Every state change happens
under one lock; the reader thread and send() never race on state.
"""

import errno
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Callable
import logging

try:
    import serial
    import serial.tools.list_ports
except ImportError:
    serial = None


logger = logging.getLogger(__name__)


AUTH_VERB = "AUTHENTICATE"
CMD_FACE_DETECTED = "FACE_DETECTED"


class LinkState(Enum):
    """Gate link connection state."""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED_UNAUTHENTICATED = "CONNECTED_UNAUTHENTICATED"
    AUTHENTICATED = "AUTHENTICATED"
    FAILED = "FAILED"


class ConnectResult(Enum):
    """Outcome of a connect attempt."""
    CONNECTED = "CONNECTED"
    ALREADY_CONNECTED = "ALREADY_CONNECTED"
    DEVICE_NOT_FOUND = "DEVICE_NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    OPEN_FAILED = "OPEN_FAILED"


class SendResult(Enum):
    """Outcome of a send() call."""
    SENT = "SENT"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    NOT_CONNECTED = "NOT_CONNECTED"
    WRITE_FAILED = "WRITE_FAILED"


class InboundKind(Enum):
    """Recognized inbound tokens."""
    AUTH_SUCCESS = "AUTH_SUCCESS"
    AUTH_FAILED = "AUTH_FAILED"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    DIAGNOSTIC = "DIAGNOSTIC"


class LinkEventType(Enum):
    """Events surfaced to observers (UI / status)."""
    CONNECTED = "CONNECTED"
    CONNECT_FAILED = "CONNECT_FAILED"
    AUTHENTICATED = "AUTHENTICATED"
    AUTH_ERROR = "AUTH_ERROR"
    COMMAND_REJECTED = "COMMAND_REJECTED"
    DIAGNOSTIC = "DIAGNOSTIC"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    DISCONNECTED = "DISCONNECTED"


@dataclass
class InboundMessage:
    """One parsed inbound line."""
    kind: InboundKind
    text: str


@dataclass
class LinkEvent:
    """Link event for observers."""
    type: LinkEventType
    message: str
    timestamp: float = field(default_factory=time.time)


def parse_line(raw) -> Optional[InboundMessage]:
    """
    Parse one inbound line. Returns None for blank lines.

    Args:
        raw: bytes or str, with or without line terminator
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="ignore")
    text = raw.strip()
    if not text:
        return None

    try:
        kind = InboundKind(text)
    except ValueError:
        kind = InboundKind.DIAGNOSTIC
    return InboundMessage(kind=kind, text=text)


def find_device_port(device_name: str) -> Optional[str]:
    """
    Find the serial port of the paired gate controller by name.
    Matches port name, description, product or serial number.
    """
    if serial is None:
        logger.error("pyserial not available")
        return None

    for port in serial.tools.list_ports.comports():
        candidates = (port.name, port.description, port.product, port.serial_number)
        if device_name in candidates:
            logger.info(f"Found {device_name} on {port.device}")
            return port.device
    return None


def open_serial(port: str, baudrate: int, timeout: float):
    """Open a pyserial transport."""
    if serial is None:
        raise OSError("pyserial not available")
    return serial.Serial(
        port=port,
        baudrate=baudrate,
        timeout=timeout,
        write_timeout=timeout,
    )


class GateLinkReader(threading.Thread):
    """
    Reads lines from the transport and hands them to the link.

    readline() returns a partial line when the read timeout expires, so
    bytes are buffered until a newline arrives.
    """

    def __init__(self, link: "GateLink", transport):
        super().__init__(name="GateLinkReader", daemon=True)
        self._link = link
        self._transport = transport
        self._stop_event = threading.Event()
        self._buffer = b""

    def stop(self):
        """Signal thread to stop."""
        self._stop_event.set()

    def feed(self, data) -> list:
        """Append received data and return the complete lines it finishes."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._buffer += data

        *lines, self._buffer = self._buffer.split(b"\n")
        return lines

    def run(self):
        logger.debug("Gate link reader started")
        while not self._stop_event.is_set():
            try:
                data = self._transport.readline()
            except Exception as e:
                if not self._stop_event.is_set():
                    self._link._handle_transport_error(self._transport, e)
                break

            if data:
                for line in self.feed(data):
                    self._link.handle_line(line)
        logger.debug("Gate link reader stopped")


class GateLink:
    """
    Serial command channel to the remote gate controller.

    Usage:
        link = GateLink(device_name="ESP32_Gate", secret="...")
        if link.connect() == ConnectResult.CONNECTED:
            ...  # wait for AUTH_SUCCESS
        link.send(CMD_FACE_DETECTED)
        link.disconnect()
    """

    def __init__(
        self,
        device_name: str = "ESP32_Gate",
        secret: str = "",
        port: Optional[str] = None,
        baudrate: int = 115200,
        timeout: float = 1.0,
        port_finder: Optional[Callable[[str], Optional[str]]] = None,
        transport_factory: Optional[Callable] = None,
        start_reader: bool = True,
        max_responses: int = 50,
    ):
        self.device_name = device_name
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout

        self._secret = secret
        self._port_finder = port_finder or find_device_port
        self._transport_factory = transport_factory or open_serial
        self._start_reader = start_reader

        self._lock = threading.RLock()
        self._state = LinkState.DISCONNECTED
        self._transport = None
        self._reader: Optional[GateLinkReader] = None
        self.last_failure: Optional[ConnectResult] = None

        # Recent traffic, newest last
        self.responses: deque = deque(maxlen=max_responses)

        # Stats
        self._stats = {
            "connect_attempts": 0,
            "commands_sent": 0,
            "commands_rejected": 0,
            "auth_failures": 0,
            "transport_errors": 0,
        }

        # Callbacks
        self.on_state_change: Optional[Callable[[LinkState], None]] = None
        self.on_event: Optional[Callable[[LinkEvent], None]] = None

    @property
    def state(self) -> LinkState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state in (LinkState.CONNECTED_UNAUTHENTICATED, LinkState.AUTHENTICATED)

    @property
    def is_authenticated(self) -> bool:
        return self.state == LinkState.AUTHENTICATED

    # ========================
    # Lifecycle
    # ========================

    def connect(self) -> ConnectResult:
        """
        Discover the paired device, open the transport and start the handshake.
        Failures are reported, never retried.
        """
        with self._lock:
            if self._state in (
                LinkState.CONNECTING,
                LinkState.CONNECTED_UNAUTHENTICATED,
                LinkState.AUTHENTICATED,
            ):
                return ConnectResult.ALREADY_CONNECTED
            self._stats["connect_attempts"] += 1
            self._set_state(LinkState.CONNECTING)

        port = self.port or self._port_finder(self.device_name)
        if not port:
            return self._fail(ConnectResult.DEVICE_NOT_FOUND, f"{self.device_name} not found in paired devices")

        if os.path.exists(port) and not os.access(port, os.R_OK | os.W_OK):
            return self._fail(ConnectResult.PERMISSION_DENIED, f"No read/write permission on {port}")

        try:
            transport = self._transport_factory(port, self.baudrate, self.timeout)
        except PermissionError as e:
            return self._fail(ConnectResult.PERMISSION_DENIED, f"Permission denied opening {port}: {e}")
        except Exception as e:
            if getattr(e, "errno", None) in (errno.EACCES, errno.EPERM):
                return self._fail(ConnectResult.PERMISSION_DENIED, f"Permission denied opening {port}: {e}")
            return self._fail(ConnectResult.OPEN_FAILED, f"Failed to open {port}: {e}")

        with self._lock:
            self._transport = transport
            self.last_failure = None
            self._set_state(LinkState.CONNECTED_UNAUTHENTICATED)
            if self._start_reader:
                self._reader = GateLinkReader(self, transport)
                self._reader.start()

        logger.info(f"Connected to {self.device_name} on {port}")
        self._record(f"Connected to {self.device_name}")
        self._emit(LinkEventType.CONNECTED, f"Connected to {self.device_name}")

        if self.authenticate() == SendResult.WRITE_FAILED:
            return self._fail(ConnectResult.OPEN_FAILED, f"Failed to send handshake to {self.device_name}")
        return ConnectResult.CONNECTED

    def disconnect(self) -> bool:
        """Close the transport. Returns False if there was nothing to close."""
        with self._lock:
            transport = self._transport
            if transport is None:
                self._set_state(LinkState.DISCONNECTED)
                return False
            self._release()

        logger.info(f"Disconnected from {self.device_name}")
        self._record(f"Disconnected from {self.device_name}")
        self._emit(LinkEventType.DISCONNECTED, f"Disconnected from {self.device_name}")
        return True

    def reconnect(self) -> ConnectResult:
        """Manual reconnect: drop any existing link and connect again."""
        self.disconnect()
        return self.connect()

    # ========================
    # Commands
    # ========================

    def authenticate(self) -> SendResult:
        """(Re)send the authentication handshake."""
        return self.send(f"{AUTH_VERB} {self._secret}")

    def send(self, command: str) -> SendResult:
        """
        Send a command line to the gate controller.

        Anything other than AUTHENTICATE is rejected locally (no write)
        unless the link is authenticated.
        """
        is_auth = command.startswith(AUTH_VERB)
        label = AUTH_VERB if is_auth else command

        with self._lock:
            if self._state != LinkState.AUTHENTICATED and not is_auth:
                self._stats["commands_rejected"] += 1
                logger.warning(f"Must authenticate before sending commands (dropped {command})")
                return SendResult.NOT_AUTHENTICATED

            transport = self._transport
            if transport is None:
                logger.warning(f"Not connected to {self.device_name}")
                return SendResult.NOT_CONNECTED

            try:
                transport.write(f"{command}\n".encode("utf-8"))
                transport.flush()
            except Exception as e:
                logger.error(f"Error sending {label}: {e}")
                self._stats["transport_errors"] += 1
                self._release()
                failed = True
            else:
                self._stats["commands_sent"] += 1
                failed = False

        if failed:
            self._emit(LinkEventType.TRANSPORT_ERROR, f"Write failed: {label}")
            return SendResult.WRITE_FAILED

        logger.info(f"Sent: {label}")
        self._record(f"Sent: {label}")
        return SendResult.SENT

    # ========================
    # Inbound
    # ========================

    def handle_line(self, raw) -> Optional[InboundMessage]:
        """Parse one inbound line and apply it to the state machine."""
        message = parse_line(raw)
        if message is None:
            return None

        self._record(f"Received: {message.text}")
        self._apply(message)
        return message

    def _apply(self, message: InboundMessage):
        """Single state-update function for inbound messages."""
        event = None

        with self._lock:
            if message.kind == InboundKind.AUTH_SUCCESS:
                if self._transport is not None:
                    self._set_state(LinkState.AUTHENTICATED)
                    event = (LinkEventType.AUTHENTICATED, "Authentication successful")

            elif message.kind == InboundKind.AUTH_FAILED:
                self._stats["auth_failures"] += 1
                if self._transport is not None:
                    self._set_state(LinkState.CONNECTED_UNAUTHENTICATED)
                event = (LinkEventType.AUTH_ERROR, "Authentication failed: incorrect password")

            elif message.kind == InboundKind.NOT_AUTHENTICATED:
                if self._state == LinkState.AUTHENTICATED:
                    self._set_state(LinkState.CONNECTED_UNAUTHENTICATED)
                event = (LinkEventType.COMMAND_REJECTED, "Command rejected: not authenticated")

            else:
                event = (LinkEventType.DIAGNOSTIC, message.text)

        if event[0] in (LinkEventType.AUTH_ERROR, LinkEventType.COMMAND_REJECTED):
            logger.warning(event[1])
        elif event[0] == LinkEventType.DIAGNOSTIC:
            logger.debug(f"Gate controller: {message.text}")
        else:
            logger.info(event[1])

        self._emit(*event)

    def _handle_transport_error(self, transport, error: Exception):
        """Called by the reader when the transport fails."""
        with self._lock:
            if transport is not self._transport:
                return
            self._stats["transport_errors"] += 1
            self._release()

        logger.error(f"Gate link transport error: {error}")
        self._record(f"Transport error: {error}")
        self._emit(LinkEventType.TRANSPORT_ERROR, str(error))

    # ========================
    # Internals
    # ========================

    def _fail(self, result: ConnectResult, message: str) -> ConnectResult:
        with self._lock:
            self.last_failure = result
            self._set_state(LinkState.FAILED)
            self._set_state(LinkState.DISCONNECTED)

        logger.error(message)
        self._emit(LinkEventType.CONNECT_FAILED, message)
        return result

    def _release(self):
        """Stop the reader and close the transport. Caller holds the lock."""
        reader, transport = self._reader, self._transport
        self._reader = None
        self._transport = None

        if reader is not None:
            reader.stop()
        if transport is not None:
            try:
                transport.close()
            except Exception as e:
                logger.error(f"Error closing transport: {e}")

        self._set_state(LinkState.DISCONNECTED)

    def _set_state(self, state: LinkState):
        """Caller holds the lock."""
        if state == self._state:
            return
        self._state = state
        if self.on_state_change:
            try:
                self.on_state_change(state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

    def _emit(self, event_type: LinkEventType, message: str):
        if self.on_event:
            try:
                self.on_event(LinkEvent(type=event_type, message=message))
            except Exception as e:
                logger.error(f"Link event callback error: {e}")

    def _record(self, message: str):
        self.responses.append((time.time(), message))

    def get_stats(self) -> dict:
        """Get link statistics."""
        with self._lock:
            stats = self._stats.copy()
            stats["state"] = self._state.value
            return stats
