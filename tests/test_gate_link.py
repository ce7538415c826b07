import errno
import time

import pytest

from shuttle_node.core import (
    GateLink,
    LinkState,
    LinkEventType,
    ConnectResult,
    SendResult,
    InboundKind,
    parse_line,
    CMD_FACE_DETECTED,
)
from shuttle_node.core.gate_link import GateLinkReader


class FakeTransport:
    """In-memory stand-in for a serial port."""

    def __init__(self, lines=None, fail_write=False):
        self.written = []
        self.lines = list(lines or [])
        self.fail_write = fail_write
        self.closed = False

    def write(self, data):
        if self.fail_write:
            raise OSError("write timeout")
        self.written.append(data)
        return len(data)

    def flush(self):
        pass

    def readline(self):
        if self.lines:
            return self.lines.pop(0)
        raise OSError("device disconnected")

    def close(self):
        self.closed = True


def make_link(transport=None, port="/dev/fake-gate", secret="s3cret", **kwargs):
    transport = transport or FakeTransport()
    kwargs.setdefault("start_reader", False)
    link = GateLink(
        device_name="ESP32_Gate",
        secret=secret,
        port=port,
        transport_factory=lambda p, b, t: transport,
        **kwargs,
    )
    return link, transport


class TestParseLine:

    @pytest.mark.parametrize("raw, kind", [
        (b"AUTH_SUCCESS\r\n", InboundKind.AUTH_SUCCESS),
        ("AUTH_FAILED\n", InboundKind.AUTH_FAILED),
        ("  NOT_AUTHENTICATED  ", InboundKind.NOT_AUTHENTICATED),
        ("Gate opened", InboundKind.DIAGNOSTIC),
    ])
    def test_kinds(self, raw, kind):
        assert parse_line(raw).kind == kind

    def test_blank_line(self):
        assert parse_line(b"\r\n") is None
        assert parse_line("") is None

    def test_diagnostic_keeps_text(self):
        assert parse_line(b"Relay ON\n").text == "Relay ON"


class TestGateLinkConnect:

    def test_connect_sends_handshake(self):
        link, transport = make_link()

        assert link.connect() == ConnectResult.CONNECTED

        assert link.state == LinkState.CONNECTED_UNAUTHENTICATED
        assert link.is_connected
        assert not link.is_authenticated
        assert transport.written == [b"AUTHENTICATE s3cret\n"]

    def test_connect_twice(self):
        link, transport = make_link()
        link.connect()

        assert link.connect() == ConnectResult.ALREADY_CONNECTED
        assert len(transport.written) == 1

    def test_device_not_found(self):
        link = GateLink(port=None, port_finder=lambda name: None, start_reader=False)

        assert link.connect() == ConnectResult.DEVICE_NOT_FOUND
        assert link.state == LinkState.DISCONNECTED
        assert link.last_failure == ConnectResult.DEVICE_NOT_FOUND

    def test_port_finder_uses_device_name(self):
        names = []
        transport = FakeTransport()

        def finder(name):
            names.append(name)
            return "/dev/fake-gate"

        link = GateLink(
            device_name="ESP32_Gate",
            port_finder=finder,
            transport_factory=lambda p, b, t: transport,
            start_reader=False,
        )

        assert link.connect() == ConnectResult.CONNECTED
        assert names == ["ESP32_Gate"]

    def test_permission_denied(self):
        def factory(port, baudrate, timeout):
            raise PermissionError("denied")

        link = GateLink(port="/dev/fake-gate", transport_factory=factory, start_reader=False)

        assert link.connect() == ConnectResult.PERMISSION_DENIED
        assert link.state == LinkState.DISCONNECTED

    def test_permission_denied_errno(self):
        def factory(port, baudrate, timeout):
            raise OSError(errno.EACCES, "could not open port")

        link = GateLink(port="/dev/fake-gate", transport_factory=factory, start_reader=False)

        assert link.connect() == ConnectResult.PERMISSION_DENIED

    def test_open_failed(self):
        def factory(port, baudrate, timeout):
            raise OSError("no such device")

        link = GateLink(port="/dev/fake-gate", transport_factory=factory, start_reader=False)

        assert link.connect() == ConnectResult.OPEN_FAILED
        assert link.state == LinkState.DISCONNECTED

    def test_handshake_write_failure(self):
        link, transport = make_link(FakeTransport(fail_write=True))

        assert link.connect() == ConnectResult.OPEN_FAILED
        assert link.state == LinkState.DISCONNECTED
        assert transport.closed

    def test_failure_passes_through_failed_state(self):
        states = []
        link = GateLink(port=None, port_finder=lambda name: None, start_reader=False)
        link.on_state_change = states.append

        link.connect()

        assert states == [LinkState.CONNECTING, LinkState.FAILED, LinkState.DISCONNECTED]

    def test_disconnect(self):
        link, transport = make_link()
        link.connect()

        assert link.disconnect() is True
        assert transport.closed
        assert link.state == LinkState.DISCONNECTED
        assert link.disconnect() is False

    def test_reconnect(self):
        link, transport = make_link()
        link.connect()
        link.handle_line(b"AUTH_SUCCESS\n")

        assert link.reconnect() == ConnectResult.CONNECTED
        assert link.state == LinkState.CONNECTED_UNAUTHENTICATED
        assert transport.written.count(b"AUTHENTICATE s3cret\n") == 2


class TestGateLinkAuthentication:

    def setup_method(self):
        self.link, self.transport = make_link()
        self.events = []
        self.link.on_event = self.events.append
        self.link.connect()

    def test_auth_success(self):
        self.link.handle_line(b"AUTH_SUCCESS\r\n")

        assert self.link.state == LinkState.AUTHENTICATED
        assert self.events[-1].type == LinkEventType.AUTHENTICATED

    def test_command_blocked_before_auth(self):
        assert self.link.send(CMD_FACE_DETECTED) == SendResult.NOT_AUTHENTICATED
        assert self.transport.written == [b"AUTHENTICATE s3cret\n"]
        assert self.link.get_stats()["commands_rejected"] == 1

    def test_command_sent_after_auth(self):
        self.link.handle_line(b"AUTH_SUCCESS\n")

        assert self.link.send(CMD_FACE_DETECTED) == SendResult.SENT
        assert self.transport.written[-1] == b"FACE_DETECTED\n"

    def test_auth_failed_stays_unauthenticated(self):
        self.link.handle_line(b"AUTH_FAILED\n")

        assert self.link.state == LinkState.CONNECTED_UNAUTHENTICATED
        assert self.events[-1].type == LinkEventType.AUTH_ERROR
        assert self.link.get_stats()["auth_failures"] == 1
        # no automatic retry
        assert self.transport.written == [b"AUTHENTICATE s3cret\n"]
        assert self.link.send(CMD_FACE_DETECTED) == SendResult.NOT_AUTHENTICATED

    def test_manual_reauthentication(self):
        self.link.handle_line(b"AUTH_FAILED\n")

        assert self.link.authenticate() == SendResult.SENT
        self.link.handle_line(b"AUTH_SUCCESS\n")

        assert self.transport.written == [b"AUTHENTICATE s3cret\n"] * 2
        assert self.link.is_authenticated

    def test_not_authenticated_demotes(self):
        self.link.handle_line(b"AUTH_SUCCESS\n")

        self.link.handle_line(b"NOT_AUTHENTICATED\n")

        assert self.link.state == LinkState.CONNECTED_UNAUTHENTICATED
        assert self.events[-1].type == LinkEventType.COMMAND_REJECTED

    def test_diagnostic_does_not_change_state(self):
        self.link.handle_line(b"AUTH_SUCCESS\n")

        message = self.link.handle_line(b"Gate opened\n")

        assert message.kind == InboundKind.DIAGNOSTIC
        assert self.link.state == LinkState.AUTHENTICATED
        assert self.events[-1].type == LinkEventType.DIAGNOSTIC
        assert self.events[-1].message == "Gate opened"

    def test_secret_not_recorded(self):
        self.link.handle_line(b"AUTH_SUCCESS\n")

        texts = [text for _, text in self.link.responses]
        assert "Sent: AUTHENTICATE" in texts
        assert not any("s3cret" in text for text in texts)
        assert "Received: AUTH_SUCCESS" in texts


class TestGateLinkSendFailures:

    def test_send_while_disconnected(self):
        link, transport = make_link()

        assert link.send(CMD_FACE_DETECTED) == SendResult.NOT_AUTHENTICATED
        assert link.authenticate() == SendResult.NOT_CONNECTED
        assert transport.written == []

    def test_write_failure_disconnects(self):
        link, transport = make_link()
        events = []
        link.on_event = events.append
        link.connect()
        link.handle_line(b"AUTH_SUCCESS\n")
        transport.fail_write = True

        assert link.send(CMD_FACE_DETECTED) == SendResult.WRITE_FAILED

        assert link.state == LinkState.DISCONNECTED
        assert transport.closed
        assert events[-1].type == LinkEventType.TRANSPORT_ERROR

    def test_auth_success_after_disconnect_ignored(self):
        link, transport = make_link()
        link.connect()
        link.disconnect()

        link.handle_line(b"AUTH_SUCCESS\n")

        assert link.state == LinkState.DISCONNECTED

    def test_callback_errors_are_contained(self):
        link, transport = make_link()

        def broken(_):
            raise RuntimeError("ui gone")

        link.on_state_change = broken
        link.on_event = broken

        assert link.connect() == ConnectResult.CONNECTED


class TestGateLinkReader:

    def test_reader_applies_lines_and_detects_loss(self):
        transport = FakeTransport(lines=[b"AUTH_SUCCESS\n"])
        link, _ = make_link(transport, start_reader=True)
        states = []
        link.on_state_change = states.append

        assert link.connect() == ConnectResult.CONNECTED

        deadline = time.time() + 2.0
        while link.state != LinkState.DISCONNECTED and time.time() < deadline:
            time.sleep(0.01)

        assert link.state == LinkState.DISCONNECTED
        assert LinkState.AUTHENTICATED in states
        assert transport.closed
        assert link.get_stats()["transport_errors"] == 1

    def test_reader_joins_line_split_across_reads(self):
        transport = FakeTransport(lines=[b"AUTH_SUC", b"CESS\n"])
        link, _ = make_link(transport, start_reader=True)
        states = []
        link.on_state_change = states.append

        assert link.connect() == ConnectResult.CONNECTED

        deadline = time.time() + 2.0
        while link.state != LinkState.DISCONNECTED and time.time() < deadline:
            time.sleep(0.01)

        assert LinkState.AUTHENTICATED in states
        received = [message for _, message in link.responses if message.startswith("Received")]
        assert received == ["Received: AUTH_SUCCESS"]

    def test_feed_keeps_partial_line(self):
        link, transport = make_link()
        reader = GateLinkReader(link, transport)

        assert reader.feed(b"AUTH_") == []
        assert reader.feed(b"FAILED\r\nboot ok\nNOT_") == [b"AUTH_FAILED\r", b"boot ok"]
        assert reader.feed("AUTHENTICATED\n") == [b"NOT_AUTHENTICATED"]
