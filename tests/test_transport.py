"""Tests for the pyserial Transport wrapper."""

import pytest
import serial

from fakes.fake_serial import FakeSerial
from sensor_relay.errors import SerialIOError
from sensor_relay.transport import Transport


class ChunkedSerial:
    """Returns pre-split chunks from readline(), like a port hitting its timeout mid-line."""

    def __init__(self, chunks):
        self._chunks = list(chunks)
        self.is_open = True

    def readline(self) -> bytes:
        return self._chunks.pop(0) if self._chunks else b""

    def write(self, data: bytes) -> int:
        return len(data)

    def flush(self) -> None:
        pass

    def reset_input_buffer(self) -> None:
        pass

    def close(self) -> None:
        self.is_open = False


def test_write_line_appends_crlf() -> None:
    fake = FakeSerial()
    transport = Transport(fake)

    assert transport.write_line("T1:5") == len(b"T1:5\r\n")
    assert fake.commands() == ["T1:5"]


def test_readline_strips_terminator() -> None:
    fake = FakeSerial()
    fake.inject_line("TEMP:23.50")
    transport = Transport(fake)

    assert transport.readline() == "TEMP:23.50"
    assert transport.readline() is None


def test_readline_joins_partial_lines() -> None:
    transport = Transport(ChunkedSerial([b"TEMP:2", b"3.50\r\n"]))

    assert transport.readline() is None
    assert transport.readline() == "TEMP:23.50"


def test_flush_input_drops_banner() -> None:
    fake = FakeSerial(banner=True)
    transport = Transport(fake)

    transport.flush_input()
    assert transport.readline() is None


def test_write_failure_maps_to_serial_io_error() -> None:
    fake = FakeSerial()
    fake.fail_next_writes(1)
    transport = Transport(fake)

    with pytest.raises(SerialIOError):
        transport.write_line("a")
    # Next write succeeds
    transport.write_line("a")
    assert fake.commands() == ["a"]


def test_closed_port_raises() -> None:
    fake = FakeSerial()
    transport = Transport(fake)
    transport.close()

    assert transport.is_open is False
    with pytest.raises(SerialIOError):
        transport.readline()
    with pytest.raises(SerialIOError):
        transport.write_line("b")


def test_open_failure_maps_to_serial_io_error(monkeypatch) -> None:
    def failing_serial(*args, **kwargs):
        raise serial.SerialException("could not open port /dev/nope")

    monkeypatch.setattr(serial, "Serial", failing_serial)

    with pytest.raises(SerialIOError, match="/dev/nope"):
        Transport.open("/dev/nope", 9600)
