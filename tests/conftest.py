"""Shared fixtures for the FastAPI tests: a fake board behind the real relay."""

import time

import pytest
from fastapi.testclient import TestClient

from api import main as api_module
from fakes.fake_serial import FakeSerial
from sensor_relay import SensorRelay
from sensor_relay.transport import Transport


def _wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def wait_for():
    """Poll a predicate until it holds or the timeout expires."""
    return _wait_for


@pytest.fixture
def fake_serial():
    """Create a FakeSerial instance."""
    return FakeSerial()


@pytest.fixture
def monkeypatch_relay(monkeypatch, fake_serial):
    """Build the app's relay around FakeSerial with short timings."""
    def open_fake(port: str, baud: int) -> Transport:
        # A restart closes the port; reopening the same board must work
        fake_serial.is_open = True
        return Transport(fake_serial)

    def create_relay() -> SensorRelay:
        return SensorRelay(
            "/dev/fake",
            9600,
            opener=open_fake,
            reconnect_delay=0.05,
            reconnect_max_delay=0.2,
            reconnect_jitter=0.0,
            post_open_settle=0.0,
            settle_delay=0.01,
            resume_delay=0.01,
            ack_timeout=0.1,
        )

    monkeypatch.setattr(api_module, "create_relay", create_relay)
    monkeypatch.setattr(api_module, "HEARTBEAT_INTERVAL_S", 0)


@pytest.fixture
def client(monkeypatch_relay, fake_serial):
    """Started app whose relay finished the init sequence on the fake board."""
    with TestClient(api_module.app) as test_client:
        assert _wait_for(lambda: fake_serial.commands() == ["b", "STATUS"])
        assert _wait_for(lambda: api_module._relay.link.is_connected())
        yield test_client
