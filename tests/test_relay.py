"""End-to-end tests for SensorRelay against the simulated firmware."""

import threading
import time

import pytest

from fakes.fake_serial import FakeSerial
from sensor_relay import SensorRelay
from sensor_relay.errors import CommandRejected, SerialIOError
from sensor_relay.models import (
    ConfirmationEvent,
    ErrorEvent,
    IntensityEvent,
    StatusEvent,
    TemperatureEvent,
)
from sensor_relay.sequencer import QUEUED, SENT
from sensor_relay.transport import Transport


def wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class EventLog:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, event) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, cls):
        with self._lock:
            return [e for e in self.events if isinstance(e, cls)]


def make_relay(fake: FakeSerial, **kwargs) -> SensorRelay:
    params = dict(
        opener=lambda port, baud: Transport(fake),
        reconnect_delay=0.05,
        reconnect_max_delay=0.2,
        reconnect_jitter=0.0,
        post_open_settle=0.0,
        settle_delay=0.01,
        resume_delay=0.01,
        ack_timeout=0.1,
    )
    params.update(kwargs)
    return SensorRelay("/dev/fake", 9600, **params)


@pytest.fixture
def fake():
    return FakeSerial()


@pytest.fixture
def relay(fake):
    relay = make_relay(fake)
    yield relay
    relay.stop()


@pytest.fixture
def started(relay, fake):
    """Relay connected to the fake board with the init sequence done."""
    relay.start()
    assert wait_for(lambda: fake.commands() == ["b", "STATUS"])
    assert wait_for(relay.link.is_connected)
    return relay


# =============================================================================
# Device -> Listeners
# =============================================================================

def test_reading_lines_are_published(relay) -> None:
    log = EventLog()
    relay.add_listener(log)

    relay.handle_line("TEMP:23.50")
    relay.handle_line("PESO:61.20")
    relay.handle_line("TEMP:oops")

    assert log.events == [TemperatureEvent(23.5), IntensityEvent(61.2)]


def test_ok_line_updates_state_and_confirms(relay) -> None:
    log = EventLog()
    relay.add_listener(log)

    event = relay.handle_line("OK:T1:5")

    assert event == ConfirmationEvent("OK:T1:5")
    assert relay.store.snapshot().temp_sample_time == 5
    assert log.events == [ConfirmationEvent("OK:T1:5")]


def test_status_line_publishes_full_state(relay) -> None:
    log = EventLog()
    relay.add_listener(log)

    relay.handle_line("INFO:STATUS:RUN=1,T1=3,T2=4,TU=m,FT=1,FP=0,ST=20,SP=30")

    [status] = log.of_type(StatusEvent)
    assert status.to_message() == {
        "type": "status",
        "state": {
            "isRunning": True,
            "tempSampleTime": 3,
            "weightSampleTime": 4,
            "timeUnit": "m",
            "tempFilter": True,
            "weightFilter": False,
            "tempSamples": 20,
            "weightSamples": 30,
        },
    }


def test_failing_listener_does_not_block_others(relay) -> None:
    log = EventLog()

    def broken(event):
        raise RuntimeError("listener bug")

    relay.add_listener(broken)
    relay.add_listener(log)
    relay.handle_line("TEMP:1.00")

    assert log.events == [TemperatureEvent(1.0)]


def test_removed_listener_gets_nothing(relay) -> None:
    log = EventLog()
    relay.add_listener(log)
    relay.remove_listener(log)
    relay.handle_line("TEMP:1.00")
    assert log.events == []


# =============================================================================
# Clients -> Device
# =============================================================================

def test_setting_while_stopped_goes_straight_to_device(started, fake) -> None:
    log = EventLog()
    started.add_listener(log)

    assert started.submit_command("T1:2") == SENT

    assert wait_for(lambda: started.store.snapshot().temp_sample_time == 2)
    assert fake.commands()[2:] == ["T1:2"]
    assert fake.temp_sample_time == 2
    assert ConfirmationEvent("OK:T1:2") in log.events


def test_setting_while_running_stops_configures_and_resumes(started, fake) -> None:
    assert started.submit_command("a") == SENT
    assert wait_for(lambda: started.store.is_running)
    assert fake.running is True

    assert started.submit_command("T1:5") == QUEUED

    assert wait_for(lambda: not started.sequencer.in_flight)
    assert fake.commands()[2:] == ["a", "b", "T1:5", "a"]
    assert fake.temp_sample_time == 5
    assert fake.running is True
    assert started.store.snapshot().temp_sample_time == 5
    assert started.store.is_running is True


def test_reset_defaults_restores_factory_settings(started, fake) -> None:
    fake.temp_sample_time = 9
    fake.time_unit = "M"
    fake.temp_filter = True

    assert started.reset_defaults() == QUEUED

    assert wait_for(lambda: not started.sequencer.in_flight)
    assert fake.commands()[2:] == ["b", "T1:1", "T2:1", "TU:s", "FT:0", "FP:0", "ST:10", "SP:10", "a"]
    assert (fake.temp_sample_time, fake.time_unit, fake.temp_filter) == (1, "s", False)
    assert fake.running is True


def test_passthrough_command() -> None:
    fake = FakeSerial(answer_status=True)
    relay = make_relay(fake)
    log = EventLog()
    relay.add_listener(log)
    relay.start()
    try:
        assert wait_for(lambda: len(log.of_type(StatusEvent)) == 1)
        assert relay.submit_command("STATUS") == SENT
        assert wait_for(lambda: len(log.of_type(StatusEvent)) == 2)
        assert fake.commands() == ["b", "STATUS", "STATUS"]
    finally:
        relay.stop()


def test_invalid_command_is_rejected(relay) -> None:
    with pytest.raises(CommandRejected):
        relay.submit_command("   ")


def test_command_without_port_fails(relay) -> None:
    with pytest.raises(SerialIOError):
        relay.submit_command("a")


def test_reconnect_marks_acquisition_stopped(relay, fake) -> None:
    relay.store.set_running(True)
    relay.start()

    assert wait_for(lambda: relay.link.is_connected() and not relay.store.is_running)


def test_stop_write_failure_surfaces_to_caller(started, fake) -> None:
    """A broken port fails the command itself; no broadcast error is produced."""
    log = EventLog()
    started.add_listener(log)
    started.store.set_running(True)

    fake.break_port()
    with pytest.raises(SerialIOError):
        started.submit_command("T1:5")
    assert log.of_type(ErrorEvent) == []


def test_start_stop_acknowledgements_drive_running_flag(relay) -> None:
    relay.handle_line("OK:a")
    assert relay.store.is_running is True

    relay.handle_line("TEMP:20.00")
    relay.handle_line("ERROR:unknown")
    assert relay.store.is_running is True

    relay.handle_line("OK:b")
    assert relay.store.is_running is False
