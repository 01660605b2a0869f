"""Tests for SystemStateStore and its PendingConfig batch."""

import threading

from sensor_relay.models import SystemState
from sensor_relay.state import SystemStateStore


def test_defaults_match_firmware_reset() -> None:
    state = SystemStateStore().snapshot()
    assert state == SystemState()
    assert state.to_dict() == {
        "isRunning": False,
        "tempSampleTime": 1,
        "weightSampleTime": 1,
        "timeUnit": "s",
        "tempFilter": False,
        "weightFilter": False,
        "tempSamples": 10,
        "weightSamples": 10,
    }


def test_snapshot_is_a_copy() -> None:
    store = SystemStateStore()
    snap = store.snapshot()
    snap.temp_sample_time = 99
    assert store.snapshot().temp_sample_time == 1


def test_apply_ignores_unknown_fields() -> None:
    store = SystemStateStore()
    after = store.apply({"temp_sample_time": 5, "bogus": 1})
    assert after.temp_sample_time == 5
    assert not hasattr(after, "bogus")


def test_set_running() -> None:
    store = SystemStateStore()
    store.set_running(True)
    assert store.is_running is True
    store.set_running(False)
    assert store.is_running is False


def test_pending_keeps_first_order_and_last_value() -> None:
    """A repeated key is merged, not queued twice."""
    store = SystemStateStore()
    store.add_pending("T1", "5")
    store.add_pending("FT", "1")
    store.add_pending("T1", "7")

    assert store.pending() == [("T1", "7"), ("FT", "1")]
    assert store.pop_pending() == ("T1", "7")
    assert store.pop_pending() == ("FT", "1")
    assert store.pop_pending() is None
    assert store.has_pending() is False


def test_clear_pending() -> None:
    store = SystemStateStore()
    store.add_pending("ST", "20")
    store.clear_pending()
    assert store.pending() == []


def test_concurrent_updates_are_not_lost() -> None:
    store = SystemStateStore()

    def worker(key: str) -> None:
        for i in range(200):
            store.add_pending(f"{key}{i}", str(i))

    threads = [threading.Thread(target=worker, args=(k,)) for k in ("A", "B", "C")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(store.pending()) == 600
