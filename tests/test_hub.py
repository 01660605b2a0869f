"""Tests for the WebSocket fan-out hub, driven with stand-in sockets."""

import asyncio
import json

from api.hub import ClientHub
from sensor_relay.models import (
    ConfirmationEvent,
    ErrorEvent,
    StatusEvent,
    SystemState,
    TemperatureEvent,
)


class StubWebSocket:
    """Collects sent text; can be told to fail every send."""

    def __init__(self, name: str = "client", fail: bool = False):
        self.client = name
        self.fail = fail
        self.accepted = False
        self.closed_with = None
        self.sent = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code


def test_connect_replays_then_confirms() -> None:
    async def scenario():
        hub = ClientHub(heartbeat_interval=0)
        ws = StubWebSocket()
        conn = await hub.connect(
            ws, replay=lambda: [StatusEvent(SystemState()), TemperatureEvent(21.0)]
        )
        return hub, conn, ws

    hub, conn, ws = asyncio.run(scenario())

    assert ws.accepted
    assert [m["type"] for m in ws.sent] == ["status", "temperature", "confirmation"]
    assert ws.sent[1] == {"type": "temperature", "value": 21.0}
    assert ws.sent[2] == {"type": "confirmation", "message": "CONNECTION_OK"}
    assert hub.client_count == 1


def test_queued_reading_already_replayed_is_not_sent_twice() -> None:
    """A reading recorded just before connect but dispatched just after it."""
    async def scenario():
        hub = ClientHub(heartbeat_interval=0)
        ws = StubWebSocket()
        reading = TemperatureEvent(21.0)
        await hub.connect(ws, replay=lambda: [reading])

        delivered = await hub.broadcast(reading)
        await hub.broadcast(TemperatureEvent(21.0))
        return ws, delivered

    ws, delivered = asyncio.run(scenario())

    assert delivered == 1
    temperatures = [m for m in ws.sent if m["type"] == "temperature"]
    # The replay, then the next live reading
    assert len(temperatures) == 2


def test_broadcast_skips_and_drops_failed_sockets() -> None:
    async def scenario():
        hub = ClientHub(heartbeat_interval=0)
        good = StubWebSocket("good")
        bad = StubWebSocket("bad")
        await hub.connect(good)
        await hub.connect(bad)
        bad.fail = True
        delivered = await hub.broadcast(TemperatureEvent(23.5))
        return hub, good, delivered

    hub, good, delivered = asyncio.run(scenario())

    assert delivered == 1
    assert good.sent[-1] == {"type": "temperature", "value": 23.5}
    assert hub.client_count == 1


def test_send_to_reaches_only_one_client() -> None:
    async def scenario():
        hub = ClientHub(heartbeat_interval=0)
        first, second = StubWebSocket("first"), StubWebSocket("second")
        conn = await hub.connect(first)
        await hub.connect(second)
        await hub.send_to(conn, ErrorEvent("Command failed"))
        return first, second

    first, second = asyncio.run(scenario())

    assert first.sent[-1] == {"type": "error", "message": "Command failed"}
    assert second.sent[-1] == {"type": "confirmation", "message": "CONNECTION_OK"}


def test_publish_threadsafe_dispatches_in_order() -> None:
    async def scenario():
        hub = ClientHub(heartbeat_interval=0)
        await hub.start()
        ws = StubWebSocket()
        await hub.connect(ws)

        loop = asyncio.get_running_loop()
        events = [TemperatureEvent(float(i)) for i in range(5)]
        await loop.run_in_executor(None, lambda: [hub.publish_threadsafe(e) for e in events])

        for _ in range(100):
            if len(ws.sent) == 6:
                break
            await asyncio.sleep(0.01)
        await hub.stop()
        return ws

    ws = asyncio.run(scenario())

    assert [m.get("value") for m in ws.sent[1:]] == [0.0, 1.0, 2.0, 3.0, 4.0]
    assert ws.closed_with == 1001


def test_publish_before_start_is_dropped() -> None:
    hub = ClientHub()
    hub.publish_threadsafe(ConfirmationEvent("OK:a"))
    assert hub.client_count == 0


def test_heartbeat_pings_then_terminates_silent_clients() -> None:
    async def scenario():
        hub = ClientHub(heartbeat_interval=0)
        silent = StubWebSocket("silent")
        chatty = StubWebSocket("chatty")
        await hub.connect(silent)
        chatty_conn = await hub.connect(chatty)

        await hub.check_liveness()
        hub.mark_alive(chatty_conn)
        await hub.check_liveness()
        return hub, silent, chatty

    hub, silent, chatty = asyncio.run(scenario())

    assert {"type": "ping"} in silent.sent
    assert silent.closed_with == 1001
    assert chatty.closed_with is None
    assert chatty.sent.count({"type": "ping"}) == 2
    assert hub.client_count == 1


def test_disconnect_removes_client() -> None:
    async def scenario():
        hub = ClientHub(heartbeat_interval=0)
        conn = await hub.connect(StubWebSocket())
        await hub.disconnect(conn)
        return hub

    assert asyncio.run(scenario()).client_count == 0
