"""WebSocket fan-out hub.

Every SensorEvent produced by the relay is serialized once and sent to every
open client. Events are produced on serial/sequencer threads and handed to the
event loop through an asyncio.Queue; a single dispatcher task drains it so all
clients see events in the same order.

Liveness uses application-level messages: the hub sends ``{"type": "ping"}``
every heartbeat interval and any inbound message (normally ``{"type": "pong"}``)
marks the client alive. A client that stayed silent for a whole interval is
closed and removed.
"""

import asyncio
import itertools
import json
import logging
from typing import Callable, Dict, Iterable, List, Optional

from fastapi import WebSocket

from sensor_relay.models import ConfirmationEvent, SensorEvent

logger = logging.getLogger(__name__)

CONNECTION_OK = "CONNECTION_OK"
PING_MESSAGE = json.dumps({"type": "ping"})

ReplayProvider = Callable[[], Iterable[SensorEvent]]


class ClientConnection:
    """One attached WebSocket: send handle plus liveness flag."""

    def __init__(self, websocket: WebSocket, client_id: int) -> None:
        self.websocket = websocket
        self.id = client_id
        self.alive = True
        self.replayed: List[SensorEvent] = []

    def consume_replayed(self, event: SensorEvent) -> bool:
        """True if ``event`` is the very object this client already got in its replay.

        A replayed event can only still be queued until the next event of the
        same type goes out, so entries of that type are dropped either way.
        """
        if not self.replayed:
            return False
        matched = any(sent is event for sent in self.replayed)
        self.replayed = [sent for sent in self.replayed if type(sent) is not type(event)]
        return matched

    def __repr__(self) -> str:
        return f"ClientConnection(id={self.id}, client={self.websocket.client})"


class ClientHub:
    """Tracks open WebSocket clients and broadcasts relay events to them.

    The client set is only touched from the event loop. ``publish_threadsafe``
    is the one entry point that may be called from other threads.
    """

    def __init__(self, heartbeat_interval: float = 30.0) -> None:
        """Initialize hub (call start() from the event loop before use).

        Args:
            heartbeat_interval: Seconds between pings; 0 disables the heartbeat
        """
        self.heartbeat_interval = heartbeat_interval
        self._clients: Dict[int, ClientConnection] = {}
        self._ids = itertools.count(1)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._send_lock: Optional[asyncio.Lock] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Bind to the running loop and start the dispatcher (and heartbeat)."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._send_lock = asyncio.Lock()
        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        if self.heartbeat_interval > 0:
            self._heartbeat = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"Client hub started (heartbeat every {self.heartbeat_interval}s)")

    async def stop(self) -> None:
        """Cancel background tasks and close every client."""
        for task in (self._dispatcher, self._heartbeat):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._dispatcher = None
        self._heartbeat = None

        for conn in list(self._clients.values()):
            await self._close(conn, code=1001)
        self._loop = None
        logger.info("Client hub stopped")

    @property
    def client_count(self) -> int:
        return len(self._clients)

    # ========================================================================
    # Connections
    # ========================================================================

    async def connect(
        self, websocket: WebSocket, replay: Optional[ReplayProvider] = None
    ) -> ClientConnection:
        """Accept a socket, replay last-known state to it and register it.

        The replay and the registration happen under the broadcast lock, so the
        new client never sees a live event before its replay.

        Args:
            websocket: Socket to accept
            replay: Returns the events a new client should receive first

        Returns:
            The registered ClientConnection
        """
        await websocket.accept()
        conn = ClientConnection(websocket, next(self._ids))

        async with self._lock():
            try:
                if replay is not None:
                    conn.replayed = list(replay())
                    for event in conn.replayed:
                        await websocket.send_text(_encode(event))
                self._clients[conn.id] = conn
                await websocket.send_text(_encode(ConfirmationEvent(CONNECTION_OK)))
            except Exception as e:
                self._clients.pop(conn.id, None)
                logger.warning(f"Replay to {conn!r} failed: {e}")
                raise

        logger.info(f"WebSocket client connected: {conn!r} ({self.client_count} open)")
        return conn

    async def disconnect(self, conn: ClientConnection) -> None:
        if self._clients.pop(conn.id, None) is not None:
            logger.info(f"WebSocket client disconnected: {conn!r} ({self.client_count} open)")

    def mark_alive(self, conn: ClientConnection) -> None:
        conn.alive = True

    # ========================================================================
    # Sending
    # ========================================================================

    def publish_threadsafe(self, event: SensorEvent) -> None:
        """Queue an event for broadcast. Callable from any thread.

        Events published before start() or after stop() are dropped.
        """
        loop = self._loop
        queue = self._queue
        if loop is None or queue is None or loop.is_closed():
            logger.debug(f"Hub not running, dropping {event!r}")
            return
        try:
            loop.call_soon_threadsafe(queue.put_nowait, event)
        except RuntimeError:
            # Loop closed between the check and the call
            logger.debug(f"Event loop closed, dropping {event!r}")

    async def broadcast(self, event: SensorEvent) -> int:
        """Send one event to every open client.

        Returns:
            Number of clients the event was delivered to
        """
        message = _encode(event)
        delivered = 0
        async with self._lock():
            for conn in list(self._clients.values()):
                if conn.consume_replayed(event):
                    # Recorded before the client connected but dispatched after
                    delivered += 1
                    continue
                try:
                    await conn.websocket.send_text(message)
                    delivered += 1
                except Exception as e:
                    logger.warning(f"Send to {conn!r} failed, dropping client: {e}")
                    self._clients.pop(conn.id, None)
        return delivered

    async def send_to(self, conn: ClientConnection, event: SensorEvent) -> bool:
        """Send one event to a single client (e.g. an error for its own command)."""
        try:
            await conn.websocket.send_text(_encode(event))
            return True
        except Exception as e:
            logger.warning(f"Send to {conn!r} failed, dropping client: {e}")
            self._clients.pop(conn.id, None)
            return False

    # ========================================================================
    # Internal
    # ========================================================================

    def _lock(self) -> asyncio.Lock:
        if self._send_lock is None:
            self._send_lock = asyncio.Lock()
        return self._send_lock

    async def _dispatch_loop(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                await self.broadcast(event)
            except Exception as e:
                logger.error(f"Broadcast of {event!r} failed: {e}", exc_info=True)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.check_liveness()

    async def check_liveness(self) -> None:
        """Close clients silent since the last ping, then ping the rest."""
        async with self._lock():
            for conn in list(self._clients.values()):
                if not conn.alive:
                    logger.warning(f"No pong from {conn!r}, terminating")
                    await self._close(conn, code=1001)
                    continue
                conn.alive = False
                try:
                    await conn.websocket.send_text(PING_MESSAGE)
                except Exception as e:
                    logger.warning(f"Ping to {conn!r} failed, dropping client: {e}")
                    self._clients.pop(conn.id, None)

    async def _close(self, conn: ClientConnection, code: int = 1000) -> None:
        self._clients.pop(conn.id, None)
        try:
            await conn.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"Ignoring error while closing {conn!r}: {e}")


def _encode(event: SensorEvent) -> str:
    return json.dumps(event.to_message())
