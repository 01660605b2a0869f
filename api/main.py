"""FastAPI WebSocket and REST interface for the sensor relay.

Single-process, single-device lifecycle:
- SensorRelay (serial link, codec, state store, command sequencer)
- ReadingStore (bounded reading history for replay and exports)
- ClientHub (WebSocket fan-out)

Error mapping:
- CommandRejected → 400
- SerialIOError → 503
- Other exceptions → 500
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from api.hub import ClientConnection, ClientHub
from data_store import ReadingStore
from sensor_relay import __version__
from sensor_relay.errors import CommandRejected, SensorRelayError, SerialIOError
from sensor_relay.models import ErrorEvent, SensorEvent, StatusEvent
from sensor_relay.relay import SensorRelay

# =============================================================================
# Environment Configuration
# =============================================================================

SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("SERVER_PORT", "3000"))
SERIAL_PORT = os.getenv("SERIAL_PORT", "/dev/ttyACM0")
BAUD_RATE = int(os.getenv("BAUD_RATE", "9600"))
RECONNECT_DELAY_S = float(os.getenv("RECONNECT_DELAY_S", "5.0"))
RECONNECT_MAX_DELAY_S = float(os.getenv("RECONNECT_MAX_DELAY_S", "30.0"))
SETTLE_DELAY_S = float(os.getenv("SETTLE_DELAY_S", "0.5"))
RESUME_DELAY_S = float(os.getenv("RESUME_DELAY_S", "1.0"))
ACK_TIMEOUT_S = float(os.getenv("ACK_TIMEOUT_S", "2.0"))
HEARTBEAT_INTERVAL_S = float(os.getenv("HEARTBEAT_INTERVAL_S", "30"))
READINGS_BUFFER_SIZE = int(os.getenv("READINGS_BUFFER_SIZE", "1000"))
AUTO_CONNECT = os.getenv("AUTO_CONNECT", "1") not in ("0", "false", "False", "no")
STATIC_DIR = os.getenv("STATIC_DIR")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# =============================================================================
# Global Singletons
# =============================================================================

_relay: Optional[SensorRelay] = None
_readings: Optional[ReadingStore] = None
_hub: Optional[ClientHub] = None
_started_at: Optional[float] = None


def create_relay() -> SensorRelay:
    """Build the relay from the environment configuration."""
    return SensorRelay(
        SERIAL_PORT,
        BAUD_RATE,
        reconnect_delay=RECONNECT_DELAY_S,
        reconnect_max_delay=RECONNECT_MAX_DELAY_S,
        settle_delay=SETTLE_DELAY_S,
        resume_delay=RESUME_DELAY_S,
        ack_timeout=ACK_TIMEOUT_S,
    )


def replay_events() -> List[SensorEvent]:
    """Events a newly connected client receives before live traffic."""
    events: List[SensorEvent] = []
    if _relay is not None:
        events.append(StatusEvent(_relay.store.snapshot()))
    if _readings is not None:
        events.extend(_readings.replay_events())
    return events


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Sensor Relay",
    description="WebSocket relay and REST interface for the temperature/intensity acquisition board",
    version=__version__
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Dashboard assets, when a build directory is configured
if STATIC_DIR and Path(STATIC_DIR).is_dir():
    app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")
    logger.info(f"Static dashboard mounted from {STATIC_DIR}")

# =============================================================================
# Request/Response Models
# =============================================================================

class CommandRequest(BaseModel):
    """Request body for POST /api/command."""
    command: str


class CommandResponse(BaseModel):
    """Response for POST /api/command and POST /api/reset-defaults."""
    status: str
    command: str


class RestartResponse(BaseModel):
    """Response for POST /api/restart-serial."""
    success: bool
    message: str


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(CommandRejected)
async def command_rejected_handler(request: Request, exc: CommandRejected):
    """Map CommandRejected to 400 Bad Request."""
    logger.warning(f"CommandRejected: {exc}")
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(SerialIOError)
async def serial_io_error_handler(request: Request, exc: SerialIOError):
    """Map SerialIOError to 503 Service Unavailable."""
    logger.error(f"SerialIOError: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def _require_relay() -> SensorRelay:
    if _relay is None:
        raise HTTPException(status_code=503, detail="Relay not started")
    return _relay


# =============================================================================
# REST Endpoints
# =============================================================================

@app.get("/api/status")
async def get_status():
    """Get server, serial link and device status.

    Returns:
        {"server": {...}, "serial": {...}, "clients": n, "state": SystemState,
         "readings": {...}}
    """
    relay = _require_relay()
    uptime = time.monotonic() - _started_at if _started_at is not None else 0.0

    return {
        "server": {"port": SERVER_PORT, "uptime_s": round(uptime, 1)},
        "serial": {
            "port": relay.link.port,
            "baudRate": relay.link.baud,
            "connected": relay.link.is_connected(),
            "state": relay.link_state.value,
        },
        "clients": _hub.client_count if _hub else 0,
        "state": relay.store.snapshot().to_dict(),
        "readings": _readings.get_stats() if _readings else None,
    }


@app.post("/api/restart-serial", response_model=RestartResponse)
async def restart_serial():
    """Close the serial port; the link reopens it and re-runs the init sequence."""
    relay = _require_relay()
    relay.restart_serial()
    return RestartResponse(success=True, message="Serial connection restart scheduled")


@app.post("/api/command", response_model=CommandResponse)
async def post_command(body: CommandRequest):
    """Send a command exactly like a WebSocket client would.

    Raises:
        400: Empty or non-ASCII command
        503: Serial write failed after retries
    """
    relay = _require_relay()
    status = await run_in_threadpool(relay.submit_command, body.command)
    return CommandResponse(status=status, command=body.command.strip())


@app.post("/api/reset-defaults", response_model=CommandResponse)
async def reset_defaults():
    """Stop acquisition, restore factory settings and resume."""
    relay = _require_relay()
    status = await run_in_threadpool(relay.reset_defaults)
    return CommandResponse(status=status, command="reset-defaults")


@app.get("/api/recent")
async def get_recent(seconds: int = Query(60, ge=1, le=300)):
    """Get readings from the last N seconds (1-300).

    Returns:
        {"rows": [...]} with one dict per reading
    """
    if not _readings:
        return {"rows": []}

    recent_df = _readings.get_recent(seconds=seconds)
    return {"rows": recent_df.to_dict(orient="records")}


@app.get("/api/export/csv")
async def export_csv():
    """Download the buffered readings as CSV.

    Raises:
        400: If no readings are buffered
    """
    if not _readings or len(_readings) == 0:
        raise HTTPException(status_code=400, detail="No data to export")

    csv_text = _readings.export_csv()
    filename = f"readings_{time.strftime('%Y%m%d_%H%M%S')}.csv"
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "service": "Sensor Relay",
        "version": __version__,
        "status": "online"
    }


# =============================================================================
# WebSocket
# =============================================================================

@app.websocket("/")
async def websocket_relay(websocket: WebSocket):
    """Bidirectional relay socket.

    On connect the client receives the current status, the last reading of
    each kind and a CONNECTION_OK confirmation, then every live event.
    Inbound messages are JSON ``{"command": "..."}``; ``{"type": "pong"}``
    only answers the heartbeat.

    Usage:
        ws = new WebSocket("ws://localhost:3000/");
        ws.send(JSON.stringify({command: "T1:5"}));
    """
    hub = _hub
    if hub is None:
        await websocket.accept()
        await websocket.send_json(ErrorEvent("Relay not started").to_message())
        await websocket.close()
        return

    conn = await hub.connect(websocket, replay=replay_events)
    try:
        while True:
            text = await websocket.receive_text()
            hub.mark_alive(conn)
            await handle_client_message(hub, conn, text)

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {websocket.client}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
    finally:
        await hub.disconnect(conn)


@app.websocket("/ws")
async def websocket_relay_alias(websocket: WebSocket):
    """Alias for / for clients that expect a path."""
    await websocket_relay(websocket)


async def handle_client_message(hub: ClientHub, conn: ClientConnection, text: str) -> None:
    """Decode one inbound message and route its command.

    Malformed messages and failed commands are answered with an error event
    to this client only.
    """
    try:
        data = json.loads(text)
    except ValueError:
        logger.warning(f"Invalid JSON from {conn!r}: {text[:80]!r}")
        await hub.send_to(conn, ErrorEvent("Invalid message: expected JSON"))
        return

    if not isinstance(data, dict):
        await hub.send_to(conn, ErrorEvent("Invalid message: expected a JSON object"))
        return

    if data.get("type") == "pong":
        return

    command = data.get("command")
    if not isinstance(command, str):
        await hub.send_to(conn, ErrorEvent("Invalid message: missing command"))
        return

    relay = _relay
    if relay is None:
        await hub.send_to(conn, ErrorEvent("Relay not started"))
        return

    logger.info(f"Command from {conn!r}: {command!r}")
    try:
        await run_in_threadpool(relay.submit_command, command)
    except SensorRelayError as e:
        logger.warning(f"Command {command!r} failed: {e}")
        await hub.send_to(conn, ErrorEvent(f"Command failed: {e}"))


# =============================================================================
# Startup/Shutdown Events
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Create the relay, wire its listeners and open the serial port."""
    global _relay, _readings, _hub, _started_at

    logger.info("=" * 60)
    logger.info("Sensor relay starting")
    logger.info(f"Version: {__version__}")
    logger.info(f"Host: {SERVER_HOST}")
    logger.info(f"Port: {SERVER_PORT}")
    logger.info(f"Serial Port: {SERIAL_PORT}")
    logger.info(f"Baud Rate: {BAUD_RATE}")
    logger.info(f"Heartbeat Interval: {HEARTBEAT_INTERVAL_S}s")
    logger.info(f"Auto Connect: {AUTO_CONNECT}")
    logger.info(f"Log Level: {LOG_LEVEL}")
    logger.info("=" * 60)

    _started_at = time.monotonic()
    _readings = ReadingStore(max_readings=READINGS_BUFFER_SIZE)
    _hub = ClientHub(heartbeat_interval=HEARTBEAT_INTERVAL_S)
    await _hub.start()

    _relay = create_relay()
    _relay.add_listener(_readings.handle_event)
    _relay.add_listener(_hub.publish_threadsafe)

    if AUTO_CONNECT:
        _relay.start()
    else:
        logger.info("AUTO_CONNECT disabled; serial link not started")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the serial link and close every client."""
    global _relay, _hub

    logger.info("Shutting down sensor relay...")

    if _relay is not None:
        try:
            await run_in_threadpool(_relay.stop)
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")
        _relay = None

    if _hub is not None:
        await _hub.stop()
        _hub = None

    logger.info("Shutdown complete")
