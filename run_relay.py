#!/usr/bin/env python3
"""Start the sensor relay server.

Command-line flags override the environment configuration read by api.main,
so they must be applied before the app module is imported.

Usage:
    python run_relay.py --serial-port /dev/ttyACM0 --port 3000
"""

import argparse
import os

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(description="Serial-to-WebSocket sensor relay")
    parser.add_argument("--host", default=None, help="HTTP listening address (SERVER_HOST, default 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="HTTP port (SERVER_PORT, default 3000)")
    parser.add_argument("--serial-port", default=None, help="Serial device, e.g. /dev/ttyACM0 or COM3 (SERIAL_PORT)")
    parser.add_argument("--baud", type=int, default=None, help="Baud rate (BAUD_RATE, default 9600)")
    parser.add_argument("--log-level", default=None, help="Logging level (LOG_LEVEL, default INFO)")
    args = parser.parse_args()

    overrides = {
        "SERVER_HOST": args.host,
        "SERVER_PORT": args.port,
        "SERIAL_PORT": args.serial_port,
        "BAUD_RATE": args.baud,
        "LOG_LEVEL": args.log_level,
    }
    for name, value in overrides.items():
        if value is not None:
            os.environ[name] = str(value)

    from api.main import LOG_LEVEL, SERVER_HOST, SERVER_PORT, app

    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT, log_level=LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
