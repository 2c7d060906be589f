#!/usr/bin/env python3
"""
Server launcher.

Reads Settings (environment / .env), then starts uvicorn with the gateway
factory. Always a single worker: the scheduler keeps its state in memory.

Usage:
    python scripts/run/server.py
    python scripts/run/server.py --port 3100 --reload
"""

import argparse

import uvicorn

from ipc_avionics.settings import get_settings


def main() -> None:
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Run the IPC control tower server")
    parser.add_argument("--host", default=settings.api_host, help="Bind address")
    parser.add_argument("--port", type=int, default=settings.api_port, help="Bind port")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = parser.parse_args()

    print("=" * 60)
    print("Starting IPC Control Tower")
    print("=" * 60)
    print(f"Listen: {args.host}:{args.port}")
    print(f"Process duration: {settings.process_min_duration}-{settings.process_max_duration}s")
    print(f"Max connections: {settings.max_connections}")
    print("=" * 60)
    print()

    uvicorn.run(
        "ipc_avionics.gateway.main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
