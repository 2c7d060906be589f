#!/usr/bin/env python3
"""
Generate load against a running IPC control tower.

Opens N websocket clients, authenticates each with a token signed by
TOKEN_SECRET (so run it with the server's settings), submits random
permitted actions on an interval and logs aggregate latency every
--report-interval seconds.

Usage:
    python scripts/simulate_traffic.py
    python scripts/simulate_traffic.py --clients 50 --duration 120
    python scripts/simulate_traffic.py --url http://ipc.internal:3000 --roles operator,viewer
"""

import argparse
import asyncio
import json
import os
import random
import sys

from ipc_shared.logging import configure_logging, create_logger

from ipc_avionics.security.tokens import TokenSigner
from ipc_avionics.settings import get_settings
from ipc_avionics.simulator import TrafficSimulator


def parse_args(default_url: str, roles: str) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Simulate client traffic")
    parser.add_argument("--url", default=os.getenv("SERVER_URL", default_url), help="Server base URL")
    parser.add_argument("--clients", type=int, default=int(os.getenv("NUM_CLIENTS", "10")), help="Number of clients")
    parser.add_argument("--roles", default=roles, help="Comma separated roles, assigned round robin")
    parser.add_argument("--duration", type=float, default=None, help="Seconds to run (default: until Ctrl+C)")
    parser.add_argument("--min-interval", type=float, default=1.0, help="Min seconds between actions per client")
    parser.add_argument("--max-interval", type=float, default=3.0, help="Max seconds between actions per client")
    parser.add_argument("--report-interval", type=float, default=10.0, help="Seconds between stats reports")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    return parser.parse_args()


def main() -> int:
    settings = get_settings()
    host = "localhost" if settings.api_host == "0.0.0.0" else settings.api_host
    args = parse_args(f"http://{host}:{settings.api_port}", ",".join(sorted(settings.permission_table())))

    roles = [r.strip() for r in args.roles.split(",") if r.strip()]
    unknown = sorted(set(roles) - set(settings.permission_table()))
    if unknown:
        print(f"Unknown roles: {', '.join(unknown)}", file=sys.stderr)
        return 1
    if args.min_interval > args.max_interval:
        print("--min-interval must not exceed --max-interval", file=sys.stderr)
        return 1

    configure_logging(level=settings.log_level, json_output=settings.log_json)

    simulator = TrafficSimulator(
        args.url,
        TokenSigner(settings.token_secret, ttl_seconds=settings.token_ttl_seconds),
        num_clients=args.clients,
        roles=roles,
        action_interval=(args.min_interval, args.max_interval),
        logger=create_logger("traffic_simulator"),
        rng=random.Random(args.seed),
    )

    try:
        summary = asyncio.run(simulator.run(args.duration, report_interval=args.report_interval))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130

    print(json.dumps(summary, indent=2))
    return 0 if summary["clients"] else 1


if __name__ == "__main__":
    sys.exit(main())
