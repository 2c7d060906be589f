#!/usr/bin/env python3
"""
Issue a session token for a websocket client.

Signs with TOKEN_SECRET from the environment (or .env), so the token is
accepted by a server running with the same settings.

Usage:
    python scripts/issue_token.py operator user-17
    python scripts/issue_token.py admin ops-console --ttl 600
    python scripts/issue_token.py viewer dashboard --json
"""

import argparse
import json
import sys

from ipc_avionics.security.tokens import TokenSigner
from ipc_avionics.settings import get_settings


def main() -> int:
    settings = get_settings()
    roles = sorted(settings.permission_table())

    parser = argparse.ArgumentParser(description="Issue a signed session token")
    parser.add_argument("role", help=f"Role to authenticate as ({', '.join(roles)})")
    parser.add_argument("user_id", help="Subject recorded in the token")
    parser.add_argument("--ttl", type=int, default=None, help="Lifetime in seconds")
    parser.add_argument("--json", action="store_true", help="Print an auth message instead of the bare token")
    args = parser.parse_args()

    if args.role not in roles:
        print(f"Unknown role: {args.role} (expected one of {', '.join(roles)})", file=sys.stderr)
        return 1

    signer = TokenSigner(settings.token_secret, ttl_seconds=settings.token_ttl_seconds)
    token = signer.issue(args.role, args.user_id, ttl_seconds=args.ttl)

    if args.json:
        print(json.dumps({"type": "auth", "payload": {"role": args.role, "token": token}}))
    else:
        print(token)
    return 0


if __name__ == "__main__":
    sys.exit(main())
