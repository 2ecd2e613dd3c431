#!/usr/bin/env python3
"""Run one maintenance sweep over the auth engine's expiring state.

Deletes expired one-time tokens, deactivates idle sessions and prunes stale
rate-limit windows. The sweep is idempotent, so a scheduler (cron, a k8s
CronJob, a task queue beat) can call it as often as it likes.

Usage:
    python scripts/sweep_expired.py
    python scripts/sweep_expired.py --json

Hosts that keep the service in-process should call ``sweep(service)``
from their own scheduler hook instead.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def sweep(service) -> dict:
    return await service.cleanup_expired()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Sweep expired auth state")
    parser.add_argument("--json", action="store_true", help="print the result as JSON")
    args = parser.parse_args(argv)

    # Import here so .env and environment are read at run time
    from warden.logging import set_correlation_id
    from warden.service.errors import ServiceError
    from warden.service.runtime import build_auth_service

    # Every log line of this run shares one id
    run_id = set_correlation_id()
    service = build_auth_service()
    try:
        result = asyncio.run(sweep(service))
    except ServiceError as exc:
        print(f"sweep failed: {exc.error_code}: {exc.message}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({**result, "run_id": run_id}, sort_keys=True))
    else:
        for name, count in sorted(result.items()):
            print(f"{name}: {count}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
