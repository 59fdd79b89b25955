#!/usr/bin/env python3
"""Prune per-user session indexes of sessions that have expired.

Usage:
    REDIS_URL=redis://localhost:6379/0 python scripts/cleanup_sessions.py

Scans the ``user:*:sessions`` keyspace with SCAN, so it is safe to run against a
live Redis, but it is still a full pass and belongs in a cron job rather
than a request path.
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def cleanup_sessions() -> int:
    from kalibro.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await runtime.auth.sessions.cleanup_expired()
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Prune stale Kalibro session indexes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.parse_args()

    try:
        removed = asyncio.run(cleanup_sessions())
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    print(f"Removed {removed} stale session index entries")


if __name__ == "__main__":
    main()
