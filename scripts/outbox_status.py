#!/usr/bin/env python3
"""
Inspect, drain or clear the local progress outbox.

Usage:
    python scripts/outbox_status.py
    python scripts/outbox_status.py --drain [--user-id 42 | --token ...]
    python scripts/outbox_status.py --clear
    python scripts/outbox_status.py --cleanup-days 3
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")
load_dotenv(project_root / ".env.local", override=True)

from progress_sync.client import AuthContext
from progress_sync.config import check_required_env_vars, get_outbox_database_url
from progress_sync.database import close_engine
from progress_sync.engine import build_sync_engine
from progress_sync.outbox import OutboxStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def print_status(outbox: OutboxStore, limit: int) -> None:
    stats = await outbox.stats()
    print(f"Outbox: {get_outbox_database_url()}")
    print(f"  Pending events:   {stats['pending_events']}")
    print(f"  Confirmations:    {stats['confirmed_events']}")
    if stats["oldest_event"]:
        print(f"  Oldest queued at: {stats['oldest_event'].isoformat()}")
        print(f"  Newest queued at: {stats['newest_event'].isoformat()}")

    events = await outbox.pending_events(limit=limit)
    if events:
        print()
    for event in events:
        line = (
            f"  {event.client_event_id}  {event.module_id}/{event.lesson_id}  "
            f"progress={event.progress:.2f} time+={event.time_spent_delta}s "
            f"attempts={event.attempts}"
        )
        if event.last_error:
            line += f"  last_error={event.last_error!r}"
        print(line)
    if stats["pending_events"] > len(events):
        print(f"  ... and {stats['pending_events'] - len(events)} more")


async def drain(user_id: str | None, token: str | None) -> bool:
    """Replay the outbox against the configured server. Returns True if it emptied."""
    ok, messages = check_required_env_vars()
    for message in messages:
        print(message)
    if not ok:
        print("Missing required configuration, not draining.")
        return False

    async def auth_provider() -> AuthContext:
        return AuthContext(token=token, user_id=user_id)

    engine = build_sync_engine(auth_provider=auth_provider, online=True)
    try:
        result = await engine.start()
        if result is None:
            print("Nothing to drain.")
            return True
        print(
            f"Confirmed: {result.confirmed}, dropped: {result.dropped}, "
            f"remaining: {result.remaining}"
        )
        for error in result.errors:
            print(f"  Rejected: {error}")
        if result.stopped_early:
            print(f"Stopped early: {engine.last_sync_error or 'server unreachable'}")
        return result.remaining == 0
    finally:
        await engine.close()


async def main(args: argparse.Namespace) -> int:
    outbox = OutboxStore()
    try:
        if args.clear:
            removed = await outbox.clear()
            print(f"Removed {removed} pending events.")
        elif args.drain:
            if not await drain(args.user_id, args.token):
                return 1

        if args.cleanup_days is not None:
            removed = await outbox.cleanup_old_confirmations(
                timedelta(days=args.cleanup_days)
            )
            print(f"Removed {removed} confirmations older than {args.cleanup_days} days.")

        await print_status(outbox, args.limit)
        return 0
    finally:
        await close_engine()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Inspect the local progress outbox.")
    action = parser.add_mutually_exclusive_group()
    action.add_argument(
        "--drain",
        action="store_true",
        help="Replay queued events against PROGRESS_API_URL",
    )
    action.add_argument(
        "--clear",
        action="store_true",
        help="Discard every queued event (progress not yet on the server is lost)",
    )
    parser.add_argument(
        "--cleanup-days",
        type=int,
        default=None,
        help="Delete confirmation records older than this many days",
    )
    parser.add_argument("--user-id", help="Send X-User-Id with drained events")
    parser.add_argument("--token", help="Send a bearer token with drained events")
    parser.add_argument(
        "--limit", type=int, default=20, help="Max pending events to list (default: 20)"
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(main(args)))
