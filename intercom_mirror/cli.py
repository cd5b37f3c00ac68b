#!/usr/bin/env python
"""
Intercom mirror CLI - inspect and refresh the local Intercom cache.

Usage:
    intercom-mirror status                          # Cache counts and age
    intercom-mirror refresh                         # Policy-driven refresh
    intercom-mirror refresh --full                  # Force a full refresh
    intercom-mirror search contacts -f email=acme   # Filter cached contacts
    intercom-mirror thread <id>                     # Preview one conversation thread
    intercom-mirror threads -l 50                   # Build threads for cached conversations
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .cache_store import CacheStore
from .config import MirrorConfig
from .intercom_client import FetchError
from .logging_utils import configure_safe_logging
from .mirror import IntercomMirror
from .models import EntityKind
from .storage import CacheStorage
from .thread_service import ThreadBuildError

logger = logging.getLogger(__name__)


def _fmt_time(value) -> str:
    return value.isoformat(timespec="seconds") if value else "never"


def _parse_fields(raw_fields: Optional[List[str]]) -> dict:
    filters = {}
    for raw in raw_fields or []:
        name, sep, value = raw.partition("=")
        if not sep or not name:
            raise ValueError(f"Filter must look like NAME=VALUE, got {raw!r}")
        filters[name.strip()] = value
    return filters


def cmd_status(args, config: MirrorConfig):
    """Show cache counts, age and refresh bookkeeping (no network)."""
    store = CacheStore(CacheStorage(config.cache_dir), stale_after_minutes=config.stale_after_minutes)
    asyncio.run(store.load_from_disk())
    status = store.get_status()

    print(f"\nCache directory: {config.cache_dir}")
    print(f"Last refreshed:      {_fmt_time(status.last_refreshed)}")
    print(f"Last full refresh:   {_fmt_time(status.metadata.last_full_refresh)}")
    age = f"{status.age_minutes} min" if status.age_minutes is not None else "n/a"
    print(f"Age:                 {age}{' (stale)' if status.is_stale else ''}")
    print()
    for name, count in status.counts.items():
        print(f"  {name:<22} {count:>7}")
    print()


def cmd_refresh(args, config: MirrorConfig):
    """Run a policy-driven or forced full refresh."""
    mirror = IntercomMirror.from_config(config)

    async def run():
        await mirror.load()
        if args.full:
            counts = await mirror.force_full_refresh()
            print(
                f"Full refresh: {counts.contacts} contacts, {counts.companies} companies, "
                f"{counts.admins} admins, {counts.conversations} conversations"
            )
            return
        outcome = await mirror.refresh()
        if outcome.performed is None:
            print("Cache is fresh, nothing to do")
        elif outcome.added:
            added = ", ".join(f"{n} {kind}" for kind, n in outcome.added.items())
            print(f"{outcome.performed.capitalize()} refresh: added {added}")
        else:
            print(f"{outcome.performed.capitalize()} refresh done")

    try:
        asyncio.run(run())
    finally:
        mirror.close()


def cmd_search(args, config: MirrorConfig):
    """Filter a cached (or live) collection."""
    filters = _parse_fields(args.field)
    mirror = IntercomMirror.from_config(config)

    async def run():
        if not args.live:
            await mirror.load()
        return await mirror.search(EntityKind(args.kind), filters, live=args.live)

    try:
        records = asyncio.run(run())
    finally:
        mirror.close()

    if args.json:
        print(json.dumps([r.model_dump(mode="json") for r in records[: args.limit]], indent=2))
        return

    print(f"\n{len(records)} {args.kind} matched\n")
    for record in records[: args.limit]:
        label = record.field_value("name") or record.field_value("title") or ""
        email = record.field_value("email") or ""
        print(f"  {record.id:<28} {label:<35} {email}")
    if len(records) > args.limit:
        print(f"  ... {len(records) - args.limit} more")
    print()


def cmd_thread(args, config: MirrorConfig):
    """Fetch one conversation and print its materialized thread."""
    mirror = IntercomMirror.from_config(config)
    try:
        detail = mirror.client.get_conversation(args.id)
    finally:
        mirror.close()
    thread = mirror.threads.build_from_detail(detail)

    if args.json:
        print(thread.model_dump_json(indent=2))
        return

    print(f"\nConversation {thread.conversation_id} [{thread.state or 'unknown'}]")
    print(f"User: {thread.user.name or thread.user.email or thread.user.id}")
    print(f"Parts: {thread.totals.parts}  Comments: {thread.totals.comments}  Notes: {thread.totals.notes}")
    print("-" * 70)
    print(thread.initial_message.body_clean or "(no opening message)")
    for part in thread.parts:
        if not part.body_clean:
            continue
        who = part.author_name or part.author_type or "unknown"
        print(f"\n[{part.kind}] {who}:")
        print(part.body_clean)
    print()


def cmd_threads(args, config: MirrorConfig):
    """Build threads for cached conversations and print reviewer stats."""
    mirror = IntercomMirror.from_config(config)
    try:
        result = asyncio.run(mirror.refresh_conversation_threads(limit=args.limit))
    finally:
        mirror.close()
    stats = mirror.thread_stats()

    print(f"\nBuilt {result.succeeded} threads, skipped {result.skipped}")
    if result.skipped_ids:
        print(f"Skipped: {', '.join(result.skipped_ids[:20])}")
    print(f"Threads cached: {stats.total_threads} ({stats.threads_with_notes} with notes)")
    print(f"Notes: {stats.total_notes}  Admin responses: {stats.total_admin_responses}  "
          f"User messages: {stats.total_user_messages}")
    print(f"Reviewer A notes/responses: {stats.reviewer_a_notes}/{stats.reviewer_a_responses}")
    print(f"Reviewer B notes/responses: {stats.reviewer_b_notes}/{stats.reviewer_b_responses}")
    print(f"Average parts per thread: {stats.average_parts_per_thread}")
    print()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="intercom-mirror",
        description="Intercom mirror CLI - inspect and refresh the local cache",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  intercom-mirror status
  intercom-mirror refresh --full
  intercom-mirror search companies -f name=acme
  intercom-mirror search contacts -f email=@acme.com -f name=jo --live
  intercom-mirror thread 123456789 --json
  intercom-mirror threads --limit 100
        """,
    )
    parser.add_argument("--env-file", help="Load environment from this .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    # status
    p_status = subparsers.add_parser("status", help="Show cache status")
    p_status.set_defaults(func=cmd_status)

    # refresh
    p_refresh = subparsers.add_parser("refresh", help="Refresh the cache")
    p_refresh.add_argument("--full", action="store_true", help="Force a full refresh")
    p_refresh.set_defaults(func=cmd_refresh)

    # search
    p_search = subparsers.add_parser("search", help="Search a collection")
    p_search.add_argument("kind", choices=[kind.value for kind in EntityKind])
    p_search.add_argument(
        "-f", "--field", action="append", metavar="NAME=VALUE",
        help="Case-insensitive substring filter (repeatable, AND-combined)",
    )
    p_search.add_argument("--live", action="store_true", help="Bypass the cache")
    p_search.add_argument("-l", "--limit", type=int, default=25, help="Max rows to print")
    p_search.add_argument("--json", action="store_true", help="Print matches as JSON")
    p_search.set_defaults(func=cmd_search)

    # thread
    p_thread = subparsers.add_parser("thread", help="Preview one conversation thread")
    p_thread.add_argument("id", help="Conversation ID")
    p_thread.add_argument("--json", action="store_true", help="Print the thread as JSON")
    p_thread.set_defaults(func=cmd_thread)

    # threads
    p_threads = subparsers.add_parser("threads", help="Build threads for cached conversations")
    p_threads.add_argument("-l", "--limit", type=int, default=None, help="Only the first N conversations")
    p_threads.set_defaults(func=cmd_threads)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    config = MirrorConfig.from_env(args.env_file)
    configure_safe_logging(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        log_dir=config.cache_dir,
    )

    try:
        args.func(args, config)
    except (FetchError, ThreadBuildError, ValueError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
