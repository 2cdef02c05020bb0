"""Maintenance commands for a SQLite change log: report and clean up.

Usage:
    calstream-maintenance --db updates.db stats
    calstream-maintenance --db updates.db cleanup --mode light
    calstream-maintenance --db updates.db cleanup --mode hours --hours 6
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone
from typing import Sequence, TextIO

import anyio

from calstream.core.sqlite import SQLiteChangeLog, SQLiteConfig
from calstream.core.types import RetentionPolicy

logger = logging.getLogger(__name__)

HOUR = 3600.0
DAY = 24 * HOUR

CLEANUP_MODES = ("light", "moderate", "full", "hours")


def cleanup_policy(mode: str, hours: float | None = None) -> RetentionPolicy | None:
    """RetentionPolicy for a cleanup mode; None means truncate everything."""
    if mode == "light":
        return RetentionPolicy(max_records=None, max_age=DAY)
    if mode == "moderate":
        return RetentionPolicy(max_records=100, max_age=DAY)
    if mode == "full":
        return None
    if mode == "hours":
        if hours is None or hours <= 0:
            raise ValueError("--hours must be a positive number for mode 'hours'")
        return RetentionPolicy(max_records=None, max_age=hours * HOUR)
    raise ValueError(f"unknown cleanup mode {mode!r}")


def _fmt(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


async def report(store: SQLiteChangeLog, out: TextIO) -> None:
    stats = await store.stats()
    out.write(f"Total records: {stats.total}\n")
    out.write(f"Latest id: {stats.latest_id}\n")
    if stats.total:
        older_1h = await store.count_older_than(HOUR)
        older_24h = await store.count_older_than(DAY)
        out.write(f"Records from last hour: {stats.total - older_1h}\n")
        out.write(f"Records 1-24 hours old: {older_1h - older_24h}\n")
        out.write(f"Records older than 24 hours: {older_24h}\n")
        out.write(f"Oldest: {_fmt(stats.oldest)}  Newest: {_fmt(stats.newest)}\n")
        out.write("Event type distribution:\n")
        for event_type, count in stats.by_type.items():
            out.write(f"  {event_type}: {count}\n")


async def cleanup(store: SQLiteChangeLog, mode: str, hours: float | None = None) -> int:
    policy = cleanup_policy(mode, hours)
    if policy is None:
        return await store.clear()
    return await store.trim(policy)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="calstream-maintenance", description=__doc__.splitlines()[0])
    parser.add_argument("--db", help="SQLite database path (default: $CALSTREAM_SQLITE_PATH, else calstream.db)")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("stats", help="print change log statistics")
    clean = sub.add_parser("cleanup", help="delete old change log records")
    clean.add_argument("--mode", choices=CLEANUP_MODES, default="light")
    clean.add_argument("--hours", type=float, default=None)
    return parser


async def _run(args: argparse.Namespace, out: TextIO) -> int:
    config = SQLiteConfig(db_path=args.db) if args.db else SQLiteConfig.from_env()
    store = await SQLiteChangeLog.create(config)
    try:
        if args.command == "stats":
            await report(store, out)
            return 0
        deleted = await cleanup(store, args.mode, args.hours)
        out.write(f"Deleted {deleted} records ({args.mode} cleanup)\n")
        await report(store, out)
        return 0
    finally:
        await store.close()


def main(argv: Sequence[str] | None = None, out: TextIO | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "cleanup":
        try:
            cleanup_policy(args.mode, args.hours)
        except ValueError as exc:
            parser.error(str(exc))
    logging.basicConfig(level=logging.WARNING)
    return anyio.run(_run, args, out or sys.stdout)


if __name__ == "__main__":
    sys.exit(main())
