#!/usr/bin/env python3
"""Passive realtime watcher for one dashboard table.

This script uses the library end to end to:
1) load configuration from DASHSYNC_* environment variables,
2) subscribe to the orders or menu table,
3) print every connection status transition,
4) print each applied change and the resulting mirror size.

Use this to check that the realtime feed and snapshot refresh behave as
expected against a live project.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path

# Allow running from repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pydashsync import (  # noqa: E402
    SHAPES,
    ChangeEvent,
    ConnectionStatusEvent,
    DashSyncClient,
    DashSyncError,
    Record,
    SyncConfig,
)


@dataclass
class WatchStats:
    started_at: float
    total_changes: int = 0
    inserts: int = 0
    updates: int = 0
    deletes: int = 0
    transitions: int = 0


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Watch live changes of a dashboard table.",
    )
    parser.add_argument(
        "--topic",
        choices=sorted(SHAPES),
        default="orders",
        help="Table to watch.",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--dump",
        action="store_true",
        help="Print the full mirror after each change.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args()


def _record_line(record: Record) -> str:
    return json.dumps(record.fields, ensure_ascii=False, sort_keys=True, default=str)


def _print_summary(stats: WatchStats) -> None:
    runtime = time.time() - stats.started_at
    print("[watch] Summary")
    print(f"[watch]   runtime_s   : {runtime:.1f}")
    print(f"[watch]   transitions : {stats.transitions}")
    print(f"[watch]   changes     : {stats.total_changes}")
    print(f"[watch]   inserts     : {stats.inserts}")
    print(f"[watch]   updates     : {stats.updates}")
    print(f"[watch]   deletes     : {stats.deletes}")


async def _watch(config: SyncConfig, args: argparse.Namespace) -> WatchStats:
    stats = WatchStats(started_at=time.time())
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    async with DashSyncClient(config) as client:
        sync = client.topic(args.topic)

        def on_status(event: ConnectionStatusEvent) -> None:
            stats.transitions += 1
            suffix = f" retry_in={event.delay:.1f}s" if event.delay is not None else ""
            detail = f" ({event.detail})" if event.detail else ""
            print(f"[watch] {event.previous} -> {event.state} attempt={event.attempt}{suffix}{detail}")
            if event.is_live:
                print(f"[watch] snapshot loaded: {len(sync.store)} records")

        def on_change(event: ChangeEvent) -> None:
            stats.total_changes += 1
            if event.type == "INSERT":
                stats.inserts += 1
            elif event.type == "UPDATE":
                stats.updates += 1
            else:
                stats.deletes += 1
            print(f"[watch] {event.type} {event.record_id!r} mirror={len(sync.store)}")
            if args.dump:
                for record in sync.get_mirror():
                    print(f"[watch]   {_record_line(record)}")

        sync.on_status(on_status)
        sync.on_change(on_change)
        sync.on_insert(lambda record: print(f"[watch] new record {record.id!r}: {_record_line(record)}"))

        print(f"[watch] Subscribing to {sync.shape.topic}...")
        await sync.start()

        timeout = args.duration if args.duration > 0 else None
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=timeout)
        if timeout is not None and not stop.is_set():
            print(f"[watch] Reached --duration={args.duration}s, stopping.")

    return stats


def _main() -> int:
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = SyncConfig.from_env()
    except DashSyncError as exc:
        print(f"[watch] Configuration error: {exc}", file=sys.stderr)
        return 2

    try:
        stats = asyncio.run(_watch(config, args))
    except KeyboardInterrupt:
        return 0
    except DashSyncError as exc:  # pragma: no cover - network/system interaction
        print(f"[watch] Failed: {exc}", file=sys.stderr)
        return 2

    _print_summary(stats)
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
