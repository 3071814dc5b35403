"""Command-line front end for OpenViking memory sync."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

import httpx

from ovmemory.config import Settings, load_settings, write_settings_file
from ovmemory.exceptions import ConfigError, OVMemoryError
from ovmemory.remote.errors import OpenVikingHttpError
from ovmemory.services.memory_manager import MemoryManager
from ovmemory.services.sync_service import SyncProgress

CONFIG_FILE = "ovmemory.toml"

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _print_progress(update: SyncProgress) -> None:
    print(f"[{update.completed}/{update.total}] {update.label}")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str, ensure_ascii=False))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ovmemory-sync",
        description="Sync workspace memory files with an OpenViking server",
    )
    parser.add_argument(
        "--workspace", "-w", default=".", help="Workspace directory (default: current)"
    )
    parser.add_argument("--agent", "-a", default="main", help="Agent id (default: main)")
    parser.add_argument("--config", "-c", help=f"Config file (default: <workspace>/{CONFIG_FILE})")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")

    init = subparsers.add_parser("init", help="Write a config file")
    init.add_argument("--base-url", required=True, help="OpenViking server URL")
    init.add_argument("--api-key", help="API key sent as X-API-Key")

    subparsers.add_parser("status", help="Show configuration and what the next sync would do")

    sync = subparsers.add_parser("sync", help="Sync memory files now")
    sync.add_argument("--force", action="store_true", help="Re-upload every file")
    sync.add_argument("--reason", default="cli", help="Reason recorded in the sync state")

    search = subparsers.add_parser("search", help="Search synced memory")
    search.add_argument("query")
    search.add_argument("--limit", type=int, help="Maximum number of results")
    search.add_argument("--min-score", type=float, help="Minimum score (0..1)")

    read = subparsers.add_parser("read", help="Read a memory file")
    read.add_argument("path")
    read.add_argument("--from", dest="from_line", type=int, help="First line (1-based)")
    read.add_argument("--lines", type=int, help="Number of lines")

    return parser


async def _status(manager: MemoryManager) -> None:
    status = manager.status()
    plan = manager.engine.preview()
    print("Memory sync status:")
    print(f"  Server:        {status.base_url}")
    print(f"  Agent:         {status.agent_id}")
    print(f"  Root prefix:   {status.root_prefix}")
    print(f"  Synced files:  {status.synced_files}")
    print(f"  Last sync:     {status.last_sync_at or 'never'} ({status.last_run_status or '-'})")
    print(f"  To upload:     {len(plan.to_upsert)}")
    print(f"  To remove:     {len(plan.stale)}")
    print(f"  Unchanged:     {plan.skipped}")
    for candidate in plan.to_upsert:
        print(f"    + {candidate.rel_path}")
    for rel_path in plan.stale:
        print(f"    - {rel_path}")


async def _run(args: argparse.Namespace, settings: Settings, workspace_dir: Path) -> int:
    manager = MemoryManager(settings, workspace_dir, args.agent)
    try:
        if args.command == "status":
            await _status(manager)
        elif args.command == "sync":
            report = await manager.sync(
                reason=args.reason, force=args.force, progress=_print_progress
            )
            print(
                f"Sync {report.status}: {len(report.uploaded)} uploaded, "
                f"{len(report.adopted)} adopted, {len(report.removed)} removed, "
                f"{report.skipped} unchanged"
            )
            for rel_path in report.failures:
                print(f"    ! {rel_path}")
            return 0 if report.ok else 1
        elif args.command == "search":
            results = await manager.search(
                args.query, max_results=args.limit, min_score=args.min_score
            )
            _print_json([asdict(result) for result in results])
        elif args.command == "read":
            result = await manager.read_file(args.path, args.from_line, args.lines)
            print(result.text)
    finally:
        await manager.close()
    return 0


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.debug)

    workspace_dir = Path(args.workspace).resolve()
    config_file = Path(args.config) if args.config else workspace_dir / CONFIG_FILE

    if args.command == "init":
        try:
            settings = load_settings(None, base_url=args.base_url, api_key=args.api_key)
        except ConfigError as exc:
            print(f"Error: {exc}")
            sys.exit(1)
        write_settings_file(config_file, settings)
        print(f"Initialized memory sync config in {config_file}")
        return

    if args.command is None:
        parser.print_help()
        return

    try:
        settings = load_settings(config_file, debug=args.debug or None)
    except ConfigError as exc:
        print(f"Error: {exc}")
        print("Run 'ovmemory-sync init --base-url <url>' or set OPENVIKING_BASE_URL.")
        sys.exit(1)

    try:
        code = asyncio.run(_run(args, settings, workspace_dir))
    except (OVMemoryError, OpenVikingHttpError, httpx.HTTPError, ValueError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
