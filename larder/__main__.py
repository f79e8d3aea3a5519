"""
Larder - Entry Point

Run with: python -m larder <command>
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from larder import __version__
from larder.config import LarderConfig, load_config
from larder.core.errors import StoreError
from larder.core.events import Event, EventBus
from larder.core.snapshot import export_snapshot, import_snapshot
from larder.core.store import open_database

logger = logging.getLogger("larder")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="larder",
        description="Larder - local record store with snapshot export/import",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a TOML config file (default: packaged larder.toml)",
    )

    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Database file (overrides [database] path)",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("info", help="Show schema version and record counts")

    export_cmd = commands.add_parser("export", help="Write all collections to a snapshot file")
    export_cmd.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Snapshot file (overrides [snapshot] directory/filename)",
    )

    import_cmd = commands.add_parser("import", help="Restore collections from a snapshot file")
    import_cmd.add_argument(
        "-i",
        "--input",
        type=Path,
        default=None,
        help="Snapshot file (overrides [snapshot] directory/filename)",
    )

    return parser.parse_args(argv)


async def log_notification(event: Event) -> None:
    """Console notification sink: surface store events to the user."""
    data = event.to_dict()
    if event.event_type.endswith("failed"):
        logger.error("%s: %s", event.event_type, data.get("error", ""))
    else:
        logger.info("%s: %s", event.event_type, data)


async def run_command(args: argparse.Namespace, config: LarderConfig) -> int:
    events = EventBus()
    await events.subscribe("*", log_notification)

    db = await open_database(
        config.database.path,
        timeout=config.database.operation_timeout,
        events=events,
    )
    async with db:
        if args.command == "info":
            print(f"{db.path}: schema version {db.version}")
            for name in db.collection_names:
                print(f"  {name}: {await db.count(name)} records")
            return 0

        if args.command == "export":
            path = args.output or config.snapshot.path
            result = await export_snapshot(db, path, indent=config.snapshot.indent)
            return 0 if result.ok else 1

        if args.command == "import":
            path = args.input or config.snapshot.path
            report = await import_snapshot(db, path)
            for name, added in report.added.items():
                print(f"  {name}: {added} records imported")
            for name in report.skipped:
                print(f"  {name}: skipped")
            for failure in report.failures:
                print(f"  {failure.collection}[{failure.index}]: {failure.error}")
            return 0 if report.ok else 1

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the application."""
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    config = load_config(args.config)
    if args.db is not None:
        config = config.with_database_path(args.db)

    try:
        return asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except StoreError as e:
        logger.error("%s", e)
        return 1
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
