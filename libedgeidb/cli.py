"""Command line entry point for migrating an extension's IndexedDB.

Usage:
    # Find the extension's IndexedDB directory
    edgeidb-migrate --discover

    # Migrate the discovered (or configured) IndexedDB into ./indexeddb
    edgeidb-migrate --target ./indexeddb

    # Migrate an explicit directory and keep the summary
    edgeidb-migrate --source /path/to/chrome-extension_x_0.indexeddb.leveldb \\
        --target ./indexeddb --json-output ./summary.json

    # Build a synthetic source store to try the migration on
    edgeidb-migrate --generate ./synthetic.indexeddb.leveldb
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .config import MigrationSettings
from .discovery import ExtensionDiscovery
from .exceptions import ExtensionNotFoundError, SchemaMapError
from .migrator import Migrator
from .models import MigrationSummary
from .observer import LoggingObserver
from .synthetic import SyntheticIndexedDB
from .target import LevelDocumentStoreProvider

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="edgeidb-migrate",
        description="Migrate a browser extension's IndexedDB into a local document store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Settings not given on the command line are read from EDGEIDB_* environment
variables (a .env file is loaded if present).

Examples:
  %(prog)s --discover
  %(prog)s --source /path/to/db.indexeddb.leveldb --target ./indexeddb
  %(prog)s --generate ./synthetic.indexeddb.leveldb
        """,
    )

    action_group = parser.add_mutually_exclusive_group()
    action_group.add_argument(
        "--discover",
        action="store_true",
        help="List installs of the extension and their IndexedDB paths",
    )
    action_group.add_argument(
        "--generate",
        type=Path,
        metavar="PATH",
        help="Write a synthetic source IndexedDB to PATH",
    )

    parser.add_argument("--source", type=Path, metavar="PATH", help="Source IndexedDB directory")
    parser.add_argument("--target", type=Path, metavar="DIR", help="Destination directory")
    parser.add_argument("--name", metavar="NAME", help="Destination database name")
    parser.add_argument(
        "--db-version", type=int, metavar="N", help="Destination schema version"
    )
    parser.add_argument(
        "--schema-map", type=Path, metavar="PATH", help="JSON file with the store id table"
    )
    parser.add_argument(
        "--max-entries", type=int, metavar="N", help="Stop scanning after N source records"
    )
    parser.add_argument(
        "--extension-name", metavar="NAME", help="Manifest name to look for (default: yomitan)"
    )
    parser.add_argument(
        "--json-output", type=Path, metavar="PATH", help="Write the migration summary as JSON"
    )
    parser.add_argument(
        "--terms",
        type=int,
        default=10,
        metavar="N",
        help="Terms per dictionary for --generate (default: 10)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> MigrationSettings:
    """Environment settings with command line overrides applied."""
    settings = MigrationSettings.from_env()
    overrides = {
        "source_path": args.source,
        "target_dir": args.target,
        "target_name": args.name,
        "target_version": args.db_version,
        "schema_map_path": args.schema_map,
        "max_entries": args.max_entries,
        "extension_name": args.extension_name,
        "log_level": "DEBUG" if args.verbose else None,
    }
    values = settings.model_dump()
    values.update({k: v for k, v in overrides.items() if v is not None})
    return MigrationSettings.model_validate(values)


def discover_extensions(settings: MigrationSettings) -> int:
    """Print every install of the extension."""
    discovery = ExtensionDiscovery(settings.extension_name)
    try:
        locations = discovery.discover()
    except ExtensionNotFoundError as e:
        print(f"No installs found: {e}")
        return 1

    print(f"Found {len(locations)} install(s):\n")
    for idx, loc in enumerate(locations, 1):
        status = "✓ Valid" if discovery.validate_location(loc) else "✗ No IndexedDB"
        print(f"{idx}. {loc.name} ({loc.browser})")
        print(f"   Extension ID: {loc.extension_id}")
        print(f"   Priority: {loc.priority}")
        print(f"   IndexedDB: {loc.indexeddb_path}")
        print(f"   Extension storage: {loc.storage_path}")
        print(f"   Status: {status}\n")
    return 0


def generate_source(output_path: Path, terms: int) -> int:
    """Write a synthetic source store."""
    if output_path.exists():
        print(f"Error: {output_path} already exists", file=sys.stderr)
        return 1

    db = SyntheticIndexedDB().generate_synthetic(terms_per_dictionary=terms)
    db.dump_to_leveldb(output_path)
    print(f"Wrote {len(db.items())} records to {output_path}")
    return 0


def resolve_source(settings: MigrationSettings) -> Optional[Path]:
    """The configured source, or the first discovered install's IndexedDB."""
    if settings.source_path is not None:
        return settings.source_path
    try:
        location = ExtensionDiscovery(settings.extension_name).find_first()
    except ExtensionNotFoundError as e:
        logger.warning("%s", e)
        return None
    logger.info("Using %s IndexedDB at %s", location.browser, location.indexeddb_path)
    return location.indexeddb_path


def print_summary(summary: MigrationSummary) -> None:
    print(f"Source: {summary.source_path}")
    print(f"Parsed {summary.parsed_entries} of {summary.total_entries} entries")
    for store_name, count in summary.per_store_counts.items():
        print(f"  {store_name}: {count}")
    print(f"Unmapped: {summary.unmapped_entries}  Malformed keys: {summary.malformed_keys}")
    print(f"Synced: {summary.synced_entries}  Write failures: {summary.write_failures}")
    if summary.error:
        print(f"Error: {summary.error}", file=sys.stderr)


def run_migration(settings: MigrationSettings, json_output: Optional[Path]) -> int:
    """Run the migration and report its summary."""
    try:
        schema_map = settings.load_schema_map()
    except SchemaMapError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    source_path = resolve_source(settings)
    if source_path is None:
        print("No source given and no extension install discovered, nothing to migrate")
        return 0

    migrator = Migrator(
        LevelDocumentStoreProvider(settings.target_dir),
        schema_map=schema_map,
        observer=LoggingObserver(),
        target_name=settings.target_name,
        target_version=settings.target_version,
        max_entries=settings.max_entries,
    )
    summary = asyncio.run(migrator.run(source_path))
    print_summary(summary)

    if json_output:
        json_output.parent.mkdir(parents=True, exist_ok=True)
        json_output.write_text(summary.model_dump_json(indent=2), encoding="utf-8")
        print(f"Summary written to: {json_output}")

    return 1 if summary.failed else 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        settings = build_settings(args)
    except ValidationError as e:
        print(f"Error: invalid settings: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.discover:
        return discover_extensions(settings)
    if args.generate:
        return generate_source(args.generate, args.terms)
    return run_migration(settings, args.json_output)


if __name__ == "__main__":
    sys.exit(main())
