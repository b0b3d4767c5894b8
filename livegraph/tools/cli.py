"""
Command line tool for livegraph.

Commands:
- schema validate: check a schema document for internal consistency
- schema snapshot: export a schema document as deterministic JSON with
  its fingerprint
- cache inspect: show what a local cache file holds

Usage:
    livegraph schema validate schema.yaml
    livegraph schema snapshot schema.yaml -o schema.lock.json
    livegraph cache inspect ~/.local/share/app/livegraph.db --format json

Invariants:
    - Failures exit with a non-zero code
    - Snapshot output is deterministic (sorted JSON)

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for CI parsing
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Optional, Sequence

from ..config import StoreSettings
from ..errors import LiveGraphError, SchemaError
from ..logging_setup import setup_logging
from ..persist.sqlite_cache import SqliteLocalCache
from ..schema import SchemaRegistry, load_schema

logger = logging.getLogger(__name__)


class LiveGraphCLI:
    """CLI commands as plain methods, for use from Python and tests.

    Example:
        >>> cli = LiveGraphCLI()
        >>> cli.validate("schema.yaml")
        []
    """

    def validate(self, path: str) -> list[str]:
        """Validate a schema document.

        Returns:
            List of validation errors (empty when valid)
        """
        try:
            schema = load_schema(path)
            registry = SchemaRegistry()
            for entity_type in schema.entities:
                registry.register_entity_type(entity_type)
            for link in schema.links:
                registry.register_link(link)
        except SchemaError as e:
            return e.errors or [e.message]
        return registry.validate_all()

    def snapshot(self, path: str) -> str:
        """Export a schema document to JSON.

        Raises:
            SchemaError: If the schema is malformed or inconsistent
        """
        registry = SchemaRegistry.from_schema(load_schema(path))
        output = {
            "version": 1,
            "fingerprint": registry.fingerprint,
            "schema": registry.to_dict(),
        }
        return json.dumps(output, indent=2, sort_keys=True)

    def inspect_cache(self, path: str) -> dict[str, Any]:
        """Describe a local cache file.

        Raises:
            FileNotFoundError: If the file does not exist
            CacheError: If the file is not a readable cache
        """
        cache = SqliteLocalCache(path, wal_mode=False)
        if not cache.exists():
            raise FileNotFoundError(f"Cache file not found: {path}")
        return cache.get_stats()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="livegraph", description="livegraph store tool")
    parser.add_argument("--log-level", help="Log level (default from LIVEGRAPH_LOG_LEVEL)")
    parser.add_argument("--log-format", choices=["text", "json"], help="Log format")
    subparsers = parser.add_subparsers(dest="command", required=True)

    schema_parser = subparsers.add_parser("schema", help="Schema documents")
    schema_sub = schema_parser.add_subparsers(dest="schema_command", required=True)

    validate_parser = schema_sub.add_parser("validate", help="Validate schema for consistency")
    validate_parser.add_argument("file", help="Schema document (YAML or JSON)")

    snapshot_parser = schema_sub.add_parser("snapshot", help="Export schema to JSON")
    snapshot_parser.add_argument("file", help="Schema document (YAML or JSON)")
    snapshot_parser.add_argument("--output", "-o", help="Output file (default: stdout)")

    cache_parser = subparsers.add_parser("cache", help="Local cache files")
    cache_sub = cache_parser.add_subparsers(dest="cache_command", required=True)

    inspect_parser = cache_sub.add_parser("inspect", help="Show cache contents")
    inspect_parser.add_argument("path", help="SQLite cache file")
    inspect_parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entry point."""
    args = _build_parser().parse_args(argv)

    overrides = {}
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_format:
        overrides["log_format"] = args.log_format
    setup_logging(StoreSettings(**overrides))

    cli = LiveGraphCLI()

    if args.command == "schema" and args.schema_command == "validate":
        errors = cli.validate(args.file)
        if not errors:
            print("Schema is valid")
            return 0
        print(f"Schema validation failed with {len(errors)} error(s):")
        for error in errors:
            print(f"  - {error}")
        return 1

    if args.command == "schema" and args.schema_command == "snapshot":
        try:
            output = cli.snapshot(args.file)
        except SchemaError as e:
            print(f"Cannot snapshot schema: {e.message}", file=sys.stderr)
            return 1
        if args.output:
            with open(args.output, "w") as f:
                f.write(output)
            print(f"Schema exported to {args.output}", file=sys.stderr)
        else:
            print(output)
        return 0

    if args.command == "cache" and args.cache_command == "inspect":
        try:
            stats = cli.inspect_cache(args.path)
        except (FileNotFoundError, LiveGraphError) as e:
            print(str(e), file=sys.stderr)
            return 1
        if args.format == "json":
            print(json.dumps(stats, indent=2, sort_keys=True))
        else:
            print(f"Cache: {stats['path']}")
            print(f"  format version:     {stats['format_version']}")
            print(f"  schema fingerprint: {stats['schema_fingerprint']}")
            print(f"  pending txs:        {stats['pending_transactions']}")
            print(f"  links:              {stats['links']}")
            for entity_type, count in sorted(stats["entities"].items()):
                print(f"  {entity_type}: {count}")
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
