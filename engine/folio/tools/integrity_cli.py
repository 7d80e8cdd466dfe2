"""
Relation integrity CLI tool for Folio.

This tool inspects a workspace database directly:
- check: Report asymmetric links, dangling ids and index drift
- repair: Fix everything check reports, in one transaction
- stats: Print entity counts

Usage:
    folio-integrity check --data-dir /var/lib/folio
    folio-integrity repair --data-dir /var/lib/folio --format json
    folio-integrity stats --data-dir /var/lib/folio

Invariants:
    - check never writes
    - Problems found cause a non-zero exit code from check
    - JSON output is deterministic (sorted keys)

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripted use
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from ..notify import InMemoryNotifier
from ..store import EntityStore
from ..workspace import Workspace

logger = logging.getLogger(__name__)


class IntegrityCLI:
    """Offline integrity commands over one workspace database.

    Example:
        >>> cli = IntegrityCLI("/var/lib/folio")
        >>> report = await cli.check()
        >>> report["ok"]
        True
    """

    def __init__(self, data_dir: str, db_name: str = "folio.db") -> None:
        self.store = EntityStore(data_dir, db_name=db_name)
        # Events from a repair have no subscribers offline
        self.workspace = Workspace(self.store, InMemoryNotifier())

    async def _open(self) -> None:
        if not await self.store.exists():
            raise FileNotFoundError(f"Workspace database not found: {self.store.db_path}")
        await self.workspace.open()

    async def check(self) -> dict[str, Any]:
        await self._open()
        try:
            report = await self.workspace.integrity.check()
        finally:
            await self.workspace.close()
        return report.to_dict()

    async def repair(self) -> dict[str, Any]:
        await self._open()
        try:
            report = await self.workspace.integrity.repair()
        finally:
            await self.workspace.close()
        return report.to_dict()

    async def stats(self) -> dict[str, int]:
        await self._open()
        try:
            return await self.store.get_stats()
        finally:
            await self.workspace.close()


def _print_report(report: dict[str, Any], repaired: bool) -> None:
    if report["ok"]:
        print("Relation data is consistent")
        return

    print("Relation integrity problems:")
    for key in ("asymmetric", "dangling"):
        for link in report[key]:
            print(f"  [{key}] {link['row_id']}.{link['property_id']} -> {link['target_row_id']}")
    for key in ("index_missing", "index_extra"):
        for ref in report[key]:
            print(f"  [{key}] {ref['source_row_id']}.{ref['property_id']} -> {ref['target_row_id']}")
    if repaired:
        print(f"Repaired {report['repaired_cells']} cell(s) and rebuilt the back-reference index")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the integrity tool."""
    parser = argparse.ArgumentParser(description="Folio relation integrity tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("check", "Report relation integrity problems"),
        ("repair", "Repair relation cells and rebuild the index"),
        ("stats", "Print entity counts"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--data-dir", required=True, help="Directory holding the workspace database")
        sub.add_argument("--db-name", default="folio.db", help="Database file name")
        sub.add_argument(
            "--format", choices=["text", "json"], default="text", help="Output format"
        )

    args = parser.parse_args(argv)
    cli = IntegrityCLI(args.data_dir, args.db_name)

    try:
        if args.command == "stats":
            stats = asyncio.run(cli.stats())
            if args.format == "json":
                print(json.dumps(stats, indent=2, sort_keys=True))
            else:
                for key in sorted(stats):
                    print(f"{key}: {stats[key]}")
            sys.exit(0)

        if args.command == "check":
            report = asyncio.run(cli.check())
        else:
            report = asyncio.run(cli.repair())
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        sys.exit(2)

    if args.format == "json":
        print(json.dumps(report, indent=2, sort_keys=True))
    else:
        _print_report(report, repaired=args.command == "repair")

    if args.command == "check" and not report["ok"]:
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
