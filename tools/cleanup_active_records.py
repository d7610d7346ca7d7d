#!/usr/bin/env python3
"""Collapse docflow entity tables to a single active version per id.

Operator tool for backfills and for tables written before the version head
pointer existed. For every id with more than one active row it keeps the
head version (or the greatest version when no head exists) and removes
``active`` from the rest, the same rule the stream reconciler applies.

Examples:
  cleanup_active_records.py --entity-kind Document --dry-run
  cleanup_active_records.py --entity-kind all
  cleanup_active_records.py --entity-kind Document --table docflow-Document-restore
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from docflow_shared import config
from docflow_shared.reconcile import sweep
from docflow_shared.versioned_store import get_store


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Deactivate stale active versions in docflow tables")
    parser.add_argument(
        "--entity-kind",
        action="append",
        required=True,
        help="Entity kind to sweep (repeatable), or 'all'. Known: " + ", ".join(sorted(config.ENTITY_TABLES)),
    )
    parser.add_argument("--table", default="", help="Physical table override; requires a single --entity-kind")
    parser.add_argument("--dry-run", action="store_true", help="Report stale versions without writing")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def _kinds(requested: List[str]) -> List[str]:
    if any(k.lower() == "all" for k in requested):
        return list(config.ENTITY_TABLES)
    unknown = [k for k in requested if k not in config.ENTITY_TABLES]
    if unknown:
        raise ValueError(f"Unknown entity kind(s): {', '.join(unknown)}")
    return list(dict.fromkeys(requested))


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        kinds = _kinds(args.entity_kind)
    except ValueError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2
    if args.table and len(kinds) != 1:
        print("[ERROR] --table requires exactly one --entity-kind", file=sys.stderr)
        return 2

    summaries: List[Dict[str, Any]] = []
    for kind in kinds:
        store = get_store(kind, args.table or None)
        summary = sweep(store, dry_run=args.dry_run)
        summaries.append(summary)
        print(
            f"[INFO] {kind} ({store.table_name}): {summary['ids_scanned']} ids, "
            f"{summary['ids_with_duplicates']} with duplicates, {summary['deactivated']} deactivated, "
            f"{summary['errors']} errors{' (dry run)' if args.dry_run else ''}",
            file=sys.stderr,
        )

    print(json.dumps({"dry_run": args.dry_run, "tables": summaries}, indent=2, sort_keys=True))
    return 1 if any(s["errors"] for s in summaries) else 0


if __name__ == "__main__":
    raise SystemExit(main())
