"""docflow_shared.reconcile — Single-active-version enforcement.

``reconcile_id`` is what the stream processor runs for every INSERT: it picks
the authoritative version of an id and strips ``active`` from every other
active row. ``sweep`` applies the same rule to a whole entity kind and backs
the cleanup tool and the processor's ``sweep`` action.

The target is the head pointer when one exists, otherwise the greatest active
version. Both are independent of event delivery order, so a late event for an
older version never deactivates a newer row, and re-running is a no-op.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from docflow_shared.serialization import _version_key
from docflow_shared.versioned_store import ACTIVE_ATTR, VersionedStore

logger = logging.getLogger(__name__)


def _target_version(
    store: VersionedStore,
    record_id: str,
    inserted_version: Optional[str],
    page_size: Optional[int] = None,
) -> Optional[str]:
    head = store.get_head(record_id)
    if head:
        return head
    target = inserted_version or ""
    for page in store.iter_active_pages(record_id, page_size):
        for row in page:
            version = str(row.get("version") or "")
            if _version_key(version) > _version_key(target):
                target = version
    return target or None


def reconcile_id(
    store: VersionedStore,
    record_id: str,
    inserted_version: Optional[str] = None,
    page_size: Optional[int] = None,
) -> Dict[str, Any]:
    """Deactivate every active row of ``record_id`` except the target version.

    Returns ``{"target", "deactivated", "already_inactive"}``. A conditional
    removal that finds ``active`` already gone counts as already_inactive.
    """
    target = _target_version(store, record_id, inserted_version, page_size)
    deactivated = 0
    already_inactive = 0
    if target is None:
        return {"target": None, "deactivated": 0, "already_inactive": 0}

    for page in store.iter_active_pages(record_id, page_size):
        for row in page:
            version = str(row.get("version") or "")
            if not version or version == target:
                continue
            if store.remove_attribute(record_id, version, ACTIVE_ATTR, conditional_on_exists=True):
                deactivated += 1
                logger.info("[INFO] deactivated %s %s@%s (target %s)", store.entity_kind, record_id, version, target)
            else:
                already_inactive += 1
    return {"target": target, "deactivated": deactivated, "already_inactive": already_inactive}


def sweep(store: VersionedStore, dry_run: bool = False) -> Dict[str, Any]:
    """Collapse every id of an entity kind to a single active row."""
    groups: Dict[str, List[str]] = {}
    for row in store.scan_active_rows():
        rid = str(row.get("id") or "")
        version = str(row.get("version") or "")
        if rid and version:
            groups.setdefault(rid, []).append(version)

    summary: Dict[str, Any] = {
        "entity_kind": store.entity_kind,
        "table": store.table_name,
        "dry_run": dry_run,
        "ids_scanned": len(groups),
        "ids_with_duplicates": 0,
        "deactivated": 0,
        "already_inactive": 0,
        "errors": 0,
        "stale_versions": [],
    }
    for rid, versions in groups.items():
        if len(versions) < 2:
            continue
        summary["ids_with_duplicates"] += 1
        target = store.get_head(rid) or max(versions, key=_version_key)
        stale = sorted((v for v in versions if v != target), key=_version_key)
        summary["stale_versions"].extend({"id": rid, "version": v, "keep": target} for v in stale)
        if dry_run:
            continue
        for version in stale:
            try:
                removed = store.remove_attribute(rid, version, ACTIVE_ATTR, conditional_on_exists=True)
            except Exception as exc:
                summary["errors"] += 1
                logger.error("[ERROR] sweep failed for %s %s@%s: %s", store.entity_kind, rid, version, exc)
                continue
            if removed:
                summary["deactivated"] += 1
            else:
                summary["already_inactive"] += 1

    logger.info(
        "[INFO] sweep %s: %d ids, %d with duplicates, %d deactivated%s",
        store.entity_kind,
        summary["ids_scanned"],
        summary["ids_with_duplicates"],
        summary["deactivated"],
        " (dry run)" if dry_run else "",
    )
    return summary
