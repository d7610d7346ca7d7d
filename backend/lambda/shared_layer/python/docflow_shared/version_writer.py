"""docflow_shared.version_writer — Append-only writes for versioned records.

Every create/update/delete inserts a fresh ``(id, version)`` row with
``active=true`` and advances the head pointer in the same transaction. Existing
rows are never rewritten; the active-record processor later strips ``active``
from superseded rows.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from docflow_shared import config
from docflow_shared.errors import RecordNotFoundError, VersionConflictError, VersionWriteError
from docflow_shared.serialization import _generate_id, _next_version, _version_key
from docflow_shared.versioned_store import (
    ACTIVE_ATTR,
    DELETED_ATTR,
    HeadMovedError,
    VersionedStore,
    get_store,
)

logger = logging.getLogger(__name__)

# Attributes owned by the writer; callers cannot override them.
_SYSTEM_ATTRS = ("id", "version", ACTIVE_ATTR, "updatedAt", "createdAt")


class VersionWriter:
    def __init__(
        self,
        store_factory: Callable[[str], VersionedStore] = get_store,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store_factory = store_factory
        self._stores: Dict[str, VersionedStore] = {}
        self.max_attempts = max_attempts or config.VERSION_WRITE_MAX_ATTEMPTS
        self._sleep = sleep

    def store(self, entity_kind: str) -> VersionedStore:
        if entity_kind not in self._stores:
            self._stores[entity_kind] = self._store_factory(entity_kind)
        return self._stores[entity_kind]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _current(self, store: VersionedStore, record_id: str, head: Optional[str]) -> Optional[Dict[str, Any]]:
        if head:
            row = store.get(record_id, head)
            if row is not None:
                return row
        return store.latest(record_id)

    def latest(self, entity_kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Current version of a record, or None when missing or tombstoned."""
        store = self.store(entity_kind)
        row = self._current(store, record_id, store.get_head(record_id))
        if row is None or row.get(DELETED_ATTR):
            return None
        return row

    def history(self, entity_kind: str, record_id: str) -> List[Dict[str, Any]]:
        """All versions of a record, newest first."""
        return self.store(entity_kind).list_versions(record_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write(
        self,
        entity_kind: str,
        record_id: Optional[str],
        payload: Dict[str, Any],
        updated_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Insert a new active version of ``record_id`` (generated when None).

        ``payload`` is merged over the current version. Head contention is
        retried with jittered backoff; persistent contention raises
        VersionConflictError. Store failures surface as VersionWriteError.
        """
        store = self.store(entity_kind)
        rid = str(record_id) if record_id else _generate_id()
        changes = {k: v for k, v in (payload or {}).items() if k not in _SYSTEM_ATTRS}

        for attempt in range(1, self.max_attempts + 1):
            try:
                head = store.get_head(rid) if record_id else None
                current = self._current(store, rid, head) if record_id else None
            except (ClientError, BotoCoreError) as exc:
                raise VersionWriteError(f"could not read current {entity_kind} {rid}: {exc}") from exc

            floor = max(head or "", str((current or {}).get("version") or ""), key=_version_key)
            version = _next_version(floor or None)

            record: Dict[str, Any] = {
                k: v for k, v in (current or {}).items() if k not in _SYSTEM_ATTRS
            }
            record.update(changes)
            record.update(
                {
                    "id": rid,
                    "version": version,
                    ACTIVE_ATTR: True,
                    "updatedAt": version,
                    "createdAt": (current or {}).get("createdAt") or version,
                }
            )
            if updated_by:
                record["updatedBy"] = updated_by

            try:
                store.insert_with_head(record, head)
            except HeadMovedError:
                logger.info(
                    "[INFO] head moved for %s %s (attempt %d/%d)",
                    entity_kind, rid, attempt, self.max_attempts,
                )
                if attempt < self.max_attempts:
                    self._sleep(min(0.05 * (2 ** attempt), 0.5) * random.uniform(0.5, 1.0))
                continue
            logger.info("[INFO] wrote %s %s@%s", entity_kind, rid, version)
            return record

        raise VersionConflictError(entity_kind, rid, self.max_attempts)

    def create(self, entity_kind: str, payload: Dict[str, Any], updated_by: Optional[str] = None) -> Dict[str, Any]:
        return self.write(entity_kind, None, payload, updated_by=updated_by)

    def update(
        self,
        entity_kind: str,
        record_id: str,
        changes: Dict[str, Any],
        updated_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        if self.latest(entity_kind, record_id) is None:
            raise RecordNotFoundError(entity_kind, record_id)
        return self.write(entity_kind, record_id, changes, updated_by=updated_by)

    def tombstone(self, entity_kind: str, record_id: str, updated_by: Optional[str] = None) -> Dict[str, Any]:
        """Delete by writing a ``deleted=true`` version; readers skip it."""
        return self.update(entity_kind, record_id, {DELETED_ATTR: True}, updated_by=updated_by)
