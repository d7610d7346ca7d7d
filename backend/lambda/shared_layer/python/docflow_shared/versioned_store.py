"""docflow_shared.versioned_store — Physical read/write of versioned records.

Every entity kind lives in its own table keyed by ``(id, version)``. Rows are
append-only: the only in-place mutation ever issued is the conditional removal
of the ``active`` marker. A separate head table maps ``<kind>#<id>`` to the
authoritative version and is advanced in the same transaction as the insert.

Two backends share the contract:
    DynamoVersionedStore   boto3 low-level client, paginated query/scan
    InMemoryVersionedStore local runs and tests; keeps a stream-shaped change log
"""

from __future__ import annotations

import collections
import copy
import itertools
import logging
import threading
from typing import Any, Deque, Dict, Iterable, Iterator, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from docflow_shared import config
from docflow_shared.aws_clients import _get_ddb
from docflow_shared.errors import DocflowError, VersionWriteError
from docflow_shared.serialization import _deserialize, _now_z, _serialize, _serialize_item, _version_key

logger = logging.getLogger(__name__)

ACTIVE_ATTR = "active"
DELETED_ATTR = "deleted"


class HeadMovedError(DocflowError):
    """The head pointer no longer matches the version the writer observed."""


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def _latest_per_id(records: Iterable[Dict[str, Any]], include_deleted: bool = False) -> List[Dict[str, Any]]:
    """Keep the greatest version per id (readers tolerate reconciliation lag)."""
    latest: Dict[str, Dict[str, Any]] = {}
    order: List[str] = []
    for record in records:
        rid = str(record.get("id") or "")
        if not rid:
            continue
        current = latest.get(rid)
        if current is None:
            order.append(rid)
            latest[rid] = record
        elif _version_key(record.get("version")) > _version_key(current.get("version")):
            latest[rid] = record
    out = [latest[rid] for rid in order]
    if not include_deleted:
        out = [r for r in out if not r.get(DELETED_ATTR)]
    return out


def _head_key(entity_kind: str, record_id: str) -> str:
    return f"{entity_kind}#{record_id}"


class VersionedStore:
    """Store contract. Subclasses implement the physical operations."""

    def __init__(self, entity_kind: str, table_name: str):
        self.entity_kind = entity_kind
        self.table_name = table_name

    # -- reads -------------------------------------------------------------

    def get(self, record_id: str, version: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def iter_active_pages(self, record_id: str, page_size: Optional[int] = None) -> Iterator[List[Dict[str, Any]]]:
        raise NotImplementedError

    def query_active_by_id(self, record_id: str) -> List[Dict[str, Any]]:
        return [row for page in self.iter_active_pages(record_id) for row in page]

    def query_all_active_by_project(self, project_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def scan_active_rows(self) -> List[Dict[str, Any]]:
        """Every row carrying ``active``, duplicates included."""
        raise NotImplementedError

    def list_active(self) -> List[Dict[str, Any]]:
        return _latest_per_id(self.scan_active_rows())

    def list_versions(self, record_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def latest(self, record_id: str) -> Optional[Dict[str, Any]]:
        rows = _latest_per_id(self.query_active_by_id(record_id), include_deleted=True)
        return rows[0] if rows else None

    def get_head(self, record_id: str) -> Optional[str]:
        raise NotImplementedError

    # -- writes ------------------------------------------------------------

    def insert(self, record: Dict[str, Any]) -> None:
        raise NotImplementedError

    def insert_with_head(self, record: Dict[str, Any], expected_head: Optional[str]) -> None:
        raise NotImplementedError

    def remove_attribute(
        self,
        record_id: str,
        version: str,
        attribute: str,
        conditional_on_exists: bool = True,
    ) -> bool:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# DynamoDB backend
# ---------------------------------------------------------------------------


class DynamoVersionedStore(VersionedStore):
    """Versioned store over a DynamoDB table with key schema (id HASH, version RANGE)."""

    def __init__(
        self,
        entity_kind: str,
        table_name: str,
        client: Any = None,
        heads_table: Optional[str] = None,
    ):
        super().__init__(entity_kind, table_name)
        self._client = client
        self.heads_table = heads_table or config.VERSION_HEADS_TABLE

    @property
    def ddb(self):
        if self._client is None:
            self._client = _get_ddb()
        return self._client

    def _key(self, record_id: str, version: str) -> Dict[str, Any]:
        return {"id": _serialize(record_id), "version": _serialize(version)}

    def _paginate(self, operation: str, params: Dict[str, Any]) -> Iterator[List[Dict[str, Any]]]:
        call = getattr(self.ddb, operation)
        request = dict(params)
        while True:
            resp = call(**request)
            yield [_deserialize(item) for item in resp.get("Items", [])]
            lek = resp.get("LastEvaluatedKey")
            if not lek:
                break
            request["ExclusiveStartKey"] = lek

    def get(self, record_id: str, version: str) -> Optional[Dict[str, Any]]:
        resp = self.ddb.get_item(
            TableName=self.table_name,
            Key=self._key(record_id, version),
            ConsistentRead=True,
        )
        raw = resp.get("Item")
        return _deserialize(raw) if raw else None

    def _scan_active_params(self, record_id: str, page_size: int) -> Dict[str, Any]:
        return {
            "TableName": self.table_name,
            "FilterExpression": "#id = :id AND attribute_exists(#active)",
            "ExpressionAttributeNames": {"#id": "id", "#active": ACTIVE_ATTR},
            "ExpressionAttributeValues": {":id": _serialize(record_id)},
            "Limit": page_size,
        }

    def iter_active_pages(self, record_id: str, page_size: Optional[int] = None) -> Iterator[List[Dict[str, Any]]]:
        size = page_size or config.RECONCILE_PAGE_SIZE
        if config.lookup_mode() == "scan":
            yield from self._paginate("scan", self._scan_active_params(record_id, size))
            return

        params = {
            "TableName": self.table_name,
            "KeyConditionExpression": "#id = :id",
            "FilterExpression": "attribute_exists(#active)",
            "ExpressionAttributeNames": {"#id": "id", "#active": ACTIVE_ATTR},
            "ExpressionAttributeValues": {":id": _serialize(record_id)},
            "ConsistentRead": True,
            "Limit": size,
        }
        try:
            yield from self._paginate("query", params)
        except ClientError as exc:
            if not config.ALLOW_SCAN_FALLBACK:
                raise
            logger.warning(
                "[WARNING] active query failed on %s (%s); falling back to full-table scan",
                self.table_name,
                _error_code(exc),
            )
            yield from self._paginate("scan", self._scan_active_params(record_id, size))

    def query_all_active_by_project(self, project_id: str) -> List[Dict[str, Any]]:
        params = {
            "TableName": self.table_name,
            "IndexName": config.PROJECT_INDEX_NAME,
            "KeyConditionExpression": "#pid = :pid",
            "FilterExpression": "attribute_exists(#active)",
            "ExpressionAttributeNames": {"#pid": "projectId", "#active": ACTIVE_ATTR},
            "ExpressionAttributeValues": {":pid": _serialize(project_id)},
        }
        try:
            rows = [row for page in self._paginate("query", params) for row in page]
        except ClientError as exc:
            if not config.ALLOW_SCAN_FALLBACK:
                raise
            logger.warning(
                "[WARNING] project index query failed on %s (%s); falling back to full-table scan",
                self.table_name,
                _error_code(exc),
            )
            scan_params = {
                "TableName": self.table_name,
                "FilterExpression": "#pid = :pid AND attribute_exists(#active)",
                "ExpressionAttributeNames": {"#pid": "projectId", "#active": ACTIVE_ATTR},
                "ExpressionAttributeValues": {":pid": _serialize(project_id)},
            }
            rows = [row for page in self._paginate("scan", scan_params) for row in page]
        return _latest_per_id(rows)

    def scan_active_rows(self) -> List[Dict[str, Any]]:
        params = {
            "TableName": self.table_name,
            "FilterExpression": "attribute_exists(#active)",
            "ExpressionAttributeNames": {"#active": ACTIVE_ATTR},
        }
        return [row for page in self._paginate("scan", params) for row in page]

    def list_versions(self, record_id: str) -> List[Dict[str, Any]]:
        params = {
            "TableName": self.table_name,
            "KeyConditionExpression": "#id = :id",
            "ExpressionAttributeNames": {"#id": "id"},
            "ExpressionAttributeValues": {":id": _serialize(record_id)},
            "ScanIndexForward": False,
        }
        return [row for page in self._paginate("query", params) for row in page]

    def get_head(self, record_id: str) -> Optional[str]:
        resp = self.ddb.get_item(
            TableName=self.heads_table,
            Key={"head_key": _serialize(_head_key(self.entity_kind, record_id))},
            ConsistentRead=True,
        )
        raw = resp.get("Item")
        if not raw:
            return None
        return str(_deserialize(raw).get("version") or "") or None

    def insert(self, record: Dict[str, Any]) -> None:
        try:
            self.ddb.put_item(
                TableName=self.table_name,
                Item=_serialize_item(record),
                ConditionExpression="attribute_not_exists(#id)",
                ExpressionAttributeNames={"#id": "id"},
            )
        except ClientError as exc:
            if _error_code(exc) == "ConditionalCheckFailedException":
                raise VersionWriteError(
                    f"{self.entity_kind} {record.get('id')}@{record.get('version')} already exists"
                ) from exc
            raise VersionWriteError(f"{self.entity_kind} insert failed: {exc}") from exc
        except BotoCoreError as exc:
            raise VersionWriteError(f"{self.entity_kind} insert failed: {exc}") from exc

    def insert_with_head(self, record: Dict[str, Any], expected_head: Optional[str]) -> None:
        record_id = str(record["id"])
        head_update: Dict[str, Any] = {
            "TableName": self.heads_table,
            "Key": {"head_key": _serialize(_head_key(self.entity_kind, record_id))},
            "UpdateExpression": "SET #v = :new, #kind = :kind, #rid = :rid, #upd = :now",
            "ExpressionAttributeNames": {
                "#v": "version",
                "#kind": "entity_kind",
                "#rid": "record_id",
                "#upd": "updated_at",
            },
            "ExpressionAttributeValues": {
                ":new": _serialize(record["version"]),
                ":kind": _serialize(self.entity_kind),
                ":rid": _serialize(record_id),
                ":now": _serialize(_now_z()),
            },
        }
        if expected_head is None:
            head_update["ConditionExpression"] = "attribute_not_exists(#v)"
        else:
            head_update["ConditionExpression"] = "#v = :expected"
            head_update["ExpressionAttributeValues"][":expected"] = _serialize(expected_head)

        try:
            self.ddb.transact_write_items(
                TransactItems=[
                    {
                        "Put": {
                            "TableName": self.table_name,
                            "Item": _serialize_item(record),
                            "ConditionExpression": "attribute_not_exists(#id)",
                            "ExpressionAttributeNames": {"#id": "id"},
                        }
                    },
                    {"Update": head_update},
                ]
            )
        except ClientError as exc:
            if _error_code(exc) == "TransactionCanceledException" and self._cancelled_by_condition(exc):
                raise HeadMovedError(
                    f"{self.entity_kind} {record_id}: head is no longer {expected_head!r}"
                ) from exc
            raise VersionWriteError(f"{self.entity_kind} {record_id} write failed: {exc}") from exc
        except BotoCoreError as exc:
            raise VersionWriteError(f"{self.entity_kind} {record_id} write failed: {exc}") from exc

    @staticmethod
    def _cancelled_by_condition(exc: ClientError) -> bool:
        reasons = exc.response.get("CancellationReasons") or []
        if reasons:
            return any(str(r.get("Code") or "") == "ConditionalCheckFailed" for r in reasons)
        message = str(exc.response.get("Error", {}).get("Message") or "")
        return "ConditionalCheckFailed" in message

    def remove_attribute(
        self,
        record_id: str,
        version: str,
        attribute: str,
        conditional_on_exists: bool = True,
    ) -> bool:
        condition = "attribute_exists(#id)"
        if conditional_on_exists:
            condition += " AND attribute_exists(#attr)"
        try:
            self.ddb.update_item(
                TableName=self.table_name,
                Key=self._key(record_id, version),
                UpdateExpression="REMOVE #attr",
                ConditionExpression=condition,
                ExpressionAttributeNames={"#id": "id", "#attr": attribute},
            )
            return True
        except ClientError as exc:
            if _error_code(exc) == "ConditionalCheckFailedException":
                return False
            raise


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryDatabase:
    """Process-local tables plus an ordered, stream-shaped change log.

    The change log keeps the newest ``max_changes`` events, the way a stream
    only retains a window; nothing drains it outside tests and local tooling.
    """

    def __init__(self, max_changes: int = 10000):
        self.lock = threading.RLock()
        self.tables: Dict[str, Dict[Tuple[str, str], Dict[str, Any]]] = {}
        self.heads: Dict[str, str] = {}
        self.changes: Deque[Dict[str, Any]] = collections.deque(maxlen=max_changes)
        self._sequence = itertools.count(1)

    def table(self, name: str) -> Dict[Tuple[str, str], Dict[str, Any]]:
        return self.tables.setdefault(name, {})

    def record_change(
        self,
        table_name: str,
        event_name: str,
        new_image: Optional[Dict[str, Any]],
        old_image: Optional[Dict[str, Any]],
    ) -> None:
        image = new_image or old_image or {}
        keys = {"id": image.get("id"), "version": image.get("version")}
        dynamodb: Dict[str, Any] = {
            "Keys": _serialize_item(keys),
            "SequenceNumber": str(next(self._sequence)),
            "StreamViewType": "NEW_AND_OLD_IMAGES",
        }
        if new_image is not None:
            dynamodb["NewImage"] = _serialize_item(new_image)
        if old_image is not None:
            dynamodb["OldImage"] = _serialize_item(old_image)
        self.changes.append(
            {
                "eventID": dynamodb["SequenceNumber"],
                "eventName": event_name,
                "eventSource": "aws:dynamodb",
                "eventSourceARN": f"arn:aws:dynamodb:local:000000000000:table/{table_name}/stream/local",
                "dynamodb": dynamodb,
            }
        )

    def drain_changes(self) -> List[Dict[str, Any]]:
        with self.lock:
            out = list(self.changes)
            self.changes.clear()
        return out


class InMemoryVersionedStore(VersionedStore):
    def __init__(self, entity_kind: str, table_name: str, database: Optional[InMemoryDatabase] = None):
        super().__init__(entity_kind, table_name)
        self.db = database or InMemoryDatabase()

    @property
    def _rows(self) -> Dict[Tuple[str, str], Dict[str, Any]]:
        return self.db.table(self.table_name)

    def get(self, record_id: str, version: str) -> Optional[Dict[str, Any]]:
        with self.db.lock:
            row = self._rows.get((record_id, version))
            return copy.deepcopy(row) if row else None

    def iter_active_pages(self, record_id: str, page_size: Optional[int] = None) -> Iterator[List[Dict[str, Any]]]:
        size = page_size or config.RECONCILE_PAGE_SIZE
        with self.db.lock:
            rows = sorted(
                (copy.deepcopy(r) for (rid, _), r in self._rows.items() if rid == record_id and ACTIVE_ATTR in r),
                key=lambda r: _version_key(r.get("version")),
            )
        for start in range(0, len(rows), size):
            yield rows[start:start + size]

    def query_all_active_by_project(self, project_id: str) -> List[Dict[str, Any]]:
        with self.db.lock:
            rows = [
                copy.deepcopy(r)
                for r in self._rows.values()
                if ACTIVE_ATTR in r and r.get("projectId") == project_id
            ]
        return _latest_per_id(rows)

    def scan_active_rows(self) -> List[Dict[str, Any]]:
        with self.db.lock:
            return [copy.deepcopy(r) for r in self._rows.values() if ACTIVE_ATTR in r]

    def list_versions(self, record_id: str) -> List[Dict[str, Any]]:
        with self.db.lock:
            rows = [copy.deepcopy(r) for (rid, _), r in self._rows.items() if rid == record_id]
        return sorted(rows, key=lambda r: _version_key(r.get("version")), reverse=True)

    def get_head(self, record_id: str) -> Optional[str]:
        with self.db.lock:
            return self.db.heads.get(_head_key(self.entity_kind, record_id))

    def _put_locked(self, record: Dict[str, Any]) -> None:
        key = (str(record["id"]), str(record["version"]))
        if key in self._rows:
            raise VersionWriteError(f"{self.entity_kind} {key[0]}@{key[1]} already exists")
        stored = {k: copy.deepcopy(v) for k, v in record.items() if v is not None}
        self._rows[key] = stored
        self.db.record_change(self.table_name, "INSERT", stored, None)

    def insert(self, record: Dict[str, Any]) -> None:
        with self.db.lock:
            self._put_locked(record)

    def insert_with_head(self, record: Dict[str, Any], expected_head: Optional[str]) -> None:
        head_key = _head_key(self.entity_kind, str(record["id"]))
        with self.db.lock:
            if self.db.heads.get(head_key) != expected_head:
                raise HeadMovedError(f"{head_key}: head is no longer {expected_head!r}")
            if (str(record["id"]), str(record["version"])) in self._rows:
                raise HeadMovedError(f"{head_key}: version {record['version']} already taken")
            self._put_locked(record)
            self.db.heads[head_key] = str(record["version"])

    def remove_attribute(
        self,
        record_id: str,
        version: str,
        attribute: str,
        conditional_on_exists: bool = True,
    ) -> bool:
        with self.db.lock:
            row = self._rows.get((record_id, version))
            if row is None:
                return False
            if attribute not in row:
                return not conditional_on_exists
            old_image = copy.deepcopy(row)
            del row[attribute]
            self.db.record_change(self.table_name, "MODIFY", copy.deepcopy(row), old_image)
            return True


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_memory_db: Optional[InMemoryDatabase] = None


def _get_memory_db() -> InMemoryDatabase:
    global _memory_db
    if _memory_db is None:
        _memory_db = InMemoryDatabase()
    return _memory_db


def get_store(entity_kind: str, table_name: Optional[str] = None) -> VersionedStore:
    """Build the configured store backend for an entity kind (or explicit table)."""
    table = table_name or config.table_for_kind(entity_kind)
    if config.STORE_BACKEND == "memory":
        return InMemoryVersionedStore(entity_kind, table, _get_memory_db())
    return DynamoVersionedStore(entity_kind, table)
