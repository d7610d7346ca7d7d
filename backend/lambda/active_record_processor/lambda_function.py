"""docflow Active Record Processor — single-active-version enforcement.

Consumes DynamoDB Streams events from the versioned entity tables. For every
INSERT of an active row it deactivates the other active rows of the same id,
leaving the head version (or, without a head, the greatest version) as the
only active row.

Architecture:
  Entity tables (stream NEW_AND_OLD_IMAGES) -> This Lambda (batch 10, 3 retries)
  Optional: EventBridge Pipe -> SQS -> This Lambda (records JSON in ``body``)

Delivery is at-least-once and unordered across shards. Every step is
idempotent: deactivation is a conditional ``REMOVE active`` and a failed
condition means another invocation already did the work.

Direct invoke:
  {"action": "sweep", "entity_kind": "Document", "dry_run": false}
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from docflow_shared import config
from docflow_shared.observability import _emit_structured_observability
from docflow_shared.reconcile import reconcile_id, sweep
from docflow_shared.serialization import _deserialize
from docflow_shared.versioned_store import ACTIVE_ATTR, VersionedStore, get_store

logger = logging.getLogger()
logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Stream event helpers
# ---------------------------------------------------------------------------

def _extract_records(event: Dict[str, Any]) -> List[Tuple[Dict[str, Any], str]]:
    """Return ``(stream_record, item_identifier)`` pairs.

    Handles the direct stream trigger and SQS-wrapped records. The identifier is
    the stream sequence number, or the SQS message id for wrapped records.
    """
    out: List[Tuple[Dict[str, Any], str]] = []
    raw_records = event.get("Records") or []
    for raw in raw_records:
        if raw.get("eventSource") == "aws:sqs":
            message_id = str(raw.get("messageId") or "")
            try:
                body = json.loads(raw.get("body") or "{}")
            except (json.JSONDecodeError, TypeError):
                logger.warning("[WARNING] Unparseable SQS body in message %s", message_id)
                continue
            wrapped = body if isinstance(body, list) else [body]
            for record in wrapped:
                if isinstance(record, dict) and "dynamodb" in record:
                    out.append((record, message_id))
        elif "dynamodb" in raw:
            out.append((raw, str((raw.get("dynamodb") or {}).get("SequenceNumber") or "")))
    return out


def _table_from_arn(arn: str) -> str:
    """arn:aws:dynamodb:<region>:<acct>:table/<name>/stream/<ts> -> <name>."""
    parts = str(arn or "").split("/")
    return parts[1] if len(parts) > 1 else ""


def _new_image(record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    image = (record.get("dynamodb") or {}).get("NewImage")
    if not image:
        return None
    return _deserialize(image)


def _store_for_table(table_name: str) -> VersionedStore:
    return get_store(config.kind_for_table(table_name), table_name=table_name)


# ---------------------------------------------------------------------------
# Per-record processing
# ---------------------------------------------------------------------------

def _process_record(record: Dict[str, Any], stores: Dict[str, VersionedStore]) -> Dict[str, Any]:
    """Reconcile one stream record. Returns an outcome dict with ``status``."""
    if record.get("eventName") != "INSERT":
        return {"status": "skipped", "reason": "event"}

    image = _new_image(record)
    if not image or image.get(ACTIVE_ATTR) is not True:
        return {"status": "skipped", "reason": "inactive"}

    record_id = str(image.get("id") or "")
    version = str(image.get("version") or "")
    if not record_id or not version:
        # Single-key rows have nothing to supersede.
        return {"status": "skipped", "reason": "unversioned"}

    table_name = _table_from_arn(record.get("eventSourceARN", ""))
    if not table_name:
        raise ValueError("stream record has no table in eventSourceARN")
    store = stores.get(table_name)
    if store is None:
        store = stores[table_name] = _store_for_table(table_name)

    outcome = reconcile_id(store, record_id, inserted_version=version, page_size=config.RECONCILE_PAGE_SIZE)
    outcome["status"] = "reconciled"
    return outcome


def _handle_stream(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    started = time.time()
    records = _extract_records(event)
    stores: Dict[str, VersionedStore] = {}
    summary: Dict[str, Any] = {
        "processed": len(records),
        "reconciled": 0,
        "skipped": 0,
        "deactivated": 0,
        "already_inactive": 0,
        "errors": 0,
        "batchItemFailures": [],
    }
    failed_ids: List[str] = []

    for record, item_id in records:
        try:
            outcome = _process_record(record, stores)
        except Exception as exc:
            summary["errors"] += 1
            if item_id and item_id not in failed_ids:
                failed_ids.append(item_id)
            logger.error(
                "[ERROR] reconcile failed for %s (%s): %s",
                item_id or "?",
                record.get("eventSourceARN", "?"),
                exc,
            )
            continue
        if outcome["status"] == "skipped":
            summary["skipped"] += 1
            continue
        summary["reconciled"] += 1
        summary["deactivated"] += outcome["deactivated"]
        summary["already_inactive"] += outcome["already_inactive"]

    if config.REPORT_BATCH_ITEM_FAILURES:
        summary["batchItemFailures"] = [{"itemIdentifier": i} for i in failed_ids]

    _emit_structured_observability(
        component="active_record_processor",
        event="stream_batch",
        request_id=getattr(context, "aws_request_id", None),
        latency_ms=int((time.time() - started) * 1000),
        error_code="record_errors" if summary["errors"] else None,
        extra={k: v for k, v in summary.items() if k != "batchItemFailures"},
    )
    logger.info("[END] Active record processor: %s", json.dumps(summary))
    return summary


def _handle_sweep(event: Dict[str, Any]) -> Dict[str, Any]:
    entity_kind = str(event.get("entity_kind") or "")
    try:
        store = get_store(entity_kind)
    except ValueError as exc:
        logger.error("[ERROR] sweep rejected: %s", exc)
        return {"success": False, "error": str(exc)}
    result = sweep(store, dry_run=bool(event.get("dry_run")))
    result["success"] = result["errors"] == 0
    return result


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------

def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Process a stream batch, or a ``sweep`` direct invoke."""
    if isinstance(event, dict) and event.get("action") == "sweep":
        logger.info("[START] sweep of %s", event.get("entity_kind"))
        return _handle_sweep(event)
    return _handle_stream(event or {}, context)

