"""docflow_shared.serialization — DynamoDB serialization, timestamps, version tokens.

Version tokens are ISO 8601 UTC timestamps with microsecond precision and a
``Z`` suffix (``2025-01-31T09:15:02.123456Z``). Older rows may carry millisecond
tokens (``...02.123Z``); ordering goes through ``_version_key`` and new tokens
are generated to sort after them as raw text too.
"""

from __future__ import annotations

import datetime as dt
import random
import re
import string
import time
from decimal import Decimal
from typing import Any, Dict, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

_SER = TypeSerializer()
_DESER = TypeDeserializer()

_VERSION_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
_ID_ALPHABET = string.digits + string.ascii_lowercase
_FRACTION_RE = re.compile(r"T\d{2}:\d{2}:\d{2}\.(\d+)")


def _to_dynamo_value(value: Any) -> Any:
    """Recursively convert floats to Decimal (DynamoDB rejects float)."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_dynamo_value(v) for v in value]
    return value


def _from_dynamo_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == int(value) else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_from_dynamo_value(v) for v in value]
    if isinstance(value, set):
        return {_from_dynamo_value(v) for v in value}
    return value


def _serialize(value: Any) -> Dict[str, Any]:
    """Serialize a Python value for DynamoDB."""
    return _SER.serialize(_to_dynamo_value(value))


def _serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize a plain dict into a DynamoDB item, dropping None values."""
    return {k: _serialize(v) for k, v in item.items() if v is not None}


def _deserialize(item: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize a DynamoDB item (or stream image) to a plain Python dict."""
    return {k: _from_dynamo_value(_DESER.deserialize(v)) for k, v in item.items()}


def _now_z() -> str:
    """Current UTC timestamp in ISO 8601 format with Z suffix."""
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _unix_now() -> int:
    """Current Unix epoch as integer."""
    return int(time.time())


# ---------------------------------------------------------------------------
# Version tokens and ids
# ---------------------------------------------------------------------------


def _version_token(now: Optional[dt.datetime] = None) -> str:
    """Render a timestamp as a version token."""
    moment = now or dt.datetime.now(dt.timezone.utc)
    return moment.astimezone(dt.timezone.utc).strftime(_VERSION_FORMAT)


def _parse_version(token: str) -> dt.datetime:
    """Parse a version token. Tokens without microseconds are accepted."""
    text = str(token).strip()
    for fmt in (_VERSION_FORMAT, "%Y-%m-%dT%H:%M:%SZ", "%Y-%m-%dT%H:%M:%S.%f+00:00"):
        try:
            return dt.datetime.strptime(text, fmt).replace(tzinfo=dt.timezone.utc)
        except ValueError:
            continue
    # JavaScript toISOString() writes milliseconds.
    return dt.datetime.fromisoformat(text.replace("Z", "+00:00")).astimezone(dt.timezone.utc)


def _version_key(token: Any) -> str:
    """Ordering key for version tokens.

    Legacy millisecond tokens (``...02.123Z``) sort after every microsecond
    token of the same millisecond as raw strings, so all version comparisons
    go through the canonical microsecond rendering. Unparseable tokens keep
    their raw text.
    """
    text = str(token or "").strip()
    if not text:
        return ""
    try:
        return _version_token(_parse_version(text))
    except ValueError:
        return text


def _legacy_ceiling(token: str) -> dt.datetime:
    """Last microsecond still covered by a coarse legacy token.

    ``...02.123Z`` covers up to ``...02.123999``; anything newer must also
    compare greater as raw text, because that is how the sort key orders.
    """
    text = str(token).strip()
    parsed = _parse_version(text)
    match = _FRACTION_RE.search(text)
    digits = len(match.group(1)) if match else 0
    if digits >= 6:
        return parsed
    return parsed + dt.timedelta(microseconds=10 ** (6 - digits) - 1)


def _next_version(previous: Optional[str], now: Optional[dt.datetime] = None) -> str:
    """Return a version token strictly greater than ``previous``.

    Uses the wall clock when it is ahead of ``previous``; otherwise bumps the
    previous token by one microsecond so skewed clocks never go backwards.
    The result is greater both by ``_version_key`` and as raw text.
    """
    candidate = _version_token(now)
    if not previous:
        return candidate
    floor = _legacy_ceiling(previous)
    if candidate > _version_token(floor):
        return candidate
    return _version_token(floor + dt.timedelta(microseconds=1))


def _generate_id() -> str:
    """Stable logical id: ``<epoch-ms>-<9 random base36 chars>``."""
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(9))
    return f"{int(time.time() * 1000)}-{suffix}"
