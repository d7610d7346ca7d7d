"""docflow_shared.config — Environment configuration for docflow Lambdas.

Every value is read once at import time. Lambdas that need a different value in
tests patch the module attribute directly.
"""

from __future__ import annotations

import os
from typing import Dict


def _env_int(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer env var, clamped to [minimum, maximum]."""
    raw = os.environ.get(name, "")
    try:
        value = int(raw) if raw.strip() else default
    except ValueError:
        value = default
    return max(minimum, min(maximum, value))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _normalize_api_keys(*raw_values: str) -> tuple[str, ...]:
    """Return deduplicated, non-empty key values from scalar/csv env sources."""
    keys: list[str] = []
    seen: set[str] = set()
    for raw in raw_values:
        if not raw:
            continue
        for part in str(raw).split(","):
            key = part.strip()
            if not key or key in seen:
                continue
            seen.add(key)
            keys.append(key)
    return tuple(keys)


# ---------------------------------------------------------------------------
# Entity kinds and table naming
# ---------------------------------------------------------------------------

ENTITY_KINDS = (
    "Project",
    "Document",
    "User",
    "DocumentType",
    "Workflow",
    "ChatRoom",
    "ChatMessage",
)

# Env override names, e.g. DocumentType -> DOCUMENT_TYPE_TABLE
_TABLE_ENV_NAMES = {
    "Project": "PROJECT_TABLE",
    "Document": "DOCUMENT_TABLE",
    "User": "USER_TABLE",
    "DocumentType": "DOCUMENT_TYPE_TABLE",
    "Workflow": "WORKFLOW_TABLE",
    "ChatRoom": "CHAT_ROOM_TABLE",
    "ChatMessage": "CHAT_MESSAGE_TABLE",
}

DOCFLOW_ENV = os.environ.get("DOCFLOW_ENV", "dev")
TABLE_PREFIX = os.environ.get("TABLE_PREFIX", "docflow")
DYNAMODB_REGION = os.environ.get("DYNAMODB_REGION", "us-east-1")

ENTITY_TABLES: Dict[str, str] = {
    kind: os.environ.get(env_name, f"{TABLE_PREFIX}-{kind}-{DOCFLOW_ENV}")
    for kind, env_name in _TABLE_ENV_NAMES.items()
}
VERSION_HEADS_TABLE = os.environ.get(
    "VERSION_HEADS_TABLE", f"{TABLE_PREFIX}-VersionHead-{DOCFLOW_ENV}"
)
CASCADE_LOCK_TABLE = os.environ.get(
    "CASCADE_LOCK_TABLE", f"{TABLE_PREFIX}-CascadeLock-{DOCFLOW_ENV}"
)
PROJECT_INDEX_NAME = os.environ.get("PROJECT_INDEX_NAME", "projectId-index")

# ---------------------------------------------------------------------------
# Store / reconciler behaviour
# ---------------------------------------------------------------------------

STORE_BACKEND = os.environ.get("STORE_BACKEND", "dynamodb").strip().lower()
ACTIVE_LOOKUP_MODE = os.environ.get("ACTIVE_LOOKUP_MODE", "query").strip().lower()
ALLOW_SCAN_FALLBACK = _env_bool("ALLOW_SCAN_FALLBACK", False)
RECONCILE_PAGE_SIZE = _env_int("RECONCILE_PAGE_SIZE", 25, 1, 100)
REPORT_BATCH_ITEM_FAILURES = _env_bool("REPORT_BATCH_ITEM_FAILURES", False)
VERSION_WRITE_MAX_ATTEMPTS = _env_int("VERSION_WRITE_MAX_ATTEMPTS", 5, 1, 20)

_VALID_LOOKUP_MODES = {"query", "scan"}

# ---------------------------------------------------------------------------
# Workflow cascade limits
# ---------------------------------------------------------------------------

WORKFLOW_MAX_ITERATIONS = _env_int("WORKFLOW_MAX_ITERATIONS", 10, 1, 100)
WORKFLOW_TIMEOUT_SECONDS = _env_int("WORKFLOW_TIMEOUT_SECONDS", 25, 1, 900)
CASCADE_LOCK_TTL_SECONDS = _env_int("CASCADE_LOCK_TTL_SECONDS", 60, 5, 900)
CASCADE_LOCK_WAIT_SECONDS = _env_int("CASCADE_LOCK_WAIT_SECONDS", 10, 0, 300)

# ---------------------------------------------------------------------------
# Auth / HTTP
# ---------------------------------------------------------------------------

COGNITO_USER_POOL_ID = os.environ.get("COGNITO_USER_POOL_ID", "")
COGNITO_CLIENT_ID = os.environ.get("COGNITO_CLIENT_ID", "")
DOCFLOW_INTERNAL_API_KEY = os.environ.get("DOCFLOW_INTERNAL_API_KEY", "")
DOCFLOW_INTERNAL_API_KEY_PREVIOUS = os.environ.get("DOCFLOW_INTERNAL_API_KEY_PREVIOUS", "")
DOCFLOW_INTERNAL_API_KEYS = _normalize_api_keys(
    os.environ.get("DOCFLOW_INTERNAL_API_KEYS", ""),
    DOCFLOW_INTERNAL_API_KEY,
    DOCFLOW_INTERNAL_API_KEY_PREVIOUS,
)
CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "http://localhost:4200")


def table_for_kind(entity_kind: str) -> str:
    """Return the configured table name for an entity kind."""
    if entity_kind not in ENTITY_TABLES:
        raise ValueError(f"Unknown entity kind: {entity_kind}")
    return ENTITY_TABLES[entity_kind]


def kind_for_table(table_name: str) -> str:
    """Map a physical table name back to its entity kind.

    Unknown tables map to the table name itself so that reconciliation still
    works for tables provisioned outside this configuration.
    """
    for kind, name in ENTITY_TABLES.items():
        if name == table_name:
            return kind
    return table_name


def lookup_mode() -> str:
    mode = ACTIVE_LOOKUP_MODE
    return mode if mode in _VALID_LOOKUP_MODES else "query"
