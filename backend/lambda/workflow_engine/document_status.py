"""document_status.py — Form data interpretation for documents.

Status extraction follows the legacy field order the UI has always written,
so existing documents keep their meaning. Initial form data for new documents
comes from the document type definition.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

STATUS_FIELDS = (
    "status",
    "documentStatus",
    "requestStatus",
    "applicationStatus",
    "documentRequestStatus",
    "permitStatus",
    "approvalStatus",
    "submissionStatus",
    "reviewStatus",
    "processingStatus",
)

DEFAULT_STATUS = "queued"
ERROR_STATUS = "error"

# Statuses that process.<Type> moves to queued.
DORMANT_STATUSES = frozenset({"", "pending", "notstarted", "not started", "blocked", "waiting"})

_ASSIGNMENT_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=(?!=)\s*(.+?)\s*$")


def _truthy(value: Any) -> bool:
    return bool(value) and value == value


def parse_form_data(raw: Any) -> Tuple[Dict[str, Any], bool]:
    """Return ``(form, ok)``. Missing form data is an empty, valid form."""
    if raw is None or raw == "":
        return {}, True
    if isinstance(raw, dict):
        return dict(raw), True
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return {}, False
    if not isinstance(data, dict):
        return {}, False
    return data, True


def extract_status(form: Dict[str, Any]) -> str:
    for name in STATUS_FIELDS:
        value = form.get(name)
        if _truthy(value):
            return str(value)
    if form.get("confirmed") is True:
        return "confirmed"
    if form.get("notrequired") is True:
        return "notrequired"
    for key, value in form.items():
        if "status" in key.lower() and key not in STATUS_FIELDS and _truthy(value):
            return str(value)
    if form:
        return "completed" if _truthy(form.get("files")) else DEFAULT_STATUS
    return DEFAULT_STATUS


def document_status(raw_form_data: Any) -> str:
    """Status of a document from its stored ``formData``."""
    form, ok = parse_form_data(raw_form_data)
    if not ok:
        return ERROR_STATUS
    return extract_status(form)


def is_dormant(status: Optional[str]) -> bool:
    return str(status or "").strip().lower() in DORMANT_STATUSES


# ---------------------------------------------------------------------------
# Initial form data
# ---------------------------------------------------------------------------


def _definition_fields(definition: Any) -> list:
    if isinstance(definition, str):
        try:
            definition = json.loads(definition) if definition.strip() else {}
        except ValueError:
            logger.warning("[WARNING] unparseable document type definition")
            return []
    if not isinstance(definition, dict):
        return []
    fields = definition.get("fields")
    return fields if isinstance(fields, list) else []


def _assignment_value(raw: str) -> Any:
    text = raw.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        return text[1:-1]
    lowered = text.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    return text


def apply_validation_assignments(form: Dict[str, Any], validation_rules: str) -> Dict[str, Any]:
    """Apply ``field = "value"`` lines from a type's validation rules.

    Lines written as ``<condition> -> <assignment>`` contribute their
    assignment side. Lines that are not simple assignments are ignored.
    """
    updated = dict(form)
    for line in str(validation_rules or "").splitlines():
        candidate = line.split("->", 1)[1] if "->" in line else line
        match = _ASSIGNMENT_RE.match(candidate)
        if not match:
            continue
        updated[match.group(1)] = _assignment_value(match.group(2))
    return updated


def initial_form_data(document_type: Dict[str, Any]) -> Dict[str, Any]:
    """Form data for a freshly created document of ``document_type``."""
    form: Dict[str, Any] = {}
    for spec in _definition_fields(document_type.get("definition")):
        if not isinstance(spec, dict) or not spec.get("name"):
            continue
        name = str(spec["name"])
        if "defaultValue" in spec and spec["defaultValue"] is not None:
            form[name] = spec["defaultValue"]
        elif spec.get("type") in ("boolean", "checkbox"):
            form[name] = False
    rules = document_type.get("validationRules")
    if rules and str(rules).strip():
        form = apply_validation_assignments(form, rules)
    form["status"] = extract_status(form)
    return form
