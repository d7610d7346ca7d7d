"""docflow_shared.errors — Exception types shared by docflow Lambdas."""

from __future__ import annotations

from typing import List, Optional


class DocflowError(Exception):
    """Base class for docflow failures."""


class VersionWriteError(DocflowError):
    """Raised when a new record version could not be written."""


class VersionConflictError(VersionWriteError):
    """Raised when the head pointer kept moving under concurrent writers."""

    def __init__(self, entity_kind: str, record_id: str, attempts: int):
        super().__init__(
            f"{entity_kind} {record_id}: head pointer changed on every attempt ({attempts} attempts)"
        )
        self.entity_kind = entity_kind
        self.record_id = record_id
        self.attempts = attempts


class RecordNotFoundError(DocflowError):
    """Raised when an update targets an id with no active version."""

    def __init__(self, entity_kind: str, record_id: str):
        super().__init__(f"{entity_kind} {record_id} not found")
        self.entity_kind = entity_kind
        self.record_id = record_id


class RuleSyntaxError(ValueError):
    """Raised when a workflow rule's validation or action text cannot be parsed."""

    def __init__(self, message: str, text: str = "", position: Optional[int] = None,
                 rule_index: Optional[int] = None):
        super().__init__(message)
        self.text = text
        self.position = position
        self.rule_index = rule_index


class RuleSetError(ValueError):
    """Raised when one or more rules of a workflow failed validation."""

    def __init__(self, failures: List[RuleSyntaxError]):
        lines = [
            f"rule {f.rule_index}: {f}" if f.rule_index is not None else str(f)
            for f in failures
        ]
        super().__init__("; ".join(lines))
        self.failures = failures
