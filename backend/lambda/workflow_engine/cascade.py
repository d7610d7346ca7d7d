"""cascade.py — Workflow rule engine with cascading fixpoint evaluation.

One iteration reads the project's active documents into a snapshot, evaluates
every rule against that snapshot, applies the actions of satisfied rules to a
working copy and writes only documents whose form data changed. Iterations
repeat until nothing changes, the iteration cap is hit or the wall-clock
budget runs out.

Documents written during a run overlay later snapshots, because the project
index can lag behind the writer.
"""

from __future__ import annotations

import copy
import dataclasses
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from docflow_shared import config
from docflow_shared.errors import DocflowError, RuleSyntaxError
from docflow_shared.serialization import _version_key
from docflow_shared.version_writer import VersionWriter

from cascade_lock import get_cascade_lock
from document_status import (
    ERROR_STATUS,
    extract_status,
    initial_form_data,
    is_dormant,
    parse_form_data,
)
from rule_grammar import (
    CreateAction,
    FieldFlagAction,
    ParsedRule,
    Path,
    ProcessAction,
    SetFieldAction,
    evaluate,
    parse_rule,
)

logger = logging.getLogger(__name__)

_FLAG_LISTS = {
    "hide": ("_hidden", True),
    "show": ("_hidden", False),
    "disable": ("_disabled", True),
    "enable": ("_disabled", False),
}


class ActionError(DocflowError):
    """An action could not be applied (unknown type, unreadable form)."""


@dataclass
class CascadeResult:
    success: bool = True
    iterations: int = 0
    rules_evaluated: int = 0
    executed_rules: int = 0
    applied_actions: List[str] = field(default_factory=list)
    updated_documents: List[Dict[str, Any]] = field(default_factory=list)
    total_document_changes: int = 0
    terminated_by: str = "fixpoint"
    skipped_rules: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class DocumentSlot:
    """One document type's document within a project snapshot."""

    doc_type: Dict[str, Any]
    record: Optional[Dict[str, Any]]
    form: Dict[str, Any]
    form_ok: bool = True

    @property
    def identifier(self) -> str:
        return str(self.doc_type.get("identifier") or "")

    @property
    def status(self) -> str:
        return extract_status(self.form) if self.form_ok else ERROR_STATUS

    def value(self, attribute: tuple) -> Any:
        if attribute == ("status",):
            return self.status
        current: Any = self.form
        for part in attribute:
            if not isinstance(current, dict):
                return None
            current = current.get(part)
        return current


def _form_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    changes = {k: v for k, v in after.items() if before.get(k) != v or k not in before}
    for key in before:
        if key not in after:
            changes[key] = None
    return changes


class WorkflowEngine:
    def __init__(
        self,
        writer: Optional[VersionWriter] = None,
        max_iterations: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        lock: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.writer = writer or VersionWriter()
        self.max_iterations = max_iterations or config.WORKFLOW_MAX_ITERATIONS
        self.timeout_seconds = timeout_seconds or config.WORKFLOW_TIMEOUT_SECONDS
        self._lock = lock
        self._clock = clock

    @property
    def lock(self):
        if self._lock is None:
            self._lock = get_cascade_lock()
        return self._lock

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_rules(self, workflow: Dict[str, Any], result: CascadeResult) -> List[ParsedRule]:
        parsed: List[ParsedRule] = []
        for index, raw in enumerate(workflow.get("rules") or []):
            try:
                parsed.append(parse_rule(raw, index))
            except RuleSyntaxError as exc:
                logger.warning("[WARNING] skipping workflow rule %d: %s", index, exc)
                result.skipped_rules.append({"index": index, "error": str(exc)})
        return parsed

    def load_document_types(self) -> List[Dict[str, Any]]:
        return self.writer.store("DocumentType").list_active()

    def load_snapshot(
        self,
        project_id: str,
        types_by_id: Dict[str, Dict[str, Any]],
        overlay: Dict[str, Dict[str, Any]],
    ) -> Dict[str, DocumentSlot]:
        """identifier -> slot for the latest document per document type."""
        latest_by_type: Dict[str, Dict[str, Any]] = {}
        for doc in self.writer.store("Document").query_all_active_by_project(project_id):
            type_id = str(doc.get("documentType") or "")
            current = latest_by_type.get(type_id)
            if current is None or _version_key(doc.get("version")) > _version_key(current.get("version")):
                latest_by_type[type_id] = doc
        for type_id, written in overlay.items():
            current = latest_by_type.get(type_id)
            if current is None or _version_key(written.get("version")) > _version_key(current.get("version")):
                latest_by_type[type_id] = written

        snapshot: Dict[str, DocumentSlot] = {}
        for type_id, doc in latest_by_type.items():
            doc_type = types_by_id.get(type_id)
            if not doc_type or not doc_type.get("identifier"):
                logger.info("[INFO] skipping document %s: no document type with an identifier", doc.get("id"))
                continue
            form, ok = parse_form_data(doc.get("formData"))
            snapshot[str(doc_type["identifier"])] = DocumentSlot(doc_type, doc, form, ok)
        return snapshot

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _slot_for(
        self,
        identifier: str,
        working: Dict[str, DocumentSlot],
        types_by_ident: Dict[str, Dict[str, Any]],
    ) -> tuple:
        """Return ``(slot, created)``; creates a new document slot when missing."""
        slot = working.get(identifier)
        if slot is not None:
            if not slot.form_ok:
                raise ActionError(f"formData of {identifier} is not valid JSON")
            return slot, False
        doc_type = types_by_ident.get(identifier)
        if doc_type is None:
            raise ActionError(f"Document type not found: {identifier}")
        if doc_type.get("isActive") is False:
            raise ActionError(f"Document type is inactive: {identifier}")
        slot = DocumentSlot(doc_type, None, initial_form_data(doc_type))
        working[identifier] = slot
        return slot, True

    def apply_action(
        self,
        action: Any,
        working: Dict[str, DocumentSlot],
        types_by_ident: Dict[str, Dict[str, Any]],
    ) -> bool:
        """Apply one action to the working copy. Returns True if it changed anything."""
        slot, created = self._slot_for(action.doc_type, working, types_by_ident)

        if isinstance(action, ProcessAction):
            if created or is_dormant(slot.status):
                slot.form["status"] = "queued"
                return True
            return False

        if isinstance(action, CreateAction):
            return created

        if isinstance(action, SetFieldAction):
            if not created and action.field in slot.form and slot.form[action.field] == action.value:
                return False
            slot.form[action.field] = action.value
            return True

        if isinstance(action, FieldFlagAction):
            list_name, add = _FLAG_LISTS[action.verb]
            flagged = list(slot.form.get(list_name) or [])
            if add and action.field not in flagged:
                flagged.append(action.field)
            elif not add and action.field in flagged:
                flagged.remove(action.field)
            else:
                return created
            slot.form[list_name] = flagged
            return True

        raise ActionError(f"Unsupported action: {action!r}")

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def run_iteration(
        self,
        project_id: str,
        rules: List[ParsedRule],
        snapshot: Dict[str, DocumentSlot],
        types_by_ident: Dict[str, Dict[str, Any]],
        overlay: Dict[str, Dict[str, Any]],
        result: CascadeResult,
        updated_by: Optional[str] = None,
    ) -> int:
        """Evaluate all rules once; returns the number of documents written."""

        def lookup(path: Path) -> Any:
            slot = snapshot.get(path.doc_type)
            return slot.value(path.attribute) if slot else None

        working = {ident: copy.deepcopy(slot) for ident, slot in snapshot.items()}
        for rule in rules:
            result.rules_evaluated += 1
            if not evaluate(rule.predicate, lookup):
                continue
            result.executed_rules += 1
            for action in rule.actions:
                try:
                    changed = self.apply_action(action, working, types_by_ident)
                except ActionError as exc:
                    logger.warning("[WARNING] rule %s action failed: %s", rule.id, exc)
                    result.errors.append(f"{rule.id}: {exc}")
                    continue
                if changed:
                    result.applied_actions.append(rule.label)

        written = 0
        for ident, slot in working.items():
            before = snapshot.get(ident)
            if before is not None and before.form == slot.form:
                continue
            form_json = json.dumps(slot.form, sort_keys=True, default=str)
            try:
                if slot.record is None:
                    record = self.writer.create(
                        "Document",
                        {"projectId": project_id, "documentType": slot.doc_type["id"], "formData": form_json},
                        updated_by=updated_by,
                    )
                else:
                    record = self.writer.write(
                        "Document", slot.record["id"], {"formData": form_json}, updated_by=updated_by
                    )
            except (DocflowError, ClientError, BotoCoreError) as exc:
                logger.error("[ERROR] writing %s document for project %s failed: %s", ident, project_id, exc)
                result.errors.append(f"{ident}: {exc}")
                continue
            overlay[str(slot.doc_type["id"])] = record
            written += 1
            result.updated_documents.append(
                {
                    "documentId": record["id"],
                    "documentType": ident,
                    "created": slot.record is None,
                    "changes": _form_diff(before.form if before else {}, slot.form),
                }
            )
        result.total_document_changes += written
        return written

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        project_id: str,
        changed_document_id: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> CascadeResult:
        result = CascadeResult()
        logger.info("[START] workflow cascade for project %s (changed document: %s)", project_id, changed_document_id or "-")

        project = self.writer.latest("Project", project_id)
        if project is None:
            result.success, result.error = False, "Project not found"
            return result
        workflow_id = project.get("workflowId")
        if not workflow_id:
            result.terminated_by = "no_rules"
            return result
        workflow = self.writer.latest("Workflow", str(workflow_id))
        if workflow is None:
            result.success, result.error = False, "Workflow not found"
            return result

        rules = self.load_rules(workflow, result)
        if not rules:
            result.terminated_by = "no_rules"
            return result

        with self.lock.hold(project_id) as acquired:
            if not acquired:
                result.success = False
                result.terminated_by = "lock_timeout"
                result.error = "Another workflow cascade is running for this project"
                return result
            self._cascade(project_id, rules, result, updated_by)

        logger.info(
            "[END] workflow cascade for project %s: %d iterations, %d changes (%s)",
            project_id, result.iterations, result.total_document_changes, result.terminated_by,
        )
        return result

    def _cascade(
        self,
        project_id: str,
        rules: List[ParsedRule],
        result: CascadeResult,
        updated_by: Optional[str],
    ) -> None:
        types = self.load_document_types()
        types_by_id = {str(t["id"]): t for t in types}
        types_by_ident = {str(t["identifier"]): t for t in types if t.get("identifier")}
        overlay: Dict[str, Dict[str, Any]] = {}
        deadline = self._clock() + self.timeout_seconds

        while True:
            if result.iterations >= self.max_iterations:
                result.terminated_by = "iteration_cap"
                logger.warning("[WARNING] project %s cascade stopped at %d iterations", project_id, result.iterations)
                return
            if self._clock() >= deadline:
                result.terminated_by = "timeout"
                logger.warning("[WARNING] project %s cascade timed out after %d iterations", project_id, result.iterations)
                return
            result.iterations += 1
            snapshot = self.load_snapshot(project_id, types_by_id, overlay)
            if not self.run_iteration(project_id, rules, snapshot, types_by_ident, overlay, result, updated_by):
                result.terminated_by = "fixpoint"
                return
