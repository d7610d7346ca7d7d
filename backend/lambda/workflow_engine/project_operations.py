"""project_operations.py — Project create/update with document provisioning.

Creating or re-pointing a project at a workflow provisions one document per
required document type and then runs the cascade so rules that are already
satisfied take effect immediately.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from docflow_shared.errors import DocflowError, RuleSyntaxError

from cascade import CascadeResult, WorkflowEngine
from document_status import initial_form_data
from rule_grammar import parse_rule

logger = logging.getLogger(__name__)


class DocumentProvisioningError(DocflowError):
    """Raised after provisioning when one or more documents failed to create."""

    def __init__(self, project_id: str, failures: List[str]):
        super().__init__(f"Failed to create {len(failures)} documents for project {project_id}: {'; '.join(failures)}")
        self.project_id = project_id
        self.failures = failures


def _mentions(text: str, identifier: str) -> bool:
    return re.search(rf"(?<![A-Za-z0-9_]){re.escape(identifier)}(?![A-Za-z0-9_])", text) is not None


class ProjectOperations:
    def __init__(self, engine: WorkflowEngine):
        self.engine = engine
        self.writer = engine.writer

    def required_document_types(self, workflow_id: Optional[str]) -> List[Dict[str, Any]]:
        """Active document types referenced by the workflow's rules or by
        other active types' validation rules."""
        if not workflow_id:
            logger.warning("[WARNING] no workflow selected; no documents will be created")
            return []
        workflow = self.writer.latest("Workflow", workflow_id)
        if workflow is None:
            logger.warning("[WARNING] workflow %s not found; no documents will be created", workflow_id)
            return []

        types = [t for t in self.engine.load_document_types() if t.get("isActive") is not False]
        wanted: List[str] = []
        for index, raw in enumerate(workflow.get("rules") or []):
            try:
                rule = parse_rule(raw, index)
            except RuleSyntaxError as exc:
                logger.warning("[WARNING] ignoring unparseable rule %d of workflow %s: %s", index, workflow_id, exc)
                continue
            for ident in rule.depends_on + rule.produces:
                if ident not in wanted:
                    wanted.append(ident)

        for doc_type in types:
            rules_text = str(doc_type.get("validationRules") or "")
            if not rules_text.strip():
                continue
            for other in types:
                ident = str(other.get("identifier") or "")
                if ident and ident not in wanted and _mentions(rules_text, ident):
                    wanted.append(ident)

        return [t for t in types if t.get("identifier") in wanted]

    def _create_documents(
        self,
        project_id: str,
        doc_types: List[Dict[str, Any]],
        updated_by: Optional[str],
    ) -> List[Dict[str, Any]]:
        created: List[Dict[str, Any]] = []
        failures: List[str] = []
        for doc_type in doc_types:
            try:
                record = self.writer.create(
                    "Document",
                    {
                        "projectId": project_id,
                        "documentType": doc_type["id"],
                        "formData": json.dumps(initial_form_data(doc_type), sort_keys=True, default=str),
                    },
                    updated_by=updated_by,
                )
            except DocflowError as exc:
                logger.error("[ERROR] creating %s document for project %s failed: %s", doc_type.get("name"), project_id, exc)
                failures.append(f"{doc_type.get('identifier')}: {exc}")
                continue
            created.append(record)
        logger.info("[INFO] created %d/%d documents for project %s", len(created), len(doc_types), project_id)
        if failures:
            raise DocumentProvisioningError(project_id, failures)
        return created

    def _run_cascade(self, project_id: str, updated_by: Optional[str]) -> CascadeResult:
        result = self.engine.run(project_id, updated_by=updated_by)
        if not result.success:
            # The project write stands; a cascade failure is reported, not raised.
            logger.error("[ERROR] workflow cascade for project %s failed: %s", project_id, result.error)
        return result

    def create_project(self, payload: Dict[str, Any], updated_by: Optional[str] = None) -> Dict[str, Any]:
        project = self.writer.create("Project", payload, updated_by=updated_by)
        doc_types = self.required_document_types(project.get("workflowId"))
        documents = self._create_documents(project["id"], doc_types, updated_by)
        cascade = self._run_cascade(project["id"], updated_by)
        return {"project": project, "documents": documents, "workflow": cascade.to_dict()}

    def update_project(
        self,
        project_id: str,
        changes: Dict[str, Any],
        updated_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        project = self.writer.update("Project", project_id, changes, updated_by=updated_by)

        existing = {
            str(doc.get("documentType"))
            for doc in self.writer.store("Document").query_all_active_by_project(project_id)
        }
        missing = [
            t for t in self.required_document_types(project.get("workflowId"))
            if str(t["id"]) not in existing
        ]
        documents = self._create_documents(project_id, missing, updated_by) if missing else []
        cascade = self._run_cascade(project_id, updated_by)
        return {"project": project, "documents": documents, "workflow": cascade.to_dict()}
