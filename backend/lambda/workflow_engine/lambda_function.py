"""docflow Workflow Engine Lambda — rule cascades and project provisioning.

Routes (API Gateway v2, Cognito cookie JWT or internal key):
    POST  /api/v1/projects/{projectId}/workflow/run   body {changedDocumentId?}
    GET   /api/v1/projects/{projectId}/matrix
    POST  /api/v1/projects
    PATCH /api/v1/projects/{projectId}
    POST  /api/v1/workflows/validate                  body {rules: [...]}
    OPTIONS *                                          CORS preflight

Direct invoke (document save hooks, schedulers):
    {"action": "run_workflow", "project_id": "...", "changed_document_id": "..."}
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from docflow_shared.auth import _authenticate, _identity
from docflow_shared.errors import RecordNotFoundError, RuleSetError, RuleSyntaxError, VersionConflictError, VersionWriteError
from docflow_shared.http_utils import _error, _parse_body, _path_method, _response
from docflow_shared.observability import _emit_structured_observability
from docflow_shared.version_writer import VersionWriter

from cascade import CascadeResult, WorkflowEngine
from dependency_order import dependency_levels, topological_order
from document_status import document_status
from project_operations import DocumentProvisioningError, ProjectOperations
from rule_grammar import parse_rule, prepare_rules

logger = logging.getLogger()
logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Engine singleton
# ---------------------------------------------------------------------------

_engine: Optional[WorkflowEngine] = None


def _get_engine() -> WorkflowEngine:
    global _engine
    if _engine is None:
        _engine = WorkflowEngine(VersionWriter())
    return _engine


def _run_workflow(project_id: str, changed_document_id: Optional[str], updated_by: Optional[str], request_id: Optional[str]) -> CascadeResult:
    started = time.time()
    result = _get_engine().run(project_id, changed_document_id=changed_document_id, updated_by=updated_by)
    error_code = None
    if not result.success:
        error_code = "lock_timeout" if result.terminated_by == "lock_timeout" else "cascade_failed"
    _emit_structured_observability(
        component="workflow_engine",
        event="cascade",
        request_id=request_id,
        latency_ms=int((time.time() - started) * 1000),
        error_code=error_code,
        extra={
            "project_id": project_id,
            "iterations": result.iterations,
            "rules_evaluated": result.rules_evaluated,
            "applied_actions": len(result.applied_actions),
            "total_document_changes": result.total_document_changes,
            "terminated_by": result.terminated_by,
            "errors": len(result.errors),
        },
    )
    return result


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

def _handle_run(project_id: str, event: Dict[str, Any], claims: Dict[str, Any]) -> Dict[str, Any]:
    body = _parse_body(event)
    if body is None or not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object")
    request_id = (event.get("requestContext") or {}).get("requestId")
    result = _run_workflow(project_id, body.get("changedDocumentId"), _identity(claims), request_id)
    if result.error == "Project not found":
        return _error(404, result.error, projectId=project_id)
    if result.terminated_by == "lock_timeout":
        return _error(409, result.error or "Workflow cascade already running", projectId=project_id)
    return _response(200 if result.success else 500, result.to_dict())


def _handle_matrix(project_id: str) -> Dict[str, Any]:
    engine = _get_engine()
    project = engine.writer.latest("Project", project_id)
    if project is None:
        return _error(404, "Project not found", projectId=project_id)

    rules = []
    workflow = engine.writer.latest("Workflow", str(project["workflowId"])) if project.get("workflowId") else None
    for index, raw in enumerate((workflow or {}).get("rules") or []):
        try:
            rules.append(parse_rule(raw, index))
        except RuleSyntaxError:
            continue

    types = engine.load_document_types()
    types_by_id = {str(t["id"]): t for t in types}
    snapshot = engine.load_snapshot(project_id, types_by_id, {})

    identifiers: List[str] = []
    for rule in rules:
        for ident in rule.depends_on + rule.produces:
            if ident not in identifiers:
                identifiers.append(ident)
    for ident in snapshot:
        if ident not in identifiers:
            identifiers.append(ident)

    types_by_ident = {str(t.get("identifier")): t for t in types if t.get("identifier")}
    rows = []
    for ident in topological_order(identifiers, rules):
        slot = snapshot.get(ident)
        doc_type = types_by_ident.get(ident) or {}
        rows.append(
            {
                "identifier": ident,
                "documentTypeId": doc_type.get("id"),
                "name": doc_type.get("name") or ident,
                "documentId": slot.record["id"] if slot and slot.record else None,
                "status": document_status(slot.record.get("formData")) if slot and slot.record else None,
            }
        )
    return _response(
        200,
        {
            "success": True,
            "projectId": project_id,
            "workflowId": project.get("workflowId"),
            "documents": rows,
            "levels": dependency_levels(identifiers, rules),
        },
    )


def _handle_create_project(event: Dict[str, Any], claims: Dict[str, Any]) -> Dict[str, Any]:
    body = _parse_body(event)
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object")
    if not str(body.get("name") or "").strip():
        return _error(400, "Field 'name' is required")
    body.setdefault("status", "active")
    ops = ProjectOperations(_get_engine())
    try:
        result = ops.create_project(body, updated_by=_identity(claims))
    except DocumentProvisioningError as exc:
        return _error(500, str(exc), projectId=exc.project_id, failures=exc.failures)
    return _response(201, {"success": True, **result})


def _handle_update_project(project_id: str, event: Dict[str, Any], claims: Dict[str, Any]) -> Dict[str, Any]:
    body = _parse_body(event)
    if not isinstance(body, dict) or not body:
        return _error(400, "Request body must be a non-empty JSON object")
    ops = ProjectOperations(_get_engine())
    try:
        result = ops.update_project(project_id, body, updated_by=_identity(claims))
    except RecordNotFoundError as exc:
        return _error(404, str(exc), projectId=project_id)
    except DocumentProvisioningError as exc:
        return _error(500, str(exc), projectId=project_id, failures=exc.failures)
    return _response(200, {"success": True, **result})


def _handle_validate(event: Dict[str, Any]) -> Dict[str, Any]:
    body = _parse_body(event)
    rules = body.get("rules") if isinstance(body, dict) else None
    if not isinstance(rules, list):
        return _error(400, "Field 'rules' must be a list")
    try:
        prepared = prepare_rules(rules)
    except RuleSetError as exc:
        return _error(
            400,
            str(exc),
            failures=[
                {"index": f.rule_index, "error": str(f), "position": f.position}
                for f in exc.failures
            ],
        )
    return _response(200, {"success": True, "rules": prepared})


# ---------------------------------------------------------------------------
# Path routing
# ---------------------------------------------------------------------------

_RUN_PATTERN = re.compile(r"/api/v1/projects/(?P<projectId>[A-Za-z0-9_-]+)/workflow/run$")
_MATRIX_PATTERN = re.compile(r"/api/v1/projects/(?P<projectId>[A-Za-z0-9_-]+)/matrix$")
_PROJECT_PATTERN = re.compile(r"/api/v1/projects/(?P<projectId>[A-Za-z0-9_-]+)$")
_PROJECTS_PATTERN = re.compile(r"/api/v1/projects/?$")
_VALIDATE_PATTERN = re.compile(r"/api/v1/workflows/validate$")


def _route(method: str, path: str, event: Dict[str, Any], claims: Dict[str, Any]) -> Dict[str, Any]:
    m = _RUN_PATTERN.search(path)
    if m:
        if method != "POST":
            return _error(405, f"Method {method} not allowed")
        return _handle_run(m.group("projectId"), event, claims)

    m = _MATRIX_PATTERN.search(path)
    if m:
        if method != "GET":
            return _error(405, f"Method {method} not allowed")
        return _handle_matrix(m.group("projectId"))

    if _VALIDATE_PATTERN.search(path):
        if method != "POST":
            return _error(405, f"Method {method} not allowed")
        return _handle_validate(event)

    if _PROJECTS_PATTERN.search(path):
        if method != "POST":
            return _error(405, f"Method {method} not allowed")
        return _handle_create_project(event, claims)

    m = _PROJECT_PATTERN.search(path)
    if m:
        if method != "PATCH":
            return _error(405, f"Method {method} not allowed")
        return _handle_update_project(m.group("projectId"), event, claims)

    return _error(404, f"Route not found: {method} {path}")


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------

def _handle_direct(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    project_id = str(event.get("project_id") or "")
    if not project_id:
        return {"success": False, "error": "project_id is required"}
    result = _run_workflow(
        project_id,
        event.get("changed_document_id"),
        event.get("updated_by"),
        getattr(context, "aws_request_id", None),
    )
    return result.to_dict()


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    if isinstance(event, dict) and event.get("action") == "run_workflow":
        return _handle_direct(event, context)

    method, path = _path_method(event)
    logger.info("workflow_engine: %s %s", method, path)

    if method == "OPTIONS":
        return _response(204, None)

    claims, auth_error = _authenticate(event, error_fn=_error)
    if auth_error:
        return auth_error

    try:
        return _route(method, path, event, claims or {})
    except VersionConflictError as exc:
        logger.warning("[WARNING] %s", exc)
        return _error(409, str(exc))
    except VersionWriteError as exc:
        logger.error("[ERROR] write failed: %s", exc)
        return _error(500, "Could not save changes")
    except (ClientError, BotoCoreError) as exc:
        logger.error("[ERROR] AWS error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
    except Exception as exc:
        logger.error("[ERROR] Unexpected error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
