"""test_lambda_function.py — Route and direct-invoke tests for the workflow engine Lambda.

Requests authenticate with the internal API key; the engine runs over the
in-memory versioned store.

Run: python3 -m pytest test_lambda_function.py -v
"""

from __future__ import annotations

import importlib.util
import json
import os
import sys
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer", "python"))

MODULE_PATH = os.path.join(os.path.dirname(__file__), "lambda_function.py")
SPEC = importlib.util.spec_from_file_location("workflow_engine_lambda", MODULE_PATH)
workflow_lambda = importlib.util.module_from_spec(SPEC)
assert SPEC and SPEC.loader
sys.modules[SPEC.name] = workflow_lambda
SPEC.loader.exec_module(workflow_lambda)

import docflow_shared.config as config_mod
from docflow_shared.errors import VersionConflictError
from docflow_shared.version_writer import VersionWriter
from docflow_shared.versioned_store import InMemoryDatabase, InMemoryVersionedStore

from cascade import WorkflowEngine
from cascade_lock import LocalCascadeLock

API_KEY = "test-internal-key"

PERMIT_RULE = {
    "validation": 'document.BuildingPermit.status in ("completed","notrequired")',
    "action": "process.EnvironmentalAssessment",
}


def _event(method, path, body=None, key=API_KEY, raw_body=None):
    headers = {"X-Docflow-Internal-Key": key} if key else {}
    event = {
        "requestContext": {"http": {"method": method, "path": path}, "requestId": "req-1"},
        "headers": headers,
    }
    if raw_body is not None:
        event["body"] = raw_body
    elif body is not None:
        event["body"] = json.dumps(body)
    return event


def _body(resp):
    return json.loads(resp["body"])


class WorkflowLambdaTests(unittest.TestCase):
    def setUp(self):
        db = InMemoryDatabase()
        self.writer = VersionWriter(
            store_factory=lambda kind: InMemoryVersionedStore(kind, f"docflow-{kind}-test", db),
            sleep=lambda _seconds: None,
        )
        self.lock = LocalCascadeLock(wait_seconds=0)
        self.engine = WorkflowEngine(self.writer, lock=self.lock)

        self.permit = self._doc_type("BuildingPermit")
        self.assessment = self._doc_type("EnvironmentalAssessment")
        self.workflow = self.writer.create("Workflow", {"name": "Permits", "rules": [json.dumps(PERMIT_RULE)]})
        self.project = self.writer.create("Project", {"name": "Main Street", "workflowId": self.workflow["id"]})

        for patcher in (
            patch.object(workflow_lambda, "_get_engine", return_value=self.engine),
            patch.object(config_mod, "DOCFLOW_INTERNAL_API_KEYS", (API_KEY,)),
        ):
            patcher.start()
            self.addCleanup(patcher.stop)

    def _doc_type(self, identifier, **extra):
        payload = {"name": identifier.lower(), "identifier": identifier, "isActive": True}
        payload.update(extra)
        return self.writer.create("DocumentType", payload)

    def _permit_document(self, status="completed"):
        return self.writer.create(
            "Document",
            {
                "projectId": self.project["id"],
                "documentType": self.permit["id"],
                "formData": json.dumps({"status": status}),
            },
        )

    def _run_path(self, project_id=None):
        return f"/api/v1/projects/{project_id or self.project['id']}/workflow/run"

    # -- plumbing --------------------------------------------------------

    def test_options_preflight(self):
        resp = workflow_lambda.lambda_handler(_event("OPTIONS", self._run_path()), None)
        self.assertEqual(resp["statusCode"], 204)
        self.assertNotIn("body", resp)
        self.assertIn("Access-Control-Allow-Origin", resp["headers"])

    def test_requires_authentication(self):
        resp = workflow_lambda.lambda_handler(_event("POST", self._run_path(), key=None), None)
        self.assertEqual(resp["statusCode"], 401)

    def test_unknown_route(self):
        resp = workflow_lambda.lambda_handler(_event("GET", "/api/v1/nothing"), None)
        self.assertEqual(resp["statusCode"], 404)
        self.assertEqual(_body(resp)["error"], "Route not found: GET /api/v1/nothing")

    def test_wrong_method(self):
        resp = workflow_lambda.lambda_handler(_event("GET", self._run_path()), None)
        self.assertEqual(resp["statusCode"], 405)

    # -- workflow run ----------------------------------------------------

    def test_run_workflow_route(self):
        self._permit_document()
        with patch.object(workflow_lambda, "_emit_structured_observability") as emit:
            resp = workflow_lambda.lambda_handler(_event("POST", self._run_path(), {"changedDocumentId": "d-1"}), None)

        self.assertEqual(resp["statusCode"], 200)
        body = _body(resp)
        self.assertTrue(body["success"])
        self.assertEqual(body["iterations"], 2)
        self.assertEqual(body["total_document_changes"], 1)
        self.assertEqual(body["updated_documents"][0]["documentType"], "EnvironmentalAssessment")
        kwargs = emit.call_args.kwargs
        self.assertEqual(kwargs["component"], "workflow_engine")
        self.assertEqual(kwargs["request_id"], "req-1")
        self.assertEqual(kwargs["extra"]["iterations"], 2)

    def test_run_writes_as_caller(self):
        self._permit_document()
        resp = workflow_lambda.lambda_handler(_event("POST", self._run_path()), None)
        doc_id = _body(resp)["updated_documents"][0]["documentId"]
        self.assertEqual(self.writer.latest("Document", doc_id)["updatedBy"], "internal")

    def test_run_unknown_project(self):
        resp = workflow_lambda.lambda_handler(_event("POST", self._run_path("missing")), None)
        self.assertEqual(resp["statusCode"], 404)
        self.assertEqual(_body(resp)["projectId"], "missing")

    def test_run_while_locked(self):
        with self.lock.hold(self.project["id"]):
            resp = workflow_lambda.lambda_handler(_event("POST", self._run_path()), None)
        self.assertEqual(resp["statusCode"], 409)

    def test_run_rejects_bad_body(self):
        resp = workflow_lambda.lambda_handler(_event("POST", self._run_path(), raw_body="{nope"), None)
        self.assertEqual(resp["statusCode"], 400)

    def test_run_rejects_undecodable_base64_body(self):
        event = _event("POST", self._run_path(), raw_body="not*base64!")
        event["isBase64Encoded"] = True
        resp = workflow_lambda.lambda_handler(event, None)
        self.assertEqual(resp["statusCode"], 400)
        self.assertEqual(_body(resp)["error"], "Request body must be a JSON object")

    def test_direct_invoke(self):
        self._permit_document()
        result = workflow_lambda.lambda_handler(
            {"action": "run_workflow", "project_id": self.project["id"], "updated_by": "scheduler"},
            SimpleNamespace(aws_request_id="abc"),
        )
        self.assertTrue(result["success"])
        self.assertEqual(result["iterations"], 2)

        missing = workflow_lambda.lambda_handler({"action": "run_workflow"}, None)
        self.assertFalse(missing["success"])

    # -- matrix ----------------------------------------------------------

    def test_matrix_orders_prerequisites_first(self):
        self._permit_document()
        resp = workflow_lambda.lambda_handler(_event("GET", f"/api/v1/projects/{self.project['id']}/matrix"), None)

        self.assertEqual(resp["statusCode"], 200)
        body = _body(resp)
        rows = body["documents"]
        self.assertEqual([r["identifier"] for r in rows], ["BuildingPermit", "EnvironmentalAssessment"])
        self.assertEqual(rows[0]["status"], "completed")
        self.assertIsNone(rows[1]["documentId"])
        self.assertEqual(body["levels"], [["BuildingPermit"], ["EnvironmentalAssessment"]])

    def test_matrix_unknown_project(self):
        resp = workflow_lambda.lambda_handler(_event("GET", "/api/v1/projects/missing/matrix"), None)
        self.assertEqual(resp["statusCode"], 404)

    # -- projects --------------------------------------------------------

    def test_create_project(self):
        resp = workflow_lambda.lambda_handler(
            _event("POST", "/api/v1/projects", {"name": "Elm Street", "workflowId": self.workflow["id"]}), None
        )
        self.assertEqual(resp["statusCode"], 201)
        body = _body(resp)
        self.assertEqual(body["project"]["status"], "active")
        self.assertEqual(body["project"]["updatedBy"], "internal")
        self.assertEqual(len(body["documents"]), 2)
        self.assertIn("iterations", body["workflow"])

    def test_create_project_requires_name(self):
        resp = workflow_lambda.lambda_handler(_event("POST", "/api/v1/projects", {"workflowId": "w"}), None)
        self.assertEqual(resp["statusCode"], 400)

    def test_update_project(self):
        resp = workflow_lambda.lambda_handler(
            _event("PATCH", f"/api/v1/projects/{self.project['id']}", {"name": "Renamed"}), None
        )
        self.assertEqual(resp["statusCode"], 200)
        body = _body(resp)
        self.assertEqual(body["project"]["name"], "Renamed")
        self.assertEqual(len(body["documents"]), 2)

    def test_update_unknown_project(self):
        resp = workflow_lambda.lambda_handler(_event("PATCH", "/api/v1/projects/missing", {"name": "x"}), None)
        self.assertEqual(resp["statusCode"], 404)

    # -- rule validation -------------------------------------------------

    def test_validate_rules(self):
        resp = workflow_lambda.lambda_handler(
            _event("POST", "/api/v1/workflows/validate", {"rules": [PERMIT_RULE]}), None
        )
        self.assertEqual(resp["statusCode"], 200)
        rule = _body(resp)["rules"][0]
        self.assertEqual(rule["dependsOn"], ["BuildingPermit"])
        self.assertEqual(rule["produces"], ["EnvironmentalAssessment"])

    def test_validate_rules_reports_failures(self):
        resp = workflow_lambda.lambda_handler(
            _event("POST", "/api/v1/workflows/validate", {"rules": [PERMIT_RULE, {"validation": "A.x =", "action": "process.B"}]}),
            None,
        )
        self.assertEqual(resp["statusCode"], 400)
        self.assertEqual([f["index"] for f in _body(resp)["failures"]], [1])

    def test_validate_requires_rule_list(self):
        resp = workflow_lambda.lambda_handler(_event("POST", "/api/v1/workflows/validate", {"rules": "x"}), None)
        self.assertEqual(resp["statusCode"], 400)

    # -- failures --------------------------------------------------------

    def test_aws_errors_become_500(self):
        engine = MagicMock()
        engine.run.side_effect = ClientError({"Error": {"Code": "InternalServerError", "Message": "x"}}, "Query")
        with patch.object(workflow_lambda, "_get_engine", return_value=engine):
            resp = workflow_lambda.lambda_handler(_event("POST", self._run_path()), None)
        self.assertEqual(resp["statusCode"], 500)
        self.assertEqual(_body(resp)["error"], "Internal service error")

    def test_version_conflict_becomes_409(self):
        engine = MagicMock()
        engine.run.side_effect = VersionConflictError("Document", "d-1", 5)
        with patch.object(workflow_lambda, "_get_engine", return_value=engine):
            resp = workflow_lambda.lambda_handler(_event("POST", self._run_path()), None)
        self.assertEqual(resp["statusCode"], 409)
