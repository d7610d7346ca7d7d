"""docflow_shared.http_utils — HTTP response helpers with CORS.

Standard response envelope and error formatting for the docflow API Lambdas.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Dict, Optional

from docflow_shared import config


def _cors_headers() -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": config.CORS_ORIGIN,
        "Access-Control-Allow-Headers": "Content-Type,Authorization,Cookie,X-Docflow-Internal-Key",
        "Access-Control-Allow-Methods": "GET,POST,PATCH,OPTIONS",
        "Access-Control-Allow-Credentials": "true",
    }


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    """Build a standard API Gateway response with CORS headers."""
    resp: Dict[str, Any] = {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json", **_cors_headers()},
    }
    if body is not None:
        resp["body"] = json.dumps(body, default=str)
    return resp


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    """Build a standard error response; ``extra`` is merged into the payload."""
    payload: Dict[str, Any] = {"success": False, "error": message}
    if extra:
        payload.update(extra)
    return _response(status_code, payload)


def _parse_body(event: Dict[str, Any]) -> Optional[Any]:
    """Parse JSON body from API Gateway event (handles base64). None if invalid."""
    raw = event.get("body") or "{}"
    # binascii.Error, UnicodeDecodeError and JSONDecodeError are all ValueErrors.
    try:
        if event.get("isBase64Encoded"):
            raw = base64.b64decode(raw, validate=True).decode("utf-8")
        return json.loads(raw)
    except (ValueError, TypeError):
        return None


def _path_method(event: Dict[str, Any]) -> tuple:
    """Extract HTTP method and path from API Gateway v2 event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = http.get("path") or event.get("rawPath") or event.get("path") or "/"
    return method, path
