"""docflow_shared.auth — Cognito JWT authentication for docflow Lambdas.

Reads ``docflow_id_token`` from the Cookie header or the API Gateway v2
cookies array and validates it as an RS256 JWT against the user pool JWKS.
Trusted callers (orchestrators, smoke tests) may instead present
``X-Docflow-Internal-Key``.

Environment (see docflow_shared.config):
    COGNITO_USER_POOL_ID, COGNITO_CLIENT_ID
    DOCFLOW_INTERNAL_API_KEY, DOCFLOW_INTERNAL_API_KEY_PREVIOUS,
    DOCFLOW_INTERNAL_API_KEYS (comma-separated allowlist)
"""

from __future__ import annotations

import json
import logging
import time
import urllib.request
from typing import Any, Dict, List, Optional, Tuple

import jwt
from jwt.algorithms import RSAAlgorithm

from docflow_shared import config

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "docflow_id_token"
INTERNAL_KEY_HEADER = "x-docflow-internal-key"

# ---------------------------------------------------------------------------
# JWKS cache
# ---------------------------------------------------------------------------

_jwks_cache: Dict[str, Any] = {}
_jwks_fetched_at: float = 0.0
_JWKS_TTL: float = 3600.0


def _extract_token(event: Dict[str, Any]) -> Optional[str]:
    """Extract the id token from cookies (headers or API GW v2 array)."""
    headers = event.get("headers") or {}
    cookie_header = headers.get("cookie") or headers.get("Cookie") or ""
    cookie_parts: List[str] = []
    if cookie_header:
        cookie_parts.extend(part.strip() for part in cookie_header.split(";") if part.strip())

    event_cookies = event.get("cookies") or []
    if isinstance(event_cookies, list):
        cookie_parts.extend(
            part.strip() for part in event_cookies if isinstance(part, str) and part.strip()
        )
    elif isinstance(event_cookies, str) and event_cookies.strip():
        cookie_parts.append(event_cookies.strip())

    prefix = f"{TOKEN_COOKIE}="
    for part in cookie_parts:
        if part.startswith(prefix):
            return part[len(prefix):]
    return None


def _get_jwks() -> Dict[str, Any]:
    """Fetch (and cache) the user pool JWKS."""
    global _jwks_cache, _jwks_fetched_at
    now = time.time()
    if _jwks_cache and (now - _jwks_fetched_at) < _JWKS_TTL:
        return _jwks_cache

    pool_id = config.COGNITO_USER_POOL_ID
    if not pool_id:
        raise ValueError("COGNITO_USER_POOL_ID not set")

    region = pool_id.split("_")[0]
    url = f"https://cognito-idp.{region}.amazonaws.com/{pool_id}/.well-known/jwks.json"

    with urllib.request.urlopen(url, timeout=5) as resp:
        data = json.loads(resp.read())

    _jwks_cache = {
        key_data["kid"]: RSAAlgorithm.from_jwk(json.dumps(key_data))
        for key_data in data.get("keys", [])
    }
    _jwks_fetched_at = now
    return _jwks_cache


def _verify_token(token: str) -> Dict[str, Any]:
    """Verify a Cognito JWT (RS256). Returns decoded claims dict."""
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise ValueError(f"Invalid token header: {exc}") from exc

    alg = header.get("alg", "RS256")
    if alg != "RS256":
        raise ValueError(f"Unexpected token algorithm: {alg}")

    key = _get_jwks().get(header.get("kid"))
    if key is None:
        raise ValueError("Token key ID not found in JWKS")

    try:
        return jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=config.COGNITO_CLIENT_ID,
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise ValueError("Token has expired. Please sign in again.")
    except jwt.InvalidAudienceError:
        raise ValueError("Token audience mismatch.")
    except jwt.PyJWTError as exc:
        raise ValueError(f"Token validation failed: {exc}") from exc


def _identity(claims: Optional[Dict[str, Any]]) -> Optional[str]:
    """Writer identity recorded as ``updatedBy`` (email, else sub)."""
    if not claims:
        return None
    if claims.get("auth_mode") == "internal-key":
        return "internal"
    return claims.get("email") or claims.get("sub") or None


def _authenticate(
    event: Dict[str, Any],
    *,
    error_fn=None,
) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Authenticate request via cookie JWT or internal API key.

    Returns (claims, None) on success or (None, error_response) on failure.
    """
    if error_fn is None:
        error_fn = _default_error

    if config.DOCFLOW_INTERNAL_API_KEYS:
        headers = {str(k).lower(): v for k, v in (event.get("headers") or {}).items()}
        internal_key = headers.get(INTERNAL_KEY_HEADER) or ""
        if internal_key and internal_key in config.DOCFLOW_INTERNAL_API_KEYS:
            return {"auth_mode": "internal-key"}, None

    token = _extract_token(event)
    if not token:
        return None, error_fn(401, "Authentication required. Please sign in.")

    try:
        return _verify_token(token), None
    except ValueError as exc:
        logger.warning("[WARNING] token rejected: %s", exc)
        return None, error_fn(401, str(exc))


def _default_error(status_code: int, message: str) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps({"success": False, "error": message}),
    }
