"""Caller identity for the batch API.

Every batch, document and analysis row is owned by ``Identity.user_id``;
the stores pass it to ``rls_connection`` so Postgres only shows a caller
their own batches.

- Cloud Run: a Google-signed OIDC token, read from ``X-Serverless-Authorization``
  (set by Cloud Run IAM) or ``Authorization``. Owner is the email claim, else sub.
- Local dev: ``TC_SHARED_TOKEN`` maps to the fixed ``dev-user`` owner. It is
  never honoured when ``K_SERVICE`` is set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from taxcredit_service.config import (
    IS_CLOUD_RUN,
    TC_ALLOWED_ISSUERS,
    TC_OIDC_AUDIENCE,
    TC_SHARED_TOKEN,
)

logger = logging.getLogger(__name__)

_google_request = google_requests.Request()

_TOKEN_HEADERS = ("x-serverless-authorization", "authorization")
_PUBLIC_PATHS = frozenset({"/liveness", "/readiness", "/openapi.json"})

DEV_USER_ID = "dev-user"


@dataclass
class Identity:
    user_id: str  # batch owner, used for RLS
    principal: str


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail)


def _extract_token(request: Request) -> str | None:
    for header in _TOKEN_HEADERS:
        scheme, _, token = request.headers.get(header, "").partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return None


def _verify_oidc(token: str) -> str:
    """Return the principal of a valid Google ID token or raise 401."""
    try:
        claims = id_token.verify_token(token, _google_request, audience=TC_OIDC_AUDIENCE)
    except Exception as e:
        logger.warning("ID token rejected: %s", e)
        raise _unauthorized("Invalid token") from e

    if str(claims.get("iss", "")).strip() not in TC_ALLOWED_ISSUERS:
        raise _unauthorized("Invalid token issuer")
    principal = claims.get("email") or claims.get("sub")
    if not principal:
        raise _unauthorized("Token missing email and sub claims")
    return str(principal)


async def get_identity(request: Request) -> Identity:
    """Resolve the batch owner for ``request``; raises HTTPException 401."""
    token = _extract_token(request)
    if token is None:
        raise _unauthorized("Missing authorization token")

    if TC_SHARED_TOKEN and not IS_CLOUD_RUN and token == TC_SHARED_TOKEN:
        return Identity(user_id=DEV_USER_ID, principal=f"{DEV_USER_ID}@local")

    principal = _verify_oidc(token)
    return Identity(user_id=principal, principal=principal)


def is_public_path(path: str) -> bool:
    return path in _PUBLIC_PATHS or path.startswith("/docs")


def require_auth_on_cloud_run() -> None:
    """Startup guard: Cloud Run needs an audience; the shared token is ignored there."""
    if not IS_CLOUD_RUN:
        return
    if TC_SHARED_TOKEN:
        logger.warning("TC_SHARED_TOKEN is ignored on Cloud Run; callers must send OIDC tokens")
    if not TC_OIDC_AUDIENCE:
        raise RuntimeError("TC_OIDC_AUDIENCE must be set on Cloud Run")
