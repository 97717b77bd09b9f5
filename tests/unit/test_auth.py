"""Unit tests for auth module: OIDC verification, shared token safety."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException

from taxcredit_service.auth import (
    Identity,
    _extract_token,
    get_identity,
    is_public_path,
    require_auth_on_cloud_run,
)


def _make_request(auth_header: str | None = None, path: str = "/batch") -> MagicMock:
    """Create a mock FastAPI Request."""
    request = MagicMock()
    request.url.path = path
    request.headers = {}
    if auth_header:
        request.headers["authorization"] = auth_header
    return request


class TestPublicPaths:
    def test_liveness_is_public(self):
        assert is_public_path("/liveness")

    def test_readiness_is_public(self):
        assert is_public_path("/readiness")

    def test_docs_is_public(self):
        assert is_public_path("/docs")
        assert is_public_path("/docs/oauth2-redirect")
        assert is_public_path("/openapi.json")

    def test_batch_routes_are_not_public(self):
        assert not is_public_path("/batch")
        assert not is_public_path("/batch/upload")

    def test_queue_stats_is_not_public(self):
        assert not is_public_path("/queue/stats")


class TestGetIdentity:
    async def test_missing_token_raises_401(self):
        request = _make_request()
        with pytest.raises(HTTPException) as exc_info:
            await get_identity(request)
        assert exc_info.value.status_code == 401

    async def test_non_bearer_header_raises_401(self):
        request = _make_request(auth_header="Basic dXNlcjpwYXNz")
        with pytest.raises(HTTPException) as exc_info:
            await get_identity(request)
        assert exc_info.value.detail == "Missing authorization token"

    @patch("taxcredit_service.auth.IS_CLOUD_RUN", False)
    @patch("taxcredit_service.auth.TC_SHARED_TOKEN", "test-secret-token")
    async def test_shared_token_dev_mode(self):
        """Shared token works in local dev (not Cloud Run)."""
        request = _make_request(auth_header="Bearer test-secret-token")
        identity = await get_identity(request)
        assert identity == Identity(user_id="dev-user", principal="dev-user@local")

    @patch("taxcredit_service.auth.IS_CLOUD_RUN", True)
    @patch("taxcredit_service.auth.TC_SHARED_TOKEN", "test-secret-token")
    @patch("taxcredit_service.auth.id_token")
    async def test_shared_token_rejected_on_cloud_run(self, mock_id_token):
        """Shared token is NOT accepted on Cloud Run; OIDC is required."""
        mock_id_token.verify_token.side_effect = Exception("Invalid token")
        request = _make_request(auth_header="Bearer test-secret-token")
        with pytest.raises(HTTPException) as exc_info:
            await get_identity(request)
        assert exc_info.value.status_code == 401

    @patch("taxcredit_service.auth.IS_CLOUD_RUN", False)
    @patch("taxcredit_service.auth.TC_SHARED_TOKEN", None)
    @patch("taxcredit_service.auth.id_token")
    async def test_oidc_token_verification(self, mock_id_token):
        """Valid OIDC token extracts email as the owner id."""
        mock_id_token.verify_token.return_value = {
            "email": "user@company.com",
            "sub": "12345",
            "iss": "https://accounts.google.com",
        }
        request = _make_request(auth_header="Bearer valid-oidc-token")
        identity = await get_identity(request)
        assert identity.user_id == "user@company.com"
        assert identity.principal == "user@company.com"
        mock_id_token.verify_token.assert_called_once()

    @patch("taxcredit_service.auth.IS_CLOUD_RUN", False)
    @patch("taxcredit_service.auth.TC_SHARED_TOKEN", None)
    @patch("taxcredit_service.auth.id_token")
    async def test_oidc_falls_back_to_sub(self, mock_id_token):
        mock_id_token.verify_token.return_value = {"sub": "12345", "iss": "accounts.google.com"}
        identity = await get_identity(_make_request(auth_header="Bearer valid-oidc-token"))
        assert identity.user_id == "12345"

    @patch("taxcredit_service.auth.IS_CLOUD_RUN", False)
    @patch("taxcredit_service.auth.TC_SHARED_TOKEN", None)
    @patch("taxcredit_service.auth.id_token")
    async def test_oidc_without_principal_rejected(self, mock_id_token):
        mock_id_token.verify_token.return_value = {"iss": "https://accounts.google.com"}
        with pytest.raises(HTTPException) as exc_info:
            await get_identity(_make_request(auth_header="Bearer valid-oidc-token"))
        assert exc_info.value.detail == "Token missing email and sub claims"

    @patch("taxcredit_service.auth.IS_CLOUD_RUN", False)
    @patch("taxcredit_service.auth.TC_SHARED_TOKEN", None)
    @patch("taxcredit_service.auth.id_token")
    async def test_untrusted_issuer_rejected(self, mock_id_token):
        mock_id_token.verify_token.return_value = {"sub": "12345", "iss": "https://evil.example.com"}
        with pytest.raises(HTTPException) as exc_info:
            await get_identity(_make_request(auth_header="Bearer valid-oidc-token"))
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Invalid token issuer"

    @patch("taxcredit_service.auth.IS_CLOUD_RUN", False)
    @patch("taxcredit_service.auth.TC_SHARED_TOKEN", None)
    @patch("taxcredit_service.auth.TC_OIDC_AUDIENCE", "https://taxcredit.example.com")
    @patch("taxcredit_service.auth.id_token")
    async def test_oidc_audience_passed_to_verifier(self, mock_id_token):
        mock_id_token.verify_token.return_value = {"sub": "12345", "iss": "https://accounts.google.com"}

        await get_identity(_make_request(auth_header="Bearer valid-oidc-token"))

        _, kwargs = mock_id_token.verify_token.call_args
        assert kwargs["audience"] == "https://taxcredit.example.com"


class TestExtractToken:
    def test_serverless_header_preferred(self):
        request = _make_request(auth_header="Bearer app-token")
        request.headers["x-serverless-authorization"] = "Bearer run-token"
        assert _extract_token(request) == "run-token"

    def test_authorization_header_used_alone(self):
        assert _extract_token(_make_request(auth_header="bearer  abc ")) == "abc"

    def test_empty_bearer_is_missing(self):
        assert _extract_token(_make_request(auth_header="Bearer   ")) is None


class TestRequireAuthOnCloudRun:
    @patch("taxcredit_service.auth.IS_CLOUD_RUN", True)
    @patch("taxcredit_service.auth.TC_OIDC_AUDIENCE", None)
    def test_cloud_run_requires_audience(self):
        with pytest.raises(RuntimeError, match="TC_OIDC_AUDIENCE"):
            require_auth_on_cloud_run()

    @patch("taxcredit_service.auth.IS_CLOUD_RUN", True)
    @patch("taxcredit_service.auth.TC_OIDC_AUDIENCE", "https://taxcredit.example.com")
    @patch("taxcredit_service.auth.TC_SHARED_TOKEN", "leftover")
    def test_shared_token_only_warns(self):
        require_auth_on_cloud_run()

    @patch("taxcredit_service.auth.IS_CLOUD_RUN", False)
    @patch("taxcredit_service.auth.TC_OIDC_AUDIENCE", None)
    def test_local_dev_needs_nothing(self):
        require_auth_on_cloud_run()
