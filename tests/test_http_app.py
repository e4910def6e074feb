"""Tests for the HTTP surface."""

from __future__ import annotations

from collections.abc import Iterator

import httpx
import pytest
import respx
from starlette.testclient import TestClient

from credential_provisioner.config import Config, ProviderConfig
from credential_provisioner.http_app import create_http_app
from credential_provisioner.oauth.credential_store import InMemoryCredentialStore
from credential_provisioner.oauth.orchestrator import FlowOrchestrator
from credential_provisioner.oauth.session import InMemorySessionStore


@pytest.fixture
def client(oauth_config: Config, credential_store: InMemoryCredentialStore) -> Iterator[TestClient]:
    """Create a test client running the app lifespan."""
    orchestrator = FlowOrchestrator(oauth_config, InMemorySessionStore(), credential_store)
    app = create_http_app(oauth_config, orchestrator)
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client: TestClient) -> None:
        """Test the health payload."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "app_name": "OAuth Test Provisioner",
            "environment": "dev",
            "providers": ["Anthropic", "Gemini"],
        }


class TestAuthorizationCodeRoutes:
    """Tests for the authorization code flow routes."""

    def test_start(self, client: TestClient) -> None:
        """Test starting a flow."""
        response = client.post("/oauth/anthropic/start")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert "code_challenge=" in body["auth_url"]
        assert body["state"]
        assert body["verifier"]

    def test_start_unknown_provider(self, client: TestClient) -> None:
        """Test that unknown providers map to 404."""
        response = client.post("/oauth/nosuchprovider/start")

        assert response.status_code == 404
        assert response.json()["error_kind"] == "ConfigMissingError"

    def test_complete_missing_code(self, client: TestClient) -> None:
        """Test that a missing code maps to 400."""
        response = client.post("/oauth/anthropic/complete", json={})

        assert response.status_code == 400
        assert response.json()["error_kind"] == "MissingCodeError"

    def test_complete_without_start(self, client: TestClient) -> None:
        """Test that a missing session maps to 404."""
        response = client.post("/oauth/anthropic/complete", json={"code": "code123"})

        assert response.status_code == 404
        assert response.json()["error_kind"] == "SessionNotFoundError"

    def test_callback_provisions_key(
        self,
        client: TestClient,
        anthropic_config: ProviderConfig,
    ) -> None:
        """Test a provider redirect completing the flow."""
        with respx.mock:
            token_route = respx.post(anthropic_config.token_url).mock(
                return_value=httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
            )
            respx.post(anthropic_config.api_key_url).mock(
                return_value=httpx.Response(
                    200, json={"raw_key": "sk-abc", "id": "1", "name": "n"}
                )
            )

            state = client.post("/oauth/anthropic/start").json()["state"]
            response = client.get(
                "/oauth/anthropic/callback", params={"code": "code123", "state": state}
            )

        assert response.status_code == 200
        assert response.json() == {"success": True, "api_key": "sk-abc", "key_name": "n"}
        assert token_route.called

        status = client.get("/oauth/anthropic/status").json()
        assert status["authenticated"] is True
        assert status["is_auto_provisioned"] is True
        assert "sk-abc" not in str(status)

    def test_callback_error(self, client: TestClient) -> None:
        """Test that provider errors are reported."""
        response = client.get(
            "/oauth/anthropic/callback",
            params={"error": "access_denied", "error_description": "User denied"},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "access_denied", "description": "User denied"}

    def test_token_exchange_failure(
        self,
        client: TestClient,
        anthropic_config: ProviderConfig,
    ) -> None:
        """Test that upstream failures map to 502."""
        with respx.mock:
            respx.post(anthropic_config.token_url).mock(
                return_value=httpx.Response(400, json={"error": "invalid_grant"})
            )

            client.post("/oauth/anthropic/start")
            response = client.post("/oauth/anthropic/complete", json={"code": "bad"})

        assert response.status_code == 502
        assert response.json()["error_kind"] == "TokenExchangeError"


class TestStatusAndLogout:
    """Tests for status and logout routes."""

    def test_status_not_authenticated(self, client: TestClient) -> None:
        """Test status without a credential."""
        response = client.get("/oauth/anthropic/status")

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "authenticated": False,
            "is_auto_provisioned": False,
        }

    def test_logout(self, client: TestClient) -> None:
        """Test logout without a credential."""
        response = client.post("/oauth/anthropic/logout")

        assert response.status_code == 200
        assert response.json() == {"success": True}


class TestWebLoginRoutes:
    """Tests for the browser login routes."""

    def test_web_login_result_unknown_flow(self, client: TestClient) -> None:
        """Test waiting on an unknown flow."""
        response = client.get("/oauth/web-login/missing")

        assert response.status_code == 404
        assert response.json()["error_kind"] == "SessionNotFoundError"

    def test_web_login_result_bad_timeout(self, client: TestClient) -> None:
        """Test that a non-numeric timeout is rejected."""
        response = client.get("/oauth/web-login/missing", params={"timeout": "soon"})

        assert response.status_code == 400

    def test_web_login_wrong_flow(self, client: TestClient) -> None:
        """Test browser login for a code-flow provider."""
        response = client.post("/oauth/anthropic/web-login")

        assert response.status_code == 400
        assert response.json()["error_kind"] == "UnsupportedFlowError"

    def test_web_login_completes(
        self,
        client: TestClient,
        gemini_config: ProviderConfig,
    ) -> None:
        """Test a browser login from start to stored credential."""
        with respx.mock:
            respx.post(gemini_config.authorize_url).mock(
                return_value=httpx.Response(
                    200,
                    json={
                        "device_code": "device-code-1",
                        "verification_uri": "https://accounts.example.com/device",
                    },
                )
            )
            respx.post(gemini_config.token_url).mock(
                return_value=httpx.Response(200, json={"access_token": "gemini-token"})
            )

            started = client.post("/oauth/gemini/web-login").json()
            result = client.get(
                f"/oauth/web-login/{started['flow_id']}", params={"timeout": "2"}
            )

        assert started["auth_url"] == "https://accounts.example.com/device"
        assert result.status_code == 200
        assert result.json()["success"] is True

    def test_web_login_result_by_auth_url(
        self,
        client: TestClient,
        gemini_config: ProviderConfig,
    ) -> None:
        """Test waiting on a browser login by the URL handed to the user."""
        with respx.mock:
            respx.post(gemini_config.authorize_url).mock(
                return_value=httpx.Response(
                    200,
                    json={
                        "device_code": "device-code-2",
                        "verification_uri_complete": "https://accounts.example.com/device?c=QW",
                    },
                )
            )
            respx.post(gemini_config.token_url).mock(
                return_value=httpx.Response(200, json={"access_token": "gemini-token-2"})
            )

            started = client.post("/oauth/gemini/web-login").json()
            result = client.get(
                "/oauth/web-login", params={"auth_url": started["auth_url"], "timeout": "2"}
            )

        assert result.status_code == 200
        assert result.json()["success"] is True

    def test_web_login_result_requires_auth_url(self, client: TestClient) -> None:
        """Test that the lookup route needs an auth_url."""
        response = client.get("/oauth/web-login")

        assert response.status_code == 400
