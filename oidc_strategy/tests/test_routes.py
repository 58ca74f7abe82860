"""
Route Tests
===========

End-to-end tests of the /auth routes with Starlette's SessionMiddleware.
The provider's token and userinfo endpoints are served by an
httpx.MockTransport handler.
"""

from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from oidc_strategy.auth.client import Client
from oidc_strategy.auth.routes import make_default_verify
from oidc_strategy.auth.strategy import Strategy
from oidc_strategy.config import Settings
from oidc_strategy.main import create_app
from oidc_strategy.models import Rejected, TokenSet, Verified

from conftest import make_id_token


def make_settings(**overrides) -> Settings:
    values = {
        "OIDC_ISSUER_URL": "https://op.example.com",
        "OIDC_CLIENT_ID": "foo",
        "OIDC_CLIENT_SECRET": "barbaz",
        "OIDC_REDIRECT_URI": "http://testserver/auth/callback",
        "SESSION_SECRET": "s" * 32,
    }
    values.update(overrides)
    return Settings(**values)


def query_of(url: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


class FakeProvider:
    """Token and userinfo endpoints of a test OpenID Provider."""

    def __init__(self, email: str = "ada@example.com"):
        self.email = email
        self.nonce = None
        self.token_error = None
        self.token_requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            self.token_requests.append(request)
            if self.token_error:
                return httpx.Response(400, json={"error": self.token_error})
            claims = {"email": self.email, "name": "Ada"}
            if self.nonce:
                claims["nonce"] = self.nonce
            return httpx.Response(200, json={
                "access_token": "at",
                "token_type": "Bearer",
                "expires_in": 300,
                "id_token": make_id_token(**claims),
            })
        if request.url.path == "/userinfo":
            return httpx.Response(200, json={"sub": "user-123", "email": self.email})
        return httpx.Response(404)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def make_client(issuer, provider):
    """Build a TestClient for an app whose strategy talks to the fake provider."""
    def factory(**overrides) -> TestClient:
        settings = make_settings(**overrides)
        rp_client = Client(
            issuer,
            client_id=settings.OIDC_CLIENT_ID,
            client_secret=settings.OIDC_CLIENT_SECRET,
            redirect_uris=[settings.OIDC_REDIRECT_URI],
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(provider)),
        )
        strategy = Strategy(
            rp_client,
            make_default_verify(settings),
            params=settings.authorization_params,
            use_userinfo=settings.OIDC_FETCH_USERINFO,
            use_pkce=settings.OIDC_USE_PKCE,
            interaction_errors=settings.interaction_errors_set,
        )
        app = create_app(settings=settings, strategy=strategy)
        return TestClient(app, follow_redirects=False)

    return factory


def start_login(test_client: TestClient) -> dict:
    response = test_client.get("/auth/login")
    assert response.status_code == 302
    return query_of(response.headers["location"])


# ============================================================================
# Login Flow
# ============================================================================

class TestLoginFlow:
    """Authorization request and callback through the HTTP routes"""

    def test_login_redirects_to_provider(self, make_client):
        test_client = make_client()

        response = test_client.get("/auth/login")

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://op.example.com/auth?")
        query = query_of(location)
        assert query["client_id"] == "foo"
        assert query["redirect_uri"] == "http://testserver/auth/callback"
        assert query["scope"] == "openid profile email"
        assert query["code_challenge_method"] == "S256"
        assert "nonce" not in query

    def test_full_login(self, make_client, provider):
        test_client = make_client()
        query = start_login(test_client)

        response = test_client.get(f"/auth/callback?code=c-1&state={query['state']}")

        assert response.status_code == 303
        assert response.headers["location"] == "/auth/me"

        token_body = parse_qs(provider.token_requests[0].content.decode())
        assert token_body["code"] == ["c-1"]
        assert token_body["redirect_uri"] == ["http://testserver/auth/callback"]
        assert "code_verifier" in token_body

        me = test_client.get("/auth/me")
        assert me.status_code == 200
        assert me.json() == {
            "sub": "user-123",
            "email": "ada@example.com",
            "name": "Ada",
            "issuer": "https://op.example.com",
        }

    def test_form_post_login(self, make_client, provider):
        test_client = make_client(OIDC_RESPONSE_MODE="form_post")
        query = start_login(test_client)
        assert query["response_mode"] == "form_post"
        provider.nonce = query["nonce"]

        response = test_client.post(
            "/auth/callback",
            data={"code": "c-1", "state": query["state"]},
        )

        assert response.status_code == 303
        assert test_client.get("/auth/me").json()["sub"] == "user-123"

    def test_callback_cannot_be_replayed(self, make_client, provider):
        test_client = make_client()
        query = start_login(test_client)
        callback_url = f"/auth/callback?code=c-1&state={query['state']}"

        assert test_client.get(callback_url).status_code == 303
        replay = test_client.get(callback_url)

        assert replay.status_code == 502
        assert len(provider.token_requests) == 1

    def test_login_required_is_a_failed_login(self, make_client):
        test_client = make_client()
        query = start_login(test_client)

        response = test_client.get(f"/auth/callback?error=login_required&state={query['state']}")

        assert response.status_code == 401
        assert "Authentication Failed" in response.text
        assert "login_required" in response.text

    def test_token_error_is_a_provider_error(self, make_client, provider):
        provider.token_error = "invalid_grant"
        test_client = make_client()
        query = start_login(test_client)

        response = test_client.get(f"/auth/callback?code=c-1&state={query['state']}")

        assert response.status_code == 502
        assert "Authentication Error" in response.text
        assert test_client.get("/auth/me").status_code == 401

    def test_forged_state_is_rejected(self, make_client, provider):
        test_client = make_client()
        start_login(test_client)

        response = test_client.get("/auth/callback?code=c-1&state=forged")

        assert response.status_code == 502
        assert provider.token_requests == []

    def test_domain_not_allowed(self, make_client, provider):
        provider.email = "mallory@evil.example"
        test_client = make_client(ALLOWED_DOMAINS="example.com")
        query = start_login(test_client)

        response = test_client.get(f"/auth/callback?code=c-1&state={query['state']}")

        assert response.status_code == 401
        assert "Email domain is not allowed" in response.text

    def test_access_denied_is_a_failed_login(self, make_client, provider):
        test_client = make_client()
        query = start_login(test_client)

        response = test_client.get(
            f"/auth/callback?error=access_denied&state={query['state']}&error_description=%3Cb%3Enope%3C%2Fb%3E"
        )

        assert response.status_code == 401
        assert "access_denied" in response.text
        assert "<b>" not in response.text
        assert provider.token_requests == []


# ============================================================================
# Session Endpoints
# ============================================================================

class TestSessionEndpoints:
    """Current user and logout"""

    def test_me_requires_login(self, make_client):
        response = make_client().get("/auth/me")

        assert response.status_code == 401
        assert response.json()["detail"] == "Not authenticated"

    def test_logout(self, make_client):
        test_client = make_client()
        query = start_login(test_client)
        test_client.get(f"/auth/callback?code=c-1&state={query['state']}")
        assert test_client.get("/auth/me").status_code == 200

        response = test_client.post("/auth/logout")

        assert response.status_code == 200
        assert response.json() == {"status": "logged_out"}
        assert test_client.get("/auth/me").status_code == 401


# ============================================================================
# Application
# ============================================================================

class TestApplication:
    """App factory, health check and startup"""

    def test_health(self, make_client):
        response = make_client().get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["service"] == "oidc-strategy"

    def test_no_strategy_is_unavailable(self):
        app = create_app(settings=make_settings())
        response = TestClient(app, follow_redirects=False).get("/auth/login")

        assert response.status_code == 503

    def test_startup_discovers_issuer(self, issuer):
        settings = make_settings()
        app = create_app(settings=settings)

        with patch("oidc_strategy.main.Issuer.discover", new=AsyncMock(return_value=issuer)) as discover:
            with TestClient(app, follow_redirects=False) as test_client:
                response = test_client.get("/auth/login")
                assert isinstance(app.state.strategy, Strategy)

        discover.assert_awaited_once_with("https://op.example.com", timeout=settings.HTTP_TIMEOUT_SECONDS)
        assert response.status_code == 302
        assert response.headers["location"].startswith("https://op.example.com/auth?")
        assert app.state.strategy is None

    def test_startup_rejects_invalid_configuration(self):
        settings = make_settings(
            OIDC_CLIENT_SECRET=None,
            OIDC_TOKEN_ENDPOINT_AUTH_METHOD="client_secret_post",
        )
        app = create_app(settings=settings)

        with pytest.raises(RuntimeError, match="OIDC_CLIENT_SECRET"):
            with TestClient(app):
                pass


# ============================================================================
# Default Verify Callback
# ============================================================================

class TestDefaultVerify:
    """Profile assembly and domain restriction"""

    def test_profile_from_claims_and_userinfo(self):
        verify = make_default_verify(make_settings())
        tokenset = TokenSet(id_token=make_id_token(name="Ada"))

        result = verify(tokenset, {"email": "Ada@Example.com"})

        assert isinstance(result, Verified)
        assert result.user == {
            "sub": "user-123",
            "email": "ada@example.com",
            "name": "Ada",
            "issuer": "https://op.example.com",
        }

    def test_missing_subject(self):
        verify = make_default_verify(make_settings())

        result = verify(TokenSet(access_token="at"), None)

        assert isinstance(result, Rejected)

    def test_allowed_domain(self):
        verify = make_default_verify(make_settings(ALLOWED_DOMAINS="example.com, corp.example"))

        allowed = verify(TokenSet(id_token=make_id_token(email="a@corp.example")))
        denied = verify(TokenSet(id_token=make_id_token()))

        assert isinstance(allowed, Verified)
        assert isinstance(denied, Rejected)
