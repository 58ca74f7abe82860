"""
Shared fixtures for the relying party tests.

Requests are built directly from ASGI scopes so the strategy can be
exercised without an application; the session is whatever mapping the
test puts in ``scope["session"]``.
"""

from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
import jwt
import pytest
from starlette.requests import Request

from oidc_strategy.auth.client import Client, Issuer

ISSUER_METADATA = {
    "issuer": "https://op.example.com",
    "authorization_endpoint": "https://op.example.com/auth",
    "jwks_uri": "https://op.example.com/jwks",
    "token_endpoint": "https://op.example.com/token",
    "userinfo_endpoint": "https://op.example.com/userinfo",
}

SESSION_KEY = "oidc:op.example.com"
TEST_SIGNING_KEY = "test-signing-key-0123456789abcdef0123"


def make_request(
    method: str = "GET",
    path: str = "/login/oidc",
    query: str = "",
    session: Optional[Dict[str, Any]] = None,
    form: Optional[Dict[str, str]] = None,
) -> Request:
    """Build a Starlette request; ``session=None`` means no SessionMiddleware."""
    body = urlencode(form).encode() if form is not None else b""
    headers = []
    if form is not None:
        headers.append((b"content-type", b"application/x-www-form-urlencoded"))

    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": query.encode(),
        "headers": headers,
    }
    if session is not None:
        scope["session"] = session

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def make_id_token(**claims: Any) -> str:
    """Create an ID token; the relying party never checks its signature."""
    payload = {"iss": ISSUER_METADATA["issuer"], "sub": "user-123", "aud": "foo"}
    payload.update(claims)
    return jwt.encode(payload, TEST_SIGNING_KEY, algorithm="HS256")


@pytest.fixture
def issuer() -> Issuer:
    return Issuer.from_dict(ISSUER_METADATA)


@pytest.fixture
def client(issuer: Issuer) -> Client:
    """Client with a dummy transport; tests stub its protocol methods."""
    return Client(
        issuer,
        client_id="foo",
        client_secret="barbaz",
        response_types=["code"],
        redirect_uris=["http://rp.example.com/cb"],
    )


@pytest.fixture
def mock_transport_client(issuer: Issuer):
    """
    Factory for a Client whose HTTP calls go to an httpx.MockTransport.

    Usage:
        client = mock_transport_client(handler)
    """
    def factory(handler, **kwargs) -> Client:
        options = {
            "client_id": "foo",
            "client_secret": "barbaz",
            "redirect_uris": ["http://rp.example.com/cb"],
        }
        options.update(kwargs)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return Client(issuer, http_client=http_client, **options)

    return factory
