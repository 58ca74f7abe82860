"""
OpenID Connect protocol client.

Wraps one issuer and one client registration:

- Issuer discovery (/.well-known/openid-configuration)
- Authorization URL construction (pure, no network I/O)
- Authorization response checks (state, required fields, nonce, auth_time)
- Authorization code exchange at the token endpoint
- UserInfo requests

ID token signatures are not verified here; claims are read only to bind
the response to the flow state stored in the session.
"""

import logging
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote, urlencode, urlparse

import httpx

from ..models import FlowState, IssuerMetadata, TokenSet
from .utils import (
    expected_response_fields,
    response_type_values,
    validate_nonce,
    validate_state,
)

logger = logging.getLogger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"


# =============================================================================
# Exceptions
# =============================================================================

class OIDCError(Exception):
    """Base exception for OpenID Connect errors"""
    pass


class OPError(OIDCError):
    """
    Error reported by the OpenID Provider.

    Raised for ``error`` parameters in the authorization response and for
    error responses of the token and userinfo endpoints.
    """

    def __init__(
        self,
        error: str,
        error_description: Optional[str] = None,
        error_uri: Optional[str] = None,
        state: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(error_description or error)
        self.error = error
        self.error_description = error_description
        self.error_uri = error_uri
        self.state = state
        self.status_code = status_code

    @classmethod
    def from_params(cls, params: Dict[str, Any], status_code: Optional[int] = None) -> "OPError":
        return cls(
            error=params.get("error") or "server_error",
            error_description=params.get("error_description"),
            error_uri=params.get("error_uri"),
            state=params.get("state"),
            status_code=status_code,
        )


class RPError(OIDCError):
    """A check performed by the relying party failed (state, nonce, ...)."""
    pass


# =============================================================================
# Issuer
# =============================================================================

class Issuer:
    """An OpenID Provider described by its metadata."""

    def __init__(self, metadata: IssuerMetadata):
        self.metadata = metadata

    @property
    def issuer(self) -> str:
        return self.metadata.issuer

    @property
    def hostname(self) -> str:
        """Stable issuer identity used to namespace session keys."""
        return urlparse(self.metadata.issuer).hostname or self.metadata.issuer

    @classmethod
    def from_dict(cls, metadata: Dict[str, Any]) -> "Issuer":
        return cls(IssuerMetadata(**metadata))

    @classmethod
    async def discover(
        cls,
        url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> "Issuer":
        """
        Fetch and validate the provider's discovery document.

        Args:
            url: Issuer URL, or the full discovery document URL
            http_client: Optional shared client (a temporary one is used otherwise)
            timeout: Request timeout in seconds

        Returns:
            Issuer built from the discovery document

        Raises:
            OIDCError: If the document cannot be fetched or is invalid
        """
        discovery_url = url if DISCOVERY_PATH in url else url.rstrip("/") + DISCOVERY_PATH

        try:
            if http_client is None:
                async with httpx.AsyncClient() as client:
                    response = await client.get(discovery_url, timeout=timeout)
            else:
                response = await http_client.get(discovery_url, timeout=timeout)
            response.raise_for_status()
            document = response.json()
        except httpx.HTTPStatusError as e:
            raise OIDCError(
                f"OpenID discovery failed with status {e.response.status_code}: {discovery_url}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise OIDCError(f"OpenID discovery failed: {e}") from e

        for required in ("issuer", "authorization_endpoint"):
            if not isinstance(document, dict) or required not in document:
                raise OIDCError(f"OpenID discovery document missing '{required}'")

        logger.info(
            "Discovered OpenID Provider",
            extra={"issuer": document["issuer"], "discovery_url": discovery_url},
        )
        return cls.from_dict(document)


# =============================================================================
# Client
# =============================================================================

class Client:
    """
    A relying party registration at one issuer.

    Args:
        issuer: The provider
        client_id: Registered client identifier
        client_secret: Client secret (None for public clients)
        redirect_uris: Registered redirect URIs; the first one is the default
        response_types: Registered response types; the first one is the default
        token_endpoint_auth_method: client_secret_basic, client_secret_post or none
        http_client: Shared httpx.AsyncClient (created lazily when omitted)
        timeout: Timeout for token and userinfo requests
    """

    def __init__(
        self,
        issuer: Issuer,
        client_id: str,
        client_secret: Optional[str] = None,
        redirect_uris: Iterable[str] = (),
        response_types: Iterable[str] = ("code",),
        token_endpoint_auth_method: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.issuer = issuer
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uris = list(redirect_uris)
        self.response_types = list(response_types) or ["code"]
        self.token_endpoint_auth_method = token_endpoint_auth_method or (
            "client_secret_basic" if client_secret else "none"
        )
        self.timeout = timeout
        self._http_client = http_client
        self._owns_http_client = http_client is None

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # -------------------------------------------------------------------------
    # Authorization request
    # -------------------------------------------------------------------------

    def authorization_params(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Merge client defaults with per-request parameters.

        ``None`` values never clobber a default.
        """
        merged: Dict[str, Any] = {
            "client_id": self.client_id,
            "scope": "openid",
            "response_type": self.response_types[0],
        }
        if self.redirect_uris:
            merged["redirect_uri"] = self.redirect_uris[0]

        for key, value in (params or {}).items():
            if value is not None:
                merged[key] = value
        return merged

    def authorization_url(self, params: Optional[Dict[str, Any]] = None) -> str:
        """
        Build the authorization endpoint URL.

        Spaces are encoded as %20 so scope values read ``openid%20profile``.
        """
        query = {
            key: str(value)
            for key, value in self.authorization_params(params).items()
        }
        endpoint = self.issuer.metadata.authorization_endpoint
        separator = "&" if urlparse(endpoint).query else "?"
        return f"{endpoint}{separator}{urlencode(query, quote_via=quote)}"

    # -------------------------------------------------------------------------
    # Authorization response
    # -------------------------------------------------------------------------

    async def callback(
        self,
        redirect_uri: Optional[str],
        params: Dict[str, Any],
        checks: Optional[FlowState] = None,
    ) -> TokenSet:
        """
        Validate an authorization response and obtain the token set.

        Args:
            redirect_uri: Redirect URI used in the authorization request
            params: Query or form parameters of the callback request
            checks: Flow state loaded from the session

        Returns:
            TokenSet from the token endpoint, or from the response itself
            when no code was issued

        Raises:
            RPError: State, required field, nonce or auth_time checks failed
            OPError: The response or the token endpoint reported an error
            httpx.HTTPError: Transport failure talking to the token endpoint
        """
        checks = checks or FlowState()
        received_state = params.get("state")

        if received_state is not None and checks.state is None:
            raise RPError("state present in response but no state was stored in the session")
        if received_state is None and checks.state is not None:
            raise RPError("state missing from response")
        if not validate_state(received_state, checks.state):
            raise RPError("state mismatch")

        if params.get("error"):
            raise OPError.from_params(params)

        for field in sorted(expected_response_fields(checks.response_type)):
            if not params.get(field):
                raise RPError(f"{field} missing from response")

        if params.get("id_token"):
            self._check_id_token(TokenSet(id_token=params["id_token"]), checks)

        if params.get("code"):
            tokenset = await self.grant({
                "grant_type": "authorization_code",
                "code": params["code"],
                "redirect_uri": redirect_uri,
                "code_verifier": checks.code_verifier,
            })
        else:
            fields = ("access_token", "id_token", "token_type", "expires_in", "scope", "session_state")
            tokenset = TokenSet.from_response(
                {key: params[key] for key in fields if params.get(key) is not None}
            )

        if tokenset.id_token:
            self._check_id_token(tokenset, checks)

        return tokenset

    def _check_id_token(self, tokenset: TokenSet, checks: FlowState) -> None:
        try:
            claims = tokenset.claims()
        except Exception as e:
            raise RPError(f"id_token could not be decoded: {e}") from e

        if not validate_nonce(claims, checks.nonce):
            raise RPError("nonce mismatch")

        if checks.max_age is not None and "auth_time" not in claims:
            raise RPError("missing required JWT property auth_time")

    # -------------------------------------------------------------------------
    # Token endpoint
    # -------------------------------------------------------------------------

    async def grant(self, body: Dict[str, Any]) -> TokenSet:
        """
        POST a grant to the token endpoint.

        Raises:
            OPError: Error response from the provider
            RPError: Issuer has no token endpoint
        """
        token_endpoint = self.issuer.metadata.token_endpoint
        if not token_endpoint:
            raise RPError("issuer has no token_endpoint")

        payload = {key: value for key, value in body.items() if value is not None}
        auth = None
        if self.token_endpoint_auth_method == "client_secret_basic":
            auth = httpx.BasicAuth(self.client_id, self.client_secret or "")
        elif self.token_endpoint_auth_method == "client_secret_post":
            payload["client_id"] = self.client_id
            payload["client_secret"] = self.client_secret
        else:
            payload["client_id"] = self.client_id

        response = await self.http_client.post(
            token_endpoint,
            data=payload,
            auth=auth,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        data = self._json_or_error(response)

        logger.debug(
            "Token endpoint grant completed",
            extra={"grant_type": body.get("grant_type"), "status_code": response.status_code},
        )
        return TokenSet.from_response(data)

    # -------------------------------------------------------------------------
    # UserInfo endpoint
    # -------------------------------------------------------------------------

    async def userinfo(self, access_token: str) -> Dict[str, Any]:
        """
        Fetch claims about the user from the UserInfo endpoint.

        Raises:
            RPError: Issuer has no userinfo endpoint
            OPError: Error response from the provider
        """
        userinfo_endpoint = self.issuer.metadata.userinfo_endpoint
        if not userinfo_endpoint:
            raise RPError("issuer has no userinfo_endpoint")

        response = await self.http_client.get(
            userinfo_endpoint,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
            timeout=self.timeout,
        )
        if response.status_code in (401, 403) and "WWW-Authenticate" in response.headers:
            raise OPError.from_params(
                _parse_www_authenticate(response.headers["WWW-Authenticate"]),
                status_code=response.status_code,
            )
        return self._json_or_error(response)

    @staticmethod
    def _json_or_error(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_success and isinstance(data, dict):
            if data.get("error"):
                raise OPError.from_params(data, status_code=response.status_code)
            return data

        if isinstance(data, dict) and data.get("error"):
            raise OPError.from_params(data, status_code=response.status_code)

        raise OPError(
            "server_error",
            f"expected 200 OK with a JSON body, got: {response.status_code}",
            status_code=response.status_code,
        )


def _parse_www_authenticate(header: str) -> Dict[str, str]:
    """Parse ``Bearer error="invalid_token", error_description="..."``."""
    _, _, rest = header.partition(" ")
    values = {}
    for part in rest.split(","):
        key, sep, value = part.strip().partition("=")
        if sep:
            values[key.strip()] = value.strip().strip('"')
    values.setdefault("error", "invalid_token")
    return values
