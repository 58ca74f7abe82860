"""
Data Models Module

This module defines Pydantic models shared by the protocol client, the
authentication strategy and the HTTP routes.

Models are organized by functional area:
- Provider models (issuer metadata, token sets)
- Flow state models (per-login anti-forgery material kept in the session)
- Verification results (what the application's verify callback returns)
- Outcomes (the single result of one authenticate() call)
- User profile / error models used by the routes
"""

import time
from typing import Any, Dict, List, Optional, Union

import jwt
from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Provider Models
# ============================================================================

class IssuerMetadata(BaseModel):
    """OpenID Provider metadata (subset of the discovery document)."""
    model_config = ConfigDict(extra="allow")

    issuer: str = Field(..., description="Issuer identifier")
    authorization_endpoint: str = Field(..., description="Authorization endpoint URL")
    token_endpoint: Optional[str] = Field(None, description="Token endpoint URL")
    userinfo_endpoint: Optional[str] = Field(None, description="UserInfo endpoint URL")
    jwks_uri: Optional[str] = Field(None, description="JWKS document URL")
    code_challenge_methods_supported: Optional[List[str]] = Field(
        None, description="PKCE methods advertised by the provider"
    )


class TokenSet(BaseModel):
    """Tokens returned by the token endpoint or carried in the authorization response."""
    model_config = ConfigDict(extra="allow")

    access_token: Optional[str] = None
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_at: Optional[int] = Field(None, description="Absolute expiry (epoch seconds)")
    scope: Optional[str] = None
    session_state: Optional[str] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "TokenSet":
        """Build a token set, turning a relative expires_in into expires_at."""
        values = dict(data)
        expires_in = values.pop("expires_in", None)
        if expires_in is not None and values.get("expires_at") is None:
            values["expires_at"] = int(time.time()) + int(expires_in)
        return cls(**values)

    def claims(self) -> Dict[str, Any]:
        """
        Decode the ID token payload.

        The signature is NOT verified; claims are only used to bind the
        nonce and auth_time of this login to the stored flow state.

        Raises:
            ValueError: If there is no ID token
            jwt.DecodeError: If the ID token is malformed
        """
        if not self.id_token:
            raise ValueError("id_token not present in TokenSet")
        return jwt.decode(self.id_token, options={"verify_signature": False})

    def expired(self) -> bool:
        if self.expires_at is None:
            return False
        return time.time() >= self.expires_at


# ============================================================================
# Flow State Models
# ============================================================================

class FlowState(BaseModel):
    """
    Anti-forgery and replay protection material for one login attempt.

    Written to the session when the authorization request starts and
    consumed (deleted) by the callback. Only set fields are persisted.
    """
    state: Optional[str] = Field(None, description="Round-tripped CSRF token")
    nonce: Optional[str] = Field(None, description="Value bound into the ID token")
    max_age: Optional[int] = Field(None, description="Requested maximum authentication age")
    response_type: Optional[str] = Field(None, description="Explicitly requested response_type")
    code_verifier: Optional[str] = Field(None, description="PKCE code verifier")

    def to_session(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ============================================================================
# Verification Results
# ============================================================================

class Verified(BaseModel):
    """The verify callback recognised the user."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    user: Any = None
    info: Any = None


class Rejected(BaseModel):
    """The verify callback declined the login (no account, not allowed...)."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    info: Any = None


class VerifyFailed(BaseModel):
    """The verify callback hit an error (database down, ...)."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    error: Exception


VerifyResult = Union[Verified, Rejected, VerifyFailed]


# ============================================================================
# Provider Error Classification
# ============================================================================

# Authorization response error codes meaning "the user did not finish
# logging in" rather than "something is broken".
INTERACTION_REQUIRED_ERRORS = frozenset({
    "login_required",
    "consent_required",
    "interaction_required",
    "account_selection_required",
    "access_denied",
})


# ============================================================================
# Outcomes
# ============================================================================

class Success(BaseModel):
    """Authentication succeeded."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    user: Any
    info: Any = None


class Fail(BaseModel):
    """Authentication did not succeed (a normal, recoverable result)."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    message: Optional[str] = None
    status: Optional[int] = None
    error: Optional[Exception] = None


class Error(BaseModel):
    """Authentication could not be completed because of a fault."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    error: Exception

    @property
    def message(self) -> str:
        return str(self.error)


class Redirect(BaseModel):
    """Send the user agent to another URL (the authorization endpoint)."""
    url: str
    status: int = 302


Outcome = Union[Success, Fail, Error, Redirect]


# ============================================================================
# Route Models
# ============================================================================

class UserProfile(BaseModel):
    """User profile built from ID token claims and userinfo."""
    sub: str = Field(..., description="Subject identifier at the issuer")
    email: Optional[str] = Field(None, description="User email address")
    name: Optional[str] = Field(None, description="User display name")
    issuer: Optional[str] = Field(None, description="Issuer that authenticated the user")


class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
