"""
Authentication utilities for the OpenID Connect flow.

This module handles:
- Generating state, nonce and PKCE material for authorization requests
- Checking ID token claims against the stored flow state
- Extracting user details from claims for the default verify callback
"""

import base64
import hashlib
import secrets
from typing import Any, Dict, Optional, Tuple


# =============================================================================
# Random Values
# =============================================================================

def generate_random(num_bytes: int = 32) -> str:
    """
    Generate a URL-safe random token.

    32 bytes gives 256 bits of entropy and a 43 character string, which is
    also a valid PKCE code verifier length.
    """
    return secrets.token_urlsafe(num_bytes)


def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43-128 characters)
    """
    verifier_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(verifier_bytes).decode('utf-8').rstrip('=')


def generate_code_challenge(verifier: str, method: str = "S256") -> str:
    """
    Derive the PKCE code challenge from a verifier.

    Args:
        verifier: Code verifier string
        method: "S256" or "plain"

    Returns:
        Base64-URL-encoded SHA256 hash of verifier, or the verifier itself
        for the plain method

    Raises:
        ValueError: If the method is unknown
    """
    if method == "plain":
        return verifier
    if method != "S256":
        raise ValueError(f"Unsupported code_challenge_method: {method}")

    digest = hashlib.sha256(verifier.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(digest).decode('utf-8').rstrip('=')


def generate_pkce_pair(method: str = "S256") -> Tuple[str, str]:
    """Return ``(code_verifier, code_challenge)``."""
    verifier = generate_code_verifier()
    return verifier, generate_code_challenge(verifier, method)


# =============================================================================
# Response Type Helpers
# =============================================================================

def response_type_values(response_type: Optional[str]) -> set:
    return set((response_type or "").split())


def requires_nonce(response_type: Optional[str], response_mode: Optional[str] = None) -> bool:
    """
    Whether an authorization request must carry a nonce.

    A nonce is mandatory wherever an ID token can be returned outside the
    back-channel code exchange: any response type other than bare ``code``,
    or a ``form_post`` response mode.
    """
    if response_mode == "form_post":
        return True
    values = response_type_values(response_type)
    return bool(values) and values != {"code"}


def expected_response_fields(response_type: Optional[str]) -> set:
    """Parameters an authorization response must carry for a response type."""
    fields = set()
    values = response_type_values(response_type)
    if "code" in values:
        fields.add("code")
    if "id_token" in values:
        fields.add("id_token")
    if "token" in values:
        fields.add("access_token")
    return fields


# =============================================================================
# Token Validation Helpers
# =============================================================================

def validate_nonce(claims: Dict[str, Any], expected_nonce: Optional[str]) -> bool:
    """
    Validate nonce claim against the value stored in the flow state.

    Args:
        claims: Token claims
        expected_nonce: Expected nonce value from session

    Returns:
        True if nonce is valid or not required, False if mismatch
    """
    token_nonce = claims.get("nonce")

    # If no nonce in token and none expected, OK
    if not token_nonce and not expected_nonce:
        return True

    # If nonce present, must match
    if token_nonce and expected_nonce:
        return secrets.compare_digest(str(token_nonce), expected_nonce)

    # Mismatch
    return False


def validate_state(received_state: Optional[str], expected_state: Optional[str]) -> bool:
    """
    Validate OAuth state parameter.

    Args:
        received_state: State from callback
        expected_state: State from session

    Returns:
        True if states match (both absent also counts as a match)
    """
    if received_state is None or expected_state is None:
        return received_state is None and expected_state is None
    return secrets.compare_digest(str(received_state), expected_state)


# =============================================================================
# User Profile Helpers
# =============================================================================

def extract_email_from_claims(claims: Dict[str, Any]) -> Optional[str]:
    """
    Extract email address from ID token / userinfo claims.

    Providers use different claim names depending on configuration:
    - email: Email address (standard claim)
    - preferred_username: Often the login name (user@domain.com)
    - upn: User Principal Name

    Args:
        claims: Decoded claims

    Returns:
        Email address if found, None otherwise
    """
    for claim_name in ["email", "preferred_username", "upn"]:
        email = claims.get(claim_name)
        if isinstance(email, str) and "@" in email:
            return email.lower().strip()

    return None


def validate_email_domain(email: Optional[str], allowed_domains: list) -> bool:
    """
    Check if email domain is in the allowed list.

    Args:
        email: Email address to validate
        allowed_domains: List of allowed domain strings

    Returns:
        True if email domain is allowed, False otherwise
    """
    if not email or "@" not in email:
        return False

    domain = email.split("@")[-1].lower().strip()
    return domain in [d.lower() for d in allowed_domains]


def get_user_display_name(claims: Dict[str, Any]) -> str:
    """
    Extract user's display name from claims.

    Returns:
        Display name, or the email local part as fallback
    """
    name = claims.get("name") or claims.get("given_name")
    if name:
        return name

    email = extract_email_from_claims(claims)
    if email:
        return email.split("@")[0].title()

    return "User"
