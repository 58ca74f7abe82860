"""
Configuration module for the OpenID Connect relying party.

This module uses Pydantic Settings to load and validate environment variables
for the identity provider (issuer discovery, client credentials), the
authorization request defaults, the Starlette session cookie, and logging.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import FrozenSet, List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import INTERACTION_REQUIRED_ERRORS


DEFAULT_INTERACTION_ERRORS = ",".join(sorted(INTERACTION_REQUIRED_ERRORS))

_RESPONSE_TYPE_VALUES = {"code", "id_token", "token", "none"}


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for the OIDC client, the authentication strategy,
    session cookies and the HTTP server is defined here.
    """

    # =========================================================================
    # Identity Provider / Client Registration
    # =========================================================================

    OIDC_ISSUER_URL: str = Field(
        ...,
        description="Issuer URL or discovery document URL (e.g., https://op.example.com)",
        min_length=1,
    )

    OIDC_CLIENT_ID: str = Field(
        ...,
        description="Client identifier registered with the identity provider",
        min_length=1,
    )

    OIDC_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret (leave empty for public clients)",
    )

    OIDC_TOKEN_ENDPOINT_AUTH_METHOD: Optional[str] = Field(
        None,
        description="client_secret_basic, client_secret_post or none (derived from the secret when empty)",
    )

    OIDC_REDIRECT_URI: str = Field(
        ...,
        description="Callback URL registered with the provider (e.g., https://rp.example.com/auth/callback)",
        min_length=1,
    )

    # =========================================================================
    # Authorization Request Defaults
    # =========================================================================

    OIDC_SCOPE: str = Field(
        default="openid profile email",
        description="Space separated scopes requested at login",
    )

    OIDC_RESPONSE_TYPE: str = Field(
        default="code",
        description="OAuth response_type (e.g., 'code' or 'code id_token')",
    )

    OIDC_RESPONSE_MODE: Optional[str] = Field(
        None,
        description="OAuth response_mode (query, fragment, form_post)",
    )

    OIDC_USE_PKCE: bool = Field(
        default=True,
        description="Send a PKCE code challenge with the authorization request",
    )

    OIDC_FETCH_USERINFO: bool = Field(
        default=True,
        description="Fetch the userinfo endpoint after the code exchange",
    )

    OIDC_INTERACTION_ERRORS: str = Field(
        default=DEFAULT_INTERACTION_ERRORS,
        description="Comma-separated provider error codes reported as a failed login instead of an error",
    )

    OIDC_SESSION_KEY: Optional[str] = Field(
        None,
        description="Session key for flow state (defaults to 'oidc:<issuer host>')",
    )

    # =========================================================================
    # Domain-based Access Control
    # =========================================================================

    ALLOWED_DOMAINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed email domains (empty allows everyone)",
    )

    # =========================================================================
    # Session Cookie Configuration
    # =========================================================================

    SESSION_SECRET: str = Field(
        ...,
        description="Secret key for signing the session cookie (must be cryptographically secure)",
        min_length=32,
    )

    SESSION_COOKIE_NAME: str = Field(
        default="rp_session",
        description="Name of the session cookie",
    )

    SESSION_MAX_AGE_SECONDS: int = Field(
        default=3600,
        description="Session cookie lifetime in seconds",
        ge=60,
        le=1209600,  # Max 14 days
    )

    SESSION_HTTPS_ONLY: bool = Field(
        default=False,
        description="Mark the session cookie Secure",
    )

    LOGIN_SUCCESS_REDIRECT: str = Field(
        default="/auth/me",
        description="Where to send the browser after a successful login",
    )

    # =========================================================================
    # HTTP Client / Server Configuration
    # =========================================================================

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for discovery, token and userinfo requests",
        gt=0,
        le=120,
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level",
    )

    HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the server",
    )

    PORT: int = Field(
        default=8080,
        description="Port to bind the server",
        ge=1,
        le=65535,
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def allowed_domains_list(self) -> List[str]:
        """
        Parse and return ALLOWED_DOMAINS as a clean list.

        Returns:
            List of lowercase domain strings, empty when unrestricted.
        """
        if not self.ALLOWED_DOMAINS:
            return []

        return [
            domain.strip().lower()
            for domain in self.ALLOWED_DOMAINS.split(",")
            if domain.strip()
        ]

    @property
    def interaction_errors_set(self) -> FrozenSet[str]:
        """Provider error codes treated as a failed login."""
        return frozenset(
            code.strip()
            for code in self.OIDC_INTERACTION_ERRORS.split(",")
            if code.strip()
        )

    @property
    def authorization_params(self) -> dict:
        """
        Authorization request parameters handed to the strategy.

        Unset options are omitted so the client defaults stay in effect.
        """
        params = {
            "redirect_uri": self.OIDC_REDIRECT_URI,
            "scope": self.OIDC_SCOPE,
            "response_type": self.OIDC_RESPONSE_TYPE,
        }
        if self.OIDC_RESPONSE_MODE:
            params["response_mode"] = self.OIDC_RESPONSE_MODE
        return params

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("OIDC_ISSUER_URL", "OIDC_REDIRECT_URI")
    @classmethod
    def validate_absolute_url(cls, v: str) -> str:
        """
        Validate that issuer and redirect URLs are absolute http(s) URLs.

        Raises:
            ValueError: If the URL has no scheme or host
        """
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(
                f"Invalid URL: '{v}'. Expected an absolute http(s) URL"
            )
        return v

    @field_validator("OIDC_RESPONSE_TYPE")
    @classmethod
    def validate_response_type(cls, v: str) -> str:
        """
        Validate response_type against the OAuth 2.0 / OIDC vocabulary.

        Raises:
            ValueError: If an unknown response type value is used
        """
        values = v.split()
        if not values:
            raise ValueError("OIDC_RESPONSE_TYPE must not be empty")

        unknown = [value for value in values if value not in _RESPONSE_TYPE_VALUES]
        if unknown:
            raise ValueError(
                f"Unsupported response_type value(s): {', '.join(unknown)}"
            )
        return " ".join(values)

    @field_validator("OIDC_TOKEN_ENDPOINT_AUTH_METHOD")
    @classmethod
    def validate_auth_method(cls, v: Optional[str]) -> Optional[str]:
        allowed = ["client_secret_basic", "client_secret_post", "none"]
        if v is not None and v not in allowed:
            raise ValueError(
                f"Token endpoint auth method must be one of {allowed}, got: {v}"
            )
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        if v.upper() not in allowed_levels:
            raise ValueError(
                f"Log level must be one of {allowed_levels}, got: {v}"
            )

        return v.upper()


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.

    Example:
        >>> from oidc_strategy.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.OIDC_ISSUER_URL)
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    This is called during application startup to surface risky but
    technically valid configurations.

    Returns:
        Dictionary with validation status and any warnings.

    Example:
        >>> status = validate_configuration(get_settings())
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    errors = []
    warnings = []

    if settings.OIDC_TOKEN_ENDPOINT_AUTH_METHOD in ("client_secret_basic", "client_secret_post") \
            and not settings.OIDC_CLIENT_SECRET:
        errors.append(
            f"OIDC_CLIENT_SECRET is required for {settings.OIDC_TOKEN_ENDPOINT_AUTH_METHOD}"
        )

    if not settings.OIDC_CLIENT_SECRET and not settings.OIDC_USE_PKCE:
        warnings.append("Public client without PKCE (set OIDC_USE_PKCE=true)")

    if "openid" not in settings.OIDC_SCOPE.split():
        warnings.append("OIDC_SCOPE does not include 'openid'; no ID token will be issued")

    if urlparse(settings.OIDC_REDIRECT_URI).scheme != "https":
        warnings.append("OIDC_REDIRECT_URI is not https (acceptable for local development only)")
    elif not settings.SESSION_HTTPS_ONLY:
        warnings.append("SESSION_HTTPS_ONLY is disabled while the redirect URI uses https")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "issuer": settings.OIDC_ISSUER_URL,
        "response_type": settings.OIDC_RESPONSE_TYPE,
        "interaction_errors": sorted(settings.interaction_errors_set),
    }
