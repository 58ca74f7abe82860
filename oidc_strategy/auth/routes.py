"""
Authentication routes for OIDC login and callback handling.

The routes are a thin host around :class:`~oidc_strategy.auth.strategy.Strategy`:
they pass each request to ``strategy.authenticate`` and turn the single
outcome into an HTTP response.
"""

import html
import logging
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from ..config import Settings
from ..models import (
    Error,
    Fail,
    Outcome,
    Redirect,
    Rejected,
    Success,
    TokenSet,
    UserProfile,
    Verified,
)
from .client import OIDCError
from .strategy import Strategy
from .utils import (
    extract_email_from_claims,
    get_user_display_name,
    validate_email_domain,
)

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "user"


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


def get_strategy(request: Request) -> Strategy:
    strategy = getattr(request.app.state, "strategy", None)
    if strategy is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication is not configured",
        )
    return strategy


# =============================================================================
# Default Verify Callback
# =============================================================================

def make_default_verify(settings: Settings):
    """
    Build the verify callback used by the application.

    The user profile is assembled from ID token claims merged with
    userinfo. Logins without a subject, or from an email domain outside
    ALLOWED_DOMAINS (when configured), are rejected.
    """
    allowed_domains = settings.allowed_domains_list

    def default_verify(tokenset: TokenSet, userinfo: Optional[Dict[str, Any]] = None):
        claims: Dict[str, Any] = {}
        if tokenset.id_token:
            claims.update(tokenset.claims())
        if userinfo:
            claims.update(userinfo)

        if not claims.get("sub"):
            return Rejected(info={"message": "No subject in ID token or userinfo"})

        email = extract_email_from_claims(claims)
        if allowed_domains and not validate_email_domain(email, allowed_domains):
            return Rejected(info={"message": "Email domain is not allowed"})

        profile = UserProfile(
            sub=claims["sub"],
            email=email,
            name=get_user_display_name(claims),
            issuer=claims.get("iss"),
        )
        return Verified(user=profile.model_dump())

    return default_verify


# =============================================================================
# Login / Callback Endpoints
# =============================================================================

@auth_router.api_route("/login", methods=["GET", "POST"])
async def login(request: Request) -> Response:
    """Start the OIDC login by redirecting to the provider."""
    strategy = get_strategy(request)
    outcome = await strategy.authenticate(request)
    return _render_outcome(request, outcome)


@auth_router.api_route("/callback", methods=["GET", "POST"])
async def callback(request: Request) -> Response:
    """
    Handle the authorization response (query string or form_post body).

    Success stores the user profile in the session and redirects to
    LOGIN_SUCCESS_REDIRECT; Fail and Error render an error page.
    """
    strategy = get_strategy(request)
    outcome = await strategy.authenticate(request)
    return _render_outcome(request, outcome)


@auth_router.get("/me")
async def me(request: Request) -> Dict[str, Any]:
    """Return the logged-in user's profile."""
    user = request.session.get(SESSION_USER_KEY) if "session" in request.scope else None
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user


@auth_router.post("/logout")
async def logout(request: Request) -> Dict[str, str]:
    """Forget the logged-in user."""
    if "session" in request.scope:
        request.session.pop(SESSION_USER_KEY, None)
    return {"status": "logged_out"}


# =============================================================================
# Outcome Rendering
# =============================================================================

def _render_outcome(request: Request, outcome: Outcome) -> Response:
    if isinstance(outcome, Redirect):
        return RedirectResponse(url=outcome.url, status_code=outcome.status)

    if isinstance(outcome, Success):
        request.session[SESSION_USER_KEY] = outcome.user
        logger.info(
            "User authenticated",
            extra={"user_id": outcome.user.get("sub") if isinstance(outcome.user, dict) else None},
        )
        settings: Settings = request.app.state.settings
        return RedirectResponse(url=settings.LOGIN_SUCCESS_REDIRECT, status_code=status.HTTP_303_SEE_OTHER)

    if isinstance(outcome, Fail):
        return _render_error_page(
            title="Authentication Failed",
            message=outcome.message or "You could not be signed in.",
            status_code=outcome.status or status.HTTP_401_UNAUTHORIZED,
        )

    if isinstance(outcome, Error):
        error = outcome.error
        logger.error(
            f"Authentication error: {error}",
            extra={"path": request.url.path, "exception_type": type(error).__name__},
            exc_info=error,
        )
        if isinstance(error, (OIDCError, httpx.HTTPError)):
            return _render_error_page(
                title="Authentication Error",
                message="The identity provider could not complete the login. Please try again.",
                status_code=status.HTTP_502_BAD_GATEWAY,
            )
        return _render_error_page(
            title="Unexpected Error",
            message="An unexpected error occurred during authentication. Please try again.",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    raise TypeError(f"Unknown outcome: {outcome!r}")


def _render_error_page(title: str, message: str, status_code: int = 400) -> HTMLResponse:
    """
    Render error page for authentication failures.

    Args:
        title: Error title
        message: Error message (no PII)
        status_code: HTTP status code
    """
    html_content = f"""
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8">
        <title>{html.escape(title)}</title>
    </head>
    <body>
        <h1>{html.escape(title)}</h1>
        <p class="message">{html.escape(message)}</p>
        <a href="/auth/login">Try Again</a>
    </body>
    </html>
    """
    return HTMLResponse(content=html_content, status_code=status_code)
