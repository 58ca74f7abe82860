"""
FastAPI Application Factory
===========================

Runs the OpenID Connect relying party as a small web service.

Routers:
    - /auth/*   : Login initiation, callback, current user, logout
    - /health   : Health check endpoint

Environment Variables Required:
    - OIDC_ISSUER_URL: Issuer or discovery document URL
    - OIDC_CLIENT_ID: Registered client ID
    - OIDC_REDIRECT_URI: Registered callback URL (ending in /auth/callback)
    - SESSION_SECRET: Secret for signing the session cookie
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn oidc_strategy.main:create_app --factory --reload --port 8080

    Production:
        uvicorn oidc_strategy.main:create_app --factory --host 0.0.0.0 --port 8080 --workers 4
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from . import __version__
from .auth.client import Client, Issuer
from .auth.routes import auth_router, make_default_verify
from .auth.strategy import Strategy
from .config import Settings, get_settings, validate_configuration
from .models import ErrorResponse

logger = logging.getLogger(__name__)


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


async def build_strategy(settings: Settings) -> Strategy:
    """
    Discover the issuer and build the strategy described by the settings.

    Raises:
        OIDCError: If discovery fails
    """
    issuer = await Issuer.discover(settings.OIDC_ISSUER_URL, timeout=settings.HTTP_TIMEOUT_SECONDS)
    client = Client(
        issuer,
        client_id=settings.OIDC_CLIENT_ID,
        client_secret=settings.OIDC_CLIENT_SECRET,
        redirect_uris=[settings.OIDC_REDIRECT_URI],
        response_types=[settings.OIDC_RESPONSE_TYPE],
        token_endpoint_auth_method=settings.OIDC_TOKEN_ENDPOINT_AUTH_METHOD,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    return Strategy(
        client,
        make_default_verify(settings),
        params=settings.authorization_params,
        use_userinfo=settings.OIDC_FETCH_USERINFO,
        use_pkce=settings.OIDC_USE_PKCE,
        session_key=settings.OIDC_SESSION_KEY,
        interaction_errors=settings.interaction_errors_set,
    )


def create_app(settings: Optional[Settings] = None, strategy: Optional[Strategy] = None) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings to use (loaded from the environment when omitted)
        strategy: Prebuilt strategy (built from discovery at startup when omitted)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL)

        report = validate_configuration(settings)
        for warning in report["warnings"]:
            logger.warning(f"Configuration warning: {warning}")
        if not report["valid"]:
            raise RuntimeError(f"Invalid configuration: {'; '.join(report['errors'])}")

        owns_strategy = app.state.strategy is None
        if owns_strategy:
            app.state.strategy = await build_strategy(settings)

        logger.info(
            "Relying party started",
            extra={"issuer": settings.OIDC_ISSUER_URL, "version": __version__},
        )

        yield

        if owns_strategy:
            await app.state.strategy.options.client.aclose()
            app.state.strategy = None
        logger.info("Relying party shutdown complete")

    app = FastAPI(
        title="OIDC Relying Party",
        description="OpenID Connect login for Starlette / FastAPI applications",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.strategy = strategy

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET,
        session_cookie=settings.SESSION_COOKIE_NAME,
        max_age=settings.SESSION_MAX_AGE_SECONDS,
        https_only=settings.SESSION_HTTPS_ONLY,
        same_site="lax",
    )

    app.include_router(auth_router)

    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": "oidc-strategy",
            "version": __version__,
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log unhandled errors and return a standardized error body."""
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )
        body = ErrorResponse(
            error="internal_server_error",
            message="An unexpected error occurred",
        )
        return JSONResponse(status_code=500, content=body.model_dump(exclude_none=True))

    return app


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "oidc_strategy.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
