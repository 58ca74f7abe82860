"""
Authentication Package

This package implements an OpenID Connect relying party on top of
Starlette sessions.

Modules:
- strategy: The authentication strategy (initiation and callback state machine)
- client: Issuer discovery, authorization URLs, code exchange, userinfo
- session: Per-issuer flow state slot in the request session
- utils: state / nonce / PKCE generation and claim helpers
- routes: FastAPI endpoints (/auth/login, /auth/callback, /auth/me, /auth/logout)

The authentication flow:
1. Client hits /auth/login; the strategy stores state (and nonce / PKCE
   verifier) in the session and redirects to the provider
2. User authenticates at the provider
3. Provider redirects back to /auth/callback
4. The strategy consumes the flow state, exchanges the code, optionally
   fetches userinfo and asks the verify callback for the user
5. The user profile is kept in the session
"""

from .client import Client, Issuer, OIDCError, OPError, RPError
from .strategy import SessionRequiredError, Strategy, StrategyOptions, VerifyShape

__all__ = [
    "Client",
    "Issuer",
    "OIDCError",
    "OPError",
    "RPError",
    "SessionRequiredError",
    "Strategy",
    "StrategyOptions",
    "VerifyShape",
]
