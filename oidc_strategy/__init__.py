"""
OpenID Connect relying party for Starlette / FastAPI.

The core is :class:`~oidc_strategy.auth.strategy.Strategy`: one call to
``await strategy.authenticate(request)`` per request, returning exactly one
of Success, Fail, Error or Redirect.
"""

from .auth.client import Client, Issuer, OIDCError, OPError, RPError
from .auth.strategy import SessionRequiredError, Strategy, StrategyOptions, VerifyShape
from .models import (
    Error,
    Fail,
    FlowState,
    IssuerMetadata,
    Redirect,
    Rejected,
    Success,
    TokenSet,
    Verified,
    VerifyFailed,
)

__version__ = "1.0.0"

__all__ = [
    "Client",
    "Error",
    "Fail",
    "FlowState",
    "Issuer",
    "IssuerMetadata",
    "OIDCError",
    "OPError",
    "RPError",
    "Redirect",
    "Rejected",
    "SessionRequiredError",
    "Strategy",
    "StrategyOptions",
    "Success",
    "TokenSet",
    "Verified",
    "VerifyFailed",
    "VerifyShape",
]
