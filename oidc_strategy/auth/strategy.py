"""
OpenID Connect Authentication Strategy
======================================

Drives one login across two HTTP requests:

1. Initiation: generate state / nonce / PKCE material, keep it in the
   request's session under a per-issuer key, redirect to the provider.
2. Callback: consume the stored material (one-shot), let the protocol
   client validate and exchange the response, optionally fetch userinfo,
   then ask the application's verify callback who the user is.

Every call to :meth:`Strategy.authenticate` returns exactly one outcome
(Success, Fail, Error or Redirect) and never raises.
"""

import enum
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from starlette.requests import Request

from ..models import (
    INTERACTION_REQUIRED_ERRORS,
    Error,
    Fail,
    FlowState,
    Outcome,
    Redirect,
    Rejected,
    Success,
    TokenSet,
    Verified,
    VerifyFailed,
    VerifyResult,
)
from .client import Client, OPError
from .session import FlowStateStore, session_key_for
from .utils import (
    expected_response_fields,
    generate_pkce_pair,
    generate_random,
    requires_nonce,
)

logger = logging.getLogger(__name__)

VerifyCallback = Callable[..., Union[VerifyResult, Awaitable[VerifyResult]]]


# =============================================================================
# Exceptions
# =============================================================================

class SessionRequiredError(RuntimeError):
    """The request has no session; SessionMiddleware is not installed."""
    pass


# =============================================================================
# Configuration
# =============================================================================

class VerifyShape(enum.Enum):
    """
    Arguments handed to the verify callback.

    Chosen once when the strategy is built:

    - TOKENSET: ``verify(tokenset)``
    - TOKENSET_USERINFO: ``verify(tokenset, userinfo)``
    - REQUEST_TOKENSET: ``verify(request, tokenset)``
    - REQUEST_TOKENSET_USERINFO: ``verify(request, tokenset, userinfo)``
    """

    TOKENSET = (False, False)
    TOKENSET_USERINFO = (False, True)
    REQUEST_TOKENSET = (True, False)
    REQUEST_TOKENSET_USERINFO = (True, True)

    @property
    def with_request(self) -> bool:
        return self.value[0]

    @property
    def with_userinfo(self) -> bool:
        return self.value[1]

    @classmethod
    def select(cls, pass_req_to_callback: bool, use_userinfo: bool) -> "VerifyShape":
        return cls((bool(pass_req_to_callback), bool(use_userinfo)))


class StrategyOptions(BaseModel):
    """Immutable strategy configuration."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    client: Client
    params: Dict[str, Any] = Field(default_factory=dict)
    pass_req_to_callback: bool = False
    use_userinfo: bool = False
    use_pkce: Union[bool, Literal["S256", "plain"]] = False
    session_key: Optional[str] = None
    interaction_errors: FrozenSet[str] = INTERACTION_REQUIRED_ERRORS


def _resolve_pkce_method(use_pkce: Union[bool, str], client: Client) -> Optional[str]:
    if use_pkce is False:
        return None
    if use_pkce is not True:
        return use_pkce

    supported = client.issuer.metadata.code_challenge_methods_supported
    if not supported or "S256" in supported:
        return "S256"
    if "plain" in supported:
        return "plain"
    raise ValueError(
        f"Issuer supports neither S256 nor plain PKCE: {supported}"
    )


# =============================================================================
# Strategy
# =============================================================================

class Strategy:
    """
    OpenID Connect relying party authentication strategy.

    Args:
        options: A configured Client, a StrategyOptions, or a dict of
                 StrategyOptions fields
        verify: Application callback turning a token set into a user
        **kwargs: StrategyOptions fields when ``options`` is a Client

    Example:
        >>> strategy = Strategy(client, lambda tokenset: Verified(user=tokenset.claims()))
        >>> outcome = await strategy.authenticate(request)
    """

    name = "oidc"

    def __init__(
        self,
        options: Union[Client, StrategyOptions, Dict[str, Any]],
        verify: VerifyCallback,
        **kwargs: Any,
    ):
        if isinstance(options, Client):
            options = StrategyOptions(client=options, **kwargs)
        elif isinstance(options, dict):
            options = StrategyOptions(**{**options, **kwargs})
        elif kwargs:
            options = options.model_copy(update=kwargs)

        if not callable(verify):
            raise TypeError("verify callback must be callable")

        self.options = options
        self.shape = VerifyShape.select(options.pass_req_to_callback, options.use_userinfo)
        self.session_key = options.session_key or session_key_for(options.client.issuer.hostname)

        self._client = options.client
        self._verify = verify
        self._params = dict(options.params)
        self._pkce_method = _resolve_pkce_method(options.use_pkce, self._client)
        self._response_type = self._params.get("response_type") or self._client.response_types[0]
        self._callback_fields = {"error", "code", "state"} | expected_response_fields(self._response_type)

    @property
    def redirect_uri(self) -> Optional[str]:
        if self._params.get("redirect_uri"):
            return self._params["redirect_uri"]
        return self._client.redirect_uris[0] if self._client.redirect_uris else None

    async def authenticate(self, request: Request) -> Outcome:
        """
        Handle one request of the login flow.

        Returns:
            Redirect for initiation requests; Success, Fail or Error for
            callback requests; Error when the request has no session
        """
        if "session" not in request.scope:
            return Error(error=SessionRequiredError(
                "OpenID Connect authentication requires session support; "
                "install starlette's SessionMiddleware"
            ))

        try:
            params = await self.callback_params(request)
            store = FlowStateStore(request.session, self.session_key)

            if self.is_callback(params):
                return await self._callback(request, params, store)
            return self._initiate(store)
        except Exception as e:
            logger.error(
                f"Unexpected error during authentication: {e}",
                extra={"path": request.url.path, "method": request.method},
                exc_info=True,
            )
            return Error(error=e)

    async def callback_params(self, request: Request) -> Dict[str, Any]:
        """Authorization response parameters: form body for POST, query string otherwise."""
        if request.method == "POST":
            form = await request.form()
            return {key: value for key, value in form.items() if isinstance(value, str)}
        return dict(request.query_params)

    def is_callback(self, params: Dict[str, Any]) -> bool:
        return any(field in params for field in self._callback_fields)

    # -------------------------------------------------------------------------
    # Initiation
    # -------------------------------------------------------------------------

    def _initiate(self, store: FlowStateStore) -> Redirect:
        params = self._client.authorization_params(self._params)

        params["state"] = params.get("state") or generate_random()
        if requires_nonce(params.get("response_type"), params.get("response_mode")):
            params["nonce"] = params.get("nonce") or generate_random()

        flow_state = FlowState(
            state=params["state"],
            nonce=params.get("nonce"),
            max_age=params.get("max_age"),
            response_type=self._params.get("response_type"),
        )

        if self._pkce_method:
            verifier, challenge = generate_pkce_pair(self._pkce_method)
            params["code_challenge"] = challenge
            params["code_challenge_method"] = self._pkce_method
            flow_state.code_verifier = verifier

        store.set(flow_state)

        logger.info(
            "Starting authorization request",
            extra={
                "session_key": self.session_key,
                "response_type": params.get("response_type"),
                "nonce": "nonce" in params,
                "pkce": self._pkce_method,
            },
        )
        return Redirect(url=self._client.authorization_url(params))

    # -------------------------------------------------------------------------
    # Callback
    # -------------------------------------------------------------------------

    async def _callback(
        self,
        request: Request,
        params: Dict[str, Any],
        store: FlowStateStore,
    ) -> Outcome:
        checks = store.pop() or FlowState()

        try:
            tokenset = await self._client.callback(self.redirect_uri, params, checks)
        except OPError as e:
            if "error" in params and e.error in self.options.interaction_errors:
                logger.info(
                    f"Authorization response reported {e.error}",
                    extra={"session_key": self.session_key},
                )
                return Fail(message=e.error, error=e)
            logger.warning(
                f"OpenID Provider error: {e.error}",
                extra={"session_key": self.session_key, "status_code": e.status_code},
            )
            return Error(error=e)
        except Exception as e:
            logger.warning(
                f"Authorization callback failed: {e}",
                extra={"session_key": self.session_key, "exception_type": type(e).__name__},
            )
            return Error(error=e)

        try:
            return await self._run_verify(request, tokenset)
        except Exception as e:
            logger.warning(
                f"Verification failed: {e}",
                extra={"exception_type": type(e).__name__},
            )
            return Error(error=e)

    async def _run_verify(self, request: Request, tokenset: TokenSet) -> Outcome:
        args: list = [tokenset]

        if self.shape.with_userinfo:
            userinfo = None
            if tokenset.access_token:
                userinfo = await self._client.userinfo(tokenset.access_token)
            args.append(userinfo)

        if self.shape.with_request:
            args.insert(0, request)

        result = self._verify(*args)
        if inspect.isawaitable(result):
            result = await result

        return self._outcome_for(result)

    @staticmethod
    def _outcome_for(result: Any) -> Outcome:
        if isinstance(result, VerifyFailed):
            return Error(error=result.error)

        if isinstance(result, Rejected):
            info = result.info
            if isinstance(info, dict):
                info = info.get("message")
            return Fail(message=info if isinstance(info, str) else None)

        if isinstance(result, Verified):
            if not result.user:
                return Fail()
            return Success(user=result.user, info=result.info)

        return Error(error=TypeError(
            f"verify callback must return Verified, Rejected or VerifyFailed, got {type(result).__name__}"
        ))
