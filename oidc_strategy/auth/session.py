"""
Flow State Session Storage
==========================

Keeps the per-login anti-forgery material (state, nonce, PKCE verifier)
in the session of the request that started the login, so the callback
request can prove it belongs to the same browser.

The session is the mapping installed by Starlette's SessionMiddleware.
It is owned by a single request; nothing here is shared across requests.
"""

import logging
from typing import Any, MutableMapping, Optional

from pydantic import ValidationError

from ..models import FlowState

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "oidc:"


def session_key_for(issuer_hostname: str) -> str:
    """Namespace flow state per issuer so several providers can coexist."""
    return f"{SESSION_KEY_PREFIX}{issuer_hostname}"


class FlowStateStore:
    """
    get / set / delete access to one flow state slot in a session mapping.

    Args:
        session: The request's session mapping
        key: Namespaced session key (see session_key_for)
    """

    def __init__(self, session: MutableMapping[str, Any], key: str):
        self.session = session
        self.key = key

    def get(self) -> Optional[FlowState]:
        """
        Load the stored flow state.

        Returns:
            FlowState, or None when the slot is absent or unreadable
        """
        raw = self.session.get(self.key)
        if raw is None:
            return None
        if not isinstance(raw, dict):
            logger.warning("Discarding malformed flow state", extra={"session_key": self.key})
            return None
        try:
            return FlowState(**raw)
        except ValidationError:
            logger.warning("Discarding invalid flow state", extra={"session_key": self.key})
            return None

    def set(self, flow_state: FlowState) -> None:
        """Store flow state, replacing an earlier login attempt for this issuer."""
        self.session[self.key] = flow_state.to_session()

    def delete(self) -> None:
        self.session.pop(self.key, None)

    def pop(self) -> Optional[FlowState]:
        """
        Load and delete the flow state in one step.

        The slot is removed whether it held a usable entry or not, so a
        callback can never be replayed against the same flow state.
        """
        present = self.key in self.session
        flow_state = self.get()
        self.delete()
        logger.debug(
            "Consumed flow state",
            extra={"session_key": self.key, "present": present},
        )
        return flow_state
