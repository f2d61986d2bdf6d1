"""Cost confirmation for credit-gated actions.

A costed action always goes through ``request_confirmation`` first, which
shows the price and issues a single-use token bound to the session, the
action and the cost.  ``confirm`` consumes the token and moves the session
into its running status before any provider call is made, so a repeated
confirm finds no token and is rejected.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

from .state import WorkflowSession


CONFIRMING_STATUS_BY_ACTION = {
    "generate": "confirming",
    "edit": "confirming",
    "tryon": "tryon_confirming",
}
RUNNING_STATUS_BY_ACTION = {
    "generate": "generating",
    "edit": "editing",
    "tryon": "tryon_generating",
}


class InvalidToken(Exception):
    """The token is stale, forged, or does not belong to this session."""


class PendingActionConflict(Exception):
    """Another costed action is already waiting for confirmation."""

    def __init__(self, pending_action: str) -> None:
        super().__init__(f"Action {pending_action} is still pending")
        self.pending_action = pending_action


class ConfirmationGate:
    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("A confirmation secret is required")
        self._key = secret.encode("utf-8")

    def _signature(self, nonce: str, session_id: str, action: str, cost: int) -> str:
        message = f"{nonce}|{session_id}|{action}|{cost}".encode("utf-8")
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def issue_token(self, session_id: str, action: str, cost: int) -> str:
        nonce = secrets.token_urlsafe(12)
        return f"{nonce}.{self._signature(nonce, session_id, action, cost)}"

    def verify_token(self, token: str, session_id: str, action: str, cost: int) -> bool:
        nonce, _, signature = (token or "").partition(".")
        if not nonce or not signature:
            return False
        expected = self._signature(nonce, session_id, action, cost)
        return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))

    def request_confirmation(self, session: WorkflowSession, action: str, cost_credits: int) -> str:
        if action not in CONFIRMING_STATUS_BY_ACTION:
            raise ValueError(f"Unknown costed action: {action}")
        if session.pending_action is not None:
            raise PendingActionConflict(session.pending_action)
        session.transition(CONFIRMING_STATUS_BY_ACTION[action])
        session.pending_action = action
        session.estimated_cost_credits = cost_credits
        session.error_code = None
        session.confirmation_token = self.issue_token(session.session_id, action, cost_credits)
        return session.confirmation_token

    def confirm(self, session: WorkflowSession, token: str | None) -> str:
        """Consume ``token`` and return the confirmed action.

        The session is left untouched when the token is rejected.
        """
        action = session.pending_action
        current = session.confirmation_token
        if action is None or current is None or not token:
            raise InvalidToken("No confirmation is pending")
        if session.status != CONFIRMING_STATUS_BY_ACTION[action]:
            raise InvalidToken("Session is not awaiting this confirmation")
        if not hmac.compare_digest(token.encode("utf-8"), current.encode("utf-8")):
            raise InvalidToken("Token does not match the pending confirmation")
        if not self.verify_token(token, session.session_id, action, session.estimated_cost_credits):
            raise InvalidToken("Token is not bound to this action")
        session.transition(RUNNING_STATUS_BY_ACTION[action])
        return action

    def cancel(self, session: WorkflowSession) -> str | None:
        """Drop the pending action and fall back to the last stable status."""
        action = session.pending_action
        session.clear_pending()
        session.transition(session.stable_status)
        return action
