"""Async client for the guided look workflow API.

The client keeps the reconciled ``LocalWorkflowView`` of the active
session, attaches the current confirmation token automatically, and
refuses a second request while one is outstanding.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from .local_state import (
    InMemoryKeyValueStorage,
    KeyValueStorage,
    LocalCreditMirror,
    load_or_create_device_id,
)
from .workflow.errors import WorkflowError, map_exception
from .workflow.reconcile import LocalWorkflowView, apply_snapshot, attach_local_selfie
from .workflow.snapshot import WorkflowSnapshot, parse_snapshot


logger = logging.getLogger("guided-look")


class ClientBusy(RuntimeError):
    """A request is already in flight for this client."""


@dataclass
class ActionResult:
    reply: str | None
    chat: bool
    snapshot: WorkflowSnapshot
    credits_used: int
    upgrade_prompt: bool
    notice: str | None
    credits: dict[str, Any]


@dataclass
class RewardResult:
    granted: bool
    reason: str | None = None
    credits_granted: int = 0


class WorkflowClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        account_id: str,
        conversation_id: str | None = None,
        storage: KeyValueStorage | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 150.0,
    ) -> None:
        self.conversation_id = conversation_id
        self.storage = storage or InMemoryKeyValueStorage()
        self.credits = LocalCreditMirror(self.storage, account_id)
        self.view = LocalWorkflowView()
        self.busy = False
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "WorkflowClient":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self.busy:
            raise ClientBusy("Wait for the current request to finish")
        self.busy = True
        try:
            response = await self._http.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPError as exc:
            raise WorkflowError(map_exception(exc), str(exc)) from exc
        finally:
            self.busy = False

    def switch_conversation(self, conversation_id: str | None) -> None:
        """Forget the local view; the server discards the old session on the next turn."""
        self.conversation_id = conversation_id
        self.view = LocalWorkflowView()

    async def send(self, action: str, message: str = "", **payload: Any) -> ActionResult:
        if action in ("confirm", "submit") and "confirmation_token" not in payload and self.view.confirmation_token:
            payload["confirmation_token"] = self.view.confirmation_token
        body = {
            "action": action,
            "message": message,
            "sessionId": self.view.session_id,
            "conversationId": self.conversation_id,
            "payload": _camelize(payload),
        }
        response = await self._request("POST", "/api/workflow/actions", json=body)
        data = response.json()
        snapshot = parse_snapshot(data["workflow"])
        self.view = apply_snapshot(self.view, snapshot, notice=data.get("notice"))
        credits = data.get("credits") or {}
        if credits:
            await self.credits.sync(credits)
        else:
            await self.credits.record_charge(int(data.get("creditsUsedThisCall") or 0))
        return ActionResult(
            reply=data.get("reply"),
            chat=bool(data.get("chat")),
            snapshot=snapshot,
            credits_used=int(data.get("creditsUsedThisCall") or 0),
            upgrade_prompt=bool(data.get("upgradePrompt")),
            notice=data.get("notice"),
            credits=credits,
        )

    async def start(self, message: str = "", **slots: Any) -> ActionResult:
        return await self.send("start", message, **slots)

    async def submit(self, message: str) -> ActionResult:
        return await self.send("submit", message)

    async def select_strategy(self, strategy: str) -> ActionResult:
        return await self.send("select_strategy", strategy=strategy)

    async def confirm(self) -> ActionResult:
        return await self.send("confirm")

    async def cancel(self) -> ActionResult:
        return await self.send("cancel")

    async def request_edit(self, instruction: str) -> ActionResult:
        return await self.send("request_edit", edit_instruction=instruction)

    async def upload_selfie(self, selfie_image: str) -> ActionResult:
        self.view = attach_local_selfie(self.view, selfie_image)
        return await self.send("upload_selfie", selfie_image=selfie_image)

    async def request_tryon(self) -> ActionResult:
        return await self.send("request_tryon")

    async def toggle_autosave(self, enabled: bool | None = None) -> ActionResult:
        return await self.send("toggle_autosave", autosave_enabled=enabled)

    async def save_item(self) -> ActionResult:
        return await self.send("save_item")

    async def refresh(self) -> WorkflowSnapshot | None:
        """Re-read the authoritative snapshot of the active session."""
        if not self.view.session_id:
            return None
        try:
            response = await self._request("GET", f"/api/workflow/{self.view.session_id}")
        except WorkflowError as exc:
            cause = exc.__cause__
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code == 404:
                logger.info("Workflow session %s is gone; starting over", self.view.session_id)
                self.view = LocalWorkflowView()
                return None
            raise
        snapshot = parse_snapshot(response.json())
        self.view = apply_snapshot(self.view, snapshot)
        return snapshot

    async def get_credits(self) -> dict[str, Any]:
        response = await self._request("GET", "/api/credits")
        credits = response.json()
        await self.credits.sync(credits)
        return credits

    async def claim_reward(self, traits: Mapping[str, object]) -> RewardResult:
        device_id = load_or_create_device_id(self.storage, traits)
        try:
            response = await self._request(
                "POST", "/api/credits/rewards/claim", json={"deviceId": device_id, **_camelize(dict(traits))}
            )
        except WorkflowError as exc:
            cause = exc.__cause__
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code == 429:
                return RewardResult(granted=False, reason=cause.response.json().get("detail"))
            raise
        data = response.json()
        if data.get("credits"):
            await self.credits.sync(data["credits"])
        return RewardResult(granted=bool(data.get("granted")), credits_granted=int(data.get("creditsGranted") or 0))


def _camelize(values: Mapping[str, Any]) -> dict[str, Any]:
    camel: dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        head, *rest = key.split("_")
        camel[head + "".join(part.title() for part in rest)] = value
    return camel
