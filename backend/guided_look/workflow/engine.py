"""Turn handling for the guided look workflow.

``WorkflowEngine.handle`` applies one user action to a session and returns
the reply for that turn.  Costed actions always pass through the
confirmation gate; credits are debited once, after the provider succeeds,
so a failed or timed-out attempt never needs a refund.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .. import analytics
from ..analytics import AnalyticsSink
from ..closet import GarmentCollection
from ..credits.ledger import CreditLedger
from ..providers.base import GenerationProvider, TryOnOptions, TryOnProvider
from . import messages
from .confirmation import ConfirmationGate, InvalidToken, PendingActionConflict
from .errors import (
    INSUFFICIENT_CREDITS,
    UNKNOWN,
    UPGRADE_PROMPT_CODES,
    VALIDATION_MISSING_FIELD,
    ProviderError,
    map_exception,
    user_message_for,
)
from .intent import (
    classify_intent,
    is_affirmative,
    is_negative,
    missing_fields_for,
    parse_look_creation_fields,
    parse_look_strategy,
)
from .state import CollectedSlots, GeneratedItem, WorkflowSession


logger = logging.getLogger("guided-look")

ACTIONS: tuple[str, ...] = (
    "start",
    "submit",
    "select_strategy",
    "confirm",
    "cancel",
    "request_edit",
    "request_tryon",
    "upload_selfie",
    "toggle_autosave",
    "save_item",
)


@dataclass
class WorkflowPayload:
    occasion: str | None = None
    style: str | None = None
    category: str | None = None
    strategy: str | None = None
    confirmation_token: str | None = None
    edit_instruction: str | None = None
    selfie_image: str | None = None
    autosave_enabled: bool | None = None

    def slot_fields(self) -> dict[str, str]:
        fields = {"occasion": self.occasion, "style": self.style, "category": self.category}
        return {name: value.strip().lower() for name, value in fields.items() if value and value.strip()}


@dataclass
class WorkflowRequest:
    action: str = "submit"
    message: str = ""
    payload: WorkflowPayload = field(default_factory=WorkflowPayload)


@dataclass
class WorkflowTurn:
    session: WorkflowSession
    reply: str | None = None
    chat: bool = False
    credits_used: int = 0
    upgrade_prompt: bool = False
    notice: str | None = None
    persist: bool = True


# Persists a confirmed session in its running status if the token is still current.
Claim = Callable[[WorkflowSession, str], Awaitable[bool]]


@dataclass(frozen=True)
class ActionCosts:
    look: int = 2
    edit: int = 2
    tryon: int = 4

    def for_action(self, action: str) -> int:
        return {"generate": self.look, "edit": self.edit, "tryon": self.tryon}[action]


class WorkflowEngine:
    def __init__(
        self,
        generation_provider: GenerationProvider,
        tryon_provider: TryOnProvider,
        gate: ConfirmationGate,
        *,
        costs: ActionCosts = ActionCosts(),
        generation_timeout: float = 90.0,
        tryon_timeout: float = 120.0,
        collection: GarmentCollection | None = None,
        analytics_sink: AnalyticsSink | None = None,
        tryon_options: TryOnOptions | None = None,
    ) -> None:
        self.generation_provider = generation_provider
        self.tryon_provider = tryon_provider
        self.gate = gate
        self.costs = costs
        self.generation_timeout = generation_timeout
        self.tryon_timeout = tryon_timeout
        self.collection = collection
        self.analytics_sink = analytics_sink
        self.tryon_options = tryon_options or TryOnOptions()

    async def _emit(self, event: str, session: WorkflowSession, **properties: Any) -> None:
        await analytics.emit(self.analytics_sink, event, session_id=session.session_id, **properties)

    async def handle(
        self,
        session: WorkflowSession,
        request: WorkflowRequest,
        ledger: CreditLedger,
        *,
        claim: Claim | None = None,
    ) -> WorkflowTurn:
        """Apply one action to ``session``.

        ``claim`` is awaited after a token is accepted and before the
        ledger or any provider is touched.  When it returns False another
        request already owns the confirmation, and the returned turn is
        marked as not to be persisted.
        """
        if request.action not in ACTIONS:
            raise ValueError(f"Unknown workflow action: {request.action}")
        if session.is_running:
            # Only an interrupted turn can leave a running status behind.
            logger.warning("Recovering session %s stuck in %s", session.session_id, session.status)
            session.return_to_stable(error_code=UNKNOWN)

        text = (request.message or "").strip()
        payload = request.payload
        action = request.action

        if action == "start":
            session = WorkflowSession(autosave_enabled=session.autosave_enabled)
            return await self._start_creation(session, text, payload)
        if action == "confirm":
            return await self._confirm(session, payload.confirmation_token, ledger, claim)
        if action == "cancel":
            return self._cancel(session)
        if action == "select_strategy":
            if session.pending_action is not None:
                return self._pending_reminder(session, PendingActionConflict(session.pending_action))
            strategy = payload.strategy or parse_look_strategy(text)
            if strategy not in ("direct", "guided"):
                return WorkflowTurn(session, reply=messages.mode_choice_message(self.costs.look))
            return await self._apply_strategy(session, strategy)
        if action == "request_edit":
            return await self._request_edit(session, payload.edit_instruction or text)
        if action == "request_tryon":
            if payload.selfie_image:
                invalid = self._store_selfie(session, payload.selfie_image)
                if invalid:
                    return invalid
            return await self._request_tryon(session)
        if action == "upload_selfie":
            invalid = self._store_selfie(session, payload.selfie_image)
            if invalid:
                return invalid
            return WorkflowTurn(session, reply=messages.selfie_loaded_message(self.costs.tryon))
        if action == "toggle_autosave":
            enabled = payload.autosave_enabled
            session.autosave_enabled = (not session.autosave_enabled) if enabled is None else bool(enabled)
            return WorkflowTurn(session, reply=messages.autosave_message(session.autosave_enabled))
        if action == "save_item":
            return await self._save_item_turn(session)
        return await self._submit(session, text, payload, ledger, claim)

    async def _submit(
        self,
        session: WorkflowSession,
        text: str,
        payload: WorkflowPayload,
        ledger: CreditLedger,
        claim: Claim | None = None,
    ) -> WorkflowTurn:
        if session.awaiting_confirmation:
            if is_affirmative(text):
                return await self._confirm(session, payload.confirmation_token, ledger, claim)
            if is_negative(text):
                return self._cancel(session)
            return WorkflowTurn(
                session,
                reply=messages.pending_action_reminder(session.pending_action or "", session.estimated_cost_credits),
            )
        if session.status == "choosing_mode":
            if is_negative(text):
                return self._cancel(session)
            strategy = payload.strategy or parse_look_strategy(text)
            session.collected.absorb({**parse_look_creation_fields(text), **payload.slot_fields()})
            if strategy is None:
                return WorkflowTurn(session, reply=messages.mode_choice_message(self.costs.look))
            return await self._apply_strategy(session, strategy)
        if session.status == "collecting":
            if is_negative(text):
                return self._cancel(session)
            return await self._collect(session, text, payload)

        intent = classify_intent(text, has_generated_item=session.generated_item is not None)
        if intent == "edit":
            return await self._request_edit(session, text)
        if intent == "tryon":
            return await self._request_tryon(session)
        if intent == "create" or payload.slot_fields():
            return await self._start_creation(session, text, payload)
        return WorkflowTurn(session, chat=True)

    async def _start_creation(self, session: WorkflowSession, text: str, payload: WorkflowPayload) -> WorkflowTurn:
        session.collected = CollectedSlots()
        session.strategy = None
        session.error_code = None
        filled = session.collected.absorb({**parse_look_creation_fields(text), **payload.slot_fields()}, text)
        await self._emit(analytics.SESSION_STARTED, session, prefilled=filled)
        for slot in filled:
            await self._emit(analytics.FIELD_COMPLETED, session, field=slot)

        strategy = payload.strategy or parse_look_strategy(text)
        if strategy in ("direct", "guided"):
            return await self._apply_strategy(session, strategy)
        if not missing_fields_for("guided", session.collected):
            session.strategy = "guided"
            return await self._request_generation(session)
        if session.collected.category:
            session.transition("choosing_mode")
            return WorkflowTurn(session, reply=messages.mode_choice_message(self.costs.look))
        return await self._apply_strategy(session, "guided")

    async def _apply_strategy(self, session: WorkflowSession, strategy: str) -> WorkflowTurn:
        session.strategy = strategy
        missing = missing_fields_for(strategy, session.collected)
        if missing:
            session.transition("collecting", missing_fields=missing)
            return WorkflowTurn(session, reply=messages.field_question(missing[0], strategy=strategy))
        return await self._request_generation(session)

    async def _collect(self, session: WorkflowSession, text: str, payload: WorkflowPayload) -> WorkflowTurn:
        asked = session.missing_fields[0]
        filled = session.collected.absorb({**parse_look_creation_fields(text), **payload.slot_fields()})
        for slot in filled:
            await self._emit(analytics.FIELD_COMPLETED, session, field=slot)
        missing = missing_fields_for(session.strategy, session.collected)
        if not missing:
            session.error_code = None
            return await self._request_generation(session)
        session.transition("collecting", missing_fields=missing)
        if missing[0] == asked and not filled:
            session.error_code = VALIDATION_MISSING_FIELD
            return WorkflowTurn(session, reply=messages.field_reprompt(asked))
        session.error_code = None
        return WorkflowTurn(session, reply=messages.field_question(missing[0], strategy=session.strategy))

    async def _request_generation(self, session: WorkflowSession) -> WorkflowTurn:
        cost = self.costs.for_action("generate")
        try:
            self.gate.request_confirmation(session, "generate", cost)
        except PendingActionConflict as exc:
            return self._pending_reminder(session, exc)
        await self._emit(analytics.COST_SHOWN, session, action="generate", cost=cost)
        return WorkflowTurn(session, reply=messages.look_cost_message(session.collected.as_dict(), cost))

    async def _request_edit(self, session: WorkflowSession, instruction: str | None) -> WorkflowTurn:
        if session.generated_item is None:
            return WorkflowTurn(session, reply=messages.NO_GENERATED_ITEM_MESSAGE)
        instruction = (instruction or "").strip()
        if not instruction:
            return WorkflowTurn(session, reply=messages.EMPTY_EDIT_MESSAGE)
        cost = self.costs.for_action("edit")
        try:
            self.gate.request_confirmation(session, "edit", cost)
        except PendingActionConflict as exc:
            return self._pending_reminder(session, exc)
        session.edit_instruction = instruction
        await self._emit(analytics.COST_SHOWN, session, action="edit", cost=cost)
        return WorkflowTurn(session, reply=messages.edit_cost_message(instruction, cost))

    async def _request_tryon(self, session: WorkflowSession) -> WorkflowTurn:
        if session.generated_item is None:
            return WorkflowTurn(session, reply=messages.NO_GENERATED_ITEM_MESSAGE)
        if not session.tryon_selfie_image:
            return WorkflowTurn(session, reply=messages.NEEDS_SELFIE_MESSAGE)
        cost = self.costs.for_action("tryon")
        try:
            self.gate.request_confirmation(session, "tryon", cost)
        except PendingActionConflict as exc:
            return self._pending_reminder(session, exc)
        await self._emit(analytics.COST_SHOWN, session, action="tryon", cost=cost)
        return WorkflowTurn(session, reply=messages.tryon_cost_message(cost))

    def _pending_reminder(self, session: WorkflowSession, exc: PendingActionConflict) -> WorkflowTurn:
        return WorkflowTurn(
            session,
            reply=messages.pending_action_reminder(exc.pending_action, session.estimated_cost_credits),
        )

    def _cancel(self, session: WorkflowSession) -> WorkflowTurn:
        has_item = session.generated_item is not None
        if session.pending_action is not None:
            action = self.gate.cancel(session)
            return WorkflowTurn(session, reply=messages.cancelled_message(action, has_item))
        if session.status in ("collecting", "choosing_mode"):
            session.collected = CollectedSlots()
            session.strategy = None
            session.return_to_stable()
            return WorkflowTurn(session, reply=messages.cancelled_message("generate", has_item))
        return WorkflowTurn(session, reply=messages.cancelled_message(None, has_item))

    async def _confirm(
        self, session: WorkflowSession, token: str | None, ledger: CreditLedger, claim: Claim | None = None
    ) -> WorkflowTurn:
        if not session.awaiting_confirmation:
            return WorkflowTurn(
                session,
                reply=messages.INVALID_CONFIRMATION_MESSAGE,
                notice=messages.INVALID_CONFIRMATION_MESSAGE,
            )
        try:
            action = self.gate.confirm(session, token)
        except InvalidToken as exc:
            logger.info("Rejected confirmation for session %s: %s", session.session_id, exc)
            return WorkflowTurn(
                session,
                reply=messages.INVALID_CONFIRMATION_MESSAGE,
                notice=messages.INVALID_CONFIRMATION_MESSAGE,
            )

        if claim is not None and not await claim(session, token):
            logger.info("Confirmation for session %s was already claimed", session.session_id)
            return WorkflowTurn(
                session,
                reply=messages.STILL_PROCESSING_MESSAGE,
                notice=messages.STILL_PROCESSING_MESSAGE,
                persist=False,
            )

        cost = session.estimated_cost_credits
        await self._emit(analytics.CONFIRMED, session, action=action, cost=cost)
        if not await ledger.can_spend(cost):
            session.return_to_stable(error_code=INSUFFICIENT_CREDITS)
            return WorkflowTurn(
                session,
                reply=user_message_for(INSUFFICIENT_CREDITS),
                upgrade_prompt=True,
            )

        runners: dict[str, Callable[[WorkflowSession], Awaitable[str]]] = {
            "generate": self._run_generation,
            "edit": self._run_edit,
            "tryon": self._run_tryon,
        }
        timeout = self.tryon_timeout if action == "tryon" else self.generation_timeout
        try:
            reply = await asyncio.wait_for(runners[action](session), timeout=timeout)
        except Exception as exc:
            code = map_exception(exc)
            if code == UNKNOWN:
                logger.exception("Unexpected %s failure for session %s: %s", action, session.session_id, exc)
            else:
                logger.warning(
                    "%s failed for session %s with %s: %r", action, session.session_id, code, exc
                )
            await self._emit(analytics.GENERATION_FAILED, session, action=action, error_code=code)
            session.return_to_stable(error_code=code)
            return WorkflowTurn(
                session,
                reply=user_message_for(code),
                upgrade_prompt=code in UPGRADE_PROMPT_CODES,
            )

        charged = await ledger.consume(cost)
        if not charged:
            logger.warning("Could not debit %s credits for session %s after success", cost, session.session_id)
        await self._emit(analytics.GENERATION_SUCCEEDED, session, action=action, cost=cost)
        session.clear_pending()
        session.error_code = None
        session.transition("generated")

        if action != "tryon" and session.autosave_enabled:
            if not await self._save_item(session):
                reply += messages.AUTOSAVE_FAILED_SUFFIX
        return WorkflowTurn(session, reply=reply, credits_used=cost if charged else 0)

    async def _generate_image(self, prompt: str, hints: dict[str, Any]) -> str:
        result = await self.generation_provider.generate(prompt, hints)
        if not result.success or not result.image_url:
            raise ProviderError(result.error or "Generation failed", status_code=result.status_code)
        return result.image_url

    def _build_item(self, session: WorkflowSession, image_url: str, prompt: str, color_text: str) -> GeneratedItem:
        collected = session.collected
        category = collected.category or (session.generated_item.category if session.generated_item else "top")
        return GeneratedItem(
            id=f"guided_ai_{session.session_id}",
            image_url=image_url,
            prompt=prompt,
            category=category,
            color_primary=messages.primary_color_hex(color_text),
            vibe_tags=[tag for tag in ("ai-generated", collected.style, collected.occasion) if tag],
        )

    async def _run_generation(self, session: WorkflowSession) -> str:
        collected = session.collected.as_dict()
        prompt = messages.build_look_creation_prompt(collected)
        image_url = await self._generate_image(prompt, {"category": collected.get("category"), "mode": "create"})
        color_text = " ".join(filter(None, [collected.get("request_text"), collected.get("style"), collected.get("occasion")]))
        session.generated_item = self._build_item(session, image_url, prompt, color_text)
        return messages.look_success_message(collected)

    async def _run_edit(self, session: WorkflowSession) -> str:
        base = session.generated_item
        instruction = session.edit_instruction or ""
        prompt = messages.build_garment_edit_prompt(
            session.collected.as_dict(), instruction, base.prompt if base else None
        )
        hints = {"category": base.category if base else None, "mode": "edit", "baseImage": base.image_url if base else None}
        image_url = await self._generate_image(prompt, hints)
        session.generated_item = self._build_item(session, image_url, prompt, instruction)
        return messages.edit_success_message(instruction)

    async def _run_tryon(self, session: WorkflowSession) -> str:
        item = session.generated_item
        if item is None or not session.tryon_selfie_image:
            raise ProviderError("Try-on needs a generated garment and a selfie")
        slots = {messages.tryon_slot_for(item.category): item.image_url}
        result = await self.tryon_provider.try_on(session.tryon_selfie_image, slots, self.tryon_options)
        session.tryon_result_image_url = result.result_image
        return messages.TRYON_SUCCESS_MESSAGE

    def _store_selfie(self, session: WorkflowSession, selfie_image: str | None) -> WorkflowTurn | None:
        if not selfie_image or not selfie_image.startswith("data:image/"):
            return WorkflowTurn(session, reply=messages.INVALID_SELFIE_MESSAGE)
        session.tryon_selfie_image = selfie_image
        return None

    async def _save_item(self, session: WorkflowSession) -> bool:
        item = session.generated_item
        if item is None or self.collection is None:
            return False
        try:
            await self.collection.save_generated_item(item.image_url, item.prompt, item.metadata)
        except Exception:
            logger.warning("Saving garment %s failed", item.id, exc_info=True)
            return False
        item.saved_to_collection = True
        await self._emit(analytics.ITEM_SAVED, session, item_id=item.id)
        return True

    async def _save_item_turn(self, session: WorkflowSession) -> WorkflowTurn:
        item = session.generated_item
        if item is None:
            return WorkflowTurn(session, reply=messages.NO_GENERATED_ITEM_MESSAGE)
        if item.saved_to_collection:
            return WorkflowTurn(session, reply=messages.ALREADY_SAVED_MESSAGE)
        if await self._save_item(session):
            return WorkflowTurn(session, reply=messages.SAVED_MESSAGE)
        return WorkflowTurn(session, reply=messages.SAVE_FAILED_MESSAGE, notice=messages.SAVE_FAILED_MESSAGE)
