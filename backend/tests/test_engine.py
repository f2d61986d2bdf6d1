from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest

pytest.importorskip("pydantic_settings")
pytest.importorskip("httpx")
pytest.importorskip("sqlalchemy")

from guided_look.analytics import RecordingAnalyticsSink
from guided_look.credits.ledger import CreditLedger, InMemoryCreditLedgerStore
from guided_look.providers.base import GenerationResult, TryOnOptions, TryOnResult
from guided_look.workflow import messages
from guided_look.workflow.confirmation import ConfirmationGate
from guided_look.workflow.engine import (
    ActionCosts,
    WorkflowEngine,
    WorkflowPayload,
    WorkflowRequest,
    WorkflowTurn,
)
from guided_look.workflow.errors import ProviderError, user_message_for
from guided_look.workflow.state import WorkflowSession
from guided_look.workflow.store import InMemoryWorkflowSessionStore


SELFIE = "data:image/jpeg;base64,/9j/4AAQSkZJRg=="


class FakeGenerationProvider:
    name = "fake"

    def __init__(self, *, result: GenerationResult | None = None, error: Exception | None = None) -> None:
        self.result = result or GenerationResult(success=True, image_url="https://cdn.example/look.png")
        self.error = error
        self.block = False
        self.delay = 0.0
        self.calls: list[tuple[str, dict]] = []

    async def generate(self, prompt: str, hints: Mapping[str, Any]) -> GenerationResult:
        self.calls.append((prompt, dict(hints)))
        if self.block:
            await asyncio.Event().wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class FakeTryOnProvider:
    name = "fake"

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict, TryOnOptions]] = []

    async def try_on(self, selfie_image: str, garment_slots: Mapping[str, str], options: TryOnOptions) -> TryOnResult:
        self.calls.append((selfie_image, dict(garment_slots), options))
        return TryOnResult(result_image="https://cdn.example/tryon.png", slots_used=list(garment_slots))


class FakeCollection:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.saved: list[tuple[str, str, dict]] = []

    async def save_generated_item(self, image_url: str, prompt: str, metadata: Mapping[str, Any]) -> str:
        if self.fail:
            raise RuntimeError("storage offline")
        self.saved.append((image_url, prompt, dict(metadata)))
        return f"item-{len(self.saved)}"


def build_engine(**overrides: Any) -> WorkflowEngine:
    options: dict[str, Any] = {
        "generation_provider": FakeGenerationProvider(),
        "tryon_provider": FakeTryOnProvider(),
        "gate": ConfirmationGate("test-secret"),
        "collection": FakeCollection(),
        "analytics_sink": RecordingAnalyticsSink(),
    }
    options.update(overrides)
    return WorkflowEngine(
        options.pop("generation_provider"),
        options.pop("tryon_provider"),
        options.pop("gate"),
        **options,
    )


def build_ledger() -> tuple[CreditLedger, InMemoryCreditLedgerStore]:
    store = InMemoryCreditLedgerStore()
    return CreditLedger(store, "user-1"), store


async def seed_usage(ledger: CreditLedger, used: int) -> None:
    if used:
        assert await ledger.consume(used)


async def turn(
    engine: WorkflowEngine,
    session: WorkflowSession,
    ledger: CreditLedger,
    action: str = "submit",
    message: str = "",
    **payload: Any,
) -> WorkflowTurn:
    result = await engine.handle(session, WorkflowRequest(action, message, WorkflowPayload(**payload)), ledger)
    result.session.check_invariants()
    return result


async def confirm(engine: WorkflowEngine, session: WorkflowSession, ledger: CreditLedger) -> WorkflowTurn:
    return await turn(engine, session, ledger, "confirm", confirmation_token=session.confirmation_token)


async def generated_session(engine: WorkflowEngine, ledger: CreditLedger) -> WorkflowSession:
    started = await turn(engine, WorkflowSession(), ledger, "start", occasion="cita", style="casual", category="top")
    finished = await confirm(engine, started.session, ledger)
    assert finished.session.status == "generated"
    return finished.session


@pytest.mark.asyncio
async def test_creation_intent_without_slots_starts_guided_collection() -> None:
    engine = build_engine()
    ledger, _ = build_ledger()

    result = await turn(engine, WorkflowSession(), ledger, message="quiero crear un look nuevo")

    assert result.session.status == "collecting"
    assert result.session.strategy == "guided"
    assert result.session.missing_fields == ["occasion", "style", "category"]
    assert result.reply == messages.field_question("occasion")
    assert result.session.collected.request_text == "quiero crear un look nuevo"
    assert engine.analytics_sink.names() == ["session_started"]


@pytest.mark.asyncio
async def test_several_slots_in_one_turn_are_absorbed_together() -> None:
    engine = build_engine()
    ledger, _ = build_ledger()
    session = (await turn(engine, WorkflowSession(), ledger, message="quiero crear un look nuevo")).session

    result = await turn(engine, session, ledger, message="oficina, formal")

    assert result.session.collected.occasion == "oficina"
    assert result.session.collected.style == "formal"
    assert result.session.missing_fields == ["category"]
    assert result.reply == messages.field_question("category")
    assert engine.analytics_sink.names().count("field_completed") == 2


@pytest.mark.asyncio
async def test_unparseable_answer_reprompts_same_slot() -> None:
    engine = build_engine()
    ledger, _ = build_ledger()
    session = (await turn(engine, WorkflowSession(), ledger, message="quiero crear un look nuevo")).session

    result = await turn(engine, session, ledger, message="no sé, algo lindo")

    assert result.session.missing_fields == ["occasion", "style", "category"]
    assert result.session.error_code == "VALIDATION_MISSING_FIELD"
    assert result.reply == messages.field_reprompt("occasion")

    answered = await turn(engine, result.session, ledger, message="para una fiesta")
    assert answered.session.missing_fields == ["style", "category"]
    assert answered.session.error_code is None


@pytest.mark.asyncio
async def test_guided_flow_confirms_then_charges_once_on_success() -> None:
    provider = FakeGenerationProvider()
    engine = build_engine(generation_provider=provider)
    ledger, _ = build_ledger()
    session = (await turn(engine, WorkflowSession(), ledger, message="quiero crear un look nuevo")).session
    session = (await turn(engine, session, ledger, message="oficina, formal")).session

    asked = await turn(engine, session, ledger, message="una camisa")
    assert asked.session.status == "confirming"
    assert asked.session.pending_action == "generate"
    assert asked.session.estimated_cost_credits == 2
    assert asked.session.confirmation_token
    assert provider.calls == []
    assert (await ledger.get_status()).used == 0

    done = await confirm(engine, asked.session, ledger)

    assert done.session.status == "generated"
    assert done.credits_used == 2
    assert (await ledger.get_status()).used == 2
    item = done.session.generated_item
    assert item.id == f"guided_ai_{done.session.session_id}"
    assert item.category == "top"
    assert item.vibe_tags == ["ai-generated", "formal", "oficina"]
    assert "Ocasión: oficina." in provider.calls[0][0]
    assert done.session.pending_action is None
    assert "cost_shown" in engine.analytics_sink.names()
    assert engine.analytics_sink.names()[-1] == "generation_succeeded"


@pytest.mark.asyncio
async def test_negative_answer_cancels_without_touching_ledger() -> None:
    engine = build_engine(costs=ActionCosts(look=5))
    ledger, store = build_ledger()
    asked = await turn(engine, WorkflowSession(), ledger, "start", occasion="cita", style="casual", category="shoes")
    assert asked.session.status == "confirming"
    assert asked.session.estimated_cost_credits == 5

    result = await turn(engine, asked.session, ledger, message="no")

    assert result.session.status == "idle"
    assert result.session.pending_action is None
    assert result.session.confirmation_token is None
    assert result.credits_used == 0
    assert store.writes == 0


@pytest.mark.asyncio
async def test_timeout_reverts_to_idle_without_charge() -> None:
    provider = FakeGenerationProvider()
    provider.block = True
    engine = build_engine(generation_provider=provider, generation_timeout=0.01)
    ledger, store = build_ledger()
    asked = await turn(engine, WorkflowSession(), ledger, "start", occasion="cita", style="casual", category="top")

    result = await confirm(engine, asked.session, ledger)

    assert result.session.status == "idle"
    assert result.session.error_code == "TIMEOUT"
    assert result.reply == user_message_for("TIMEOUT")
    assert result.credits_used == 0
    assert store.writes == 0
    assert result.session.collected.category == "top"


@pytest.mark.asyncio
async def test_failed_edit_keeps_previous_garment() -> None:
    provider = FakeGenerationProvider()
    engine = build_engine(generation_provider=provider)
    ledger, _ = build_ledger()
    session = await generated_session(engine, ledger)
    original = session.generated_item

    asked = await turn(engine, session, ledger, message="cambiá el color de la remera a negro")
    assert asked.session.status == "confirming"
    assert asked.session.pending_action == "edit"
    provider.error = ProviderError("Too many requests", status_code=429)

    result = await confirm(engine, asked.session, ledger)

    assert result.session.status == "generated"
    assert result.session.error_code == "RATE_LIMITED"
    assert result.session.generated_item == original
    assert result.upgrade_prompt is False
    assert (await ledger.get_status()).used == 2


@pytest.mark.asyncio
async def test_edit_success_replaces_garment_and_charges() -> None:
    provider = FakeGenerationProvider()
    engine = build_engine(generation_provider=provider)
    ledger, _ = build_ledger()
    session = await generated_session(engine, ledger)
    provider.result = GenerationResult(success=True, image_url="https://cdn.example/edited.png")

    asked = await turn(engine, session, ledger, "request_edit", edit_instruction="negro mate")
    assert asked.reply == messages.edit_cost_message("negro mate", 2)
    result = await confirm(engine, asked.session, ledger)

    assert result.session.status == "generated"
    assert result.session.generated_item.image_url == "https://cdn.example/edited.png"
    assert result.session.generated_item.color_primary == "#111111"
    assert "Cambios solicitados: negro mate." in provider.calls[-1][0]
    assert provider.calls[-1][1]["baseImage"] == "https://cdn.example/look.png"
    assert (await ledger.get_status()).used == 4


@pytest.mark.asyncio
async def test_provider_reported_failure_is_mapped() -> None:
    provider = FakeGenerationProvider(result=GenerationResult(success=False, error="model overloaded", status_code=503))
    engine = build_engine(generation_provider=provider)
    ledger, _ = build_ledger()
    asked = await turn(engine, WorkflowSession(), ledger, "start", occasion="cita", style="casual", category="top")

    result = await confirm(engine, asked.session, ledger)

    assert result.session.status == "idle"
    assert result.session.error_code == "SERVICE_UNAVAILABLE"
    assert engine.analytics_sink.names()[-1] == "generation_failed"


@pytest.mark.asyncio
async def test_insufficient_credits_skip_provider_and_prompt_upgrade() -> None:
    provider = FakeGenerationProvider()
    engine = build_engine(generation_provider=provider)
    ledger, _ = build_ledger()
    await seed_usage(ledger, 199)
    asked = await turn(engine, WorkflowSession(), ledger, "start", occasion="cita", style="casual", category="top")

    result = await confirm(engine, asked.session, ledger)

    assert result.session.status == "idle"
    assert result.session.error_code == "INSUFFICIENT_CREDITS"
    assert result.upgrade_prompt is True
    assert provider.calls == []
    assert (await ledger.get_status()).used == 199


@pytest.mark.asyncio
async def test_stale_token_changes_nothing() -> None:
    provider = FakeGenerationProvider()
    engine = build_engine(generation_provider=provider)
    ledger, store = build_ledger()
    asked = await turn(engine, WorkflowSession(), ledger, "start", occasion="cita", style="casual", category="top")
    before = asked.session.to_state()

    result = await turn(engine, asked.session, ledger, "confirm", confirmation_token="stale.token")

    assert result.session.to_state() == before
    assert result.notice == messages.INVALID_CONFIRMATION_MESSAGE
    assert provider.calls == []
    assert store.writes == 0


@pytest.mark.asyncio
async def test_garbled_unicode_token_is_an_invalid_confirmation() -> None:
    provider = FakeGenerationProvider()
    engine = build_engine(generation_provider=provider)
    ledger, _ = build_ledger()
    asked = await turn(engine, WorkflowSession(), ledger, "start", occasion="cita", style="casual", category="top")
    before = asked.session.to_state()

    result = await turn(engine, asked.session, ledger, "confirm", confirmation_token="sí.ñ")

    assert result.session.to_state() == before
    assert result.notice == messages.INVALID_CONFIRMATION_MESSAGE
    assert provider.calls == []


@pytest.mark.asyncio
async def test_concurrent_confirms_of_one_token_run_the_provider_once() -> None:
    provider = FakeGenerationProvider()
    provider.delay = 0.05
    engine = build_engine(generation_provider=provider)
    ledger, _ = build_ledger()
    sessions = InMemoryWorkflowSessionStore()
    asked = await turn(engine, WorkflowSession(), ledger, "start", occasion="cita", style="casual", category="top")
    token = asked.session.confirmation_token
    await sessions.save("user-1", "conv-1", asked.session)

    async def claim(session: WorkflowSession, confirmed_token: str) -> bool:
        return await sessions.claim("user-1", session, confirmed_token)

    copies = [(await sessions.get("user-1", asked.session.session_id)).session for _ in range(2)]
    request = WorkflowRequest("confirm", "", WorkflowPayload(confirmation_token=token))
    first, second = await asyncio.gather(
        *(engine.handle(copy, request, ledger, claim=claim) for copy in copies)
    )

    assert len(provider.calls) == 1
    assert (await ledger.get_status()).used == 2
    assert first.session.status == "generated"
    assert first.credits_used == 2
    assert second.credits_used == 0
    assert second.persist is False
    assert second.reply == messages.STILL_PROCESSING_MESSAGE
    second.session.check_invariants()


@pytest.mark.asyncio
async def test_confirm_is_claimed_before_the_provider_runs() -> None:
    provider = FakeGenerationProvider()
    engine = build_engine(generation_provider=provider)
    ledger, _ = build_ledger()
    asked = await turn(engine, WorkflowSession(), ledger, "start", occasion="cita", style="casual", category="top")
    claimed: list[tuple[str, str, int]] = []

    async def claim(session: WorkflowSession, token: str) -> bool:
        claimed.append((session.status, token, len(provider.calls)))
        return True

    token = asked.session.confirmation_token
    request = WorkflowRequest("confirm", "", WorkflowPayload(confirmation_token=token))
    result = await engine.handle(asked.session, request, ledger, claim=claim)

    assert claimed == [("generating", token, 0)]
    assert result.session.status == "generated"
    assert result.persist is True


@pytest.mark.asyncio
async def test_affirmative_text_confirms_with_token() -> None:
    engine = build_engine()
    ledger, _ = build_ledger()
    asked = await turn(engine, WorkflowSession(), ledger, "start", occasion="cita", style="casual", category="top")

    result = await turn(engine, asked.session, ledger, message="dale", confirmation_token=asked.session.confirmation_token)

    assert result.session.status == "generated"


@pytest.mark.asyncio
async def test_new_intent_while_pending_is_rejected() -> None:
    engine = build_engine()
    ledger, _ = build_ledger()
    session = await generated_session(engine, ledger)
    asked = await turn(engine, session, ledger, "request_edit", edit_instruction="agregale un logo")

    result = await turn(engine, asked.session, ledger, "request_edit", edit_instruction="mejor rojo")

    assert result.session.pending_action == "edit"
    assert result.session.edit_instruction == "agregale un logo"
    assert result.reply == messages.pending_action_reminder("edit", 2)


@pytest.mark.asyncio
async def test_known_category_offers_mode_choice_and_direct_still_confirms() -> None:
    provider = FakeGenerationProvider()
    engine = build_engine(generation_provider=provider)
    ledger, _ = build_ledger()

    offered = await turn(engine, WorkflowSession(), ledger, message="generame una remera negra")
    assert offered.session.status == "choosing_mode"
    assert offered.reply == messages.mode_choice_message(2)

    chosen = await turn(engine, offered.session, ledger, message="directo")
    assert chosen.session.strategy == "direct"
    assert chosen.session.status == "confirming"
    assert provider.calls == []

    done = await confirm(engine, chosen.session, ledger)
    assert done.session.generated_item.color_primary == "#111111"


@pytest.mark.asyncio
async def test_guided_choice_collects_remaining_slots() -> None:
    engine = build_engine()
    ledger, _ = build_ledger()
    offered = await turn(engine, WorkflowSession(), ledger, message="generame unas zapatillas")

    result = await turn(engine, offered.session, ledger, "select_strategy", strategy="guided")

    assert result.session.status == "collecting"
    assert result.session.missing_fields == ["occasion", "style"]


@pytest.mark.asyncio
async def test_tryon_requires_selfie_then_confirms() -> None:
    tryon = FakeTryOnProvider()
    engine = build_engine(tryon_provider=tryon)
    ledger, _ = build_ledger()
    session = await generated_session(engine, ledger)

    needs = await turn(engine, session, ledger, message="quiero probármelo")
    assert needs.reply == messages.NEEDS_SELFIE_MESSAGE
    assert needs.session.status == "generated"

    rejected = await turn(engine, session, ledger, "upload_selfie", selfie_image="https://example.com/me.jpg")
    assert rejected.reply == messages.INVALID_SELFIE_MESSAGE
    assert rejected.session.tryon_selfie_image is None

    loaded = await turn(engine, session, ledger, "upload_selfie", selfie_image=SELFIE)
    assert loaded.reply == messages.selfie_loaded_message(4)

    asked = await turn(engine, loaded.session, ledger, "request_tryon")
    assert asked.session.status == "tryon_confirming"
    assert asked.session.estimated_cost_credits == 4

    result = await confirm(engine, asked.session, ledger)

    assert result.session.status == "generated"
    assert result.session.tryon_result_image_url == "https://cdn.example/tryon.png"
    assert tryon.calls[0][1] == {"top_base": "https://cdn.example/look.png"}
    assert result.credits_used == 4
    assert (await ledger.get_status()).used == 6


@pytest.mark.asyncio
async def test_cancel_tryon_returns_to_generated() -> None:
    engine = build_engine()
    ledger, _ = build_ledger()
    session = await generated_session(engine, ledger)
    asked = await turn(engine, session, ledger, "request_tryon", selfie_image=SELFIE)

    result = await turn(engine, asked.session, ledger, "cancel")

    assert result.session.status == "generated"
    assert result.reply == messages.cancelled_message("tryon", True)


@pytest.mark.asyncio
async def test_autosave_persists_generated_garment() -> None:
    collection = FakeCollection()
    engine = build_engine(collection=collection)
    ledger, _ = build_ledger()
    session = (await turn(engine, WorkflowSession(), ledger, "toggle_autosave", autosave_enabled=True)).session
    asked = await turn(engine, session, ledger, "start", "una remera elegante para una cita, modo guiado")

    result = await confirm(engine, asked.session, ledger)

    assert result.session.generated_item.saved_to_collection is True
    assert collection.saved[0][2]["source"] == "guided_look"
    assert "item_saved" in engine.analytics_sink.names()


@pytest.mark.asyncio
async def test_autosave_failure_is_reported_but_generation_kept() -> None:
    engine = build_engine(collection=FakeCollection(fail=True))
    ledger, _ = build_ledger()
    session = WorkflowSession(autosave_enabled=True)
    asked = await turn(engine, session, ledger, "start", occasion="cita", style="casual", category="top")

    result = await confirm(engine, asked.session, ledger)

    assert result.session.status == "generated"
    assert result.reply.endswith(messages.AUTOSAVE_FAILED_SUFFIX)
    assert result.session.generated_item.saved_to_collection is False


@pytest.mark.asyncio
async def test_manual_save_is_idempotent() -> None:
    collection = FakeCollection()
    engine = build_engine(collection=collection)
    ledger, _ = build_ledger()
    session = await generated_session(engine, ledger)

    first = await turn(engine, session, ledger, "save_item")
    second = await turn(engine, session, ledger, "save_item")

    assert first.reply == messages.SAVED_MESSAGE
    assert second.reply == messages.ALREADY_SAVED_MESSAGE
    assert len(collection.saved) == 1


@pytest.mark.asyncio
async def test_plain_chat_passes_through() -> None:
    engine = build_engine()
    ledger, _ = build_ledger()
    session = WorkflowSession()
    before = session.to_state()

    result = await turn(engine, session, ledger, message="hola, ¿cómo estás?")

    assert result.chat is True
    assert result.reply is None
    assert result.session.to_state() == before


@pytest.mark.asyncio
async def test_start_discards_previous_session() -> None:
    engine = build_engine()
    ledger, _ = build_ledger()
    session = await generated_session(engine, ledger)

    result = await turn(engine, session, ledger, "start", "quiero crear un look nuevo")

    assert result.session.session_id != session.session_id
    assert result.session.generated_item is None
    assert result.session.status == "collecting"


@pytest.mark.asyncio
async def test_interrupted_running_session_is_recovered() -> None:
    engine = build_engine()
    ledger, _ = build_ledger()
    session = WorkflowSession(status="generating", pending_action="generate", estimated_cost_credits=2)

    result = await turn(engine, session, ledger, message="hola")

    assert result.session.status == "idle"
    assert result.session.pending_action is None
    assert result.session.error_code == "UNKNOWN"
