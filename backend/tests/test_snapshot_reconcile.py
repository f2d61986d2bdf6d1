from __future__ import annotations

import pytest

pytest.importorskip("pydantic")

from pydantic import ValidationError

from guided_look.workflow.confirmation import ConfirmationGate
from guided_look.workflow.reconcile import (
    LocalWorkflowView,
    apply_snapshot,
    attach_local_selfie,
    derive_view_state,
)
from guided_look.workflow.snapshot import (
    CollectingSnapshot,
    ConfirmingSnapshot,
    GeneratedSnapshot,
    IdleSnapshot,
    build_snapshot,
    parse_snapshot,
)
from guided_look.workflow.state import GeneratedItem, WorkflowSession


GATE = ConfirmationGate("snapshot-secret")


def generated_session() -> WorkflowSession:
    session = WorkflowSession(strategy="guided")
    session.generated_item = GeneratedItem(
        id=f"guided_ai_{session.session_id}",
        image_url="https://cdn.example/look.png",
        prompt="Categoría: top.",
        category="top",
    )
    session.transition("generated")
    return session


def test_idle_snapshot_is_minimal() -> None:
    snapshot = build_snapshot(WorkflowSession())
    data = snapshot.model_dump(by_alias=True)

    assert isinstance(snapshot, IdleSnapshot)
    assert data["status"] == "idle"
    assert data["requiresConfirmation"] is False
    assert "confirmationToken" not in data
    assert "missingFields" not in data


def test_collecting_snapshot_carries_missing_fields() -> None:
    session = WorkflowSession()
    session.transition("collecting", missing_fields=["style", "category"])

    snapshot = build_snapshot(session)

    assert isinstance(snapshot, CollectingSnapshot)
    assert snapshot.model_dump(by_alias=True)["missingFields"] == ["style", "category"]


def test_confirming_snapshot_exposes_token_and_cost() -> None:
    session = WorkflowSession()
    GATE.request_confirmation(session, "generate", 2)

    data = build_snapshot(session).model_dump(by_alias=True)

    assert data["status"] == "confirming"
    assert data["confirmationToken"] == session.confirmation_token
    assert data["estimatedCostCredits"] == 2
    assert data["pendingAction"] == "generate"
    assert data["requiresConfirmation"] is True


def test_tryon_confirming_requires_confirmation() -> None:
    session = generated_session()
    session.tryon_selfie_image = "data:image/png;base64,AAAA"
    GATE.request_confirmation(session, "tryon", 4)

    snapshot = build_snapshot(session)

    assert isinstance(snapshot, ConfirmingSnapshot)
    assert snapshot.requires_confirmation is True
    assert snapshot.has_selfie is True


def test_parse_rejects_invalid_combinations() -> None:
    with pytest.raises(ValidationError):
        parse_snapshot({"status": "collecting", "sessionId": "s-1", "missingFields": []})
    with pytest.raises(ValidationError):
        parse_snapshot({"status": "generated", "sessionId": "s-1"})
    with pytest.raises(ValidationError):
        parse_snapshot({"status": "confirming", "sessionId": "s-1", "estimatedCostCredits": 2})
    with pytest.raises(ValidationError):
        parse_snapshot({"status": "paused", "sessionId": "s-1"})


def test_parse_reads_wire_payload() -> None:
    session = generated_session()
    wire = build_snapshot(session, credits_used_this_call=2).model_dump(by_alias=True, mode="json")

    snapshot = parse_snapshot(wire)

    assert isinstance(snapshot, GeneratedSnapshot)
    assert snapshot.generated_item.image_url == "https://cdn.example/look.png"
    assert snapshot.credits_used_this_call == 2


def test_view_state_for_generated_item_without_selfie() -> None:
    view = derive_view_state(build_snapshot(generated_session()))

    assert view.edit_panel.state == "available"
    assert view.tryon_panel.state == "needs_selfie"


def test_view_state_tracks_pending_edit() -> None:
    session = generated_session()
    GATE.request_confirmation(session, "edit", 2)
    session.edit_instruction = "negro mate"

    view = derive_view_state(build_snapshot(session), has_selfie=True)

    assert view.edit_panel.state == "confirming"
    assert view.edit_panel.instruction == "negro mate"
    assert view.edit_panel.cost_credits == 2
    assert view.tryon_panel.state == "ready"


def test_view_state_shows_tryon_result() -> None:
    session = generated_session()
    session.tryon_result_image_url = "https://cdn.example/tryon.png"

    view = derive_view_state(build_snapshot(session))

    assert view.tryon_panel.state == "result"
    assert view.tryon_panel.result_image_url == "https://cdn.example/tryon.png"


def test_view_state_hidden_without_item() -> None:
    view = derive_view_state(build_snapshot(WorkflowSession()), has_selfie=True)

    assert view.edit_panel.state == "hidden"
    assert view.tryon_panel.state == "hidden"


def test_apply_snapshot_accumulates_charges_within_session() -> None:
    session = generated_session()
    view = apply_snapshot(LocalWorkflowView(), build_snapshot(session, credits_used_this_call=2))
    view = apply_snapshot(view, build_snapshot(session, credits_used_this_call=4), notice="ok")

    assert view.session_id == session.session_id
    assert view.credits_charged == 6
    assert view.last_notice == "ok"
    assert view.status == "generated"


def test_apply_snapshot_drops_local_state_of_previous_session() -> None:
    first = generated_session()
    view = apply_snapshot(LocalWorkflowView(), build_snapshot(first, credits_used_this_call=2))
    view = attach_local_selfie(view, "data:image/png;base64,AAAA")
    assert view.view_state.tryon_panel.state == "ready"

    view = apply_snapshot(view, build_snapshot(WorkflowSession()))

    assert view.local_selfie_image is None
    assert view.credits_charged == 0
    assert view.view_state.tryon_panel.state == "hidden"
    assert view.confirmation_token is None


def test_confirmation_token_follows_snapshot() -> None:
    session = WorkflowSession()
    GATE.request_confirmation(session, "generate", 2)

    view = apply_snapshot(LocalWorkflowView(), build_snapshot(session))

    assert view.confirmation_token == session.confirmation_token
