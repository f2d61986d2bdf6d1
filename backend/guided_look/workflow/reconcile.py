"""Client-side reconciliation of server snapshots.

The server snapshot is authoritative.  ``apply_snapshot`` folds it into
the client's ``LocalWorkflowView`` and recomputes every UI sub-state with
the single projection ``derive_view_state``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Literal, Optional

from .snapshot import WorkflowSnapshot


EditPanel = Literal["hidden", "available", "confirming", "running"]
TryOnPanel = Literal["hidden", "needs_selfie", "ready", "confirming", "running", "result"]


@dataclass(frozen=True)
class EditPanelState:
    state: EditPanel = "hidden"
    instruction: Optional[str] = None
    cost_credits: int = 0


@dataclass(frozen=True)
class TryOnPanelState:
    state: TryOnPanel = "hidden"
    result_image_url: Optional[str] = None
    cost_credits: int = 0


@dataclass(frozen=True)
class ViewState:
    edit_panel: EditPanelState = EditPanelState()
    tryon_panel: TryOnPanelState = TryOnPanelState()


@dataclass(frozen=True)
class LocalWorkflowView:
    session_id: Optional[str] = None
    snapshot: Optional[WorkflowSnapshot] = None
    view_state: ViewState = ViewState()
    local_selfie_image: Optional[str] = None
    credits_charged: int = 0
    last_notice: Optional[str] = None

    @property
    def confirmation_token(self) -> Optional[str]:
        return getattr(self.snapshot, "confirmation_token", None)

    @property
    def status(self) -> str:
        return self.snapshot.status if self.snapshot is not None else "idle"


def _edit_panel(snapshot: WorkflowSnapshot) -> EditPanelState:
    if snapshot.generated_item is None:
        return EditPanelState()
    pending = getattr(snapshot, "pending_action", None)
    instruction = getattr(snapshot, "edit_instruction", None)
    cost = getattr(snapshot, "estimated_cost_credits", 0)
    if snapshot.status == "confirming" and pending == "edit":
        return EditPanelState("confirming", instruction, cost)
    if snapshot.status == "editing":
        return EditPanelState("running", instruction, cost)
    return EditPanelState("available")


def _tryon_panel(snapshot: WorkflowSnapshot, has_selfie: bool) -> TryOnPanelState:
    if snapshot.generated_item is None:
        return TryOnPanelState()
    cost = getattr(snapshot, "estimated_cost_credits", 0)
    if snapshot.status == "tryon_confirming":
        return TryOnPanelState("confirming", snapshot.tryon_result_image_url, cost)
    if snapshot.status == "tryon_generating":
        return TryOnPanelState("running", snapshot.tryon_result_image_url, cost)
    if snapshot.tryon_result_image_url and snapshot.status == "generated":
        return TryOnPanelState("result", snapshot.tryon_result_image_url)
    return TryOnPanelState("ready" if has_selfie else "needs_selfie")


def derive_view_state(snapshot: WorkflowSnapshot | None, has_selfie: bool = False) -> ViewState:
    if snapshot is None:
        return ViewState()
    return ViewState(
        edit_panel=_edit_panel(snapshot),
        tryon_panel=_tryon_panel(snapshot, has_selfie or snapshot.has_selfie),
    )


def apply_snapshot(
    view: LocalWorkflowView,
    snapshot: WorkflowSnapshot,
    *,
    notice: str | None = None,
) -> LocalWorkflowView:
    """Merge ``snapshot`` into ``view``; local state of another session is dropped."""
    if view.session_id != snapshot.session_id:
        view = LocalWorkflowView(session_id=snapshot.session_id)
    return replace(
        view,
        snapshot=snapshot,
        view_state=derive_view_state(snapshot, has_selfie=bool(view.local_selfie_image)),
        credits_charged=view.credits_charged + snapshot.credits_used_this_call,
        last_notice=notice,
    )


def attach_local_selfie(view: LocalWorkflowView, selfie_image: str) -> LocalWorkflowView:
    return replace(
        view,
        local_selfie_image=selfie_image,
        view_state=derive_view_state(view.snapshot, has_selfie=True),
    )
