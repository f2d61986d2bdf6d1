"""Wire snapshot of a workflow session.

The snapshot is a union tagged by ``status``; each variant only carries
the fields that are valid in that status, so a token outside a confirming
status or a ``generated`` snapshot without an item cannot be built.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, computed_field
from pydantic.alias_generators import to_camel

from .state import WorkflowSession


class SnapshotModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CollectedOut(SnapshotModel):
    occasion: Optional[str] = None
    style: Optional[str] = None
    category: Optional[str] = None
    request_text: Optional[str] = None


class GeneratedItemOut(SnapshotModel):
    id: str
    image_url: str
    prompt: str
    category: str
    color_primary: str = "#000000"
    vibe_tags: list[str] = Field(default_factory=list)
    saved_to_collection: bool = False


class SnapshotBase(SnapshotModel):
    session_id: str
    strategy: Optional[Literal["direct", "guided"]] = None
    collected: CollectedOut = Field(default_factory=CollectedOut)
    generated_item: Optional[GeneratedItemOut] = None
    tryon_result_image_url: Optional[str] = None
    has_selfie: bool = False
    error_code: Optional[str] = None
    autosave_enabled: bool = False
    credits_used_this_call: int = 0

    @computed_field(alias="requiresConfirmation")  # type: ignore[prop-decorator]
    @property
    def requires_confirmation(self) -> bool:
        return getattr(self, "status", None) in ("confirming", "tryon_confirming")


class IdleSnapshot(SnapshotBase):
    status: Literal["idle"] = "idle"


class CollectingSnapshot(SnapshotBase):
    status: Literal["collecting"] = "collecting"
    missing_fields: list[Literal["occasion", "style", "category"]] = Field(min_length=1)


class ChoosingModeSnapshot(SnapshotBase):
    status: Literal["choosing_mode"] = "choosing_mode"


class ConfirmingSnapshot(SnapshotBase):
    status: Literal["confirming", "tryon_confirming"]
    pending_action: Literal["generate", "edit", "tryon"]
    confirmation_token: str
    estimated_cost_credits: int = Field(ge=0)
    edit_instruction: Optional[str] = None


class RunningSnapshot(SnapshotBase):
    status: Literal["generating", "editing", "tryon_generating"]
    pending_action: Optional[Literal["generate", "edit", "tryon"]] = None
    estimated_cost_credits: int = 0
    edit_instruction: Optional[str] = None


class GeneratedSnapshot(SnapshotBase):
    status: Literal["generated"] = "generated"
    generated_item: GeneratedItemOut


WorkflowSnapshot = Annotated[
    Union[
        IdleSnapshot,
        CollectingSnapshot,
        ChoosingModeSnapshot,
        ConfirmingSnapshot,
        RunningSnapshot,
        GeneratedSnapshot,
    ],
    Field(discriminator="status"),
]

snapshot_adapter: TypeAdapter[WorkflowSnapshot] = TypeAdapter(WorkflowSnapshot)


def parse_snapshot(data: dict) -> WorkflowSnapshot:
    return snapshot_adapter.validate_python(data)


def build_snapshot(session: WorkflowSession, credits_used_this_call: int = 0) -> WorkflowSnapshot:
    """Project a session onto the snapshot variant of its status."""
    item = session.generated_item
    common = {
        "session_id": session.session_id,
        "strategy": session.strategy,
        "collected": CollectedOut(**session.collected.as_dict()),
        "generated_item": GeneratedItemOut(**vars(item)) if item else None,
        "tryon_result_image_url": session.tryon_result_image_url,
        "has_selfie": bool(session.tryon_selfie_image),
        "error_code": session.error_code,
        "autosave_enabled": session.autosave_enabled,
        "credits_used_this_call": credits_used_this_call,
    }
    status = session.status
    if status == "collecting":
        return CollectingSnapshot(missing_fields=session.missing_fields, **common)
    if status == "choosing_mode":
        return ChoosingModeSnapshot(**common)
    if status in ("confirming", "tryon_confirming"):
        return ConfirmingSnapshot(
            status=status,
            pending_action=session.pending_action,
            confirmation_token=session.confirmation_token,
            estimated_cost_credits=session.estimated_cost_credits,
            edit_instruction=session.edit_instruction,
            **common,
        )
    if status in ("generating", "editing", "tryon_generating"):
        return RunningSnapshot(
            status=status,
            pending_action=session.pending_action,
            estimated_cost_credits=session.estimated_cost_credits,
            edit_instruction=session.edit_instruction,
            **common,
        )
    if status == "generated":
        return GeneratedSnapshot(**common)
    return IdleSnapshot(**common)
