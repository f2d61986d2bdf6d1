"""Session object for the guided look workflow.

A ``WorkflowSession`` is owned by one conversation.  Every status change
goes through ``transition`` so the structural rules hold after each step:
``missing_fields`` is non-empty exactly while collecting, and a
confirmation token only exists in a confirming status.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Literal


Status = Literal[
    "idle",
    "collecting",
    "choosing_mode",
    "confirming",
    "generating",
    "editing",
    "tryon_confirming",
    "tryon_generating",
    "generated",
]
PendingAction = Literal["generate", "edit", "tryon"]

STATUSES: tuple[str, ...] = (
    "idle",
    "collecting",
    "choosing_mode",
    "confirming",
    "generating",
    "editing",
    "tryon_confirming",
    "tryon_generating",
    "generated",
)
CONFIRMING_STATUSES = frozenset({"confirming", "tryon_confirming"})
RUNNING_STATUSES = frozenset({"generating", "editing", "tryon_generating"})
PENDING_ACTIONS: tuple[str, ...] = ("generate", "edit", "tryon")

REQUEST_TEXT_MAX_LENGTH = 240


def new_session_id() -> str:
    return str(uuid.uuid4())


@dataclass
class CollectedSlots:
    occasion: str | None = None
    style: str | None = None
    category: str | None = None
    request_text: str | None = None

    def absorb(self, fields: dict[str, str], fallback_text: str | None = None) -> list[str]:
        """Merge parsed slots in; returns the slot names that were newly filled."""
        filled: list[str] = []
        for name in ("occasion", "style", "category"):
            value = fields.get(name)
            if value and getattr(self, name) != value:
                if not getattr(self, name):
                    filled.append(name)
                setattr(self, name, value)
        if not self.request_text and fallback_text and fallback_text.strip():
            self.request_text = fallback_text.strip()[:REQUEST_TEXT_MAX_LENGTH]
        return filled

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GeneratedItem:
    id: str
    image_url: str
    prompt: str
    category: str
    color_primary: str = "#000000"
    vibe_tags: list[str] = field(default_factory=list)
    saved_to_collection: bool = False

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "color_primary": self.color_primary,
            "vibe_tags": list(self.vibe_tags),
            "description": self.prompt,
            "source": "guided_look",
        }


@dataclass
class WorkflowSession:
    """Tracks one guided-look workflow and keeps its invariants."""

    session_id: str = field(default_factory=new_session_id)
    status: str = "idle"
    strategy: str | None = None
    collected: CollectedSlots = field(default_factory=CollectedSlots)
    missing_fields: list[str] = field(default_factory=list)
    pending_action: str | None = None
    confirmation_token: str | None = None
    estimated_cost_credits: int = 0
    edit_instruction: str | None = None
    generated_item: GeneratedItem | None = None
    tryon_selfie_image: str | None = None
    tryon_result_image_url: str | None = None
    error_code: str | None = None
    autosave_enabled: bool = False

    @property
    def stable_status(self) -> str:
        """Where the session falls back to after a cancel or a failure."""
        return "generated" if self.generated_item else "idle"

    @property
    def awaiting_confirmation(self) -> bool:
        return self.status in CONFIRMING_STATUSES

    @property
    def is_running(self) -> bool:
        return self.status in RUNNING_STATUSES

    def transition(self, status: str, *, missing_fields: list[str] | None = None) -> None:
        if status not in STATUSES:
            raise ValueError(f"Unknown workflow status: {status}")
        if status == "collecting":
            if not missing_fields:
                raise ValueError("collecting requires at least one missing field")
            self.missing_fields = list(missing_fields)
        else:
            self.missing_fields = []
        if status not in CONFIRMING_STATUSES:
            self.confirmation_token = None
        if status == "generated" and self.generated_item is None:
            raise ValueError("generated requires a generated item")
        self.status = status

    def clear_pending(self) -> None:
        self.pending_action = None
        self.confirmation_token = None
        self.estimated_cost_credits = 0
        self.edit_instruction = None

    def return_to_stable(self, *, error_code: str | None = None) -> None:
        self.clear_pending()
        self.transition(self.stable_status)
        self.error_code = error_code

    def reset(self) -> None:
        """Start over in ``idle`` keeping only the id and autosave preference."""
        autosave = self.autosave_enabled
        fresh = WorkflowSession(session_id=self.session_id, autosave_enabled=autosave)
        self.__dict__.update(fresh.__dict__)

    def check_invariants(self) -> None:
        if (self.status == "collecting") != bool(self.missing_fields):
            raise AssertionError("missing_fields must be non-empty exactly while collecting")
        if (self.confirmation_token is not None) != (self.status in CONFIRMING_STATUSES):
            raise AssertionError("confirmation token must exist exactly while confirming")
        if self.pending_action is not None and self.pending_action not in PENDING_ACTIONS:
            raise AssertionError(f"unknown pending action: {self.pending_action}")
        if self.status == "generated" and self.generated_item is None:
            raise AssertionError("generated status requires a generated item")

    def to_state(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_state(cls, state: dict[str, Any]) -> "WorkflowSession":
        data = dict(state or {})
        collected = CollectedSlots(**(data.pop("collected", None) or {}))
        item_data = data.pop("generated_item", None)
        generated_item = GeneratedItem(**item_data) if item_data else None
        known = {name for name in cls.__dataclass_fields__} - {"collected", "generated_item"}
        kwargs = {key: value for key, value in data.items() if key in known}
        session = cls(collected=collected, generated_item=generated_item, **kwargs)
        if session.status not in STATUSES:
            session.status = session.stable_status
        return session
