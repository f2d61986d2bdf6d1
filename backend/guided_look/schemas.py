"""Pydantic schemas for the workflow and credits API.

Bodies use camelCase on the wire; the models accept snake_case too so
tests and internal callers can build them directly.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .credits.ledger import CreditStatus
from .workflow.engine import WorkflowPayload, WorkflowRequest
from .workflow.snapshot import WorkflowSnapshot


WorkflowActionName = Literal[
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
]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkflowPayloadIn(ApiModel):
    """Structured values that accompany an action."""

    occasion: Optional[str] = None
    style: Optional[str] = None
    category: Optional[str] = None
    strategy: Optional[Literal["direct", "guided"]] = None
    confirmation_token: Optional[str] = None
    edit_instruction: Optional[str] = Field(None, max_length=500)
    selfie_image: Optional[str] = Field(None, description="Selfie as a data:image URL")
    autosave_enabled: Optional[bool] = None

    def to_payload(self) -> WorkflowPayload:
        return WorkflowPayload(**self.model_dump())


class WorkflowActionIn(ApiModel):
    """Schema for one workflow turn."""

    message: str = Field("", max_length=2000, description="Free text typed by the user")
    session_id: Optional[str] = Field(None, description="Active workflow session, if any")
    conversation_id: Optional[str] = Field(None, description="Conversation owning the session")
    action: WorkflowActionName = "submit"
    payload: WorkflowPayloadIn = Field(default_factory=WorkflowPayloadIn)

    def to_request(self) -> WorkflowRequest:
        return WorkflowRequest(action=self.action, message=self.message, payload=self.payload.to_payload())


class CreditStatusOut(ApiModel):
    tier: str
    used: int
    limit: int
    remaining: int
    percent_used: float
    can_use: bool
    days_until_reset: int

    @classmethod
    def from_status(cls, status: CreditStatus) -> "CreditStatusOut":
        return cls(
            tier=status.tier,
            used=status.used,
            limit=status.limit,
            remaining=status.remaining,
            percent_used=status.percent_used,
            can_use=status.can_use,
            days_until_reset=status.days_until_reset,
        )


class WorkflowActionOut(ApiModel):
    """Result of a workflow turn.

    ``chat`` is true when the message was not part of the workflow and
    should be answered by the informational chat instead; ``reply`` is
    then empty and ``workflow`` unchanged.
    """

    reply: Optional[str] = None
    chat: bool = False
    workflow: WorkflowSnapshot
    credits_used_this_call: int = 0
    upgrade_prompt: bool = False
    notice: Optional[str] = None
    credits: CreditStatusOut


class RewardClaimIn(ApiModel):
    """Device traits used to fingerprint the claiming device."""

    device_id: Optional[str] = Field(None, description="Client-side fingerprint; ignored, the server derives its own")
    user_agent: Optional[str] = None
    accept_language: Optional[str] = None
    platform: Optional[str] = None
    timezone: Optional[str] = None
    screen: Optional[str] = None
    client_hint: Optional[str] = None

    def traits(self) -> dict[str, Optional[str]]:
        return self.model_dump(exclude={"device_id"})


class RewardClaimOut(ApiModel):
    granted: bool
    reason: Optional[str] = None
    credits_granted: int = 0
    device_id: str
    credits: CreditStatusOut
