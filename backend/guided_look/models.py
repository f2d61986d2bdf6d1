"""SQLAlchemy models for the guided look backend.

Four tables back the workflow service: the active guided-look session of
each conversation, the monthly credit ledger of each user, the reward
claims of each device, and the garments saved to a user's collection.
JSON columns use JSONB on PostgreSQL and plain JSON elsewhere.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class GuidedLookSession(Base):
    """Persisted state of one guided-look workflow session.

    ``state`` holds the serialized ``WorkflowSession``; ``status``,
    ``confirmation_token`` and ``conversation_id`` are duplicated into
    columns so sessions can be listed, discarded and claimed without
    decoding the JSON.  ``expires_at`` is pushed forward on every save.
    """

    __tablename__ = "guided_look_sessions"
    __table_args__ = (UniqueConstraint("user_id", "session_id", name="uq_guided_look_user_session"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    conversation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="idle")
    confirmation_token: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    state: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CreditLedgerRecord(Base):
    """Monthly credit usage of one user."""

    __tablename__ = "credit_ledgers"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="free")
    period_key: Mapped[str] = mapped_column(String(7), nullable=False)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class DeviceRewardRecord(Base):
    """Bonus-credit claims made from one device fingerprint."""

    __tablename__ = "device_rewards"

    device_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    period_key: Mapped[str] = mapped_column(String(7), nullable=False)
    rewards_claimed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    linked_account_ids: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ClosetItem(Base):
    """A generated garment saved to the user's collection."""

    __tablename__ = "closet_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    image_url: Mapped[str] = mapped_column(String, nullable=False)
    prompt: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    item_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)
    is_ai_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
