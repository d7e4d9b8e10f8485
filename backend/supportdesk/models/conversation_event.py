"""Append-only audit log of conversation status and assignment changes."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, String, Text, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supportdesk.database import Base

EVENT_UPDATE = "update"
EVENT_REQUEST_HUMAN_SUPPORT = "request_human_support"
EVENT_REASONING_TOGGLED = "reasoning_toggled"
EVENT_AUTO_CLOSED_DUE_TO_INACTIVITY = "auto_closed_due_to_inactivity"


class ConversationEvent(Base):
    __tablename__ = "conversation_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False, default=EVENT_UPDATE)
    # Previous values of the tracked fields that were set:
    # status, assigned_to_id, assigned_to_ai, is_visible.
    changes: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    by_user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    conversation: Mapped["Conversation"] = relationship(  # noqa: F821
        "Conversation", back_populates="events"
    )

    __table_args__ = (
        Index("ix_conversation_events_type_created_at", "type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ConversationEvent id={self.id} type={self.type!r} changes={self.changes!r}>"
