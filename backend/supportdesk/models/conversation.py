from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supportdesk.database import Base

STATUS_OPEN = "open"
STATUS_CLOSED = "closed"
STATUS_SPAM = "spam"
CONVERSATION_STATUSES = (STATUS_OPEN, STATUS_CLOSED, STATUS_SPAM)


def generate_slug() -> str:
    return uuid.uuid4().hex


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    slug: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True, default=generate_slug
    )
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_OPEN)
    conversation_provider: Mapped[str | None] = mapped_column(String(20), nullable=True)
    source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    assigned_to_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("user_profiles.id", ondelete="SET NULL"), nullable=True, index=True
    )
    assigned_to_ai: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_from: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    email_from_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    anonymous_session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    is_visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    merged_into_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True
    )
    last_message_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_user_email_created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    messages: Mapped[list["ConversationMessage"]] = relationship(  # noqa: F821
        "ConversationMessage",
        back_populates="conversation",
        order_by="ConversationMessage.created_at",
    )
    events: Mapped[list["ConversationEvent"]] = relationship(  # noqa: F821
        "ConversationEvent",
        back_populates="conversation",
        order_by="ConversationEvent.created_at",
    )

    def __repr__(self) -> str:
        return f"<Conversation id={self.id} slug={self.slug} status={self.status!r}>"
