from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, String, Text, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supportdesk.database import Base

ROLE_USER = "user"
ROLE_STAFF = "staff"
ROLE_AI_ASSISTANT = "ai_assistant"
ROLE_TOOL = "tool"

STATUS_QUEUEING = "queueing"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_DRAFT = "draft"
STATUS_DISCARDED = "discarded"
DRAFT_STATUSES = (STATUS_DRAFT, STATUS_DISCARDED)


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("user_profiles.id", ondelete="SET NULL"), nullable=True
    )
    # Unique: the storage-level guard against duplicate inbound mail.
    gmail_message_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    gmail_thread_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    message_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    references: Mapped[str | None] = mapped_column(Text, nullable=True)
    email_from: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email_to: Mapped[str | None] = mapped_column(Text, nullable=True)
    email_cc: Mapped[list | None] = mapped_column(JSON, nullable=True)
    email_bcc: Mapped[list | None] = mapped_column(JSON, nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    cleaned_up_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_perfect: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_flagged_as_bad: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    response_to_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("conversation_messages.id", ondelete="SET NULL"), nullable=True
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    conversation: Mapped["Conversation"] = relationship(  # noqa: F821
        "Conversation", back_populates="messages"
    )

    def __repr__(self) -> str:
        return f"<ConversationMessage id={self.id} role={self.role!r} status={self.status!r}>"
