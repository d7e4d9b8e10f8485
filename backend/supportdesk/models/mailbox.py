from __future__ import annotations

import uuid
from datetime import datetime, timezone

from cryptography.fernet import Fernet
from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supportdesk.config import settings
from supportdesk.database import Base

_fernet = Fernet(settings.ENCRYPTION_KEY.encode())

AUTO_RESPOND_DRAFT = "draft"
AUTO_RESPOND_REPLY = "reply"


class GmailSupportEmail(Base):
    __tablename__ = "gmail_support_emails"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    encrypted_access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    encrypted_refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    history_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, default=None)
    watch_expiry: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    mailboxes: Mapped[list["Mailbox"]] = relationship(
        "Mailbox", back_populates="gmail_support_email"
    )

    def set_access_token(self, plain_token: str) -> None:
        self.encrypted_access_token = _fernet.encrypt(plain_token.encode()).decode()

    def get_access_token(self) -> str | None:
        if self.encrypted_access_token is None:
            return None
        return _fernet.decrypt(self.encrypted_access_token.encode()).decode()

    def set_refresh_token(self, plain_token: str) -> None:
        self.encrypted_refresh_token = _fernet.encrypt(plain_token.encode()).decode()

    def get_refresh_token(self) -> str | None:
        if self.encrypted_refresh_token is None:
            return None
        return _fernet.decrypt(self.encrypted_refresh_token.encode()).decode()

    def __repr__(self) -> str:
        return f"<GmailSupportEmail id={self.id} email={self.email!r}>"


class Mailbox(Base):
    __tablename__ = "mailboxes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    # auto_respond_email_to_chat: None | "draft" | "reply"
    # auto_close_enabled: bool, auto_close_days_of_inactivity: int
    preferences: Mapped[dict | None] = mapped_column(JSON, nullable=True, default=dict)
    gmail_support_email_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("gmail_support_emails.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    gmail_support_email: Mapped[GmailSupportEmail | None] = relationship(
        "GmailSupportEmail", back_populates="mailboxes"
    )

    @property
    def auto_respond_email_to_chat(self) -> str | None:
        return (self.preferences or {}).get("auto_respond_email_to_chat")

    def __repr__(self) -> str:
        return f"<Mailbox id={self.id} slug={self.slug!r}>"
