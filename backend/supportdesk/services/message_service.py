"""Creation of conversation messages and replies.

All functions write into the caller's session and leave committing to it.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from supportdesk.config import settings
from supportdesk.models.conversation import STATUS_CLOSED, STATUS_SPAM
from supportdesk.models.mailbox import Mailbox
from supportdesk.models.message import (
    ROLE_AI_ASSISTANT,
    ROLE_STAFF,
    ROLE_USER,
    STATUS_DISCARDED,
    STATUS_DRAFT,
    STATUS_QUEUEING,
    ConversationMessage,
)
from supportdesk.models.user_profile import UserProfile
from supportdesk.services import conversation_service, email_normalizer, file_service
from supportdesk.services.events import EventName, trigger_event

logger = logging.getLogger(__name__)

_TAG = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"\s+")


def create_conversation_message(db: Session, **values: Any) -> ConversationMessage:
    """Insert a message and queue the events that follow from it.

    Bumps the conversation's activity timestamps without realtime updates.
    Non-draft messages emit ``message.created``; queueing messages also emit a
    delayed ``email.enqueued`` so the reply can still be undone.
    """
    message = ConversationMessage(**values)
    db.add(message)
    db.flush()

    now = datetime.now(timezone.utc)
    activity: dict[str, Any] = {"last_message_at": now}
    if message.role == ROLE_USER:
        activity["last_user_email_created_at"] = now
        activity["last_read_at"] = now
    conversation_service.update_conversation(
        db, message.conversation_id, set=activity, skip_realtime_events=True
    )

    if message.status != STATUS_DRAFT:
        trigger_event(
            db,
            EventName.MESSAGE_CREATED,
            {"messageId": message.id, "conversationId": message.conversation_id},
        )
        if message.user_id and message.role in (ROLE_USER, ROLE_STAFF):
            trigger_event(
                db,
                EventName.SEND_FOLLOWER_NOTIFICATION,
                {
                    "conversationId": message.conversation_id,
                    "eventType": "new_message",
                    "triggeredByUserId": message.user_id,
                    "eventDetails": {"message": message.cleaned_up_text or None},
                },
            )

    if message.status == STATUS_QUEUEING:
        trigger_event(
            db,
            EventName.EMAIL_ENQUEUED,
            {"messageId": message.id},
            sleep_seconds=settings.EMAIL_UNDO_COUNTDOWN_SECONDS,
        )

    return message


def _cleanup_message(body: str) -> str:
    return _WHITESPACE.sub(" ", _TAG.sub("", body)).strip()


def create_reply(
    db: Session,
    conversation_id: str,
    message: str | None,
    user: UserProfile | None,
    *,
    mailbox: Mailbox | None = None,
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    file_slugs: list[str] | None = None,
    close: bool = True,
    role: str | None = None,
    response_to_id: str | None = None,
    should_auto_assign: bool = True,
) -> str:
    """Queue a reply on a conversation and return the new message id.

    Raises LookupError if the conversation does not exist.
    """
    conversation = conversation_service.get_conversation_by_id(db, conversation_id)
    if conversation is None:
        raise LookupError(f"Conversation {conversation_id} not found")

    if should_auto_assign and user is not None and not conversation.assigned_to_id:
        conversation_service.update_conversation(
            db, conversation_id, set={"assigned_to_id": user.id, "assigned_to_ai": False}
        )

    if cc is None:
        cc = email_normalizer.get_non_support_participants(db, conversation, mailbox)

    created = create_conversation_message(
        db,
        conversation_id=conversation_id,
        body=message,
        user_id=user.id if user is not None else None,
        email_cc=cc,
        email_bcc=bcc or [],
        role=role or ROLE_STAFF,
        response_to_id=response_to_id,
        status=STATUS_QUEUEING,
        is_perfect=False,
        is_flagged_as_bad=False,
    )

    file_service.finish_file_upload(db, file_slugs=file_slugs or [], message_id=created.id)

    if close and conversation.status != STATUS_SPAM:
        conversation_service.update_conversation(
            db,
            conversation_id,
            set={"status": STATUS_CLOSED},
            by_user_id=user.id if user is not None else None,
        )

    last_draft = get_last_ai_generated_draft(db, conversation_id)
    if last_draft is not None and last_draft.body and message:
        if _cleanup_message(last_draft.body) == _cleanup_message(message):
            created.is_perfect = True
    discard_ai_generated_drafts(db, conversation_id)
    db.flush()

    return created.id


def create_ai_draft(
    db: Session,
    conversation_id: str,
    body: str,
    response_to_id: str,
    *,
    prompt_info: dict[str, Any] | None = None,
) -> ConversationMessage:
    if not response_to_id:
        raise ValueError("response_to_id is required")

    text = re.sub(r"\n\n+", "\n\n", body.strip())
    return create_conversation_message(
        db,
        conversation_id=conversation_id,
        body=email_normalizer.text_to_html(text),
        role=ROLE_AI_ASSISTANT,
        status=STATUS_DRAFT,
        response_to_id=response_to_id,
        metadata_={"prompt_info": prompt_info} if prompt_info else None,
        cleaned_up_text=body,
        is_perfect=False,
        is_flagged_as_bad=False,
    )


def get_last_ai_generated_draft(db: Session, conversation_id: str) -> ConversationMessage | None:
    return (
        db.query(ConversationMessage)
        .filter(
            ConversationMessage.conversation_id == conversation_id,
            ConversationMessage.role == ROLE_AI_ASSISTANT,
            ConversationMessage.status == STATUS_DRAFT,
        )
        .order_by(ConversationMessage.created_at.desc())
        .first()
    )


def discard_ai_generated_drafts(db: Session, conversation_id: str) -> int:
    drafts = (
        db.query(ConversationMessage)
        .filter(
            ConversationMessage.conversation_id == conversation_id,
            ConversationMessage.role == ROLE_AI_ASSISTANT,
            ConversationMessage.status == STATUS_DRAFT,
        )
        .all()
    )
    for draft in drafts:
        draft.status = STATUS_DISCARDED
    db.flush()
    return len(drafts)


def ensure_cleaned_up_text(db: Session, message: ConversationMessage) -> str:
    """Return the message's plain text, computing and storing it if missing."""
    if message.cleaned_up_text is not None:
        return message.cleaned_up_text
    message.cleaned_up_text = email_normalizer.generate_cleaned_up_text(message.body or "")
    db.flush()
    return message.cleaned_up_text
