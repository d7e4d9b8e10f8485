"""Maps an inbound Gmail message onto the conversation it belongs to."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from supportdesk.models.conversation import STATUS_CLOSED, STATUS_OPEN, Conversation
from supportdesk.models.mailbox import AUTO_RESPOND_DRAFT, Mailbox
from supportdesk.models.message import ConversationMessage

logger = logging.getLogger(__name__)

_MAX_MERGE_DEPTH = 10


def is_new_thread(gmail_message_id: str, gmail_thread_id: str) -> bool:
    """Gmail gives the first message of a thread the thread's own id."""
    return gmail_message_id == gmail_thread_id


def create_email_conversation(
    db: Session,
    mailbox: Mailbox,
    *,
    email_from: str,
    email_from_name: str | None,
    subject: str | None,
    should_ignore: bool,
) -> Conversation:
    conversation = Conversation(
        email_from=email_from,
        email_from_name=email_from_name or None,
        subject=subject,
        status=STATUS_CLOSED if should_ignore else STATUS_OPEN,
        closed_at=datetime.now(timezone.utc) if should_ignore else None,
        conversation_provider="gmail",
        source="email",
        assigned_to_ai=bool(mailbox.auto_respond_email_to_chat),
        anonymous_session_id=None,
    )
    db.add(conversation)
    db.flush()
    logger.debug(
        "create_email_conversation: created %s status=%s", conversation.slug, conversation.status
    )
    return conversation


def resolve_conversation(
    db: Session,
    mailbox: Mailbox,
    *,
    gmail_message_id: str,
    gmail_thread_id: str,
    email_from: str,
    email_from_name: str | None,
    subject: str | None,
    should_ignore: bool,
) -> Conversation:
    """Return the conversation for a message, creating one when needed.

    The first message of a thread always gets a new conversation. A follow-up
    joins the conversation of the latest stored message in the same thread,
    or gets a new one if that message was never stored.
    """
    if not is_new_thread(gmail_message_id, gmail_thread_id):
        previous = (
            db.query(ConversationMessage)
            .filter(ConversationMessage.gmail_thread_id == gmail_thread_id)
            .order_by(ConversationMessage.created_at.desc())
            .first()
        )
        if previous is not None:
            return previous.conversation
        logger.info(
            "resolve_conversation: no stored message for thread %s, starting a new conversation",
            gmail_thread_id,
        )

    return create_email_conversation(
        db,
        mailbox,
        email_from=email_from,
        email_from_name=email_from_name,
        subject=subject,
        should_ignore=should_ignore,
    )


def should_reopen(
    status: str, assigned_to_ai: bool, mailbox: Mailbox, should_ignore: bool
) -> bool:
    """Whether a new message should move a closed conversation back to open.

    Takes the status and AI assignment as they were when the conversation
    was resolved.
    """
    return (
        status == STATUS_CLOSED
        and (not assigned_to_ai or mailbox.auto_respond_email_to_chat == AUTO_RESPOND_DRAFT)
        and not should_ignore
    )


def follow_merge_pointer(db: Session, conversation: Conversation) -> Conversation:
    """Return the conversation that *conversation* was (transitively) merged into."""
    seen = {conversation.id}
    current = conversation
    while current.merged_into_id is not None and len(seen) <= _MAX_MERGE_DEPTH:
        target = db.get(Conversation, current.merged_into_id)
        if target is None or target.id in seen:
            logger.warning(
                "follow_merge_pointer: broken merge chain at conversation %s", current.id
            )
            break
        seen.add(target.id)
        current = target
    return current
