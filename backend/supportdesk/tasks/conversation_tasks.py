from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from supportdesk.celery_app import celery_app
from supportdesk.database import SessionLocal
from supportdesk.models.conversation import STATUS_CLOSED, STATUS_OPEN, Conversation
from supportdesk.models.conversation_event import EVENT_AUTO_CLOSED_DUE_TO_INACTIVITY
from supportdesk.models.mailbox import Mailbox
from supportdesk.services.conversation_service import update_conversation

logger = logging.getLogger(__name__)

DEFAULT_INACTIVITY_DAYS = 14
AUTO_CLOSE_REASON = "Auto-closed due to inactivity"


def find_inactive_conversations(db: Session, days: int) -> list[Conversation]:
    """Open, unmerged conversations with no message for *days* days."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    last_activity = func.coalesce(Conversation.last_message_at, Conversation.created_at)
    return (
        db.query(Conversation)
        .filter(
            Conversation.status == STATUS_OPEN,
            Conversation.merged_into_id.is_(None),
            last_activity < cutoff,
        )
        .all()
    )


@celery_app.task(name="supportdesk.tasks.conversation_tasks.close_inactive_conversations")
def close_inactive_conversations() -> int:
    """Close conversations that have gone quiet, when the mailbox opts in."""
    db: Session = SessionLocal()
    try:
        mailbox = db.query(Mailbox).order_by(Mailbox.created_at).first()
        preferences = (mailbox.preferences or {}) if mailbox is not None else {}
        if not preferences.get("auto_close_enabled"):
            logger.debug("close_inactive_conversations: auto-close disabled")
            return 0

        days = int(preferences.get("auto_close_days_of_inactivity") or DEFAULT_INACTIVITY_DAYS)
        conversations = find_inactive_conversations(db, days)
        for conversation in conversations:
            update_conversation(
                db,
                conversation.id,
                set={"status": STATUS_CLOSED},
                reason=AUTO_CLOSE_REASON,
                type=EVENT_AUTO_CLOSED_DUE_TO_INACTIVITY,
            )
        db.commit()
        logger.info(
            "close_inactive_conversations: closed %d conversation(s) idle for %d day(s)",
            len(conversations), days,
        )
        return len(conversations)
    finally:
        db.close()
