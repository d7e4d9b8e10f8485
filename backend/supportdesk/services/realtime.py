from __future__ import annotations

import json
import logging
from typing import Any

import redis as redis_module
from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session, SessionTransaction

from supportdesk.config import settings

logger = logging.getLogger(__name__)

CONVERSATION_UPDATED = "conversation.updated"
CONVERSATION_STATUS_CHANGED = "conversation.statusChanged"

_client: redis_module.Redis | None = None
_PENDING_KEY = "supportdesk.realtime.pending"


def _get_client() -> redis_module.Redis:
    global _client
    if _client is None:
        _client = redis_module.from_url(settings.REDIS_URL)
    return _client


def conversation_channel_id(conversation_slug: str) -> str:
    return f"conversation-{conversation_slug}"


def conversations_list_channel_id() -> str:
    return "conversations"


def publish_to_realtime(channel: str, event: str, data: dict[str, Any]) -> None:
    """Publish *event* on *channel*. Delivery is best effort."""
    message = json.dumps({"event": event, "data": data}, default=str)
    try:
        _get_client().publish(channel, message)
    except redis_module.RedisError as exc:
        logger.warning("publish_to_realtime: failed to publish %s on %s: %s", event, channel, exc)


def publish_after_commit(db: Session, channel: str, event: str, data: dict[str, Any]) -> None:
    """Publish *event* once *db* commits. A rollback drops it unsent."""
    db.info.setdefault(_PENDING_KEY, []).append((channel, event, data))


@sa_event.listens_for(Session, "after_commit")
def _publish_pending(session: Session) -> None:
    for channel, event, data in session.info.pop(_PENDING_KEY, []):
        publish_to_realtime(channel, event, data)


@sa_event.listens_for(Session, "after_transaction_end")
def _discard_pending(session: Session, transaction: SessionTransaction) -> None:
    # Whatever is still queued when the outermost transaction ends was rolled back.
    if transaction.parent is None:
        session.info.pop(_PENDING_KEY, None)
