"""Conversation reads and the conversation status state machine.

Every status or assignment change goes through ``update_conversation`` so
that the audit event and domain events are written once per transition.
Realtime updates are sent only after the caller commits.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from supportdesk.models.conversation import (
    CONVERSATION_STATUSES,
    STATUS_CLOSED,
    STATUS_OPEN,
    Conversation,
)
from supportdesk.models.conversation_event import (
    EVENT_REQUEST_HUMAN_SUPPORT,
    EVENT_UPDATE,
    ConversationEvent,
)
from supportdesk.services import realtime
from supportdesk.services.events import EventName, trigger_event

logger = logging.getLogger(__name__)

_TRACKED_FIELDS = ("status", "assigned_to_id", "assigned_to_ai", "is_visible")
_UPDATABLE_FIELDS = frozenset(
    {
        "subject",
        "status",
        "assigned_to_id",
        "assigned_to_ai",
        "is_visible",
        "merged_into_id",
        "email_from",
        "email_from_name",
        "last_message_at",
        "last_user_email_created_at",
        "last_read_at",
        "closed_at",
    }
)


def get_conversation_by_id(db: Session, conversation_id: str) -> Conversation | None:
    return db.get(Conversation, conversation_id)


def get_conversation_by_slug(db: Session, slug: str) -> Conversation | None:
    return db.query(Conversation).filter(Conversation.slug == slug).first()


def serialize_conversation(conversation: Conversation) -> dict[str, Any]:
    """Realtime representation of a conversation."""
    return {
        "id": conversation.id,
        "slug": conversation.slug,
        "subject": conversation.subject,
        "status": conversation.status,
        "emailFrom": conversation.email_from,
        "emailFromName": conversation.email_from_name,
        "assignedToId": conversation.assigned_to_id,
        "assignedToAI": conversation.assigned_to_ai,
        "isVisible": conversation.is_visible,
        "mergedIntoId": conversation.merged_into_id,
        "createdAt": conversation.created_at,
        "updatedAt": conversation.updated_at,
        "closedAt": conversation.closed_at,
        "lastMessageAt": conversation.last_message_at,
    }


def update_conversation(
    db: Session,
    conversation_id: str,
    *,
    set: Mapping[str, Any],
    by_user_id: str | None = None,
    reason: str | None = None,
    skip_realtime_events: bool = False,
    type: str = EVENT_UPDATE,
) -> Conversation | None:
    """Apply *set* to a conversation inside the caller's session.

    Returns None, with no side effects, if the conversation does not exist.
    Setting ``status`` to closed stamps ``closed_at``; moving away from closed
    leaves ``closed_at`` alone unless the caller sets it.
    """
    unknown = set.keys() - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update conversation fields: {sorted(unknown)}")
    if "status" in set and set["status"] not in CONVERSATION_STATUSES:
        raise ValueError(f"Invalid conversation status {set['status']!r}")

    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        return None

    previous = {field: getattr(conversation, field) for field in _TRACKED_FIELDS}
    now = datetime.now(timezone.utc)

    values = dict(set)
    if values.get("status") == STATUS_CLOSED and "closed_at" not in values:
        values["closed_at"] = now
    values["updated_at"] = now
    for field, value in values.items():
        setattr(conversation, field, value)

    db.add(
        ConversationEvent(
            conversation_id=conversation.id,
            type=type,
            changes={field: previous[field] for field in _TRACKED_FIELDS if field in set},
            by_user_id=by_user_id,
            reason=reason,
        )
    )
    db.flush()

    status_changed = "status" in set and previous["status"] != conversation.status

    if not skip_realtime_events:
        realtime.publish_after_commit(
            db,
            realtime.conversation_channel_id(conversation.slug),
            realtime.CONVERSATION_UPDATED,
            serialize_conversation(conversation),
        )
        if status_changed:
            realtime.publish_after_commit(
                db,
                realtime.conversations_list_channel_id(),
                realtime.CONVERSATION_STATUS_CHANGED,
                {
                    "id": conversation.id,
                    "status": conversation.status,
                    "assignedToAI": conversation.assigned_to_ai,
                    "assignedToId": conversation.assigned_to_id,
                    "previousValues": {
                        "status": previous["status"],
                        "assignedToId": previous["assigned_to_id"],
                        "assignedToAI": previous["assigned_to_ai"],
                    },
                },
            )

    if status_changed and conversation.status == STATUS_CLOSED:
        trigger_event(db, EventName.EMBEDDING_CREATE, {"conversationSlug": conversation.slug})

    if by_user_id:
        _notify_followers(db, conversation, previous, set, by_user_id)

    logger.debug(
        "update_conversation: conversation=%s fields=%s status_changed=%s",
        conversation.id, sorted(set), status_changed,
    )
    return conversation


def _notify_followers(
    db: Session,
    conversation: Conversation,
    previous: dict[str, Any],
    changed: Mapping[str, Any],
    by_user_id: str,
) -> None:
    if "status" in changed and previous["status"] != conversation.status:
        trigger_event(
            db,
            EventName.SEND_FOLLOWER_NOTIFICATION,
            {
                "conversationId": conversation.id,
                "eventType": "status_change",
                "triggeredByUserId": by_user_id,
                "eventDetails": {
                    "oldStatus": previous["status"],
                    "newStatus": conversation.status,
                },
            },
        )
    if "assigned_to_id" in changed and previous["assigned_to_id"] != conversation.assigned_to_id:
        trigger_event(
            db,
            EventName.SEND_FOLLOWER_NOTIFICATION,
            {
                "conversationId": conversation.id,
                "eventType": "assignment_change",
                "triggeredByUserId": by_user_id,
                "eventDetails": {
                    "oldAssignee": previous["assigned_to_id"],
                    "newAssignee": conversation.assigned_to_id,
                },
            },
        )


def request_human_support(
    db: Session,
    conversation_id: str,
    *,
    reason: str | None = None,
) -> Conversation | None:
    """Hand a conversation from the AI to the human team."""
    conversation = update_conversation(
        db,
        conversation_id,
        set={"status": STATUS_OPEN, "assigned_to_ai": False},
        reason=reason,
        type=EVENT_REQUEST_HUMAN_SUPPORT,
    )
    if conversation is None:
        return None
    trigger_event(db, EventName.HUMAN_SUPPORT_REQUESTED, {"conversationId": conversation.id})
    return conversation
