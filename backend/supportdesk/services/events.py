"""Domain event catalog and dispatcher.

Each event name maps to a payload schema and to the handler jobs that
consume it. ``trigger_event`` writes one ``Job`` row per handler into the
caller's session, so the whole fan-out commits or rolls back together with
the change that caused it. Delivery to workers is done by
``supportdesk.tasks.event_tasks.dispatch_pending_jobs`` (at-least-once).
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel
from sqlalchemy.orm import Session

from supportdesk.models.job import Job
from supportdesk.schemas import events as payloads

logger = logging.getLogger(__name__)


class EventName(str, enum.Enum):
    FILE_PREVIEW_GENERATE = "files/preview.generate"
    EMBEDDING_CREATE = "conversations/embedding.create"
    MESSAGE_CREATED = "conversations/message.created"
    EMAIL_ENQUEUED = "conversations/email.enqueued"
    AUTO_RESPONSE_CREATE = "conversations/auto-response.create"
    HUMAN_SUPPORT_REQUESTED = "conversations/human-support-requested"
    SEND_FOLLOWER_NOTIFICATION = "conversations/send-follower-notification"


@dataclasses.dataclass(frozen=True)
class EventDefinition:
    payload: type[BaseModel]
    jobs: tuple[str, ...]


EVENTS: Mapping[EventName, EventDefinition] = MappingProxyType(
    {
        EventName.FILE_PREVIEW_GENERATE: EventDefinition(
            payloads.FilePreviewGeneratePayload, ("generateFilePreview",)
        ),
        EventName.EMBEDDING_CREATE: EventDefinition(
            payloads.EmbeddingCreatePayload, ("embeddingConversation",)
        ),
        EventName.MESSAGE_CREATED: EventDefinition(
            payloads.MessageCreatedPayload,
            (
                "indexConversationMessage",
                "generateConversationSummaryEmbeddings",
                "mergeSimilarConversations",
                "publishNewMessageEvent",
                "notifyVipMessage",
                "categorizeConversationToIssueGroup",
            ),
        ),
        EventName.EMAIL_ENQUEUED: EventDefinition(
            payloads.EmailEnqueuedPayload, ("postEmailToGmail",)
        ),
        EventName.AUTO_RESPONSE_CREATE: EventDefinition(
            payloads.AutoResponseCreatePayload, ("handleAutoResponse",)
        ),
        EventName.HUMAN_SUPPORT_REQUESTED: EventDefinition(
            payloads.HumanSupportRequestedPayload,
            ("autoAssignConversation", "publishRequestHumanSupport"),
        ),
        EventName.SEND_FOLLOWER_NOTIFICATION: EventDefinition(
            payloads.SendFollowerNotificationPayload, ("sendFollowerNotification",)
        ),
    }
)

_undefined = set(EventName) - set(EVENTS)
if _undefined:
    raise RuntimeError(f"Events without a definition: {sorted(e.value for e in _undefined)}")


def trigger_event(
    db: Session,
    event: EventName | str,
    data: Mapping[str, Any] | BaseModel,
    *,
    sleep_seconds: int = 0,
) -> list[Job]:
    """Queue *event* for every handler registered for it.

    Raises ValueError for an unknown event name and pydantic.ValidationError
    for a payload that does not match the event's schema; nothing is queued
    in either case.
    """
    name = EventName(event)
    definition = EVENTS[name]
    if isinstance(data, BaseModel):
        data = data.model_dump()
    payload = definition.payload.model_validate(data).model_dump(mode="json", exclude_none=True)

    run_at = datetime.now(timezone.utc) + timedelta(seconds=sleep_seconds)
    jobs = [
        Job(event=name.value, job=job, payload=payload, run_at=run_at)
        for job in definition.jobs
    ]
    db.add_all(jobs)
    db.flush()

    logger.debug(
        "trigger_event: queued %s for %d handler(s), delay=%ds",
        name.value, len(jobs), sleep_seconds,
    )
    return jobs
