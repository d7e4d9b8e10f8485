"""Payload shapes for the domain events in ``supportdesk.services.events``."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


class _EventPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class FilePreviewGeneratePayload(_EventPayload):
    fileId: str


class EmbeddingCreatePayload(_EventPayload):
    conversationSlug: str


class MessageCreatedPayload(_EventPayload):
    messageId: str
    conversationId: str | None = None


class EmailEnqueuedPayload(_EventPayload):
    messageId: str


class AutoResponseCreatePayload(_EventPayload):
    messageId: str
    tools: dict[str, Any] | None = None


class HumanSupportRequestedPayload(_EventPayload):
    conversationId: str


class FollowerNotificationDetails(_EventPayload):
    message: str | None = None
    oldStatus: str | None = None
    newStatus: str | None = None
    oldAssignee: str | None = None
    newAssignee: str | None = None
    note: str | None = None


class SendFollowerNotificationPayload(_EventPayload):
    conversationId: str
    eventType: Literal["new_message", "status_change", "assignment_change", "note_added"]
    triggeredByUserId: str
    eventDetails: FollowerNotificationDetails
