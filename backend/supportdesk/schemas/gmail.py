from __future__ import annotations

import email.utils

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PubSubMessageSchema(BaseModel):
    data: str
    # Assigned by Google when published; unique within the topic.
    messageId: str
    publishTime: str


class GmailWebhookBodySchema(BaseModel):
    message: PubSubMessageSchema
    subscription: str


class GmailWebhookHeadersSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    authorization: str = Field(min_length=1)


class GmailWebhookDataSchema(BaseModel):
    emailAddress: str
    historyId: int

    @field_validator("emailAddress")
    @classmethod
    def _valid_address(cls, value: str) -> str:
        _, addr = email.utils.parseaddr(value)
        if not addr or "@" not in addr or addr != value.strip():
            raise ValueError(f"Invalid email address: {value!r}")
        return addr


class MessageResultSchema(BaseModel):
    message: str
    responded: bool | None = None
    isAutomatedResponseOrThankYou: bool | None = None
    gmailMessageId: str | None = None
    gmailThreadId: str | None = None
    messageId: str | None = None
    conversationSlug: str | None = None


class WebhookResultSchema(BaseModel):
    messages: int
    results: list[MessageResultSchema]
