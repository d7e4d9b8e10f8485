from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Header, HTTPException
from pydantic import ValidationError

from supportdesk.schemas.gmail import GmailWebhookBodySchema, GmailWebhookHeadersSchema
from supportdesk.services.gmail_ingest import NonRetriableError, authorize_gmail_request

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/gmail")
def gmail_webhook(
    body: dict[str, Any] = Body(...),
    authorization: str | None = Header(default=None),
):
    """Receive Gmail push notifications from Google Pub/Sub.

    Rejected requests are never enqueued. A malformed body or header is a
    422. A bad token or undecodable data is acknowledged with a 200 marked
    "rejected", since Pub/Sub redelivers on any non-2xx response.
    """
    try:
        webhook_body = GmailWebhookBodySchema.model_validate(body)
        webhook_headers = GmailWebhookHeadersSchema.model_validate(
            {"authorization": authorization or ""}
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc

    try:
        data = authorize_gmail_request(webhook_body, webhook_headers)
    except NonRetriableError as exc:
        logger.warning("gmail_webhook: rejected notification: %s", exc)
        return {"status": "rejected", "detail": str(exc)}

    from supportdesk.tasks.gmail_tasks import process_gmail_webhook
    process_gmail_webhook.delay(data.model_dump())
    logger.info(
        "gmail_webhook: enqueued notification for %s, historyId=%s",
        data.emailAddress, data.historyId,
    )
    return {"status": "ok"}
