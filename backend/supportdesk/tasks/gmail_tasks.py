from __future__ import annotations

import logging
from datetime import datetime, timezone

import redis as redis_module
from pydantic import ValidationError
from sqlalchemy.orm import Session

from supportdesk.celery_app import celery_app
from supportdesk.config import settings
from supportdesk.database import SessionLocal
from supportdesk.models.mailbox import GmailSupportEmail
from supportdesk.schemas.gmail import GmailWebhookDataSchema
from supportdesk.services.gmail_connector import GmailAPIError, GmailAuthError, GmailConnector
from supportdesk.services.gmail_ingest import handle_gmail_webhook_event

logger = logging.getLogger(__name__)

_LOCK_RETRY_COUNTDOWN = 10


@celery_app.task(bind=True, max_retries=5, name="supportdesk.tasks.gmail_tasks.process_gmail_webhook")
def process_gmail_webhook(self, data: dict) -> dict | str | None:
    """Ingest a verified Gmail notification, one batch per mailbox at a time."""
    try:
        notification = GmailWebhookDataSchema.model_validate(data)
    except ValidationError as exc:
        logger.error("process_gmail_webhook: invalid notification data %r: %s", data, exc)
        return None

    _redis = redis_module.from_url(settings.REDIS_URL)
    lock = _redis.lock(
        f"supportdesk:gmail_lock:{notification.emailAddress.lower()}", timeout=300
    )  # 5-min TTL

    if not lock.acquire(blocking=False):
        logger.info(
            "process_gmail_webhook: lock held for %s, retrying in %ds",
            notification.emailAddress, _LOCK_RETRY_COUNTDOWN,
        )
        raise self.retry(countdown=_LOCK_RETRY_COUNTDOWN)

    db: Session = SessionLocal()
    try:
        try:
            result = handle_gmail_webhook_event(db, notification)
        except GmailAuthError as exc:
            logger.error(
                "process_gmail_webhook: GmailAuthError for %s: %s", notification.emailAddress, exc
            )
            return None
        except GmailAPIError as exc:
            logger.error(
                "process_gmail_webhook: GmailAPIError for %s: %s", notification.emailAddress, exc
            )
            db.rollback()
            raise self.retry(exc=exc)

        if isinstance(result, str):
            logger.warning("process_gmail_webhook: %s", result)
            return result
        return result.model_dump()
    finally:
        db.close()
        try:
            lock.release()
        except redis_module.exceptions.LockError as exc:
            logger.debug("could not release lock for %s: %s", notification.emailAddress, exc)


@celery_app.task(name="supportdesk.tasks.gmail_tasks.renew_all_watches")
def renew_all_watches() -> None:
    """Renew Gmail push watches for every connected support address."""
    db: Session = SessionLocal()
    try:
        support_emails = (
            db.query(GmailSupportEmail)
            .filter(GmailSupportEmail.encrypted_refresh_token.isnot(None))
            .all()
        )
        for support_email in support_emails:
            try:
                _register_watch(support_email)
                db.commit()
                logger.info("renewed Gmail watch for %s", support_email.email)
            except (GmailAuthError, GmailAPIError, ValueError) as exc:
                logger.warning("renew_all_watches: failed for %s: %s", support_email.email, exc)
                db.rollback()
    finally:
        db.close()


def _register_watch(support_email: GmailSupportEmail) -> None:
    """Register a watch and record its expiry.

    The stored history cursor is only seeded, never moved, so messages that
    arrived since the last notification are still picked up.
    """
    registration = GmailConnector(support_email).register_watch(
        topic_name=settings.GOOGLE_PUBSUB_TOPIC
    )
    if support_email.history_id is None:
        support_email.history_id = registration.history_id
    support_email.watch_expiry = datetime.fromtimestamp(
        registration.expiration_ms / 1000, tz=timezone.utc
    )
