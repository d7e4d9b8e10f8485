"""Turns a Gmail push notification into conversation messages.

One call handles one notification: it reads the mailbox history since the
stored cursor, stores each new inbound message on the right conversation and
queues the follow-up events. A failing message is rolled back and reported
in the results without stopping the rest of the batch.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from concurrent.futures import ThreadPoolExecutor

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supportdesk.config import settings
from supportdesk.models.file import File
from supportdesk.models.mailbox import GmailSupportEmail, Mailbox
from supportdesk.models.message import ROLE_STAFF, ROLE_USER, STATUS_SENT, ConversationMessage
from supportdesk.models.user_profile import UserProfile
from supportdesk.schemas.gmail import (
    GmailWebhookBodySchema,
    GmailWebhookDataSchema,
    GmailWebhookHeadersSchema,
    MessageResultSchema,
    WebhookResultSchema,
)
from supportdesk.services import (
    classifier,
    conversation_resolver,
    conversation_service,
    email_normalizer,
    file_service,
    message_service,
    storage,
    user_service,
)
from supportdesk.services.email_normalizer import EmailAttachment, NormalizedEmail
from supportdesk.services.events import EventName, trigger_event
from supportdesk.services.gmail_connector import GmailAPIError, GmailConnector, HistoryMessageRef

logger = logging.getLogger(__name__)

IGNORED_GMAIL_CATEGORIES = frozenset(
    {"CATEGORY_PROMOTIONS", "CATEGORY_UPDATES", "CATEGORY_FORUMS", "CATEGORY_SOCIAL"}
)
CC_ASSIGNMENT_REASON = "Auto-assigned based on CC"


class NonRetriableError(Exception):
    """The request can never succeed; it must not be redelivered."""


# ── Authorization ─────────────────────────────────────────────────────────────


def authorize_gmail_request(
    body: GmailWebhookBodySchema, headers: GmailWebhookHeadersSchema
) -> GmailWebhookDataSchema:
    """Verify the Pub/Sub bearer token and decode the notification data.

    Raises NonRetriableError for a bad token or undecodable data.
    """
    scheme, _, token = headers.authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise NonRetriableError("Invalid token")

    try:
        claims = id_token.verify_oauth2_token(token.strip(), google_requests.Request())
    except ValueError as exc:
        logger.warning("authorize_gmail_request: token verification failed: %s", exc)
        raise NonRetriableError("Invalid token") from exc

    if claims.get("email") != settings.GOOGLE_PUBSUB_CLAIM_EMAIL:
        logger.warning("authorize_gmail_request: unexpected token email %s", claims.get("email"))
        raise NonRetriableError("Invalid token")

    try:
        decoded = json.loads(base64.b64decode(body.message.data).decode("utf-8"))
        return GmailWebhookDataSchema.model_validate(decoded)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        raise NonRetriableError(f"Invalid notification data: {exc}") from exc


# ── History ───────────────────────────────────────────────────────────────────


def fetch_history(
    connector: GmailConnector, cached_history_id: int | None, payload_history_id: int
) -> list[HistoryMessageRef]:
    """Added messages since the stored cursor, or since the notification's own
    cursor when the stored one has expired."""
    page = connector.get_messages_from_history_id(
        cached_history_id if cached_history_id is not None else payload_history_id
    )
    if page.status == 404:
        logger.warning(
            "fetch_history: cached historyId %s expired, falling back to %s",
            cached_history_id, payload_history_id,
        )
        page = connector.get_messages_from_history_id(payload_history_id)
        if page.status == 404:
            raise GmailAPIError(404, f"historyId {payload_history_id} not found")
    return page.history


# ── Per-message steps ─────────────────────────────────────────────────────────


def assign_based_on_cc(
    db: Session, conversation_id: str, email_cc: list[str], support_address: str
) -> UserProfile | None:
    """Assign the conversation to the first CC'd staff member, if any."""
    for address in email_cc:
        if address.lower() == support_address.lower():
            continue
        staff_user = user_service.get_basic_profile_by_email(db, address)
        if staff_user is not None:
            conversation_service.update_conversation(
                db,
                conversation_id,
                set={"assigned_to_id": staff_user.id, "assigned_to_ai": False},
                reason=CC_ASSIGNMENT_REASON,
                skip_realtime_events=True,
            )
            return staff_user
    return None


def _upload_attachment(conversation_slug: str, attachment: EmailAttachment) -> str:
    key = storage.generate_key(["attachments", conversation_slug], attachment.filename or "untitled")
    storage.upload_file(key, attachment.content, mimetype=attachment.content_type)
    return key


def process_gmail_attachments(
    db: Session,
    conversation_slug: str,
    message_id: str,
    attachments: list[EmailAttachment],
) -> list[File]:
    """Upload attachments concurrently and record the ones that made it."""
    if not attachments:
        return []

    files: list[File] = []
    workers = min(len(attachments), email_normalizer.MAX_UPLOAD_WORKERS)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [
            (attachment, pool.submit(_upload_attachment, conversation_slug, attachment))
            for attachment in attachments
        ]
        for attachment, future in futures:
            try:
                key = future.result()
            except Exception:
                logger.exception(
                    "process_gmail_attachments: failed to upload %r for message %s",
                    attachment.filename, message_id,
                )
                continue

            file = file_service.create_file_record(
                db,
                name=attachment.filename or "untitled",
                key=key,
                mimetype=attachment.content_type or "application/octet-stream",
                size=attachment.size,
                is_inline=False,
                message_id=message_id,
            )
            trigger_event(db, EventName.FILE_PREVIEW_GENERATE, {"fileId": file.id})
            files.append(file)
    return files


def _should_ignore(
    email: NormalizedEmail,
    staff_user: UserProfile | None,
    is_first_message: bool,
    label_ids: list[str],
) -> bool:
    return (
        (staff_user is not None and not is_first_message)
        or any(label in IGNORED_GMAIL_CATEGORIES for label in label_ids)
        or email_normalizer.matches_transactional_email_address(email.from_address)
    )


def _process_message(
    db: Session,
    connector: GmailConnector,
    support_email: GmailSupportEmail,
    mailbox: Mailbox,
    ref: HistoryMessageRef,
) -> MessageResultSchema:
    gmail_message_id, gmail_thread_id = ref.id, ref.thread_id
    email = email_normalizer.normalize(connector.get_raw_message(gmail_message_id))

    if email.from_address.lower() == support_email.email.lower():
        return MessageResultSchema(
            message=f"Skipped - message {gmail_message_id} sent from mailbox",
            gmailMessageId=gmail_message_id,
            gmailThreadId=gmail_thread_id,
        )

    is_first_message = conversation_resolver.is_new_thread(gmail_message_id, gmail_thread_id)
    processed_html, file_slugs = email_normalizer.extract_and_upload_inline_images(
        db, email.canonical_body
    )
    cleaned_up_text = email_normalizer.html_to_text(
        processed_html if is_first_message else email_normalizer.extract_quotations(processed_html)
    )

    staff_user = user_service.get_basic_profile_by_email(db, email.from_address)
    should_ignore = _should_ignore(email, staff_user, is_first_message, ref.label_ids)
    is_automated_response_or_thank_you: bool | None = None
    if not should_ignore:
        is_automated_response_or_thank_you = classifier.is_auto_response_or_thank_you(
            mailbox, cleaned_up_text
        )
        should_ignore = is_automated_response_or_thank_you

    conversation = conversation_resolver.resolve_conversation(
        db,
        mailbox,
        gmail_message_id=gmail_message_id,
        gmail_thread_id=gmail_thread_id,
        email_from=email.from_address,
        email_from_name=email.from_name,
        subject=email.subject,
        should_ignore=should_ignore,
    )
    resolved_status = conversation.status
    resolved_assigned_to_ai = conversation.assigned_to_ai

    message = message_service.create_conversation_message(
        db,
        conversation_id=conversation.id,
        role=ROLE_STAFF if staff_user is not None else ROLE_USER,
        status=STATUS_SENT if staff_user is not None else None,
        user_id=staff_user.id if staff_user is not None else None,
        gmail_message_id=gmail_message_id,
        gmail_thread_id=gmail_thread_id,
        message_id=email.message_id,
        references=email.references,
        email_from=email.from_address,
        email_to=email.to,
        email_cc=email.cc or None,
        email_bcc=email.bcc or None,
        body=processed_html,
        cleaned_up_text=cleaned_up_text,
        is_perfect=False,
        is_pinned=False,
        is_flagged_as_bad=False,
        created_at=email.date,
    )
    file_service.finish_file_upload(db, file_slugs=file_slugs, message_id=message.id)

    if email.cc and staff_user is None and not conversation.assigned_to_id:
        assign_based_on_cc(db, conversation.id, email.cc, support_email.email)

    process_gmail_attachments(db, conversation.slug, message.id, email.attachments)

    if conversation_resolver.should_reopen(
        resolved_status, resolved_assigned_to_ai, mailbox, should_ignore
    ):
        conversation_service.update_conversation(db, conversation.id, set={"status": "open"})

    if not should_ignore:
        trigger_event(db, EventName.AUTO_RESPONSE_CREATE, {"messageId": message.id})

    return MessageResultSchema(
        message=f"Created message {message.id}",
        messageId=message.id,
        conversationSlug=conversation.slug,
        responded=not should_ignore,
        isAutomatedResponseOrThankYou=is_automated_response_or_thank_you,
        gmailMessageId=gmail_message_id,
        gmailThreadId=gmail_thread_id,
    )


# ── Entry point ───────────────────────────────────────────────────────────────


def _message_exists(db: Session, gmail_message_id: str) -> bool:
    return (
        db.query(ConversationMessage.id)
        .filter(ConversationMessage.gmail_message_id == gmail_message_id)
        .first()
    ) is not None


def handle_gmail_webhook_event(
    db: Session, data: GmailWebhookDataSchema
) -> WebhookResultSchema | str:
    """Ingest everything new in the notified mailbox.

    Each stored message is committed on its own. The history cursor is
    advanced to the notification's historyId after the loop, whatever the
    individual outcomes. Errors fetching history propagate.
    """
    support_email = (
        db.query(GmailSupportEmail).filter(GmailSupportEmail.email == data.emailAddress).first()
    )
    mailbox = support_email.mailboxes[0] if support_email and support_email.mailboxes else None
    if (
        mailbox is None
        or not support_email.encrypted_access_token
        or not support_email.encrypted_refresh_token
    ):
        return f"Valid gmail support email record not found for {data.emailAddress}"

    connector = GmailConnector(support_email)
    refs = fetch_history(connector, support_email.history_id, data.historyId)

    results: list[MessageResultSchema] = []
    for ref in refs:
        if not (ref.id and ref.thread_id):
            results.append(
                MessageResultSchema(
                    message="Skipped - missing message ID or thread ID",
                    gmailMessageId=ref.id,
                    gmailThreadId=ref.thread_id,
                )
            )
            continue

        already_exists = MessageResultSchema(
            message=f"Skipped - message {ref.id} already exists",
            gmailMessageId=ref.id,
            gmailThreadId=ref.thread_id,
        )
        if _message_exists(db, ref.id):
            results.append(already_exists)
            continue

        try:
            result = _process_message(db, connector, support_email, mailbox, ref)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            logger.info("handle_gmail_webhook_event: message %s stored concurrently: %s", ref.id, exc.orig)
            result = already_exists
        except Exception as exc:
            db.rollback()
            logger.exception("handle_gmail_webhook_event: failed to process message %s", ref.id)
            result = MessageResultSchema(
                message=f"Error processing message {ref.id}: {exc}",
                gmailMessageId=ref.id,
                gmailThreadId=ref.thread_id,
            )
        results.append(result)

    support_email.history_id = data.historyId
    db.commit()

    logger.info(
        "handle_gmail_webhook_event: %s processed %d message(s)", data.emailAddress, len(refs)
    )
    return WebhookResultSchema(messages=len(refs), results=results)
