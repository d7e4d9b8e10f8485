"""Tests for supportdesk.services.gmail_ingest.

The Gmail connector, blob storage and the Anthropic client are mocked; the
database is the real test session.
"""

import base64
import contextlib
import json
from email.message import EmailMessage
from unittest.mock import MagicMock, patch

import anthropic
import httpx
import pytest

from supportdesk.models.conversation import Conversation
from supportdesk.models.conversation_event import ConversationEvent
from supportdesk.models.file import File
from supportdesk.models.job import Job
from supportdesk.models.mailbox import GmailSupportEmail, Mailbox
from supportdesk.models.message import ConversationMessage
from supportdesk.models.user_profile import UserProfile
from supportdesk.schemas.gmail import (
    GmailWebhookBodySchema,
    GmailWebhookDataSchema,
    GmailWebhookHeadersSchema,
)
from supportdesk.services.conversation_service import update_conversation
from supportdesk.services.gmail_connector import GmailAPIError, HistoryMessageRef, HistoryPage
from supportdesk.services.gmail_ingest import (
    NonRetriableError,
    authorize_gmail_request,
    fetch_history,
    handle_gmail_webhook_event,
)

SUPPORT_ADDRESS = "support@example.com"


# ── Helpers ───────────────────────────────────────────────────────────────────


def _make_mailbox(db_session, history_id: int | None = 100, preferences: dict | None = None) -> Mailbox:
    support_email = GmailSupportEmail(email=SUPPORT_ADDRESS, history_id=history_id)
    support_email.set_access_token("access-token")
    support_email.set_refresh_token("refresh-token")
    mailbox = Mailbox(
        name="Support",
        slug="support",
        preferences=preferences or {},
        gmail_support_email=support_email,
    )
    db_session.add_all([support_email, mailbox])
    db_session.commit()
    return mailbox


def _make_staff(db_session, email: str = "staff@example.com") -> UserProfile:
    staff = UserProfile(email=email, display_name="Staff Member")
    db_session.add(staff)
    db_session.commit()
    return staff


def _raw_email(
    from_: str = "Customer <customer@example.com>",
    body: str = "Can you help?",
    *,
    html: bool = False,
    cc: str | None = None,
    attachments: tuple[tuple[str, bytes], ...] = (),
) -> bytes:
    message = EmailMessage()
    message["From"] = from_
    message["To"] = f"Support <{SUPPORT_ADDRESS}>"
    if cc:
        message["Cc"] = cc
    message["Subject"] = "Need help"
    message["Message-ID"] = "<msg@example.com>"
    message["Date"] = "Thu, 01 Jan 2026 10:00:00 +0000"
    if html:
        message.set_content(body, subtype="html")
    else:
        message.set_content(body)
    for filename, content in attachments:
        message.add_attachment(
            content, maintype="application", subtype="octet-stream", filename=filename
        )
    return message.as_bytes()


def _ref(message_id: str | None, thread_id: str | None, labels: list[str] | None = None):
    return HistoryMessageRef(id=message_id, thread_id=thread_id, label_ids=labels or ["INBOX"])


def _connector(refs: list[HistoryMessageRef], raw: dict[str, bytes]) -> MagicMock:
    connector = MagicMock()
    connector.get_messages_from_history_id.return_value = HistoryPage(status=200, history=refs)
    connector.get_raw_message.side_effect = lambda message_id: raw[message_id]
    return connector


def _data(history_id: int = 200) -> GmailWebhookDataSchema:
    return GmailWebhookDataSchema(emailAddress=SUPPORT_ADDRESS, historyId=history_id)


@contextlib.contextmanager
def _patched(connector, *, classify: bool | None = False, upload=None):
    """Patch Gmail, storage and classification for one ingestion run."""
    with contextlib.ExitStack() as stack:
        stack.enter_context(
            patch("supportdesk.services.gmail_ingest.GmailConnector", return_value=connector)
        )
        stack.enter_context(
            patch("supportdesk.services.storage.upload_file", side_effect=upload)
        )
        classifier_mock = None
        if classify is not None:
            classifier_mock = stack.enter_context(
                patch(
                    "supportdesk.services.classifier.is_auto_response_or_thank_you",
                    return_value=classify,
                )
            )
        yield classifier_mock


def _jobs(db_session, event: str) -> list[Job]:
    return db_session.query(Job).filter(Job.event == event).all()


# ── End to end ────────────────────────────────────────────────────────────────


def test_new_thread_creates_open_conversation_and_requests_response(db_session):
    mailbox = _make_mailbox(db_session)
    connector = _connector([_ref("t1", "t1")], {"t1": _raw_email()})

    with _patched(connector):
        result = handle_gmail_webhook_event(db_session, _data(history_id=200))

    [conversation] = db_session.query(Conversation).all()
    [message] = db_session.query(ConversationMessage).all()
    assert conversation.status == "open"
    assert conversation.email_from == "customer@example.com"
    assert conversation.subject == "Need help"
    assert message.role == "user"
    assert message.status is None
    assert message.cleaned_up_text == "Can you help?"
    assert message.gmail_thread_id == "t1"
    assert message.email_to == f"Support <{SUPPORT_ADDRESS}>"

    [job] = _jobs(db_session, "conversations/auto-response.create")
    assert job.payload == {"messageId": message.id}

    assert result.messages == 1
    [entry] = result.results
    assert entry.message == f"Created message {message.id}"
    assert entry.responded is True
    assert entry.isAutomatedResponseOrThankYou is False
    assert entry.conversationSlug == conversation.slug
    assert entry.messageId == message.id
    assert mailbox.gmail_support_email.history_id == 200


def test_duplicate_delivery_is_skipped(db_session):
    _make_mailbox(db_session)
    connector = _connector([_ref("t1", "t1")], {"t1": _raw_email()})

    with _patched(connector):
        handle_gmail_webhook_event(db_session, _data(history_id=200))
        second = handle_gmail_webhook_event(db_session, _data(history_id=201))

    assert db_session.query(ConversationMessage).count() == 1
    assert [r.message for r in second.results] == ["Skipped - message t1 already exists"]
    connector.get_raw_message.assert_called_once_with("t1")


def test_concurrently_stored_message_is_skipped_by_unique_constraint(db_session):
    _make_mailbox(db_session)
    # Another delivery stores t1 after this one's existence check.
    winner = Conversation(subject="Need help", status="open", email_from="customer@example.com")
    db_session.add(winner)
    db_session.flush()
    db_session.add(
        ConversationMessage(
            conversation_id=winner.id, role="user", gmail_message_id="t1", gmail_thread_id="t1"
        )
    )
    db_session.commit()
    connector = _connector([_ref("t1", "t1")], {"t1": _raw_email()})

    with _patched(connector), patch(
        "supportdesk.services.gmail_ingest._message_exists", return_value=False
    ):
        result = handle_gmail_webhook_event(db_session, _data(history_id=200))

    assert [r.message for r in result.results] == ["Skipped - message t1 already exists"]
    assert db_session.query(ConversationMessage).count() == 1
    assert db_session.query(Conversation).count() == 1
    assert _jobs(db_session, "conversations/message.created") == []


def test_missing_ids_are_skipped(db_session):
    _make_mailbox(db_session)
    connector = _connector([_ref(None, "t1"), _ref("m2", None)], {})

    with _patched(connector):
        result = handle_gmail_webhook_event(db_session, _data())

    assert result.messages == 2
    assert [r.message for r in result.results] == [
        "Skipped - missing message ID or thread ID",
        "Skipped - missing message ID or thread ID",
    ]
    assert result.results[1].gmailMessageId == "m2"
    connector.get_raw_message.assert_not_called()


def test_mail_sent_from_mailbox_is_skipped(db_session):
    _make_mailbox(db_session)
    connector = _connector(
        [_ref("t1", "t1")], {"t1": _raw_email(from_=f"Support <{SUPPORT_ADDRESS}>")}
    )

    with _patched(connector):
        result = handle_gmail_webhook_event(db_session, _data())

    assert [r.message for r in result.results] == ["Skipped - message t1 sent from mailbox"]
    assert db_session.query(ConversationMessage).count() == 0


def test_missing_mailbox_returns_description(db_session):
    result = handle_gmail_webhook_event(db_session, _data())
    assert result == f"Valid gmail support email record not found for {SUPPORT_ADDRESS}"


# ── Ignore rules ──────────────────────────────────────────────────────────────


def test_thank_you_closes_conversation_without_response(db_session):
    _make_mailbox(db_session)
    connector = _connector([_ref("t1", "t1")], {"t1": _raw_email(body="Thanks a lot!")})

    with _patched(connector, classify=True):
        result = handle_gmail_webhook_event(db_session, _data())

    [conversation] = db_session.query(Conversation).all()
    assert conversation.status == "closed"
    assert conversation.closed_at is not None
    assert _jobs(db_session, "conversations/auto-response.create") == []
    assert result.results[0].responded is False
    assert result.results[0].isAutomatedResponseOrThankYou is True


def test_ignored_category_skips_classification(db_session):
    _make_mailbox(db_session)
    connector = _connector(
        [_ref("t1", "t1", labels=["INBOX", "CATEGORY_PROMOTIONS"])], {"t1": _raw_email()}
    )

    with _patched(connector) as classifier_mock:
        result = handle_gmail_webhook_event(db_session, _data())

    classifier_mock.assert_not_called()
    assert result.results[0].responded is False
    assert result.results[0].isAutomatedResponseOrThankYou is None
    assert db_session.query(Conversation).one().status == "closed"


def test_transactional_sender_is_ignored(db_session):
    _make_mailbox(db_session)
    connector = _connector([_ref("t1", "t1")], {"t1": _raw_email(from_="noreply@service.com")})

    with _patched(connector) as classifier_mock:
        result = handle_gmail_webhook_event(db_session, _data())

    classifier_mock.assert_not_called()
    assert result.results[0].responded is False


def test_classification_failure_fails_open(db_session):
    _make_mailbox(db_session)
    connector = _connector([_ref("t1", "t1")], {"t1": _raw_email()})
    client = MagicMock()
    client.messages.create.side_effect = anthropic.APITimeoutError(
        request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    )

    with _patched(connector, classify=None), patch(
        "supportdesk.services.classifier._get_client", return_value=client
    ):
        result = handle_gmail_webhook_event(db_session, _data())

    assert db_session.query(Conversation).one().status == "open"
    assert len(_jobs(db_session, "conversations/auto-response.create")) == 1
    assert result.results[0].responded is True
    assert result.results[0].isAutomatedResponseOrThankYou is False


def test_staff_follow_up_is_stored_as_sent_staff_message(db_session):
    _make_mailbox(db_session)
    staff = _make_staff(db_session)
    connector = _connector(
        [_ref("t1", "t1"), _ref("m2", "t1")],
        {"t1": _raw_email(), "m2": _raw_email(from_="Staff <staff@example.com>", body="On it")},
    )

    with _patched(connector) as classifier_mock:
        result = handle_gmail_webhook_event(db_session, _data())

    assert classifier_mock.call_count == 1
    staff_message = db_session.query(ConversationMessage).filter_by(gmail_message_id="m2").one()
    assert staff_message.role == "staff"
    assert staff_message.status == "sent"
    assert staff_message.user_id == staff.id
    assert result.results[1].responded is False
    assert db_session.query(Conversation).count() == 1


# ── Threading and reopening ───────────────────────────────────────────────────


def test_follow_up_reopens_closed_conversation_and_strips_quotes(db_session):
    _make_mailbox(db_session)
    first = _connector([_ref("t1", "t1")], {"t1": _raw_email()})
    with _patched(first):
        handle_gmail_webhook_event(db_session, _data(history_id=200))

    conversation = db_session.query(Conversation).one()
    update_conversation(db_session, conversation.id, set={"status": "closed"})
    db_session.commit()

    reply_html = (
        "<div>It still fails.</div>"
        '<div class="gmail_quote"><div>On Thu Support wrote:</div>'
        "<blockquote>Please try again.</blockquote></div>"
    )
    second = _connector([_ref("m2", "t1")], {"m2": _raw_email(body=reply_html, html=True)})
    with _patched(second):
        result = handle_gmail_webhook_event(db_session, _data(history_id=300))

    follow_up = db_session.query(ConversationMessage).filter_by(gmail_message_id="m2").one()
    assert follow_up.conversation_id == conversation.id
    assert follow_up.cleaned_up_text == "It still fails."
    assert "gmail_quote" in follow_up.body
    assert db_session.get(Conversation, conversation.id).status == "open"
    assert result.results[0].conversationSlug == conversation.slug


def test_follow_up_for_ai_conversation_stays_closed(db_session):
    _make_mailbox(db_session, preferences={"auto_respond_email_to_chat": "reply"})
    first = _connector([_ref("t1", "t1")], {"t1": _raw_email()})
    with _patched(first):
        handle_gmail_webhook_event(db_session, _data(history_id=200))

    conversation = db_session.query(Conversation).one()
    assert conversation.assigned_to_ai is True
    update_conversation(db_session, conversation.id, set={"status": "closed"})
    db_session.commit()

    second = _connector([_ref("m2", "t1")], {"m2": _raw_email(body="One more question?")})
    with _patched(second):
        handle_gmail_webhook_event(db_session, _data(history_id=300))

    assert db_session.get(Conversation, conversation.id).status == "closed"
    assert len(_jobs(db_session, "conversations/auto-response.create")) == 2


# ── CC assignment ─────────────────────────────────────────────────────────────


def test_cc_without_staff_leaves_conversation_unassigned(db_session, published):
    _make_mailbox(db_session)
    connector = _connector(
        [_ref("t1", "t1")],
        {"t1": _raw_email(cc=f"user2@example.com, {SUPPORT_ADDRESS}")},
    )

    with _patched(connector):
        handle_gmail_webhook_event(db_session, _data())

    conversation = db_session.query(Conversation).one()
    assert conversation.assigned_to_id is None
    message = db_session.query(ConversationMessage).one()
    assert message.email_cc == ["user2@example.com", SUPPORT_ADDRESS]


def test_cc_with_staff_assigns_conversation_once(db_session, published):
    _make_mailbox(db_session)
    staff = _make_staff(db_session, email="agent@example.com")
    _make_staff(db_session, email="second-agent@example.com")
    connector = _connector(
        [_ref("t1", "t1")],
        {"t1": _raw_email(cc="Agent <agent@example.com>, second-agent@example.com")},
    )

    with _patched(connector):
        handle_gmail_webhook_event(db_session, _data())

    conversation = db_session.query(Conversation).one()
    assert conversation.assigned_to_id == staff.id
    assert conversation.assigned_to_ai is False
    events = (
        db_session.query(ConversationEvent)
        .filter(ConversationEvent.reason == "Auto-assigned based on CC")
        .all()
    )
    assert len(events) == 1
    assert events[0].changes == {"assigned_to_id": None, "assigned_to_ai": False}
    published.assert_not_called()


# ── Attachments ───────────────────────────────────────────────────────────────


def test_failed_attachment_does_not_block_message_or_others(db_session):
    _make_mailbox(db_session)
    connector = _connector(
        [_ref("t1", "t1")],
        {
            "t1": _raw_email(
                attachments=(("one.txt", b"one"), ("two.txt", b"two"), ("three.txt", b"three"))
            )
        },
    )

    def _upload(key, data, *, mimetype):
        if data == b"two":
            raise RuntimeError("storage unavailable")
        return key

    with _patched(connector, upload=_upload):
        result = handle_gmail_webhook_event(db_session, _data())

    message = db_session.query(ConversationMessage).one()
    files = db_session.query(File).filter(File.message_id == message.id).all()
    assert sorted(f.name for f in files) == ["one.txt", "three.txt"]
    conversation = db_session.query(Conversation).one()
    assert all(f.key.startswith(f"attachments/{conversation.slug}/") for f in files)
    previews = _jobs(db_session, "files/preview.generate")
    assert sorted(j.payload["fileId"] for j in previews) == sorted(f.id for f in files)
    assert result.results[0].message == f"Created message {message.id}"


# ── Failure handling and cursor ───────────────────────────────────────────────


def test_failing_message_does_not_stop_batch(db_session):
    mailbox = _make_mailbox(db_session)
    connector = _connector([_ref("t1", "t1"), _ref("t2", "t2")], {})
    raw = {"t2": _raw_email()}

    def _get_raw(message_id):
        if message_id == "t1":
            raise GmailAPIError(500, "backend error")
        return raw[message_id]

    connector.get_raw_message.side_effect = _get_raw

    with _patched(connector):
        result = handle_gmail_webhook_event(db_session, _data(history_id=250))

    assert result.results[0].message == "Error processing message t1: backend error"
    assert result.results[1].message.startswith("Created message ")
    assert db_session.query(ConversationMessage).count() == 1
    assert mailbox.gmail_support_email.history_id == 250


def test_failure_after_insert_rolls_back_that_message(db_session):
    _make_mailbox(db_session)
    connector = _connector([_ref("t1", "t1")], {"t1": _raw_email()})

    with _patched(connector), patch(
        "supportdesk.services.gmail_ingest.trigger_event", side_effect=RuntimeError("queue down")
    ):
        result = handle_gmail_webhook_event(db_session, _data())

    assert result.results[0].message == "Error processing message t1: queue down"
    assert db_session.query(ConversationMessage).count() == 0
    assert db_session.query(Conversation).count() == 0


def test_expired_cursor_falls_back_to_payload_history_id(db_session):
    _make_mailbox(db_session, history_id=100)
    connector = _connector([], {})
    connector.get_messages_from_history_id.side_effect = [
        HistoryPage(status=404, history=[]),
        HistoryPage(status=200, history=[_ref("t1", "t1")]),
    ]
    connector.get_raw_message.side_effect = lambda message_id: _raw_email()

    with _patched(connector):
        result = handle_gmail_webhook_event(db_session, _data(history_id=200))

    assert [c.args[0] for c in connector.get_messages_from_history_id.call_args_list] == [100, 200]
    assert result.messages == 1


def test_history_failure_propagates_and_keeps_cursor(db_session):
    mailbox = _make_mailbox(db_session, history_id=100)
    connector = MagicMock()
    connector.get_messages_from_history_id.side_effect = GmailAPIError(500, "backend error")

    with _patched(connector), pytest.raises(GmailAPIError):
        handle_gmail_webhook_event(db_session, _data(history_id=200))

    assert mailbox.gmail_support_email.history_id == 100


def test_fetch_history_without_cached_cursor_uses_payload():
    connector = MagicMock()
    connector.get_messages_from_history_id.return_value = HistoryPage(status=200, history=[])

    fetch_history(connector, None, 555)

    connector.get_messages_from_history_id.assert_called_once_with(555)


def test_fetch_history_raises_when_both_cursors_expire():
    connector = MagicMock()
    connector.get_messages_from_history_id.return_value = HistoryPage(status=404, history=[])

    with pytest.raises(GmailAPIError):
        fetch_history(connector, 1, 2)


# ── Authorization ─────────────────────────────────────────────────────────────


def _body(payload: dict) -> GmailWebhookBodySchema:
    return GmailWebhookBodySchema(
        message={
            "data": base64.b64encode(json.dumps(payload).encode()).decode(),
            "messageId": "pub-1",
            "publishTime": "2026-01-01T00:00:00Z",
        },
        subscription="projects/test/subscriptions/gmail",
    )


def test_authorize_valid_request():
    headers = GmailWebhookHeadersSchema(authorization="Bearer good-token")
    claims = {"email": "pubsub@test-project.iam.gserviceaccount.com"}

    with patch(
        "supportdesk.services.gmail_ingest.id_token.verify_oauth2_token", return_value=claims
    ) as mock_verify:
        data = authorize_gmail_request(
            _body({"emailAddress": SUPPORT_ADDRESS, "historyId": 42}), headers
        )

    assert data == GmailWebhookDataSchema(emailAddress=SUPPORT_ADDRESS, historyId=42)
    assert mock_verify.call_args.args[0] == "good-token"


def test_authorize_rejects_wrong_principal():
    headers = GmailWebhookHeadersSchema(authorization="Bearer good-token")

    with patch(
        "supportdesk.services.gmail_ingest.id_token.verify_oauth2_token",
        return_value={"email": "someone-else@example.com"},
    ), pytest.raises(NonRetriableError):
        authorize_gmail_request(_body({"emailAddress": SUPPORT_ADDRESS, "historyId": 1}), headers)


def test_authorize_rejects_unverifiable_token():
    headers = GmailWebhookHeadersSchema(authorization="Bearer bad-token")

    with patch(
        "supportdesk.services.gmail_ingest.id_token.verify_oauth2_token",
        side_effect=ValueError("Wrong number of segments"),
    ), pytest.raises(NonRetriableError):
        authorize_gmail_request(_body({"emailAddress": SUPPORT_ADDRESS, "historyId": 1}), headers)


def test_authorize_rejects_malformed_header():
    headers = GmailWebhookHeadersSchema(authorization="token-without-scheme")
    with pytest.raises(NonRetriableError):
        authorize_gmail_request(_body({"emailAddress": SUPPORT_ADDRESS, "historyId": 1}), headers)


def test_authorize_rejects_bad_data():
    headers = GmailWebhookHeadersSchema(authorization="Bearer good-token")
    claims = {"email": "pubsub@test-project.iam.gserviceaccount.com"}

    with patch(
        "supportdesk.services.gmail_ingest.id_token.verify_oauth2_token", return_value=claims
    ), pytest.raises(NonRetriableError):
        authorize_gmail_request(_body({"emailAddress": "not-an-email", "historyId": 1}), headers)
