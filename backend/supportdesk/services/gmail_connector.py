from __future__ import annotations

import base64
import dataclasses
from typing import Any

from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from supportdesk.config import settings
from supportdesk.models.mailbox import GmailSupportEmail


# ── Exceptions ────────────────────────────────────────────────────────────────


class GmailAuthError(Exception):
    """Raised when the support address's Google credentials are invalid or revoked."""


class GmailAPIError(Exception):
    """Raised when the Gmail API returns an HTTP error."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)


# ── Data structures ───────────────────────────────────────────────────────────


@dataclasses.dataclass(frozen=True)
class HistoryMessageRef:
    id: str | None
    thread_id: str | None
    label_ids: list[str]


@dataclasses.dataclass(frozen=True)
class HistoryPage:
    status: int
    history: list[HistoryMessageRef]   # messagesAdded only, in history order


@dataclasses.dataclass(frozen=True)
class WatchRegistration:
    history_id: int
    expiration_ms: int   # Unix epoch ms from Gmail API


# ── Service ───────────────────────────────────────────────────────────────────


class GmailConnector:
    """Wraps the Gmail API v1 for one connected support address.

    The Google API service is built lazily on first use.
    """

    _TOKEN_URI = "https://oauth2.googleapis.com/token"

    def __init__(self, support_email: GmailSupportEmail) -> None:
        self._access_token = support_email.get_access_token()
        self._refresh_token = support_email.get_refresh_token()
        if not self._refresh_token:
            raise ValueError(f"No stored refresh token for {support_email.email}")
        self._service: Any = None

    def _build_credentials(self) -> Credentials:
        return Credentials(
            token=self._access_token,
            refresh_token=self._refresh_token,
            token_uri=self._TOKEN_URI,
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
        )

    def _get_service(self) -> Any:
        if self._service is None:
            self._service = build(
                "gmail", "v1", credentials=self._build_credentials(), cache_discovery=False
            )
        return self._service

    # ── Public API ────────────────────────────────────────────────────────

    def get_messages_from_history_id(self, start_history_id: int) -> HistoryPage:
        """List messages added since *start_history_id*, following every page.

        A 404 (cursor too old) comes back as ``HistoryPage(status=404)`` so the
        caller can pick another cursor; other HTTP errors raise GmailAPIError.
        """
        refs: list[HistoryMessageRef] = []
        page_token: str | None = None
        while True:
            kwargs: dict[str, Any] = {
                "userId": "me",
                "startHistoryId": str(start_history_id),
                "historyTypes": ["messageAdded"],
            }
            if page_token:
                kwargs["pageToken"] = page_token
            try:
                response = self._get_service().users().history().list(**kwargs).execute()
            except RefreshError as exc:
                raise GmailAuthError("Google credentials expired or revoked") from exc
            except HttpError as exc:
                if exc.resp.status == 404:
                    return HistoryPage(status=404, history=[])
                raise GmailAPIError(exc.resp.status, exc._get_reason()) from exc

            for entry in response.get("history", []):
                for added in entry.get("messagesAdded", []):
                    message = added.get("message", {})
                    refs.append(
                        HistoryMessageRef(
                            id=message.get("id"),
                            thread_id=message.get("threadId"),
                            label_ids=message.get("labelIds", []),
                        )
                    )

            page_token = response.get("nextPageToken")
            if not page_token:
                return HistoryPage(status=200, history=refs)

    def get_raw_message(self, message_id: str) -> bytes:
        """Fetch the full RFC 5322 source of a message."""
        try:
            response = (
                self._get_service()
                .users()
                .messages()
                .get(userId="me", id=message_id, format="raw")
                .execute()
            )
        except RefreshError as exc:
            raise GmailAuthError("Google credentials expired or revoked") from exc
        except HttpError as exc:
            raise GmailAPIError(exc.resp.status, exc._get_reason()) from exc

        return self._decode_raw(response.get("raw", ""))

    def register_watch(self, topic_name: str) -> WatchRegistration:
        """Register a Gmail push watch on the inbox."""
        body: dict[str, Any] = {
            "topicName": topic_name,
            "labelIds": ["INBOX"],
            "labelFilterBehavior": "INCLUDE",
        }
        try:
            response = self._get_service().users().watch(userId="me", body=body).execute()
        except RefreshError as exc:
            raise GmailAuthError("Google credentials expired or revoked") from exc
        except HttpError as exc:
            raise GmailAPIError(exc.resp.status, exc._get_reason()) from exc

        return WatchRegistration(
            history_id=int(response["historyId"]),
            expiration_ms=int(response["expiration"]),
        )

    @staticmethod
    def _decode_raw(data: str) -> bytes:
        """Base64url-decode Gmail's unpadded ``raw`` field."""
        return base64.urlsafe_b64decode(data + "==")
