"""Cheap yes/no classification of inbound mail that needs no reply."""

from __future__ import annotations

import dataclasses
import logging

import anthropic

from supportdesk.config import settings
from supportdesk.models.mailbox import Mailbox

logger = logging.getLogger(__name__)

_MAX_TOKENS = 500

_SYSTEM_PROMPT = """\
Determine if an email is either a simple thank you message with no follow-up questions \
OR an auto-response (like out-of-office or automated confirmation).

Respond with 'yes' if the email EITHER:
1. Is just a thank you message with no follow-up questions
2. Contains wording like "We'll respond to you as soon as we can." (always respond 'yes' \
if this is present)

Respond with 'no' followed by a reason if the email contains any questions, requests or \
other content that needs a response."""


@dataclasses.dataclass(frozen=True)
class Classified:
    is_auto_response_or_thank_you: bool


@dataclasses.dataclass(frozen=True)
class Unavailable:
    error: str


ClassificationResult = Classified | Unavailable


def _get_client() -> anthropic.Anthropic:
    return anthropic.Anthropic(
        api_key=settings.ANTHROPIC_API_KEY,
        timeout=settings.CLASSIFICATION_TIMEOUT_SECONDS,
    )


def classify_auto_response_or_thank_you(mailbox: Mailbox, text: str) -> ClassificationResult:
    """Ask the model whether *text* is a thank-you or an automatic reply.

    Never raises for model failures; those come back as ``Unavailable``.
    """
    try:
        response = _get_client().messages.create(
            model=settings.CLASSIFICATION_MODEL,
            max_tokens=_MAX_TOKENS,
            temperature=0,
            system=_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": text}],
        )
    except anthropic.AnthropicError as exc:
        logger.warning("classifier: model call failed for mailbox %s: %s", mailbox.slug, exc)
        return Unavailable(error=str(exc))

    answer = next(
        (block.text for block in response.content if getattr(block, "type", None) == "text"),
        None,
    )
    if answer is None:
        logger.warning("classifier: response had no text for mailbox %s", mailbox.slug)
        return Unavailable(error="Model response contained no text")

    logger.debug("classifier: mailbox=%s answer=%r", mailbox.slug, answer[:80])
    return Classified(is_auto_response_or_thank_you=answer.lower().strip() == "yes")


def is_auto_response_or_thank_you(mailbox: Mailbox, text: str) -> bool:
    """Boolean form of the classification; an unavailable model counts as ``False``."""
    result = classify_auto_response_or_thank_you(mailbox, text)
    if isinstance(result, Unavailable):
        logger.error(
            "is_auto_response_or_thank_you: classification unavailable, treating as needing a reply: %s",
            result.error,
        )
        return False
    return result.is_auto_response_or_thank_you
