"""Parsing of raw RFC 5322 messages into the canonical forms stored on
conversation messages: bare addresses, a sanitized HTML body, and plain
text with quoted replies removed.
"""

from __future__ import annotations

import base64
import dataclasses
import email
import email.policy
import email.utils
import html as html_lib
import logging
import re
import unicodedata
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from email.message import EmailMessage

from bs4 import BeautifulSoup, NavigableString
from sqlalchemy.orm import Session

from supportdesk.models.conversation import Conversation
from supportdesk.models.mailbox import Mailbox
from supportdesk.models.message import ConversationMessage
from supportdesk.services import file_service, storage

logger = logging.getLogger(__name__)

MAX_UPLOAD_WORKERS = 4

_INLINE_IMAGE = re.compile(
    r'<img[^>]+src="data:image/([^;"]+);base64,([^"]+)"[^>]*>', re.IGNORECASE
)
_SRC_ATTRIBUTE = re.compile(r'src="[^"]+"', re.IGNORECASE)
_TRAILING_BREAKS = re.compile(r"(?:<br\s*/?>\s*)+$", re.IGNORECASE)
_ATTRIBUTION_START = re.compile(r"^\s*On\s")
_ATTRIBUTION_LINE = re.compile(r"^\s*On\s.+\swrote:\s*$", re.DOTALL)
# Mail clients wrap a long attribution over at most this many lines.
_MAX_ATTRIBUTION_LINES = 3
_QUOTE_SELECTORS = (
    "blockquote",
    ".gmail_quote",
    ".gmail_extra",
    "div.yahoo_quoted",
    ".moz-cite-prefix",
)
_REPLY_HEADER_SELECTORS = ("#divRplyFwdMsg", "#appendonsend")
_BLOCK_TAGS = (
    "p", "div", "li", "ul", "ol", "tr", "table", "h1", "h2", "h3", "h4", "h5", "h6",
    "pre", "section", "article", "header", "footer", "hr",
)


@dataclasses.dataclass(frozen=True)
class EmailAttachment:
    filename: str | None
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


@dataclasses.dataclass(frozen=True)
class NormalizedEmail:
    from_address: str
    from_name: str
    subject: str | None
    message_id: str | None
    references: str | None
    to: str | None          # header text, display names kept
    cc: list[str]           # bare addresses
    bcc: list[str]          # bare addresses
    is_html: bool
    canonical_body: str
    date: datetime
    attachments: list[EmailAttachment]


# ── Addresses ─────────────────────────────────────────────────────────────────


def parse_email_address(raw: str | None) -> tuple[str, str] | None:
    """Return (name, address) for a single address header, or None."""
    if not raw:
        return None
    pairs = email.utils.getaddresses([raw])
    if not pairs or not pairs[0][1] or "@" not in pairs[0][1]:
        return None
    name, address = pairs[0]
    return name, address


def extract_addresses(raw: str | None) -> list[str]:
    """Bare addresses from a header like ``"Name <a@x.com>, b@y.com"``.

    Order is preserved and duplicates are kept.
    """
    if not raw:
        return []
    return [address for _, address in email.utils.getaddresses([raw]) if address]


def get_non_support_participants(
    db: Session, conversation: Conversation, mailbox: Mailbox | None
) -> list[str]:
    """To/CC participants of a conversation other than the customer and the mailbox."""
    excluded = {(conversation.email_from or "").lower()}
    if mailbox is not None and mailbox.gmail_support_email is not None:
        excluded.add(mailbox.gmail_support_email.email.lower())

    messages = (
        db.query(ConversationMessage)
        .filter(ConversationMessage.conversation_id == conversation.id)
        .order_by(ConversationMessage.created_at.asc())
        .all()
    )
    participants: list[str] = []
    for message in messages:
        addresses = extract_addresses(message.email_to) + list(message.email_cc or [])
        for address in addresses:
            address = address.strip().lower()
            if address and address not in excluded and address not in participants:
                participants.append(address)
    return participants


# ── Body ──────────────────────────────────────────────────────────────────────


def text_to_html(text: str) -> str:
    """Render plain text as paragraphs, keeping single line breaks."""
    text = text.replace("\r\n", "\n").strip("\n")
    paragraphs = [p for p in re.split(r"\n\s*\n", text) if p.strip()]
    return "".join(
        "<p>" + "<br/>".join(html_lib.escape(line) for line in p.split("\n")) + "</p>"
        for p in paragraphs
    )


def parse_email_body(body: str, *, is_html: bool) -> str:
    if not body:
        return ""
    if not is_html:
        body = text_to_html(body)

    soup = BeautifulSoup(body, "html.parser")
    content = soup.body.decode_contents() if soup.body is not None else str(soup)
    content = _TRAILING_BREAKS.sub("", content.rstrip())
    return unicodedata.normalize("NFKD", content)


def _truncate_from(node) -> None:
    """Remove *node* and everything after it in document order."""
    current = node
    while current is not None and getattr(current, "name", None) not in ("body", "html", "[document]"):
        for sibling in list(current.next_siblings):
            sibling.extract()
        current = current.parent
    node.extract()


def _is_attribution(node: NavigableString) -> bool:
    """True when *node* begins an "On ... wrote:" line, even one wrapped over ``<br>``s."""
    text = str(node)
    lines = 1
    sibling = node.next_sibling
    while not _ATTRIBUTION_LINE.match(text):
        if sibling is None or lines >= _MAX_ATTRIBUTION_LINES:
            return False
        if isinstance(sibling, NavigableString):
            text = f"{text} {sibling}"
            lines += 1
        elif sibling.name != "br":
            return False
        sibling = sibling.next_sibling
    return True


def _strip_trailing_quoted_lines(soup: BeautifulSoup) -> None:
    """Drop the run of ``>``-prefixed lines that ends a plain-text reply."""
    lines = [text for text in soup.find_all(string=True) if text.strip()]
    start = len(lines)
    while start > 0 and lines[start - 1].lstrip().startswith(">"):
        start -= 1
    # An entirely quoted body is kept as it is.
    if 0 < start < len(lines):
        _truncate_from(lines[start])


def extract_quotations(html: str) -> str:
    """Return *html* with quoted reply history removed."""
    soup = BeautifulSoup(html, "html.parser")

    for element in soup.select(", ".join(_REPLY_HEADER_SELECTORS)):
        if not element.decomposed and element.parent is not None:
            _truncate_from(element)

    for element in soup.select(", ".join(_QUOTE_SELECTORS)):
        if not element.decomposed:
            element.decompose()

    for text in soup.find_all(string=_ATTRIBUTION_START):
        if text.parent is not None and _is_attribution(text):
            _truncate_from(text)

    _strip_trailing_quoted_lines(soup)
    return str(soup)


def html_to_text(html: str) -> str:
    if not html or not html.strip():
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(_BLOCK_TAGS):
        block.insert_before("\n")
        block.insert_after("\n")

    lines = [re.sub(r"[ \t\u00a0]+", " ", line).strip() for line in soup.get_text().splitlines()]
    text = "\n".join(lines)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def generate_cleaned_up_text(html: str) -> str:
    """Paragraph-per-block plain text, with images kept as markdown."""
    if not html.strip():
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for img in soup.find_all("img"):
        img.replace_with(f"![{img.get('alt') or 'image'}]({img.get('src')})")
    paragraphs = [p for p in re.split(r"\s*\n\s*", html_to_text(str(soup))) if p.strip()]
    return "\n\n".join(re.sub(r"\s+", " ", p).strip() for p in paragraphs)


# ── Raw message ───────────────────────────────────────────────────────────────


def _header(message: EmailMessage, name: str) -> str | None:
    value = message.get(name)
    return str(value).strip() if value is not None and str(value).strip() else None


def _message_date(message: EmailMessage) -> datetime:
    raw = _header(message, "Date")
    if raw:
        try:
            date = email.utils.parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            date = None
        if date is not None:
            return date if date.tzinfo else date.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def _part_text(part: EmailMessage) -> str:
    try:
        return part.get_content()
    except LookupError:
        # Unregistered charset such as "unknown-8bit".
        logger.warning(
            "normalize: unknown charset %r, decoding body as UTF-8", part.get_content_charset()
        )
        return (part.get_payload(decode=True) or b"").decode("utf-8", errors="replace")


def normalize(raw: bytes) -> NormalizedEmail:
    """Parse a raw RFC 5322 message.

    Raises ValueError when the message has no usable From address.
    """
    message = email.message_from_bytes(raw, policy=email.policy.default)

    sender = parse_email_address(_header(message, "From"))
    if sender is None:
        raise ValueError("Message has no valid From address")
    from_name, from_address = sender

    html_part = message.get_body(preferencelist=("html",))
    if html_part is not None:
        body, is_html = _part_text(html_part), True
    else:
        text_part = message.get_body(preferencelist=("plain",))
        body, is_html = (_part_text(text_part) if text_part is not None else ""), False

    references = _header(message, "References")
    attachments = [
        EmailAttachment(
            filename=part.get_filename(),
            content_type=part.get_content_type() or "application/octet-stream",
            content=part.get_payload(decode=True) or b"",
        )
        for part in message.iter_attachments()
    ]

    return NormalizedEmail(
        from_address=from_address,
        from_name=from_name,
        subject=_header(message, "Subject"),
        message_id=_header(message, "Message-ID"),
        references=" ".join(references.split()) if references else None,
        to=_header(message, "To"),
        cc=extract_addresses(_header(message, "Cc")),
        bcc=extract_addresses(_header(message, "Bcc")),
        is_html=is_html,
        canonical_body=parse_email_body(body, is_html=is_html),
        date=_message_date(message),
        attachments=attachments,
    )


# ── Inline images ─────────────────────────────────────────────────────────────


def _upload_inline_image(extension: str, data: str) -> tuple[str, int]:
    content = base64.b64decode(data)
    key = storage.generate_key(["inline-attachments"], f"image.{extension}")
    storage.upload_file(key, content, mimetype=f"image/{extension}")
    return key, len(content)


def extract_and_upload_inline_images(db: Session, html: str) -> tuple[str, list[str]]:
    """Move base64 ``<img>`` data into blob storage.

    Returns the HTML with each uploaded image's ``src`` replaced by its
    storage key, and the slugs of the new (not yet attached) file records.
    An image that fails to upload is logged and left as it was.
    """
    matches = list(_INLINE_IMAGE.finditer(html))
    if not matches:
        return html, []

    processed_html = html
    file_slugs: list[str] = []
    with ThreadPoolExecutor(max_workers=min(len(matches), MAX_UPLOAD_WORKERS)) as pool:
        futures = [
            (match, pool.submit(_upload_inline_image, match.group(1), match.group(2)))
            for match in matches
        ]
        for match, future in futures:
            extension = match.group(1)
            try:
                key, size = future.result()
            except Exception:
                logger.exception("extract_and_upload_inline_images: failed to upload image/%s", extension)
                continue

            file = file_service.create_file_record(
                db,
                name=f"image.{extension}",
                key=key,
                mimetype=f"image/{extension}",
                size=size,
                is_inline=True,
            )
            tag = match.group(0)
            processed_html = processed_html.replace(
                tag, _SRC_ATTRIBUTE.sub(f'src="{key}"', tag, count=1), 1
            )
            file_slugs.append(file.slug)

    return processed_html, file_slugs


# ── Sender patterns ───────────────────────────────────────────────────────────

TRANSACTIONAL_EMAIL_ADDRESS_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^no[-_.]?reply",
        r"^do[-_.]?not[-_.]?reply",
        r"^mailer-daemon@",
        r"^postmaster@",
        r"^bounces?[+@-]",
        r"^notifications?@",
    )
)


def matches_transactional_email_address(address: str) -> bool:
    """True for automated sender addresses such as ``noreply@...``."""
    address = address.strip()
    return any(pattern.search(address) for pattern in TRANSACTIONAL_EMAIL_ADDRESS_PATTERNS)
