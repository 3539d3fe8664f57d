# --------------------------- relay/utils/email_parser.py ----------------------------
"""
Relay · Forwarded Thread Parser

OVERVIEW:
Splits the text of a forwarded email thread into the individual messages it
contains. Partners' threads arrive as one body where each older message is
introduced by an Outlook/Apple-Mail style header block:

    From: Jane Doe <jane@partner.org>
    Sent: Monday, February 3, 2025 10:30 AM
    To: Sam <sam@example.com>
    Cc: ...
    Subject: Re: Pilot kickoff

WORKFLOW:
1. Find every header block (``Sent:`` and ``Date:`` variants), ordered by offset
2. Slice bodies strictly between consecutive header blocks
3. Treat significant text before the first block as the forwarder's own note
4. Parse senders and timestamps, strip signatures and boilerplate

BUSINESS LOGIC:
- Nothing is dropped: an unparseable date just leaves ``sent_at`` empty
- Raw header and body slices are kept so the thread can be audited verbatim
- No header blocks at all means the whole forward is one message from the
  envelope sender

DEPENDENCIES:
- email (standard library) for .eml files and RFC 2822 dates
- html2text for HTML-only bodies
- chardet for encoding detection
"""

import email
import re
from datetime import datetime, timezone
from email.header import decode_header, make_header
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import List, Optional, Tuple

import chardet
import html2text

from relay.models import Envelope, ParsedMessage

# ╔══════════ 1. Patterns ═════════════════════════════════════════════════

_HEADER_TEMPLATE = (
    r"(?:^|\n)(?:_{{3,}}|-{{3,}}|\*{{3,}})?[ \t]*\n?"
    r"From:[ \t]*(?P<sender>.+)\n"
    r"{time_field}:[ \t]*(?P<sent>.+)\n"
    r"To:[ \t]*(?P<to>.+)\n"
    r"(?:Cc:[ \t]*(?P<cc>.+)\n)?"
    r"Subject:[ \t]*(?P<subject>.*)(?:\n|$)"
)

HEADER_PATTERNS = [
    re.compile(_HEADER_TEMPLATE.format(time_field="Sent"), re.IGNORECASE),
    re.compile(_HEADER_TEMPLATE.format(time_field="Date"), re.IGNORECASE),
]

# Applied in order; each removes a trailing signature or boilerplate block.
NOISE_PATTERNS = [
    re.compile(r"\n-{0,2}[ \t]*Sent from (?:my )?(?:iPhone|iPad|Galaxy|Android|Outlook|Mail).*", re.IGNORECASE),
    re.compile(r"\nGet Outlook for .*", re.IGNORECASE),
    re.compile(
        r"\n-{2,}\s*\nThis (?:email|message|communication) (?:and any attachments )?"
        r"(?:is|are) (?:intended |confidential)[\s\S]{0,500}$",
        re.IGNORECASE,
    ),
    re.compile(r"\nCONFIDENTIALITY NOTICE[\s\S]{0,500}$", re.IGNORECASE),
    re.compile(r"\n_{20,}\s*$"),
]

SENDER_PATTERN = re.compile(r"^(.*?)\s*<([^>]+)>\s*$")
WEEKDAY_PREFIX = re.compile(r"^(?:mon|tue|wed|thu|fri|sat|sun)[a-z]*\.?,?\s+", re.IGNORECASE)
SEPARATOR_CHARS = re.compile(r"[_\-*\s]")

PREFACE_MIN_CHARS = 10

DATE_FORMATS = [
    "%B %d, %Y %I:%M %p",
    "%B %d, %Y %I:%M:%S %p",
    "%B %d, %Y at %I:%M %p",
    "%B %d, %Y at %I:%M:%S %p",
    "%b %d, %Y %I:%M %p",
    "%b %d, %Y at %I:%M %p",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %H:%M",
    "%d %B %Y %H:%M",
    "%d %B %Y %H:%M:%S",
    "%d %b %Y %H:%M",
    "%d %b %Y %H:%M:%S",
    "%d %B %Y at %H:%M",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%B %d, %Y",
]


# ╔══════════ 2. Parser ═══════════════════════════════════════════════════

class ForwardedThreadParser:
    """
    Splits forwarded threads into ParsedMessage records.

    The parser is stateless apart from its HTML converter, so one instance can
    be shared by every request.
    """

    def __init__(self):
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = False
        self.html_converter.ignore_images = True
        self.html_converter.body_width = 0  # Don't wrap lines

    def parse(self, text: str, envelope: Optional[Envelope] = None) -> List[ParsedMessage]:
        """
        Split a forwarded thread into its messages, in text order.

        ARGS:
            text: Full thread body (plain text)
            envelope: Delivery sender/subject/timestamp, used for the
                forwarder's note and for the no-headers fallback

        RETURNS:
            List[ParsedMessage]: empty for blank input
        """
        if not text or not text.strip():
            return []

        envelope = envelope or Envelope()
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        matches = self._find_header_blocks(text)

        if not matches:
            return [self._envelope_message(text, envelope)]

        messages: List[ParsedMessage] = []

        preface = text[:matches[0].start()]
        if len(SEPARATOR_CHARS.sub("", preface)) > PREFACE_MIN_CHARS:
            messages.append(self._envelope_message(preface, envelope))

        for i, match in enumerate(matches):
            body_end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
            body_raw = text[match.end():body_end]
            sender_name, sender_email = self.parse_sender(match.group("sender"))
            messages.append(ParsedMessage(
                sender_name=sender_name,
                sender_email=sender_email,
                sent_at=self.parse_date(match.group("sent")),
                subject=match.group("subject").strip(),
                to_header=match.group("to").strip(),
                cc_header=(match.group("cc") or "").strip() or None,
                body_text=self.clean_body(body_raw),
                body_raw=body_raw,
                header_raw=match.group(0),
            ))

        return messages

    def _find_header_blocks(self, text: str) -> List[re.Match]:
        """All header blocks from both grammars, deduplicated by offset and non-overlapping."""
        found = {}
        for pattern in HEADER_PATTERNS:
            for match in pattern.finditer(text):
                found.setdefault(match.start(), match)

        ordered = []
        last_end = -1
        for start in sorted(found):
            if start < last_end:
                continue
            ordered.append(found[start])
            last_end = found[start].end()
        return ordered

    def _envelope_message(self, body_raw: str, envelope: Envelope) -> ParsedMessage:
        sender_name, sender_email = self.parse_sender(envelope.sender)
        sent_at = None
        if envelope.timestamp:
            sent_at = datetime.fromtimestamp(float(envelope.timestamp), tz=timezone.utc)
        return ParsedMessage(
            sender_name=sender_name,
            sender_email=sender_email,
            sent_at=sent_at,
            subject=(envelope.subject or "").strip(),
            body_text=self.clean_body(body_raw),
            body_raw=body_raw,
            is_forwarder_note=True,
        )

    # ─── Field helpers ──────────────────────────────────────────────────

    @staticmethod
    def parse_sender(value: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """
        Split ``"Display Name <email>"`` into (name, email).

        A bare string containing '@' is an email with no name; anything else
        is a name with no email.
        """
        value = (value or "").strip()
        if not value:
            return None, None

        match = SENDER_PATTERN.match(value)
        if match:
            name = match.group(1).strip().strip('"\'').strip() or None
            address = match.group(2).strip() or None
            return name, address

        if "@" in value:
            return None, value
        return value.strip('"\'').strip() or None, None

    @staticmethod
    def parse_date(value: Optional[str]) -> Optional[datetime]:
        """Parse a header timestamp; returns None instead of raising."""
        if not value or not value.strip():
            return None

        original = " ".join(value.split())
        candidate = WEEKDAY_PREFIX.sub("", original)

        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(candidate, fmt)
            except ValueError:
                continue

        try:
            return datetime.fromisoformat(candidate)
        except ValueError:
            pass

        try:
            return parsedate_to_datetime(original)
        except (TypeError, ValueError, IndexError):
            return None

    @staticmethod
    def clean_body(body: str) -> str:
        """Strip signatures, provider footers and confidentiality boilerplate."""
        cleaned = "\n" + (body or "")
        for pattern in NOISE_PATTERNS:
            cleaned = pattern.sub("", cleaned)
        cleaned = cleaned.replace("\u200b", "").replace("\xa0", " ")
        return cleaned.strip()

    # ─── Offline ingestion ──────────────────────────────────────────────

    def load_eml_file(self, file_path: Path) -> Tuple[Envelope, str]:
        """
        Read a saved forward (.eml) into an envelope and a plain-text body.

        Plain-text parts are preferred; an HTML-only message is converted
        with html2text.
        """
        with open(file_path, "rb") as f:
            raw_email = f.read()

        detected = chardet.detect(raw_email)
        fallback_charset = detected.get("encoding") or "utf-8"
        msg = email.message_from_bytes(raw_email)

        plain_parts, html_parts = [], []
        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue
            payload = part.get_payload(decode=True)
            if payload is None:
                continue
            charset = part.get_content_charset() or fallback_charset
            try:
                text = payload.decode(charset, errors="replace")
            except LookupError:
                text = payload.decode(fallback_charset, errors="replace")
            (plain_parts if content_type == "text/plain" else html_parts).append(text)

        body = "\n".join(plain_parts)
        if not body.strip() and html_parts:
            body = self.html_converter.handle(html_parts[0])

        timestamp = None
        if msg.get("Date"):
            try:
                timestamp = parsedate_to_datetime(msg["Date"]).timestamp()
            except (TypeError, ValueError, IndexError):
                timestamp = None

        envelope = Envelope(
            sender=_decode_header_value(msg.get("From")),
            subject=_decode_header_value(msg.get("Subject")),
            timestamp=timestamp,
        )
        return envelope, body


def _decode_header_value(value: Optional[str]) -> str:
    if not value:
        return ""
    return str(make_header(decode_header(value))).strip()


_default_parser = ForwardedThreadParser()


def parse_forwarded_email(text: str, envelope: Optional[Envelope] = None) -> List[ParsedMessage]:
    """Module-level shortcut using a shared parser instance."""
    return _default_parser.parse(text, envelope)
