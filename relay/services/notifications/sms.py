# --------------------------- relay/services/notifications/sms.py ----------------------------
"""
Relay · SMS Notifications (Twilio)

OVERVIEW:
Review prompts go to the operator's phone; replies come back through the
Twilio webhook. This module formats the outbound prompt, sends it through the
Twilio REST API, and builds the TwiML acknowledgement the webhook returns.

BUSINESS LOGIC:
- The prompt lists exactly the options stored on the review, in order
- Messages are kept within two SMS segments (320 characters)
- Send failures raise SMSError; callers decide whether that is fatal
"""

import logging
import re
from typing import Iterable, Optional
from xml.sax.saxutils import escape

import requests

from config import settings
from relay.exceptions import SMSError
from relay.models import ReviewOption

logger = logging.getLogger(__name__)

SMS_MAX_CHARS = 320
SUBJECT_MAX_CHARS = 40


def normalize_phone(value: Optional[str]) -> str:
    """Digits only, with a leading US country code removed."""
    digits = re.sub(r"\D", "", value or "")
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits


def _short_subject(subject: Optional[str]) -> str:
    subject = " ".join((subject or "").split())
    if not subject:
        return "(no subject)"
    if len(subject) > SUBJECT_MAX_CHARS:
        return subject[:SUBJECT_MAX_CHARS - 3] + "..."
    return subject


def build_review_sms(sender: Optional[str], subject: Optional[str],
                     options: Iterable[ReviewOption]) -> str:
    """
    Review prompt, e.g.::

        New from Jane Doe
        "Pilot kickoff"
        1. Acme Pilot
        2. New engagement
        Reply #, name, or skip
    """
    head = [f"New from {sender or 'unknown sender'}", f'"{_short_subject(subject)}"']
    option_lines = [f"{opt.number}. {opt.label}" for opt in options]
    tail = ["Reply #, name, or skip"]

    body = "\n".join(head + option_lines + tail)
    if len(body) <= SMS_MAX_CHARS:
        return body

    # Shorten labels evenly rather than dropping options.
    budget = SMS_MAX_CHARS - len("\n".join(head + tail)) - len(option_lines)
    per_line = max(8, budget // max(1, len(option_lines)))
    option_lines = [line if len(line) <= per_line else line[:per_line - 3] + "..." for line in option_lines]
    return "\n".join(head + option_lines + tail)[:SMS_MAX_CHARS]


def twiml_response(message: Optional[str] = None) -> str:
    """TwiML acknowledgement; empty unless a reply message is given."""
    if not message:
        return '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
    return f'<?xml version="1.0" encoding="UTF-8"?><Response><Message>{escape(message)}</Message></Response>'


class TwilioSMSClient:
    """Sends SMS through the Twilio Messages REST endpoint."""

    def __init__(self, account_sid: str = None, auth_token: str = None,
                 from_number: str = None, session: requests.Session = None):
        self.account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number or settings.TWILIO_PHONE_NUMBER
        self.session = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def send(self, to: str, body: str) -> str:
        """
        Send one SMS.

        RETURNS:
            str: Twilio message SID

        RAISES:
            SMSError: missing configuration, transport failure or non-2xx reply
        """
        if not self.is_configured:
            raise SMSError("Twilio credentials are not configured")
        if not to:
            raise SMSError("No destination phone number")

        url = f"{settings.TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = self.session.post(
                url,
                data={"To": to, "From": self.from_number, "Body": body},
                auth=(self.account_sid, self.auth_token),
                timeout=settings.SMS_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            raise SMSError(f"Twilio request failed: {e}") from e

        if response.status_code >= 300:
            raise SMSError(f"Twilio returned {response.status_code}: {response.text[:200]}")

        sid = response.json().get("sid", "")
        logger.info(f"SMS sent to ...{normalize_phone(to)[-4:]} (sid {sid})")
        return sid

    def notify_operator(self, body: str) -> str:
        return self.send(settings.USER_PHONE_NUMBER, body)
