# --------------------------- relay/services/email/intake.py ----------------------------
"""
Relay · Inbound Email Webhook Service

OVERVIEW:
Mailgun posts every forward sent to the relay mailbox to our webhook. This
service authenticates the post, picks the best body field, and hands the
thread to the intake pipeline.

WORKFLOW:
1. Verify the Mailgun signature (HMAC-SHA256 over timestamp + token)
2. Reject stale timestamps (more than 300 seconds from now)
3. Choose the body: stripped-text, then body-plain, then body-html as text
4. Skip empty bodies; otherwise run the intake pipeline

BUSINESS LOGIC:
- Authentication failures are the only errors surfaced to Mailgun; once a
  post is authentic the API always acknowledges it, so Mailgun never
  retry-storms on our internal failures
- When no signing key is configured, verification is skipped only if
  REQUIRE_WEBHOOK_SIGNATURE is off

DEPENDENCIES:
- Environment variables: MAILGUN_WEBHOOK_SIGNING_KEY, REQUIRE_WEBHOOK_SIGNATURE
"""

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Mapping, Optional

import html2text

from config import settings
from relay.exceptions import WebhookAuthError, WebhookConfigError
from relay.models import Envelope

logger = logging.getLogger(__name__)


def compute_signature(signing_key: str, timestamp: str, token: str) -> str:
    return hmac.new(signing_key.encode(), f"{timestamp}{token}".encode(), hashlib.sha256).hexdigest()


def verify_mailgun_signature(timestamp: Optional[str], token: Optional[str], signature: Optional[str],
                             now: Optional[float] = None) -> None:
    """
    Validate a Mailgun webhook signature.

    RAISES:
        WebhookConfigError: verification required but no signing key configured
        WebhookAuthError: fields missing, timestamp stale, or signature mismatch
    """
    signing_key = settings.MAILGUN_WEBHOOK_SIGNING_KEY
    if not signing_key:
        if settings.REQUIRE_WEBHOOK_SIGNATURE:
            raise WebhookConfigError("MAILGUN_WEBHOOK_SIGNING_KEY is not configured")
        logger.warning("Webhook signature verification skipped: no signing key configured")
        return

    if not timestamp or not token or not signature:
        raise WebhookAuthError("Missing signature fields")

    try:
        sent_at = int(float(timestamp))
    except (ValueError, OverflowError):
        raise WebhookAuthError("Invalid signature timestamp")

    now = time.time() if now is None else now
    if abs(now - sent_at) > settings.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS:
        raise WebhookAuthError("Signature timestamp is outside the allowed window")

    expected = compute_signature(signing_key, timestamp, token)
    if not hmac.compare_digest(expected, signature):
        raise WebhookAuthError("Invalid signature")


class InboundEmailService:
    """Turns authenticated Mailgun posts into intake pipeline runs."""

    def __init__(self, pipeline):
        self.pipeline = pipeline
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_images = True
        self.html_converter.body_width = 0

    def extract_body(self, fields: Mapping[str, Any]) -> str:
        for key in ("stripped-text", "body-plain"):
            value = fields.get(key)
            if value and str(value).strip():
                return str(value)
        html = fields.get("body-html") or fields.get("stripped-html")
        if html and str(html).strip():
            return self.html_converter.handle(str(html))
        return ""

    def handle(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Authenticate and process one inbound post.

        RAISES:
            WebhookAuthError, WebhookConfigError
        """
        verify_mailgun_signature(fields.get("timestamp"), fields.get("token"), fields.get("signature"))

        body = self.extract_body(fields)
        sender = str(fields.get("from") or fields.get("sender") or "")
        subject = str(fields.get("subject") or "")
        if not body.strip():
            logger.info(f"Skipping inbound email with empty body from {sender}")
            return {"status": "skipped", "reason": "empty body"}

        timestamp = None
        try:
            timestamp = float(fields.get("timestamp")) if fields.get("timestamp") else None
        except ValueError:
            timestamp = None

        envelope = Envelope(sender=sender, subject=subject, timestamp=timestamp)
        forwarder = str(fields.get("sender") or sender)
        summary = self.pipeline.ingest(body, envelope, forwarder=forwarder)
        logger.info(f"Inbound email from {sender}: {summary['status']} ({len(summary['message_ids'])} stored)")
        return summary
