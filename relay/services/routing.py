# --------------------------- relay/services/routing.py ----------------------------
"""
Relay · Confidence Router

OVERVIEW:
Decides what happens to a classified delivery: attach it to an engagement
straight away, or park it as a pending review and text the operator.

BUSINESS LOGIC:
- confidence >= AUTO_ASSIGN_THRESHOLD (0.85): assign to the matched engagement,
  or create it when the match is new, then materialize entities
- below the threshold: one pending review with a frozen, numbered option list,
  messages flagged pending_review, SMS to the operator
- noise: store the classification, assign nothing, ask nothing
- classification and assignment are written to the messages last, so a
  failure before that point leaves them unclassified for the batch path

Option list (built once, stored on the review and used for the SMS):
1. the suggested new engagement, if confidence >= 0.5
2. the matched existing engagement, if confidence >= 0.5 and the match
   resolves to a stored row (by id, then by name)
3. "New engagement" fallback, unless a create-new option is already listed
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from config import settings
from relay.exceptions import SMSError
from relay.models import ClassificationResult, NEW_ENGAGEMENT_LABEL, ReviewOption
from relay.services.engagements import create_engagement_from_result, merge_result_into_engagement
from relay.services.notifications.sms import build_review_sms

logger = logging.getLogger(__name__)


class RouteAction(Enum):
    NOISE = "noise"
    AUTO_ASSIGNED = "auto_assigned"
    AUTO_CREATED = "auto_created"
    REVIEW = "review"


@dataclass
class RoutingOutcome:
    action: RouteAction
    engagement_id: Optional[str] = None
    review_id: Optional[str] = None
    sms_sent: bool = False
    options: List[ReviewOption] = field(default_factory=list)
    failed_steps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "engagement_id": self.engagement_id,
            "review_id": self.review_id,
            "sms_sent": self.sms_sent,
            "options": [o.to_dict() for o in self.options],
            "failed_steps": list(self.failed_steps),
        }


def build_review_options(result: ClassificationResult,
                         engagement: Optional[Dict[str, Any]] = None) -> List[ReviewOption]:
    """
    Numbered options for a review; the fallback create-new option is last.

    ARGS:
        result: the classification being reviewed
        engagement: the stored engagement the match resolved to, if any. An
            existing-engagement option is only offered for a resolved row.
    """
    match = result.engagement_match
    candidates: List[ReviewOption] = []

    if match.is_new and match.name and match.confidence >= settings.OPTION_MIN_CONFIDENCE:
        candidates.append(ReviewOption(0, match.name, None, True))
    if not match.is_new and engagement and match.confidence >= settings.OPTION_MIN_CONFIDENCE:
        candidates.append(ReviewOption(0, engagement.get("name") or match.name, engagement["id"], False))

    options = candidates[:settings.MAX_REVIEW_OPTIONS]
    if not any(o.is_new for o in options):
        options.append(ReviewOption(0, NEW_ENGAGEMENT_LABEL, None, True))

    for number, option in enumerate(options, start=1):
        option.number = number
    return options


def _primary_message(messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    """The message whose sender/subject headline the SMS: first non-forwarder message."""
    for msg in messages:
        if not msg.get("is_forwarder_note"):
            return msg
    return messages[0] if messages else {}


def _display_sender(msg: Dict[str, Any]) -> Optional[str]:
    return msg.get("sender_name") or msg.get("sender_email")


class ConfidenceRouter:
    """
    Applies the auto-assign / review policy to one classified delivery.

    ARGS:
        store: RelayStore (or compatible)
        materializer: EntityMaterializer run after any assignment
        sms: TwilioSMSClient used for review prompts
    """

    def __init__(self, store, materializer, sms):
        self.store = store
        self.materializer = materializer
        self.sms = sms

    def route(self, message_ids: List[str], result: ClassificationResult,
              messages: Optional[List[Dict[str, Any]]] = None) -> RoutingOutcome:
        """
        Route a classified delivery.

        RAISES:
            Any store error before messages are written (e.g. auto-create
            failing); the messages then stay unclassified.
        """
        messages = messages or []
        classification = {
            "classification_result": result.to_dict(),
            "content_type": result.content_type,
            "classification_confidence": result.engagement_match.confidence,
        }

        if result.is_noise:
            self.store.update_messages(message_ids, {**classification, "pending_review": False})
            logger.info(f"Messages {message_ids} classified as noise")
            return RoutingOutcome(RouteAction.NOISE)

        if result.engagement_match.confidence >= settings.AUTO_ASSIGN_THRESHOLD:
            return self._auto_assign(message_ids, result, classification)

        return self._queue_for_review(message_ids, result, messages, classification)

    # ─── Auto path ──────────────────────────────────────────────────────

    def _find_target(self, result: ClassificationResult) -> Optional[Dict[str, Any]]:
        match = result.engagement_match
        if match.id and not match.is_new:
            engagement = self.store.get_engagement(match.id)
            if engagement:
                return engagement
            logger.warning(f"Classifier returned unknown engagement id {match.id}; trying by name")
        if match.name:
            return self.store.find_engagement_by_name(match.name)
        return None

    def _auto_assign(self, message_ids: List[str], result: ClassificationResult,
                     classification: Dict[str, Any]) -> RoutingOutcome:
        engagement = None if result.engagement_match.is_new else self._find_target(result)

        if engagement is None:
            engagement = create_engagement_from_result(self.store, result)
            action = RouteAction.AUTO_CREATED
        else:
            merge_result_into_engagement(self.store, engagement, result)
            action = RouteAction.AUTO_ASSIGNED

        self.store.update_messages(message_ids, {
            **classification,
            "engagement_id": engagement["id"],
            "pending_review": False,
        })
        logger.info(f"Auto-assigned {len(message_ids)} message(s) to '{engagement['name']}' ({action.value})")

        report = self.materializer.run(engagement["id"], result, message_ids[0] if message_ids else None)
        return RoutingOutcome(action, engagement_id=engagement["id"], failed_steps=report.failed_steps)

    # ─── Review path ────────────────────────────────────────────────────

    def _queue_for_review(self, message_ids: List[str], result: ClassificationResult,
                          messages: List[Dict[str, Any]], classification: Dict[str, Any]) -> RoutingOutcome:
        match = result.engagement_match
        engagement = None if match.is_new else self._find_target(result)
        options = build_review_options(result, engagement)
        review = self.store.create_review({
            "message_id": message_ids[0],
            "message_ids": list(message_ids),
            "classification_result": result.to_dict(),
            "options_sent": [o.to_dict() for o in options],
        })
        self.store.update_messages(message_ids, {**classification, "pending_review": True})
        logger.info(f"Review {review['id']} created with {len(options)} option(s)")

        primary = _primary_message(messages)
        sms_sent = self.send_review_sms(review["id"], options, _display_sender(primary), primary.get("subject"))
        return RoutingOutcome(RouteAction.REVIEW, review_id=review["id"], sms_sent=sms_sent, options=options)

    def send_review_sms(self, review_id: str, options: List[ReviewOption],
                        sender: Optional[str], subject: Optional[str]) -> bool:
        """Text the operator; a failure leaves the review in place with sms_sent false."""
        body = build_review_sms(sender, subject, options)
        try:
            self.sms.notify_operator(body)
        except SMSError as e:
            logger.warning(f"Review {review_id} SMS not sent: {e}")
            return False
        self.store.mark_review_sms_sent(review_id)
        return True
