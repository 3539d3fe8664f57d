# --------------------------- relay/services/reviews.py ----------------------------
"""
Relay · Review & Approval State Machine

OVERVIEW:
A pending review moves from pending to resolved exactly once. Resolution
comes from the dashboard (explicit action) or from an SMS reply, which is
matched to the most recently created unresolved review.

WORKFLOW (resolve):
1. Load the review (404), refuse if already resolved (409)
2. Validate the action against the frozen options (400)
3. Claim the review with a conditional update carrying the final tag (409 if
   someone else won)
4. Apply the outcome: create or merge the engagement, reassign messages
5. On failure release the claim and re-raise; on success materialize

RESOLUTION TAGS:
    skipped | assigned:<id>:<label> | created:<id>:<name>

SMS REPLY GRAMMAR:
    skip            -> skip
    <number>        -> select that option
    [new:]<name>    -> new engagement with that name

Event approvals (raised by the materializer for unknown events) follow the
same claim-then-apply pattern with approve | deny.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import settings
from relay.exceptions import (
    RelayError,
    ReviewConflictError,
    ReviewNotFoundError,
    ReviewValidationError,
    SMSError,
)
from relay.models import (
    EntityKind,
    EntityLink,
    EntityRef,
    EventApproval,
    NEW_ENGAGEMENT_LABEL,
    PendingReview,
    Resolution,
    ResolutionKind,
)
from relay.services.engagements import create_engagement_from_result, merge_result_into_engagement
from relay.services.notifications.sms import build_review_sms, normalize_phone
from relay.services.store import new_id

logger = logging.getLogger(__name__)

ACTIONS = ("skip", "select", "new")


@dataclass
class ResolutionOutcome:
    review_id: str
    resolution: str
    engagement_id: Optional[str] = None
    engagement_name: Optional[str] = None
    created: bool = False
    failed_steps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "review_id": self.review_id,
            "resolution": self.resolution,
            "engagement_id": self.engagement_id,
            "engagement_name": self.engagement_name,
            "created": self.created,
            "failed_steps": list(self.failed_steps),
        }


class ReviewService:
    """
    Resolves pending reviews and event approvals.

    ARGS:
        store: RelayStore (or compatible)
        materializer: EntityMaterializer run after a review lands on an engagement
        sms: TwilioSMSClient for reply confirmations and manual resends
    """

    def __init__(self, store, materializer, sms):
        self.store = store
        self.materializer = materializer
        self.sms = sms

    # ╔══════════ 1. Review resolution ═════════════════════════════════

    def _load_review(self, review_id: str) -> PendingReview:
        row = self.store.get_review(review_id)
        if row is None:
            raise ReviewNotFoundError(f"Review {review_id} not found")
        review = PendingReview.from_row(row)
        if review.resolved:
            raise ReviewConflictError(f"Review {review_id} is already resolved ({review.resolution})")
        return review

    def _plan(self, review: PendingReview, action: str, option_number: Optional[int],
              name: Optional[str]) -> Resolution:
        """Turn a request into the resolution it will record, or raise ReviewValidationError."""
        if action == "skip":
            return Resolution(ResolutionKind.SKIPPED)

        if action == "new":
            name = (name or "").strip()
            if not name:
                raise ReviewValidationError("A name is required to create a new engagement")
            return Resolution(ResolutionKind.CREATED, new_id(), name)

        if action == "select":
            if option_number is None:
                raise ReviewValidationError("option_number is required for select")
            option = review.option(int(option_number))
            if option is None:
                offered = ", ".join(str(o.number) for o in review.options_sent)
                raise ReviewValidationError(f"Option {option_number} was not offered (choose {offered})")

            if option.engagement_id:
                engagement = self.store.get_engagement(option.engagement_id)
                if engagement is None:
                    raise ReviewNotFoundError(f"Engagement {option.engagement_id} no longer exists")
                return Resolution(ResolutionKind.ASSIGNED, option.engagement_id, option.label)

            return Resolution(ResolutionKind.CREATED, new_id(), self._new_option_name(review, option.label))

        raise ReviewValidationError(f"Unknown action '{action}' (expected one of {', '.join(ACTIONS)})")

    @staticmethod
    def _new_option_name(review: PendingReview, label: str) -> str:
        if label != NEW_ENGAGEMENT_LABEL:
            return label
        match = review.classification_result.engagement_match
        if match.is_new and match.name:
            return match.name
        return f"Untitled - {datetime.now().strftime('%b %d, %Y')}"

    def resolve(self, review_id: str, action: str, option_number: Optional[int] = None,
                name: Optional[str] = None) -> ResolutionOutcome:
        """
        Resolve a pending review.

        ARGS:
            review_id: Review to resolve
            action: skip | select | new
            option_number: Required for select; must be one of the frozen options
            name: Required for new

        RETURNS:
            ResolutionOutcome

        RAISES:
            ReviewNotFoundError, ReviewConflictError, ReviewValidationError;
            any store error while applying the outcome (the claim is released)
        """
        review = self._load_review(review_id)
        plan = self._plan(review, (action or "").strip().lower(), option_number, name)

        if plan.kind != ResolutionKind.SKIPPED and self.store.get_message(review.message_id) is None:
            raise ReviewNotFoundError(f"Message {review.message_id} not found")

        resolution = plan.format()
        if not self.store.claim_review(review.id, resolution):
            raise ReviewConflictError(f"Review {review.id} was resolved by another request")

        try:
            outcome = self._apply(review, plan)
        except Exception:
            logger.error(f"Applying '{resolution}' to review {review.id} failed; releasing claim")
            self.store.release_review(review.id)
            raise

        if outcome.engagement_id:
            report = self.materializer.run(outcome.engagement_id, review.classification_result, review.message_id)
            outcome.failed_steps = report.failed_steps

        logger.info(f"Review {review.id} resolved: {resolution}")
        return outcome

    def _apply(self, review: PendingReview, plan: Resolution) -> ResolutionOutcome:
        outcome = ResolutionOutcome(review.id, plan.format())

        if plan.kind == ResolutionKind.SKIPPED:
            self.store.update_messages(review.message_ids, {"pending_review": False})
            return outcome

        if plan.kind == ResolutionKind.CREATED:
            engagement = create_engagement_from_result(
                self.store, review.classification_result, name=plan.label, engagement_id=plan.entity_id
            )
            outcome.created = True
        else:
            engagement = self.store.get_engagement(plan.entity_id)
            if engagement is None:
                raise ReviewNotFoundError(f"Engagement {plan.entity_id} no longer exists")
            if settings.MERGE_STATE_ON_ASSIGN:
                merge_result_into_engagement(self.store, engagement, review.classification_result)

        self.store.assign_messages(review.message_ids, engagement["id"])
        outcome.engagement_id = engagement["id"]
        outcome.engagement_name = engagement.get("name") or plan.label
        return outcome

    # ╔══════════ 2. SMS replies ═══════════════════════════════════════

    def handle_sms_reply(self, from_number: str, body: str) -> Optional[str]:
        """
        Apply an operator's SMS reply to the latest unresolved review.

        RETURNS:
            The confirmation text sent back, or None when the sender is not
            the operator or the body is empty.
        """
        if not settings.USER_PHONE_NUMBER or normalize_phone(from_number) != normalize_phone(settings.USER_PHONE_NUMBER):
            logger.warning(f"Ignoring SMS from unrecognised number ...{normalize_phone(from_number)[-4:]}")
            return None

        text = (body or "").strip()
        if not text:
            return None

        reply = self._reply_for(text)
        self._send_confirmation(reply)
        return reply

    def _reply_for(self, text: str) -> str:
        row = self.store.latest_unresolved_review()
        if row is None:
            return "No pending reviews right now."
        review = PendingReview.from_row(row)

        try:
            if text.lower() == "skip":
                self.resolve(review.id, "skip")
                return "Skipped."

            if text.isdigit():
                number = int(text)
                if review.option(number) is None:
                    offered = ", ".join(str(o.number) for o in review.options_sent)
                    return f"No option {number}. Reply {offered}, a name, or skip."
                outcome = self.resolve(review.id, "select", option_number=number)
            else:
                name = text[4:].strip() if text.lower().startswith("new:") else text
                if not name:
                    return "Send a name after new: to create an engagement."
                outcome = self.resolve(review.id, "new", name=name)
        except RelayError as e:
            logger.warning(f"SMS reply for review {review.id} rejected: {e.message}")
            return f"Couldn't apply that: {e.message}"

        prefix = "Created" if outcome.created else "Assigned to"
        return f"{prefix}: {outcome.engagement_name}"

    def _send_confirmation(self, text: str):
        try:
            self.sms.notify_operator(text)
        except SMSError as e:
            logger.warning(f"Confirmation SMS not sent: {e}")

    # ╔══════════ 3. Manual resend ═════════════════════════════════════

    def resend_sms(self, review_id: str) -> None:
        """
        Re-send the prompt for an unresolved review using its stored options.

        RAISES:
            ReviewNotFoundError, ReviewConflictError, SMSError
        """
        review = self._load_review(review_id)
        message = self.store.get_message(review.message_id) or {}
        sender = message.get("sender_name") or message.get("sender_email")
        body = build_review_sms(sender, message.get("subject"), review.options_sent)
        self.sms.notify_operator(body)
        self.store.mark_review_sms_sent(review.id)
        logger.info(f"Review {review.id} SMS re-sent")

    # ╔══════════ 4. Event approvals ═══════════════════════════════════

    def resolve_event_approval(self, approval_id: str, action: str) -> Dict[str, Any]:
        """
        Approve or deny a pending event.

        Approving find-or-creates the event and links the engagement to it
        with ``relevant_to``.
        """
        row = self.store.get_event_approval(approval_id)
        if row is None:
            raise ReviewNotFoundError(f"Event approval {approval_id} not found")
        approval = EventApproval.from_row(row)
        if approval.resolved:
            raise ReviewConflictError(f"Event approval {approval_id} is already resolved")

        action = (action or "").strip().lower()
        if action == "deny":
            resolution = Resolution(ResolutionKind.DENIED).format()
            if not self.store.claim_event_approval(approval.id, resolution):
                raise ReviewConflictError(f"Event approval {approval.id} was resolved by another request")
            return {"approval_id": approval.id, "resolution": resolution, "event_id": None}

        if action != "approve":
            raise ReviewValidationError(f"Unknown action '{action}' (expected approve or deny)")

        data = approval.entity_data
        name = str(data.get("name") or "").strip()
        if not name:
            raise ReviewValidationError("Event approval has no event name")

        existing = self.store.find_event_by_name(name)
        event_id = existing["id"] if existing else new_id()
        resolution = Resolution(ResolutionKind.APPROVED, event_id, name).format()
        if not self.store.claim_event_approval(approval.id, resolution):
            raise ReviewConflictError(f"Event approval {approval.id} was resolved by another request")

        try:
            if existing is None:
                self.store.create_event({
                    "id": event_id,
                    "name": name,
                    "type": data.get("type") or "other",
                    "start_date": data.get("date"),
                    "date_precision": data.get("date_precision") or "unknown",
                    "source": "email",
                    "verified": True,
                })
            link = EntityLink(
                EntityRef(EntityKind.ENGAGEMENT, approval.engagement_id),
                EntityRef(EntityKind.EVENT, event_id),
                "relevant_to",
            )
            if not self.store.find_entity_link(link):
                self.store.create_entity_link(link)
        except Exception:
            logger.error(f"Applying approval {approval.id} failed; releasing claim")
            self.store.release_event_approval(approval.id)
            raise

        logger.info(f"Event approval {approval.id} resolved: {resolution}")
        return {"approval_id": approval.id, "resolution": resolution, "event_id": event_id}
