# --------------------------- relay/services/classification/classifier.py ----------------------------
"""
Relay · Engagement Classification

OVERVIEW:
Asks the LLM how one inbound delivery (a forwarded thread split into messages)
relates to what is already tracked: which engagement it belongs to, which
events and programs it mentions, who took part, and what the current state
of the engagement is now.

WORKFLOW:
1. Load a bounded snapshot of active engagements, events and programs
2. Render that snapshot plus the messages into one user prompt
3. Invoke the model once per delivery
4. Strip code fences, decode the JSON object, validate permissively

BUSINESS LOGIC:
- The context is capped so prompt size stays flat as the tracked set grows
- Malformed model output is an error, never a guessed result; the caller
  leaves the messages unclassified for the batch path to retry
- Missing arrays default to empty, unknown keys are ignored, confidences are
  clamped into [0, 1]

TECHNICAL ARCHITECTURE:
- LangChain ChatOpenAI with a system + human message pair
- Output decoded with json and mapped onto relay.models.ClassificationResult

DEPENDENCIES:
- Environment variables: OPENAI_API_KEY, LLM_MODEL
"""

# ─── Standard-library imports ───────────────────────────────────────────
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# ─── Third-party imports ────────────────────────────────────────────────
from langchain_openai import ChatOpenAI
from langchain_core.messages import HumanMessage, SystemMessage

from config import settings
from relay.exceptions import ClassificationError
from relay.models import ClassificationResult

logger = logging.getLogger(__name__)

# ╔══════════ 1. Prompt ════════════════════════════════════════════════════

SYSTEM_PROMPT = """You triage forwarded email threads for a partnerships team.
Each thread belongs to at most one engagement: an ongoing relationship or
workstream with a partner organization. Compare the email with the tracked
state you are given and return ONLY a JSON object with this shape:

{
  "content_type": "engagement_email" | "event_info" | "program_info" | "meeting_invite" | "mixed" | "noise",
  "engagement_match": {
    "id": "<id of a tracked engagement, or null>",
    "name": "<engagement name; suggest a short one when new>",
    "confidence": 0.0-1.0,
    "is_new": true | false,
    "partner_name": "<partner organization or null>"
  },
  "events_referenced": [
    {"id": "<tracked event id or null>", "name": "...", "type": "conference|meeting|deadline|webinar|other",
     "date": "YYYY-MM-DD or null", "date_precision": "exact|month|quarter|year|unknown",
     "confidence": 0.0-1.0, "is_new": true | false}
  ],
  "programs_referenced": [
    {"id": "<tracked program id or null>", "name": "...", "is_new": true | false, "confidence": 0.0-1.0}
  ],
  "participants": [
    {"name": "...", "email": "... or null", "organization": "... or null", "role": "... or null"}
  ],
  "entity_links": [
    {"source_type": "engagement|event|program", "source_name": "...",
     "target_type": "engagement|event|program", "target_name": "...",
     "relationship": "relevant_to|part_of|presented_at|related_to", "context": "..."}
  ],
  "current_state": "<two or three sentences on where the engagement stands now>",
  "open_items": [
    {"description": "...", "assignee": "... or null", "due_date": "YYYY-MM-DD or null", "resolved": false}
  ]
}

Rules:
- Only use ids that appear in the tracked state. Never invent ids.
- confidence reflects how sure you are that the thread belongs to that engagement.
- Newsletters, automated notifications and spam are "noise".
- The person who forwarded the thread is a participant with role "forwarder".
- Use the engagement, event and program names exactly as written in entity_links."""


# ╔══════════ 2. Context ═══════════════════════════════════════════════════

def _truncate(text: Optional[str], limit: int) -> str:
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    return text[:limit - 3].rstrip() + "..."


@dataclass
class ClassificationContext:
    """Bounded snapshot of tracked state rendered into the prompt."""
    engagements: List[Dict[str, Any]] = field(default_factory=list)
    events: List[Dict[str, Any]] = field(default_factory=list)
    programs: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def load(cls, store) -> "ClassificationContext":
        return cls(
            engagements=store.list_active_engagements(settings.CONTEXT_MAX_ENGAGEMENTS),
            events=store.list_events(settings.CONTEXT_MAX_EVENTS),
            programs=store.list_programs(settings.CONTEXT_MAX_PROGRAMS),
        )

    def render(self) -> str:
        synopsis_chars = settings.CONTEXT_SYNOPSIS_CHARS
        lines = ["## Current Tracked State", "", "### Active Engagements"]
        if not self.engagements:
            lines.append("None yet.")
        for eng in self.engagements[:settings.CONTEXT_MAX_ENGAGEMENTS]:
            lines.append(f"- **{eng.get('name')}** (id: {eng.get('id')})")
            if eng.get("partner_name"):
                lines.append(f"  Partner: {eng['partner_name']}")
            synopsis = eng.get("current_state") or eng.get("summary")
            if synopsis:
                lines.append(f"  Summary: {_truncate(synopsis, synopsis_chars)}")

        lines += ["", "### Tracked Events"]
        if not self.events:
            lines.append("None yet.")
        for event in self.events[:settings.CONTEXT_MAX_EVENTS]:
            start, end = event.get("start_date"), event.get("end_date")
            if start and end and end != start:
                when = f"{start} to {end}"
            else:
                when = start or "date TBD"
            lines.append(f"- **{event.get('name')}** (id: {event.get('id')}, "
                         f"type: {event.get('type') or 'other'}, {when})")

        lines += ["", "### Active Programs"]
        if not self.programs:
            lines.append("None yet.")
        for program in self.programs[:settings.CONTEXT_MAX_PROGRAMS]:
            entry = f"- **{program.get('name')}** (id: {program.get('id')})"
            if program.get("description"):
                entry += f": {_truncate(program['description'], synopsis_chars)}"
            lines.append(entry)

        return "\n".join(lines)


def build_user_message(messages: List[Dict[str, Any]], context: ClassificationContext,
                       forwarder: Optional[str] = None) -> str:
    """Render tracked state followed by every message of the delivery."""
    parts = [context.render(), "", "---", "", "## Email to Classify"]
    if forwarder:
        parts.append(f"Forwarded by: {forwarder}")
    for i, msg in enumerate(messages, start=1):
        sender = msg.get("sender_email") or ""
        if msg.get("sender_name"):
            sender = f"{msg['sender_name']} <{sender}>" if sender else msg["sender_name"]
        parts += [
            "",
            f"### Message {i}",
            f"Subject: {msg.get('subject') or '(no subject)'}",
            f"From: {sender or 'unknown'}",
            f"Date: {msg.get('sent_at') or 'unknown'}",
            "",
            msg.get("body_text") or "",
        ]
    return "\n".join(parts)


# ╔══════════ 3. Response parsing ══════════════════════════════════════════

_FENCE_PATTERN = re.compile(r"^\s*```(?:json|JSON)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def parse_classification_response(text: str) -> ClassificationResult:
    """
    Decode the model's reply into a ClassificationResult.

    RAISES:
        ClassificationError: no JSON object could be decoded, or it lacks an
            engagement_match
    """
    payload = (text or "").strip()
    fenced = _FENCE_PATTERN.match(payload)
    if fenced:
        payload = fenced.group(1).strip()

    if not payload.startswith("{"):
        start, end = payload.find("{"), payload.rfind("}")
        if start == -1 or end <= start:
            raise ClassificationError("Model response contains no JSON object")
        payload = payload[start:end + 1]

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ClassificationError(f"Model response is not valid JSON: {e}") from e

    try:
        return ClassificationResult.from_dict(data)
    except ValueError as e:
        raise ClassificationError(str(e)) from e


# ╔══════════ 4. Classifier ════════════════════════════════════════════════

class EngagementClassifier:
    """
    One LLM call per inbound delivery.

    ARGS:
        llm: Chat model to use; defaults to ChatOpenAI with LLM_MODEL
        store: Data access used to load the tracked-state context
    """

    def __init__(self, store, llm=None, model: str = None, temperature: float = None):
        self.store = store
        self.model = model or settings.LLM_MODEL
        self.llm = llm or ChatOpenAI(
            model=self.model,
            temperature=settings.LLM_TEMPERATURE if temperature is None else temperature,
        )

    def classify(self, messages: List[Dict[str, Any]], forwarder: Optional[str] = None,
                 context: Optional[ClassificationContext] = None) -> ClassificationResult:
        """
        Classify the messages of one delivery.

        ARGS:
            messages: Stored message rows (subject, sender, sent_at, body_text)
            forwarder: Forwarding address, mentioned to the model as a participant hint
            context: Pre-loaded context; loaded from the store when omitted

        RETURNS:
            ClassificationResult

        RAISES:
            ClassificationError: model call failed or output was unusable
        """
        if not messages:
            raise ClassificationError("Nothing to classify")

        context = context or ClassificationContext.load(self.store)
        prompt = build_user_message(messages, context, forwarder)

        try:
            response = self.llm.invoke([SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content=prompt)])
        except Exception as e:
            raise ClassificationError(f"Classification call failed: {e}") from e

        result = parse_classification_response(getattr(response, "content", response))
        match = result.engagement_match
        logger.info(
            f"Classified {len(messages)} message(s) as {result.content_type}: "
            f"'{match.name}' (confidence {match.confidence:.2f}, new={match.is_new})"
        )
        return result
