# --------------------------- relay/agents/intake/graph.py ----------------------------
"""
Relay · Intake Agent (LangGraph)

OVERVIEW:
The ingestion pipeline for one forwarded thread, expressed as a LangGraph
state machine. A webhook delivery enters at ``parse``; already-stored
messages picked up by the batch path enter directly at ``classify``.

WORKFLOW:
    START ─┬─> parse -> store ─┬─> classify ─┬─> route -> END
           │                   └─> END       └─> END   (classification failed)
           └─────────────────────> classify             (batch entry)

BUSINESS LOGIC:
- Messages are stored before any model call, so nothing is lost if the
  classifier is down
- Duplicate deliveries (same sender, subject and body prefix) are not
  stored twice
- A classification or routing failure is logged and leaves the messages
  unclassified; the caller still gets a normal summary back
- Batch reclassification groups stored messages into deliveries by their
  forwarded_at timestamps

TECHNICAL ARCHITECTURE:
- StateGraph over a TypedDict state, nodes built as closures over the
  injected store/classifier/router so tests can pass doubles
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from typing_extensions import TypedDict

from langgraph.graph import StateGraph, START, END

from config import settings
from relay.models import Envelope, ParsedMessage
from relay.utils.email_parser import ForwardedThreadParser

logger = logging.getLogger(__name__)


class IntakeState(TypedDict, total=False):
    """
    State flowing through the intake graph.

    FIELDS:
    - raw_text: Thread body as received
    - envelope: Envelope fields (sender, subject, timestamp)
    - forwarder: Address of whoever forwarded the thread
    - parsed: Messages split out of raw_text
    - messages / message_ids: Stored message rows for this delivery
    - duplicates: Parsed messages skipped as already stored
    - result: ClassificationResult once classified
    - outcome: RoutingOutcome.to_dict() once routed
    - error: Failure description when classification or routing failed
    """
    raw_text: str
    envelope: Dict[str, Any]
    forwarder: Optional[str]
    parsed: List[ParsedMessage]
    messages: List[Dict[str, Any]]
    message_ids: List[str]
    duplicates: int
    result: Any
    outcome: Dict[str, Any]
    error: Optional[str]


# ╔══════════ 1. Graph construction ════════════════════════════════════════

def build_intake_graph(store, classifier, router, parser: ForwardedThreadParser = None):
    """
    Construct and compile the intake state machine.

    ARGS:
        store: RelayStore (or compatible)
        classifier: EngagementClassifier
        router: ConfidenceRouter
        parser: Thread parser; a fresh one when omitted

    RETURNS:
        Compiled LangGraph graph
    """
    parser = parser or ForwardedThreadParser()

    def parse(state: IntakeState) -> Dict[str, Any]:
        envelope = Envelope(**(state.get("envelope") or {}))
        parsed = parser.parse(state.get("raw_text") or "", envelope)
        logger.info(f"Parsed {len(parsed)} message(s) from thread '{envelope.subject}'")
        return {"parsed": parsed}

    def store_messages(state: IntakeState) -> Dict[str, Any]:
        forwarder = state.get("forwarder")
        forwarder_name, forwarder_email = parser.parse_sender(forwarder)
        rows, duplicates = [], 0

        for msg in state.get("parsed") or []:
            prefix = msg.body_text[:settings.DUPLICATE_BODY_PREFIX_CHARS]
            if store.find_duplicate_message(msg.sender_email, msg.subject, prefix):
                duplicates += 1
                continue
            record = msg.to_record()
            record["forwarder_name"] = forwarder_name
            record["forwarder_email"] = forwarder_email
            rows.append(store.insert_message(record))

        if duplicates:
            logger.info(f"Skipped {duplicates} duplicate message(s)")
        return {"messages": rows, "message_ids": [row["id"] for row in rows], "duplicates": duplicates}

    def classify(state: IntakeState) -> Dict[str, Any]:
        try:
            result = classifier.classify(state["messages"], forwarder=state.get("forwarder"))
        except Exception as e:
            logger.error(f"Classification failed for {state.get('message_ids')}: {e}")
            return {"error": f"classification failed: {e}"}
        return {"result": result}

    def route(state: IntakeState) -> Dict[str, Any]:
        try:
            outcome = router.route(state["message_ids"], state["result"], state.get("messages"))
        except Exception as e:
            logger.error(f"Routing failed for {state.get('message_ids')}: {e}")
            return {"error": f"routing failed: {e}"}
        return {"outcome": outcome.to_dict()}

    def route_entry(state: IntakeState) -> str:
        return "classify" if state.get("message_ids") else "parse"

    def route_after_store(state: IntakeState) -> str:
        return "classify" if state.get("message_ids") else END

    def route_after_classify(state: IntakeState) -> str:
        return "route" if state.get("result") is not None else END

    g = StateGraph(IntakeState)

    g.add_node("parse", parse)
    g.add_node("store", store_messages)
    g.add_node("classify", classify)
    g.add_node("route", route)

    g.add_conditional_edges(START, route_entry, {"parse": "parse", "classify": "classify"})
    g.add_edge("parse", "store")
    g.add_conditional_edges("store", route_after_store, {"classify": "classify", END: END})
    g.add_conditional_edges("classify", route_after_classify, {"route": "route", END: END})
    g.add_edge("route", END)

    return g.compile()


# ╔══════════ 2. Pipeline facade ═══════════════════════════════════════════

def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def group_by_delivery(messages: List[Dict[str, Any]], window_seconds: float = None) -> List[List[Dict[str, Any]]]:
    """
    Split stored messages into deliveries: consecutive rows whose forwarded_at
    values are within ``window_seconds`` of the previous row share a group.
    """
    window = settings.BATCH_GROUP_WINDOW_SECONDS if window_seconds is None else window_seconds
    ordered = sorted(messages, key=lambda m: str(m.get("forwarded_at") or ""))

    groups: List[List[Dict[str, Any]]] = []
    previous = None
    for msg in ordered:
        ts = _parse_timestamp(msg.get("forwarded_at"))
        if groups and ts is not None and previous is not None and (ts - previous).total_seconds() <= window:
            groups[-1].append(msg)
        else:
            groups.append([msg])
        previous = ts
    return groups


def _summary(state: Dict[str, Any]) -> Dict[str, Any]:
    outcome = state.get("outcome") or {}
    if state.get("error"):
        status = "stored_unclassified"
    elif outcome:
        status = "processed"
    elif state.get("duplicates") and not state.get("message_ids"):
        status = "duplicate"
    else:
        status = "empty"
    return {
        "status": status,
        "message_ids": state.get("message_ids") or [],
        "duplicates": state.get("duplicates", 0),
        "action": outcome.get("action"),
        "engagement_id": outcome.get("engagement_id"),
        "review_id": outcome.get("review_id"),
        "sms_sent": outcome.get("sms_sent", False),
        "error": state.get("error"),
    }


class IntakePipeline:
    """Entry points around the compiled intake graph."""

    def __init__(self, store, classifier, router, parser: ForwardedThreadParser = None):
        self.store = store
        self.parser = parser or ForwardedThreadParser()
        self.graph = build_intake_graph(store, classifier, router, self.parser)

    def ingest(self, raw_text: str, envelope: Envelope, forwarder: Optional[str] = None) -> Dict[str, Any]:
        """Parse, store, classify and route one forwarded thread."""
        state = self.graph.invoke({
            "raw_text": raw_text,
            "envelope": {"sender": envelope.sender, "subject": envelope.subject, "timestamp": envelope.timestamp},
            "forwarder": forwarder or envelope.sender,
        })
        return _summary(state)

    def classify_stored(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Classify and route messages that are already stored (one delivery)."""
        first = messages[0] if messages else {}
        forwarder = first.get("forwarder_email")
        state = self.graph.invoke({
            "messages": messages,
            "message_ids": [m["id"] for m in messages],
            "forwarder": forwarder,
        })
        return _summary(state)

    def reclassify_pending(self, limit: int = 200) -> Dict[str, int]:
        """
        Batch path: classify every stored message that has no engagement and
        no classification yet.

        RETURNS:
            Dict with processed, auto_assigned, flagged_for_review, noise, errors;
            every count is in messages, not delivery groups
        """
        counts = {"processed": 0, "auto_assigned": 0, "flagged_for_review": 0, "noise": 0, "errors": 0}
        pending = self.store.list_unclassified_messages(limit)
        if not pending:
            return counts

        groups = group_by_delivery(pending)
        logger.info(f"Reclassifying {len(pending)} message(s) in {len(groups)} delivery group(s)")

        for group in groups:
            summary = self.classify_stored(group)
            if summary["status"] != "processed":
                counts["errors"] += len(group)
                continue
            counts["processed"] += len(group)
            action = summary["action"]
            if action in ("auto_assigned", "auto_created"):
                counts["auto_assigned"] += len(group)
            elif action == "review":
                counts["flagged_for_review"] += len(group)
            elif action == "noise":
                counts["noise"] += len(group)
        return counts
