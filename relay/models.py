# --------------------------- relay/models.py ----------------------------
"""
Relay · Domain Models

OVERVIEW:
Typed records shared by the parser, classifier, router, review state machine
and materializer. Database rows are plain dicts coming back from Supabase;
these classes are the in-process shape of that data.

BUSINESS LOGIC:
- Confidence values are always clamped into [0.0, 1.0]
- Classification results are accepted permissively: absent arrays become
  empty lists and unknown keys are dropped
- Review options are frozen at review creation and stored verbatim, so the
  numbering a human sees is the numbering a reply is checked against
- Entity links reference their ends through a tagged union (EntityRef) and
  report dangling ends explicitly when read back
"""

# ─── Standard-library imports ───────────────────────────────────────────
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# ╔══════════ 1. Enums ═════════════════════════════════════════════════════

class ContentType(Enum):
    ENGAGEMENT_EMAIL = "engagement_email"
    EVENT_INFO = "event_info"
    PROGRAM_INFO = "program_info"
    MEETING_INVITE = "meeting_invite"
    MIXED = "mixed"
    NOISE = "noise"


class EntityKind(Enum):
    """Top-level entity types an entity link may point at."""
    ENGAGEMENT = "engagement"
    EVENT = "event"
    PROGRAM = "program"

    @property
    def table(self) -> str:
        return self.value + "s"


class ResolutionKind(Enum):
    SKIPPED = "skipped"
    ASSIGNED = "assigned"
    CREATED = "created"
    APPROVED = "approved"
    DENIED = "denied"


def clamp_confidence(value: Any) -> float:
    """Coerce a model-supplied confidence to a float in [0, 1]."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence != confidence:  # NaN
        return 0.0
    return max(0.0, min(1.0, confidence))


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def as_bool(value: Any, default: bool = False) -> bool:
    """Read a flag that may arrive as a JSON boolean, a number or a quoted string."""
    if value is None:
        return default
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "yes", "1"):
            return True
        if text in ("false", "no", "0", ""):
            return False
        return default
    return bool(value)


# ╔══════════ 2. Parsed email ═════════════════════════════════════════════

@dataclass
class Envelope:
    """Delivery-level metadata of one inbound forward (timestamp in Unix seconds)."""
    sender: str = ""
    subject: str = ""
    timestamp: Optional[float] = None


@dataclass
class ParsedMessage:
    """
    One message split out of a forwarded thread.

    ``header_raw`` and ``body_raw`` are exact slices of the normalized input,
    so joining them in order reproduces the thread. ``body_text`` is the
    cleaned body with signatures and boilerplate removed.
    """
    sender_name: Optional[str]
    sender_email: Optional[str]
    sent_at: Optional[datetime]
    subject: str
    body_text: str
    body_raw: str
    to_header: Optional[str] = None
    cc_header: Optional[str] = None
    header_raw: str = ""
    is_forwarder_note: bool = False

    def to_record(self) -> Dict[str, Any]:
        """Column values for the messages table."""
        return {
            "sender_name": self.sender_name,
            "sender_email": self.sender_email,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "subject": self.subject,
            "to_header": self.to_header,
            "cc_header": self.cc_header,
            "body_text": self.body_text,
            "body_raw": self.body_raw,
            "is_forwarder_note": self.is_forwarder_note,
        }


# ╔══════════ 3. Classification result ════════════════════════════════════

@dataclass
class EngagementMatch:
    name: str
    confidence: float
    is_new: bool = False
    id: Optional[str] = None
    partner_name: Optional[str] = None

    def __post_init__(self):
        self.confidence = clamp_confidence(self.confidence)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngagementMatch":
        return cls(
            name=str(data.get("name") or "").strip(),
            confidence=data.get("confidence", 0.0),
            is_new=as_bool(data.get("is_new")),
            id=_str_or_none(data.get("id")),
            partner_name=_str_or_none(data.get("partner_name")),
        )


@dataclass
class EventReference:
    name: str
    type: str = "other"
    date: Optional[str] = None
    date_precision: str = "unknown"
    confidence: float = 0.0
    is_new: bool = True
    id: Optional[str] = None

    def __post_init__(self):
        self.confidence = clamp_confidence(self.confidence)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventReference":
        return cls(
            name=str(data.get("name") or "").strip(),
            type=data.get("type") or "other",
            date=_str_or_none(data.get("date")),
            date_precision=data.get("date_precision") or "unknown",
            confidence=data.get("confidence", 0.0),
            is_new=as_bool(data.get("is_new"), data.get("id") is None),
            id=_str_or_none(data.get("id")),
        )


@dataclass
class ProgramReference:
    name: str
    id: Optional[str] = None
    is_new: bool = True
    confidence: float = 0.0

    def __post_init__(self):
        self.confidence = clamp_confidence(self.confidence)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgramReference":
        return cls(
            name=str(data.get("name") or "").strip(),
            id=_str_or_none(data.get("id")),
            is_new=as_bool(data.get("is_new"), data.get("id") is None),
            confidence=data.get("confidence", 0.0),
        )


@dataclass
class ParticipantReference:
    name: Optional[str] = None
    email: Optional[str] = None
    organization: Optional[str] = None
    role: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParticipantReference":
        return cls(
            name=_str_or_none(data.get("name")),
            email=_str_or_none(data.get("email")),
            organization=_str_or_none(data.get("organization")),
            role=_str_or_none(data.get("role")),
        )


@dataclass
class EntityLinkReference:
    source_type: str
    source_name: str
    target_type: str
    target_name: str
    relationship: str
    context: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityLinkReference":
        return cls(
            source_type=str(data.get("source_type") or "").lower(),
            source_name=str(data.get("source_name") or ""),
            target_type=str(data.get("target_type") or "").lower(),
            target_name=str(data.get("target_name") or ""),
            relationship=str(data.get("relationship") or "related_to"),
            context=_str_or_none(data.get("context")),
        )


@dataclass
class OpenItem:
    description: str
    assignee: Optional[str] = None
    due_date: Optional[str] = None
    resolved: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OpenItem":
        return cls(
            description=str(data.get("description") or "").strip(),
            assignee=_str_or_none(data.get("assignee")),
            due_date=_str_or_none(data.get("due_date")),
            resolved=as_bool(data.get("resolved")),
        )


def _items(data: Dict[str, Any], *keys: str) -> List[Dict[str, Any]]:
    """First list found under any of ``keys``, keeping only dict entries."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    return []


@dataclass
class ClassificationResult:
    """
    Structured output of one classification call.

    Stored as JSON on messages and pending reviews; ``from_dict`` is used both
    for raw model output and for reading those stored snapshots back.
    """
    engagement_match: EngagementMatch
    content_type: str = ContentType.ENGAGEMENT_EMAIL.value
    events_referenced: List[EventReference] = field(default_factory=list)
    programs_referenced: List[ProgramReference] = field(default_factory=list)
    participants: List[ParticipantReference] = field(default_factory=list)
    entity_links: List[EntityLinkReference] = field(default_factory=list)
    current_state: Optional[str] = None
    open_items: List[OpenItem] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassificationResult":
        """
        Build a result from a decoded JSON object.

        RAISES:
            ValueError: payload is not an object or has no engagement_match
        """
        if not isinstance(data, dict):
            raise ValueError("classification payload must be a JSON object")
        match = data.get("engagement_match")
        if not isinstance(match, dict):
            raise ValueError("classification payload has no engagement_match object")

        content_type = str(data.get("content_type") or ContentType.ENGAGEMENT_EMAIL.value)
        return cls(
            engagement_match=EngagementMatch.from_dict(match),
            content_type=content_type.lower(),
            events_referenced=[
                EventReference.from_dict(e)
                for e in _items(data, "events_referenced", "matched_events")
                if e.get("name")
            ],
            programs_referenced=[
                ProgramReference.from_dict(p)
                for p in _items(data, "programs_referenced", "matched_programs")
                if p.get("name")
            ],
            participants=[ParticipantReference.from_dict(p) for p in _items(data, "participants")],
            entity_links=[EntityLinkReference.from_dict(l) for l in _items(data, "entity_links")],
            current_state=_str_or_none(data.get("current_state") or data.get("summary_update")),
            open_items=[
                OpenItem.from_dict(i) for i in _items(data, "open_items") if i.get("description")
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def is_noise(self) -> bool:
        return self.content_type == ContentType.NOISE.value

    @property
    def matched_events(self) -> List[EventReference]:
        return [e for e in self.events_referenced if e.id]

    @property
    def matched_programs(self) -> List[ProgramReference]:
        return [p for p in self.programs_referenced if p.id]

    @property
    def summary_update(self) -> Optional[str]:
        return self.current_state


# ╔══════════ 4. Reviews & resolutions ════════════════════════════════════

NEW_ENGAGEMENT_LABEL = "New engagement"


@dataclass
class ReviewOption:
    """One numbered choice offered to the human. ``engagement_id`` is None for create-new."""
    number: int
    label: str
    engagement_id: Optional[str] = None
    is_new: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewOption":
        return cls(
            number=int(data["number"]),
            label=str(data.get("label") or ""),
            engagement_id=_str_or_none(data.get("engagement_id") or data.get("initiative_id")),
            is_new=as_bool(data.get("is_new")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Resolution:
    """
    Tagged resolution string stored on reviews and approvals.

    FORMATS:
        skipped | denied
        assigned:<id>:<label> | created:<id>:<name> | approved:<id>:<name>
    """
    kind: ResolutionKind
    entity_id: Optional[str] = None
    label: Optional[str] = None

    def format(self) -> str:
        if self.kind in (ResolutionKind.SKIPPED, ResolutionKind.DENIED):
            return self.kind.value
        return f"{self.kind.value}:{self.entity_id}:{self.label or ''}"

    @classmethod
    def parse(cls, text: str) -> "Resolution":
        parts = (text or "").split(":", 2)
        kind = ResolutionKind(parts[0])
        if kind in (ResolutionKind.SKIPPED, ResolutionKind.DENIED):
            return cls(kind)
        if len(parts) < 2 or not parts[1]:
            raise ValueError(f"resolution '{text}' is missing an entity id")
        return cls(kind, parts[1], parts[2] if len(parts) > 2 else "")

    def __str__(self) -> str:
        return self.format()


@dataclass
class PendingReview:
    id: str
    message_id: str
    classification_result: ClassificationResult
    options_sent: List[ReviewOption]
    message_ids: List[str] = field(default_factory=list)
    resolved: bool = False
    resolution: Optional[str] = None
    sms_sent: bool = False
    sms_sent_at: Optional[str] = None
    created_at: Optional[str] = None
    resolved_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PendingReview":
        message_ids = list(row.get("message_ids") or [])
        if not message_ids and row.get("message_id"):
            message_ids = [row["message_id"]]
        return cls(
            id=row["id"],
            message_id=row["message_id"],
            classification_result=ClassificationResult.from_dict(row["classification_result"]),
            options_sent=[ReviewOption.from_dict(o) for o in row.get("options_sent") or []],
            message_ids=message_ids,
            resolved=bool(row.get("resolved", False)),
            resolution=row.get("resolution"),
            sms_sent=bool(row.get("sms_sent", False)),
            sms_sent_at=row.get("sms_sent_at"),
            created_at=row.get("created_at"),
            resolved_at=row.get("resolved_at"),
        )

    def option(self, number: int) -> Optional[ReviewOption]:
        for opt in self.options_sent:
            if opt.number == number:
                return opt
        return None


@dataclass
class EventApproval:
    id: str
    engagement_id: str
    entity_data: Dict[str, Any]
    message_id: Optional[str] = None
    resolved: bool = False
    resolution: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "EventApproval":
        return cls(
            id=row["id"],
            engagement_id=row["engagement_id"],
            entity_data=dict(row.get("entity_data") or {}),
            message_id=row.get("message_id"),
            resolved=bool(row.get("resolved", False)),
            resolution=row.get("resolution"),
        )


# ╔══════════ 5. Entity links ═════════════════════════════════════════════

@dataclass(frozen=True)
class EntityRef:
    """Tagged reference to an engagement, event or program."""
    kind: EntityKind
    id: str

    @classmethod
    def of(cls, kind: str, entity_id: str) -> Optional["EntityRef"]:
        """Build a ref from a stored type tag; None when the tag is not a known kind."""
        try:
            return cls(EntityKind((kind or "").lower()), entity_id)
        except ValueError:
            return None


@dataclass
class EntityLink:
    source: EntityRef
    target: EntityRef
    relationship: str
    context: Optional[str] = None
    id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "source_type": self.source.kind.value,
            "source_id": self.source.id,
            "target_type": self.target.kind.value,
            "target_id": self.target.id,
            "relationship": self.relationship,
            "context": self.context,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional["EntityLink"]:
        source = EntityRef.of(row.get("source_type"), row.get("source_id"))
        target = EntityRef.of(row.get("target_type"), row.get("target_id"))
        if source is None or target is None:
            return None
        return cls(source, target, row.get("relationship") or "", row.get("context"), row.get("id"))


@dataclass
class ResolvedEntityLink:
    """An entity link with both ends looked up; a missing end is reported as dangling."""
    link: EntityLink
    source_record: Optional[Dict[str, Any]]
    target_record: Optional[Dict[str, Any]]

    @property
    def dangling(self) -> bool:
        return self.source_record is None or self.target_record is None

    @property
    def dangling_refs(self) -> List[EntityRef]:
        refs = []
        if self.source_record is None:
            refs.append(self.link.source)
        if self.target_record is None:
            refs.append(self.link.target)
        return refs
