# --------------------------- relay/services/store.py ----------------------------
"""
Relay · Supabase Data Access

OVERVIEW:
Every read and write the pipeline performs against Supabase lives here, one
method per query. Services depend on this class (or a test double with the
same methods) instead of building queries inline.

BUSINESS LOGIC:
- Review and approval resolution is claimed with a single conditional update
  (``resolved = false`` in the filter), so two concurrent resolvers cannot
  both win
- Name lookups for programs and events are case-insensitive exact matches
- Participants are keyed by lower-cased email
- The duplicate-delivery precheck fails open: a lookup error never blocks
  ingestion
- Lookups by an id that is not a uuid (e.g. one a model made up) return
  nothing without querying

TECHNICAL ARCHITECTURE:
- supabase-py client created from service-role credentials
- Rows are returned as plain dicts; callers wrap them in relay.models types

DEPENDENCIES:
- Environment variables: SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY
- Schema: supabase/migrations/001_relay_schema.sql
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import create_client, Client

from config import settings
from relay.models import EntityLink, EntityRef, ResolvedEntityLink

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _first(rows: Optional[List[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    return rows[0] if rows else None


def is_row_id(value: Any) -> bool:
    """Primary keys are uuids; anything else can never match a row."""
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return False
    return True


class RelayStore:
    """Thin query layer over the Relay tables."""

    def __init__(self, client: Client):
        self.client = client

    @classmethod
    def from_settings(cls) -> "RelayStore":
        if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
            raise ValueError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY in environment")
        return cls(create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY))

    def _table(self, name: str):
        return self.client.table(name)

    def _insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(record)
        record.setdefault("id", new_id())
        result = self._table(table).insert(record).execute()
        return _first(result.data) or record

    def _get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        if not is_row_id(row_id):
            logger.info(f"Ignoring lookup of non-uuid id {row_id!r} in {table}")
            return None
        result = self._table(table).select("*").eq("id", row_id).limit(1).execute()
        return _first(result.data)

    # ╔══════════ Messages ═════════════════════════════════════════════

    def find_duplicate_message(self, sender_email: Optional[str], subject: str,
                               body_prefix: str) -> Optional[Dict[str, Any]]:
        """
        Best-effort duplicate precheck on sender + subject + body prefix.

        RETURNS:
            The existing row, or None when nothing matches or the lookup fails.
        """
        try:
            query = self._table("messages").select("id").eq("subject", subject or "")
            if sender_email:
                query = query.eq("sender_email", sender_email)
            else:
                query = query.is_("sender_email", "null")
            result = query.like("body_text", _escape_like(body_prefix) + "%").limit(1).execute()
            return _first(result.data)
        except Exception as e:
            logger.warning(f"Duplicate check failed, continuing with insert: {e}")
            return None

    def insert_message(self, record: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(record)
        record.setdefault("forwarded_at", utc_now())
        record.setdefault("pending_review", False)
        return self._insert("messages", record)

    def get_message(self, message_id: str) -> Optional[Dict[str, Any]]:
        return self._get("messages", message_id)

    def get_messages(self, message_ids: List[str]) -> List[Dict[str, Any]]:
        if not message_ids:
            return []
        result = self._table("messages").select("*").in_("id", message_ids).execute()
        return result.data or []

    def update_messages(self, message_ids: List[str], fields: Dict[str, Any]) -> None:
        if not message_ids:
            return
        self._table("messages").update(fields).in_("id", message_ids).execute()

    def assign_messages(self, message_ids: List[str], engagement_id: str) -> None:
        self.update_messages(message_ids, {"engagement_id": engagement_id, "pending_review": False})

    def list_unclassified_messages(self, limit: int = 200) -> List[Dict[str, Any]]:
        """Messages with neither an engagement nor a stored classification, oldest first."""
        result = (
            self._table("messages")
            .select("*")
            .is_("engagement_id", "null")
            .is_("classification_result", "null")
            .eq("pending_review", False)
            .order("forwarded_at")
            .limit(limit)
            .execute()
        )
        return result.data or []

    # ╔══════════ Engagements ══════════════════════════════════════════

    def list_active_engagements(self, limit: int) -> List[Dict[str, Any]]:
        result = (
            self._table("engagements")
            .select("*")
            .eq("status", "active")
            .order("updated_at", desc=True)
            .limit(limit)
            .execute()
        )
        return result.data or []

    def get_engagement(self, engagement_id: str) -> Optional[Dict[str, Any]]:
        return self._get("engagements", engagement_id)

    def find_engagement_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        result = (
            self._table("engagements")
            .select("*")
            .ilike("name", _escape_like(name.strip()))
            .neq("status", "closed")
            .limit(1)
            .execute()
        )
        return _first(result.data)

    def create_engagement(self, record: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(record)
        now = utc_now()
        record.setdefault("status", "active")
        record.setdefault("open_items", [])
        record.setdefault("created_at", now)
        record.setdefault("updated_at", now)
        return self._insert("engagements", record)

    def update_engagement(self, engagement_id: str, fields: Dict[str, Any]) -> None:
        fields = dict(fields)
        fields["updated_at"] = utc_now()
        if fields.get("status") == "closed":
            fields.setdefault("closed_at", fields["updated_at"])
        self._table("engagements").update(fields).eq("id", engagement_id).execute()

    # ╔══════════ Events & programs ════════════════════════════════════

    def list_events(self, limit: int) -> List[Dict[str, Any]]:
        result = (
            self._table("events")
            .select("*")
            .order("start_date", desc=True)
            .limit(limit)
            .execute()
        )
        return result.data or []

    def find_event_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        result = self._table("events").select("*").ilike("name", _escape_like(name)).limit(1).execute()
        return _first(result.data)

    def create_event(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert("events", record)

    def list_programs(self, limit: int) -> List[Dict[str, Any]]:
        result = (
            self._table("programs")
            .select("*")
            .eq("status", "active")
            .order("name")
            .limit(limit)
            .execute()
        )
        return result.data or []

    def find_program_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        result = self._table("programs").select("*").ilike("name", _escape_like(name)).limit(1).execute()
        return _first(result.data)

    def create_program(self, record: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(record)
        record.setdefault("status", "active")
        return self._insert("programs", record)

    def get_entity(self, ref: EntityRef) -> Optional[Dict[str, Any]]:
        return self._get(ref.kind.table, ref.id)

    # ╔══════════ Entity links ═════════════════════════════════════════

    def find_entity_link(self, link: EntityLink) -> Optional[Dict[str, Any]]:
        result = (
            self._table("entity_links")
            .select("id")
            .eq("source_type", link.source.kind.value)
            .eq("source_id", link.source.id)
            .eq("target_type", link.target.kind.value)
            .eq("target_id", link.target.id)
            .eq("relationship", link.relationship)
            .limit(1)
            .execute()
        )
        return _first(result.data)

    def create_entity_link(self, link: EntityLink) -> Dict[str, Any]:
        return self._insert("entity_links", link.to_row())

    def list_entity_links(self, ref: EntityRef) -> List[EntityLink]:
        """Links where ``ref`` is either end; rows with unknown type tags are dropped."""
        links = []
        if not is_row_id(ref.id):
            return links
        for side in ("source", "target"):
            result = (
                self._table("entity_links")
                .select("*")
                .eq(f"{side}_type", ref.kind.value)
                .eq(f"{side}_id", ref.id)
                .execute()
            )
            for row in result.data or []:
                link = EntityLink.from_row(row)
                if link is None:
                    logger.warning(f"Entity link {row.get('id')} has an unknown entity type")
                    continue
                links.append(link)
        return links

    def resolve_entity_links(self, ref: EntityRef) -> List[ResolvedEntityLink]:
        """Links for ``ref`` with both ends looked up; missing ends are flagged, not dropped."""
        resolved = []
        for link in self.list_entity_links(ref):
            item = ResolvedEntityLink(link, self.get_entity(link.source), self.get_entity(link.target))
            if item.dangling:
                logger.info(f"Entity link {link.id} is dangling: {item.dangling_refs}")
            resolved.append(item)
        return resolved

    # ╔══════════ Participants ═════════════════════════════════════════

    def find_participant_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        result = (
            self._table("participants")
            .select("*")
            .ilike("email", _escape_like(email.strip()))
            .limit(1)
            .execute()
        )
        return _first(result.data)

    def create_participant(self, record: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(record)
        record["email"] = record["email"].strip().lower()
        return self._insert("participants", record)

    def update_participant(self, participant_id: str, fields: Dict[str, Any]) -> None:
        self._table("participants").update(fields).eq("id", participant_id).execute()

    def find_participant_link(self, participant_id: str, entity_type: str,
                              entity_id: str) -> Optional[Dict[str, Any]]:
        result = (
            self._table("participant_links")
            .select("id")
            .eq("participant_id", participant_id)
            .eq("entity_type", entity_type)
            .eq("entity_id", entity_id)
            .limit(1)
            .execute()
        )
        return _first(result.data)

    def create_participant_link(self, participant_id: str, entity_type: str,
                                entity_id: str, role: Optional[str] = None) -> Dict[str, Any]:
        return self._insert("participant_links", {
            "participant_id": participant_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "role": role,
        })

    # ╔══════════ Pending reviews ══════════════════════════════════════

    def create_review(self, record: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(record)
        record.setdefault("resolved", False)
        record.setdefault("sms_sent", False)
        record.setdefault("created_at", utc_now())
        return self._insert("pending_reviews", record)

    def get_review(self, review_id: str) -> Optional[Dict[str, Any]]:
        return self._get("pending_reviews", review_id)

    def latest_unresolved_review(self) -> Optional[Dict[str, Any]]:
        result = (
            self._table("pending_reviews")
            .select("*")
            .eq("resolved", False)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return _first(result.data)

    def count_unresolved_reviews(self) -> int:
        result = self._table("pending_reviews").select("id", count="exact").eq("resolved", False).execute()
        return result.count if result.count is not None else len(result.data or [])

    def claim_review(self, review_id: str, resolution: str) -> bool:
        """
        Mark a review resolved only if it is still unresolved.

        RETURNS:
            bool: True when this call performed the transition
        """
        result = (
            self._table("pending_reviews")
            .update({"resolved": True, "resolution": resolution, "resolved_at": utc_now()})
            .eq("id", review_id)
            .eq("resolved", False)
            .execute()
        )
        return bool(result.data)

    def release_review(self, review_id: str) -> None:
        """Undo a claim whose outcome could not be applied."""
        self._table("pending_reviews").update(
            {"resolved": False, "resolution": None, "resolved_at": None}
        ).eq("id", review_id).execute()

    def mark_review_sms_sent(self, review_id: str) -> None:
        self._table("pending_reviews").update(
            {"sms_sent": True, "sms_sent_at": utc_now()}
        ).eq("id", review_id).execute()

    # ╔══════════ Event approvals ══════════════════════════════════════

    def find_open_event_approval(self, engagement_id: str, name: str) -> Optional[Dict[str, Any]]:
        result = (
            self._table("event_approvals")
            .select("*")
            .eq("engagement_id", engagement_id)
            .eq("resolved", False)
            .execute()
        )
        wanted = name.strip().lower()
        for row in result.data or []:
            if str((row.get("entity_data") or {}).get("name", "")).strip().lower() == wanted:
                return row
        return None

    def create_event_approval(self, record: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(record)
        record.setdefault("resolved", False)
        record.setdefault("created_at", utc_now())
        return self._insert("event_approvals", record)

    def get_event_approval(self, approval_id: str) -> Optional[Dict[str, Any]]:
        return self._get("event_approvals", approval_id)

    def claim_event_approval(self, approval_id: str, resolution: str) -> bool:
        result = (
            self._table("event_approvals")
            .update({"resolved": True, "resolution": resolution, "resolved_at": utc_now()})
            .eq("id", approval_id)
            .eq("resolved", False)
            .execute()
        )
        return bool(result.data)

    def release_event_approval(self, approval_id: str) -> None:
        self._table("event_approvals").update(
            {"resolved": False, "resolution": None, "resolved_at": None}
        ).eq("id", approval_id).execute()

    # ╔══════════ Materialization runs ═════════════════════════════════

    def record_materialization_run(self, record: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(record)
        record.setdefault("created_at", utc_now())
        return self._insert("materialization_runs", record)
