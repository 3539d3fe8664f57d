"""
Shared fixtures: an in-memory stand-in for RelayStore, a recording SMS
client, a canned LLM and a factory for classification payloads.
"""

import json
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from config import settings
from relay.exceptions import SMSError
from relay.models import ClassificationResult, EntityLink, ResolvedEntityLink
from relay.services.materializer import EntityMaterializer
from relay.services.reviews import ReviewService
from relay.services.routing import ConfidenceRouter


OPERATOR_PHONE = "+1 (555) 010-0000"
RELAY_ADDRESS = "relay@example.com"
SIGNING_KEY = "test-signing-key"


class InMemoryStore:
    """Dict-backed implementation of the RelayStore query methods."""

    def __init__(self):
        self.tables = defaultdict(dict)
        self._tick = 0

    # ─── helpers ────────────────────────────────────────────────────────

    def now(self) -> str:
        self._tick += 1
        return (datetime(2025, 2, 3, 9, 0, tzinfo=timezone.utc) + timedelta(seconds=self._tick)).isoformat()

    def rows(self, table):
        return [dict(row) for row in self.tables[table].values()]

    def _insert(self, table, record):
        row = dict(record)
        row.setdefault("id", str(uuid.uuid4()))
        self.tables[table][row["id"]] = row
        return dict(row)

    def _get(self, table, row_id):
        row = self.tables[table].get(row_id)
        return dict(row) if row else None

    def _update(self, table, row_id, fields):
        if row_id in self.tables[table]:
            self.tables[table][row_id].update(fields)

    # ─── messages ───────────────────────────────────────────────────────

    def find_duplicate_message(self, sender_email, subject, body_prefix):
        for row in self.tables["messages"].values():
            if (row.get("sender_email") == sender_email
                    and (row.get("subject") or "") == (subject or "")
                    and (row.get("body_text") or "").startswith(body_prefix)):
                return {"id": row["id"]}
        return None

    def insert_message(self, record):
        row = {"engagement_id": None, "classification_result": None, "pending_review": False}
        row.update(record)
        row.setdefault("forwarded_at", self.now())
        return self._insert("messages", row)

    def get_message(self, message_id):
        return self._get("messages", message_id)

    def get_messages(self, message_ids):
        return [self._get("messages", i) for i in message_ids if i in self.tables["messages"]]

    def update_messages(self, message_ids, fields):
        for message_id in message_ids:
            self._update("messages", message_id, fields)

    def assign_messages(self, message_ids, engagement_id):
        self.update_messages(message_ids, {"engagement_id": engagement_id, "pending_review": False})

    def list_unclassified_messages(self, limit=200):
        rows = [
            r for r in self.rows("messages")
            if r.get("engagement_id") is None and r.get("classification_result") is None
            and not r.get("pending_review")
        ]
        return sorted(rows, key=lambda r: r["forwarded_at"])[:limit]

    # ─── engagements ────────────────────────────────────────────────────

    def list_active_engagements(self, limit):
        rows = [r for r in self.rows("engagements") if r.get("status", "active") == "active"]
        return sorted(rows, key=lambda r: r.get("updated_at") or "", reverse=True)[:limit]

    def get_engagement(self, engagement_id):
        return self._get("engagements", engagement_id)

    def find_engagement_by_name(self, name):
        for row in self.rows("engagements"):
            if row["name"].lower() == name.strip().lower() and row.get("status") != "closed":
                return row
        return None

    def create_engagement(self, record):
        row = {"status": "active", "open_items": [], "created_at": self.now()}
        row.update(record)
        row.setdefault("updated_at", row["created_at"])
        return self._insert("engagements", row)

    def update_engagement(self, engagement_id, fields):
        fields = dict(fields, updated_at=self.now())
        if fields.get("status") == "closed":
            fields.setdefault("closed_at", fields["updated_at"])
        self._update("engagements", engagement_id, fields)

    # ─── events & programs ──────────────────────────────────────────────

    def list_events(self, limit):
        return self.rows("events")[:limit]

    def find_event_by_name(self, name):
        for row in self.rows("events"):
            if row["name"].lower() == name.strip().lower():
                return row
        return None

    def create_event(self, record):
        return self._insert("events", record)

    def list_programs(self, limit):
        return [r for r in self.rows("programs") if r.get("status", "active") == "active"][:limit]

    def find_program_by_name(self, name):
        for row in self.rows("programs"):
            if row["name"].lower() == name.strip().lower():
                return row
        return None

    def create_program(self, record):
        return self._insert("programs", dict({"status": "active"}, **record))

    def get_entity(self, ref):
        return self._get(ref.kind.table, ref.id)

    # ─── entity links ───────────────────────────────────────────────────

    def find_entity_link(self, link):
        wanted = link.to_row()
        for row in self.rows("entity_links"):
            if all(row[k] == wanted[k] for k in ("source_type", "source_id", "target_type", "target_id", "relationship")):
                return {"id": row["id"]}
        return None

    def create_entity_link(self, link):
        return self._insert("entity_links", link.to_row())

    def list_entity_links(self, ref):
        links = []
        for row in self.rows("entity_links"):
            if ((row["source_type"], row["source_id"]) == (ref.kind.value, ref.id)
                    or (row["target_type"], row["target_id"]) == (ref.kind.value, ref.id)):
                link = EntityLink.from_row(row)
                if link is not None:
                    links.append(link)
        return links

    def resolve_entity_links(self, ref):
        return [
            ResolvedEntityLink(link, self.get_entity(link.source), self.get_entity(link.target))
            for link in self.list_entity_links(ref)
        ]

    # ─── participants ───────────────────────────────────────────────────

    def find_participant_by_email(self, email):
        for row in self.rows("participants"):
            if row["email"].lower() == email.strip().lower():
                return row
        return None

    def create_participant(self, record):
        record = dict(record, email=record["email"].strip().lower())
        return self._insert("participants", record)

    def update_participant(self, participant_id, fields):
        self._update("participants", participant_id, fields)

    def find_participant_link(self, participant_id, entity_type, entity_id):
        for row in self.rows("participant_links"):
            if (row["participant_id"], row["entity_type"], row["entity_id"]) == (participant_id, entity_type, entity_id):
                return {"id": row["id"]}
        return None

    def create_participant_link(self, participant_id, entity_type, entity_id, role=None):
        return self._insert("participant_links", {
            "participant_id": participant_id, "entity_type": entity_type, "entity_id": entity_id, "role": role,
        })

    # ─── reviews ────────────────────────────────────────────────────────

    def create_review(self, record):
        row = {"resolved": False, "resolution": None, "sms_sent": False, "sms_sent_at": None,
               "created_at": self.now(), "resolved_at": None}
        row.update(record)
        return self._insert("pending_reviews", row)

    def get_review(self, review_id):
        return self._get("pending_reviews", review_id)

    def latest_unresolved_review(self):
        open_reviews = [r for r in self.rows("pending_reviews") if not r["resolved"]]
        if not open_reviews:
            return None
        return max(open_reviews, key=lambda r: r["created_at"])

    def count_unresolved_reviews(self):
        return sum(1 for r in self.rows("pending_reviews") if not r["resolved"])

    def claim_review(self, review_id, resolution):
        row = self.tables["pending_reviews"].get(review_id)
        if row is None or row["resolved"]:
            return False
        row.update(resolved=True, resolution=resolution, resolved_at=self.now())
        return True

    def release_review(self, review_id):
        self._update("pending_reviews", review_id, {"resolved": False, "resolution": None, "resolved_at": None})

    def mark_review_sms_sent(self, review_id):
        self._update("pending_reviews", review_id, {"sms_sent": True, "sms_sent_at": self.now()})

    # ─── event approvals ────────────────────────────────────────────────

    def find_open_event_approval(self, engagement_id, name):
        for row in self.rows("event_approvals"):
            if (row["engagement_id"] == engagement_id and not row["resolved"]
                    and row["entity_data"]["name"].strip().lower() == name.strip().lower()):
                return row
        return None

    def create_event_approval(self, record):
        row = {"resolved": False, "resolution": None, "created_at": self.now()}
        row.update(record)
        return self._insert("event_approvals", row)

    def get_event_approval(self, approval_id):
        return self._get("event_approvals", approval_id)

    def claim_event_approval(self, approval_id, resolution):
        row = self.tables["event_approvals"].get(approval_id)
        if row is None or row["resolved"]:
            return False
        row.update(resolved=True, resolution=resolution)
        return True

    def release_event_approval(self, approval_id):
        self._update("event_approvals", approval_id, {"resolved": False, "resolution": None})

    # ─── materialization runs ───────────────────────────────────────────

    def record_materialization_run(self, record):
        return self._insert("materialization_runs", record)


class FakeSMS:
    """Records operator messages instead of calling Twilio."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def notify_operator(self, body):
        if self.fail:
            raise SMSError("Twilio returned 500: unavailable")
        self.sent.append(body)
        return "SM0001"


def llm_returning(payload):
    """Mock chat model whose invoke() returns ``payload`` (dict -> JSON text)."""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    llm = Mock()
    llm.invoke.return_value = Mock(content=text)
    return llm


# ─── fixtures ───────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def relay_settings(monkeypatch):
    monkeypatch.setattr(settings, "USER_PHONE_NUMBER", OPERATOR_PHONE)
    monkeypatch.setattr(settings, "RELAY_EMAIL_ADDRESS", RELAY_ADDRESS)
    monkeypatch.setattr(settings, "MAILGUN_WEBHOOK_SIGNING_KEY", SIGNING_KEY)
    monkeypatch.setattr(settings, "REQUIRE_WEBHOOK_SIGNATURE", True)
    monkeypatch.setattr(settings, "MERGE_STATE_ON_ASSIGN", True)
    return settings


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def sms():
    return FakeSMS()


@pytest.fixture
def materializer(store):
    return EntityMaterializer(store)


@pytest.fixture
def router(store, materializer, sms):
    return ConfidenceRouter(store, materializer, sms)


@pytest.fixture
def reviews(store, materializer, sms):
    return ReviewService(store, materializer, sms)


@pytest.fixture
def payload():
    """Factory for raw classification payloads."""

    def make(name="Acme Pilot", confidence=0.92, is_new=False, engagement_id=None, **extra):
        data = {
            "content_type": "engagement_email",
            "engagement_match": {
                "id": engagement_id,
                "name": name,
                "confidence": confidence,
                "is_new": is_new,
                "partner_name": "Acme Corp",
            },
            "current_state": "Kickoff scheduled; Acme reviewing the pilot scope.",
            "open_items": [{"description": "Send pilot scope doc", "assignee": "Sam"}],
        }
        data.update(extra)
        return data

    return make


@pytest.fixture
def make_result(payload):
    def make(**kwargs):
        return ClassificationResult.from_dict(payload(**kwargs))

    return make


@pytest.fixture
def stored_message(store):
    def make(**fields):
        record = {
            "sender_name": "Jane Doe",
            "sender_email": "jane@acme.com",
            "subject": "RE: Pilot kickoff",
            "body_text": "Happy to start the pilot in March.",
        }
        record.update(fields)
        return store.insert_message(record)

    return make


@pytest.fixture
def fake_llm():
    """``fake_llm(payload)`` builds a mock chat model returning that payload."""
    return llm_returning
