"""HTTP surface: Mailgun and Twilio webhooks, review actions and read endpoints."""

import time
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient

from relay.api.app import create_app
from relay.api.deps import build_services, get_services
from relay.models import EntityKind, EntityLink, EntityRef
from relay.services.email import compute_signature

THREAD = (
    "From: Jane Doe <jane@acme.com>\n"
    "Sent: Monday, February 3, 2025 10:30 AM\n"
    "To: Sam Lee <sam@example.com>\n"
    "Subject: RE: Pilot kickoff\n"
    "\n"
    "Sounds good, let's start in March.\n"
)


@pytest.fixture
def acme(store):
    return store.create_engagement({"id": "eng-1", "name": "Acme Pilot"})


@pytest.fixture
def llm(fake_llm, payload):
    return fake_llm(payload(engagement_id="eng-1"))


@pytest.fixture
def client(store, sms, llm):
    services = build_services(store=store, llm=llm, sms=sms)
    app = create_app()
    app.dependency_overrides[get_services] = lambda: services
    return TestClient(app)


@pytest.fixture
def signed_fields(relay_settings):
    def make(timestamp=None, **fields):
        ts = str(int(time.time() if timestamp is None else timestamp))
        token = "b3c1f2a9d8e7"
        base = {
            "timestamp": ts,
            "token": token,
            "signature": compute_signature(relay_settings.MAILGUN_WEBHOOK_SIGNING_KEY, ts, token),
            "from": "Sam Lee <sam@example.com>",
            "sender": "sam@example.com",
            "subject": "Fwd: RE: Pilot kickoff",
            "body-plain": THREAD,
        }
        base.update(fields)
        return base

    return make


@pytest.fixture
def review(store, stored_message):
    message = stored_message(pending_review=True)
    return store.create_review({
        "message_id": message["id"],
        "message_ids": [message["id"]],
        "classification_result": {"engagement_match": {"id": "eng-1", "name": "Acme Pilot", "confidence": 0.6}},
        "options_sent": [
            {"number": 1, "label": "Acme Pilot", "engagement_id": "eng-1", "is_new": False},
            {"number": 2, "label": "New engagement", "engagement_id": None, "is_new": True},
        ],
    })


# ─── inbound email ──────────────────────────────────────────────────────

def test_inbound_processes_signed_post(client, store, acme, signed_fields):
    response = client.post("/api/inbound", data=signed_fields())

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "processed"
    assert body["action"] == "auto_assigned"
    assert [row["engagement_id"] for row in store.rows("messages")] == ["eng-1"]


def test_inbound_accepts_multipart(client, store, acme, signed_fields):
    response = client.post(
        "/api/inbound",
        data=signed_fields(),
        files={"attachment-1": ("notes.txt", b"meeting notes", "text/plain")},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "processed"


def test_inbound_falls_back_to_urlencoded_body(client, store, acme, signed_fields):
    response = client.post(
        "/api/inbound",
        content=urlencode(signed_fields()).encode(),
        headers={"Content-Type": "text/plain"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "processed"


@pytest.mark.parametrize("overrides", [
    {"signature": "0" * 64},
    {"timestamp": 1000000000},
    {"token": ""},
])
def test_inbound_rejects_bad_signatures(client, store, signed_fields, overrides):
    fields = signed_fields(**{k: v for k, v in overrides.items() if k == "timestamp"})
    fields.update({k: v for k, v in overrides.items() if k != "timestamp"})

    response = client.post("/api/inbound", data=fields)

    assert response.status_code == 403
    assert store.rows("messages") == []


@pytest.mark.parametrize("timestamp", ["inf", "1e400"])
def test_inbound_rejects_overflowing_timestamp(client, store, signed_fields, timestamp):
    response = client.post("/api/inbound", data={**signed_fields(), "timestamp": timestamp})

    assert response.status_code == 403
    assert store.rows("messages") == []


def test_inbound_without_signing_key_is_server_error(client, store, signed_fields, monkeypatch, relay_settings):
    monkeypatch.setattr(relay_settings, "MAILGUN_WEBHOOK_SIGNING_KEY", "")

    response = client.post("/api/inbound", data=signed_fields())

    assert response.status_code == 500
    assert store.rows("messages") == []


def test_inbound_with_empty_request_is_bad_request(client):
    assert client.post("/api/inbound").status_code == 400


def test_inbound_classification_failure_is_acknowledged(client, store, llm, signed_fields):
    llm.invoke.side_effect = RuntimeError("upstream 503")

    response = client.post("/api/inbound", data=signed_fields())

    assert response.status_code == 200
    assert response.json()["status"] == "stored_unclassified"
    assert len(store.rows("messages")) == 1


def test_inbound_internal_failure_is_acknowledged(client, store, signed_fields, monkeypatch):
    def down(record):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(store, "insert_message", down)

    response = client.post("/api/inbound", data=signed_fields())

    assert response.status_code == 200
    assert response.json()["status"] == "error"


def test_inbound_empty_body_is_skipped(client, store, signed_fields):
    response = client.post("/api/inbound", data=signed_fields(**{"body-plain": "  "}))

    assert response.json() == {"status": "skipped", "reason": "empty body"}
    assert store.rows("messages") == []


# ─── SMS webhook ────────────────────────────────────────────────────────

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def test_sms_reply_resolves_latest_review(client, store, sms, acme, review):
    response = client.post("/api/sms/webhook", data={"From": "+15550100000", "Body": "1"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    assert response.text == EMPTY_TWIML
    assert store.get_review(review["id"])["resolution"] == "assigned:eng-1:Acme Pilot"
    assert sms.sent == ["Assigned to: Acme Pilot"]


def test_sms_from_stranger_is_ignored(client, store, sms, review):
    response = client.post("/api/sms/webhook", data={"From": "+15559998888", "Body": "skip"})

    assert response.text == EMPTY_TWIML
    assert store.get_review(review["id"])["resolved"] is False
    assert sms.sent == []


def test_sms_webhook_always_acknowledges(client):
    response = client.post("/api/sms/webhook")

    assert response.status_code == 200
    assert response.text == EMPTY_TWIML


# ─── review actions ─────────────────────────────────────────────────────

def test_resolve_select(client, store, acme, review):
    response = client.post("/api/reviews/resolve",
                           json={"review_id": review["id"], "action": "select", "option_number": 1})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["resolution"] == "assigned:eng-1:Acme Pilot"
    assert store.get_message(review["message_id"])["engagement_id"] == "eng-1"


def test_resolve_new_accepts_initiative_name(client, store, review):
    response = client.post("/api/reviews/resolve",
                           json={"review_id": review["id"], "action": "new", "initiative_name": "Acme Phase 2"})

    assert response.status_code == 200
    assert response.json()["engagement_name"] == "Acme Phase 2"


def test_resolve_twice_conflicts(client, review):
    first = client.post("/api/reviews/resolve", json={"review_id": review["id"], "action": "skip"})
    second = client.post("/api/reviews/resolve", json={"review_id": review["id"], "action": "skip"})

    assert first.status_code == 200
    assert second.status_code == 409
    assert "already resolved" in second.json()["detail"]


@pytest.mark.parametrize("body, status", [
    ({"review_id": "missing", "action": "skip"}, 404),
    ({"action": "skip"}, 400),
    ({"review_id": "REVIEW", "action": "select", "option_number": 9}, 400),
    ({"review_id": "REVIEW", "action": "new"}, 400),
])
def test_resolve_errors(client, store, review, body, status):
    if body.get("review_id") == "REVIEW":
        body = dict(body, review_id=review["id"])

    response = client.post("/api/reviews/resolve", json=body)

    assert response.status_code == status
    assert store.get_review(review["id"])["resolved"] is False


def test_manual_resend(client, store, sms, review):
    response = client.post("/api/sms/send", json={"review_id": review["id"]})

    assert response.status_code == 200
    assert len(sms.sent) == 1
    assert store.get_review(review["id"])["sms_sent"] is True


def test_manual_resend_failure_is_bad_gateway(client, sms, review):
    sms.fail = True

    assert client.post("/api/sms/send", json={"review_id": review["id"]}).status_code == 502


def test_event_approval_endpoint(client, store, acme):
    approval = store.create_event_approval({
        "engagement_id": "eng-1", "entity_data": {"name": "DevSummit 2025", "type": "conference"},
    })

    response = client.post("/api/event-approvals/resolve", json={"approval_id": approval["id"], "action": "approve"})

    assert response.status_code == 200
    assert response.json()["resolution"].startswith("approved:")
    again = client.post("/api/event-approvals/resolve", json={"approval_id": approval["id"], "action": "deny"})
    assert again.status_code == 409


# ─── batch & reads ──────────────────────────────────────────────────────

def test_classify_endpoints(client, store, acme, review, stored_message):
    stored_message(subject="Budget", body_text="Budget approved for Q2.")

    status = client.get("/api/classify").json()
    assert status["unclassified"] == 1
    assert status["pending_reviews"] == 1
    assert status["messages"][0]["subject"] == "Budget"

    counts = client.post("/api/classify").json()
    assert counts["processed"] == 1
    assert counts["auto_assigned"] == 1
    assert client.get("/api/classify").json()["unclassified"] == 0


def test_entity_links_flag_dangling_targets(client, store, acme):
    store.create_event({"id": "evt-1", "name": "DevSummit 2025"})
    engagement = EntityRef(EntityKind.ENGAGEMENT, "eng-1")
    store.create_entity_link(EntityLink(engagement, EntityRef(EntityKind.EVENT, "evt-1"), "presented_at"))
    store.create_entity_link(EntityLink(engagement, EntityRef(EntityKind.PROGRAM, "prg-gone"), "part_of"))

    links = client.get("/api/entity-links/engagement/eng-1").json()["links"]

    by_target = {link["target_id"]: link for link in links}
    assert by_target["evt-1"]["dangling"] is False
    assert by_target["evt-1"]["target"]["name"] == "DevSummit 2025"
    assert by_target["prg-gone"]["dangling"] is True
    assert by_target["prg-gone"]["target"] is None


def test_entity_links_unknown_kind(client):
    assert client.get("/api/entity-links/workshop/w-1").status_code == 400


def test_health(client):
    body = client.get("/api/health").json()

    assert body["status"] == "ok"
    assert body["version"]
