"""
Tests for the conversation and operational endpoints.

Tests cover:
- GET /messages pagination, ordering and filters
- GET /unreadCounts
- POST /markMessagesRead
- Health probes, /metrics, request ids and CORS
"""

from datetime import timedelta

import pytest

from conftest import BASE_TIME, add_church, add_member, add_visitor
from connect_sms.models import Message


def add_message(db, collection, minutes, msg_id=None, **fields):
    defaults = {
        "direction": "inbound",
        "church_id": "church-A",
        "body": f"message at {minutes}",
        "timestamp": BASE_TIME + timedelta(minutes=minutes),
        "sent_at": BASE_TIME + timedelta(minutes=minutes),
    }
    defaults.update(fields)
    if msg_id:
        defaults["id"] = msg_id
    db.add(Message(collection=collection, **defaults))
    db.commit()


@pytest.fixture
def seeded_db(db):
    """
    churches/church-A/messages: m1..m5 for member-1, m6 for member-2
    churches/church-A/visitorMessages: v1, v2 for visitor-1
    """
    for i in range(1, 6):
        add_message(db, "churches/church-A/messages", i, msg_id=f"m{i}", member_id="member-1")
    add_message(db, "churches/church-A/messages", 6, msg_id="m6", member_id="member-2")
    add_message(db, "churches/church-A/visitorMessages", 1, msg_id="v1", visitor_id="visitor-1")
    add_message(db, "churches/church-A/visitorMessages", 2, msg_id="v2", visitor_id="visitor-1")
    add_message(db, "churches/church-B/messages", 1, msg_id="b1", church_id="church-B")
    return db


class TestListMessages:

    def test_church_messages_oldest_first(self, client, seeded_db):
        response = client.get("/messages", params={"churchId": "church-A"})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 6
        assert data["limit"] == 50
        assert data["offset"] == 0
        assert [m["id"] for m in data["data"]] == ["m1", "m2", "m3", "m4", "m5", "m6"]

    def test_document_field_names(self, client, seeded_db):
        message = client.get("/messages", params={"churchId": "church-A"}).json()["data"][0]

        assert message["memberId"] == "member-1"
        assert message["churchId"] == "church-A"
        assert message["isRead"] is False
        assert "sentAt" in message
        assert "from" in message

    def test_pagination(self, client, seeded_db):
        response = client.get("/messages", params={"churchId": "church-A", "limit": 2, "offset": 2})

        data = response.json()
        assert data["total"] == 6
        assert [m["id"] for m in data["data"]] == ["m3", "m4"]

    def test_member_filter(self, client, seeded_db):
        response = client.get("/messages", params={"churchId": "church-A", "memberId": "member-2"})

        assert [m["id"] for m in response.json()["data"]] == ["m6"]

    def test_visitor_conversation(self, client, seeded_db):
        response = client.get("/messages", params={"churchId": "church-A", "visitorId": "visitor-1"})

        assert [m["id"] for m in response.json()["data"]] == ["v1", "v2"]

    def test_unknown_church_is_empty(self, client, seeded_db):
        response = client.get("/messages", params={"churchId": "church-Z"})

        assert response.status_code == 200
        assert response.json()["total"] == 0
        assert response.json()["data"] == []

    def test_both_identities_rejected(self, client):
        response = client.get(
            "/messages",
            params={"churchId": "church-A", "memberId": "member-1", "visitorId": "visitor-1"},
        )

        assert response.status_code == 400
        assert response.json()["success"] is False

    @pytest.mark.parametrize("params", [{}, {"churchId": "church-A", "limit": 0}, {"churchId": "church-A", "limit": 101}])
    def test_invalid_params(self, client, params):
        assert client.get("/messages", params=params).status_code == 400


class TestUnreadCounts:

    def test_counts_follow_inbound_messages(self, client, db):
        add_church(db, "church-A")
        add_member(db, "member-1", "church-A", "7035551234")
        add_visitor(db, "visitor-1", "church-A", "2025550100")

        client.post("/smsWebhook", data={"From": "7035551234", "Body": "hi", "MessageSid": "SM1"})
        client.post("/smsWebhook", data={"From": "2025550100", "Body": "hi", "MessageSid": "SM2"})

        response = client.get("/unreadCounts", params={"churchId": "church-A"})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "members": {"member-1": 1},
            "visitors": {"visitor-1": 1},
        }

    def test_church_without_counters(self, client):
        response = client.get("/unreadCounts", params={"churchId": "church-A"})

        assert response.json()["members"] == {}
        assert response.json()["visitors"] == {}


class TestMarkMessagesRead:

    def test_member_conversation(self, client, db):
        add_church(db, "church-A")
        add_member(db, "member-1", "church-A", "7035551234")
        for sid in ("SM1", "SM2"):
            client.post("/smsWebhook", data={"From": "7035551234", "Body": "hi", "MessageSid": sid})

        response = client.post(
            "/markMessagesRead",
            json={"churchId": "church-A", "memberId": "member-1", "readerId": "admin-1"},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "updated": 2, "unreadCount": 0}

        counts = client.get("/unreadCounts", params={"churchId": "church-A"}).json()
        assert counts["members"] == {"member-1": 0}

        listed = client.get("/messages", params={"churchId": "church-A"}).json()["data"]
        assert all(m["isRead"] for m in listed)

    def test_visitor_conversation(self, client, db):
        add_church(db, "church-A")
        add_visitor(db, "visitor-1", "church-A", "2025550100")
        client.post("/smsWebhook", data={"From": "2025550100", "Body": "hi", "MessageSid": "SM1"})

        response = client.post("/markMessagesRead", json={"churchId": "church-A", "visitorId": "visitor-1"})

        assert response.json()["updated"] == 1
        assert response.json()["unreadCount"] == 0

    def test_new_message_after_read_counts_again(self, client, db):
        add_church(db, "church-A")
        add_visitor(db, "visitor-1", "church-A", "2025550100")
        client.post("/smsWebhook", data={"From": "2025550100", "Body": "hi", "MessageSid": "SM1"})
        client.post("/markMessagesRead", json={"churchId": "church-A", "visitorId": "visitor-1"})

        client.post("/smsWebhook", data={"From": "2025550100", "Body": "again", "MessageSid": "SM2"})

        counts = client.get("/unreadCounts", params={"churchId": "church-A"}).json()
        assert counts["visitors"] == {"visitor-1": 1}

    @pytest.mark.parametrize(
        "payload",
        [
            {"churchId": "church-A"},
            {"churchId": "church-A", "memberId": "member-1", "visitorId": "visitor-1"},
            {"memberId": "member-1"},
        ],
    )
    def test_exactly_one_identity_required(self, client, payload):
        response = client.post("/markMessagesRead", json=payload)

        assert response.status_code == 400
        assert response.json()["success"] is False


class TestOperationalEndpoints:

    def test_liveness(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_readiness_without_provider(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["reason"] == "SMS provider not configured"

    def test_readiness_with_provider(self, client, sms_provider):
        client.app.state.sms_provider = sms_provider

        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_request_id_header(self, client):
        response = client.get("/health/live")

        assert len(response.headers["X-Request-ID"]) == 36

    def test_metrics_exposition(self, client):
        client.post("/smsWebhook", data={"From": "7035551234", "Body": "hi", "MessageSid": "SM1"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'sms_webhook_total{result="unattributed"}' in response.text
        assert "http_requests_total" in response.text

    def test_cors_echoes_known_origin(self, client):
        response = client.get("/health/live", headers={"Origin": "https://churchadmin.app"})

        assert response.headers["access-control-allow-origin"] == "https://churchadmin.app"

    def test_cors_fallback_for_other_origins(self, client):
        response = client.options(
            "/sendSMS",
            headers={
                "Origin": "https://example.org",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Content-Type",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "https://example.org"
