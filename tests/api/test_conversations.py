"""Tests for the conversation API."""

import pytest
from fastapi.testclient import TestClient

BASE = "/api/v1/conversations"


def _as(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


@pytest.fixture
def trade_conv(client: TestClient, api_users) -> str:
    """Conversation id of a trade accepted by u2."""
    trade = client.post("/api/v1/trades", json={"items": ["Raymond"]}, headers=_as("u1")).json()[0]
    client.post(f"/api/v1/trades/{trade['id']}/accept", headers=_as("u2"))
    return f"trade:{trade['id']}"


class TestMessaging:
    def test_send_and_read_history(self, client, trade_conv):
        sent = client.post(
            f"{BASE}/{trade_conv}/messages", json={"text": "Hi!"}, headers=_as("u1")
        )
        assert sent.status_code == 201
        assert sent.json()["receiver_id"] == "u2"

        history = client.get(f"{BASE}/{trade_conv}/messages", headers=_as("u2")).json()
        assert [m["text"] for m in history["messages"]] == ["Hi!"]
        assert history["unread"] == 1

        assert client.get(f"{BASE}/unread", headers=_as("u2")).json() == {
            "counts": {trade_conv: 1}
        }

        marked = client.post(f"{BASE}/{trade_conv}/read", json={}, headers=_as("u2"))
        assert marked.json() == {"marked": 1}
        assert client.get(f"{BASE}/unread", headers=_as("u2")).json() == {"counts": {}}

    def test_bystander_cannot_read(self, client, trade_conv):
        response = client.get(f"{BASE}/{trade_conv}/messages", headers=_as("u3"))
        assert response.status_code == 403

    def test_empty_message_is_400(self, client, trade_conv):
        response = client.post(
            f"{BASE}/{trade_conv}/messages", json={"text": " "}, headers=_as("u1")
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "E-2002"

    def test_direct_conversation(self, client, api_users):
        conv = "direct:u1:u3"
        client.post(f"{BASE}/{conv}/messages", json={"text": "Hey"}, headers=_as("u3"))
        history = client.get(f"{BASE}/{conv}/messages", headers=_as("u1")).json()
        assert history["messages"][0]["sender_id"] == "u3"

    def test_typing_updates_presence(self, client, trade_conv):
        assert client.post(f"{BASE}/{trade_conv}/typing", headers=_as("u1")).status_code == 204
        presence = client.get("/api/v1/profiles/u1/presence", headers=_as("u2")).json()
        assert presence["online"] is True
        assert presence["typing"] is True


class TestReports:
    def test_report_messages(self, client, trade_conv):
        ids = [
            client.post(
                f"{BASE}/{trade_conv}/messages", json={"text": f"m{i}"}, headers=_as("u2")
            ).json()["id"]
            for i in range(3)
        ]
        response = client.post(
            f"{BASE}/{trade_conv}/reports/messages",
            json={"message_id": ids[-1], "reason": "Scam link"},
            headers=_as("u1"),
        )
        assert response.status_code == 200
        assert set(response.json()["flagged_message_ids"]) == set(ids)

    def test_report_conversation(self, client, trade_conv):
        response = client.post(
            f"{BASE}/{trade_conv}/reports", json={"reason": "Abusive"}, headers=_as("u1")
        )
        assert response.status_code == 201
        assert response.json()["reported_id"] == "u2"
        assert response.json()["status"] == "open"

    def test_report_without_reason_is_400(self, client, trade_conv):
        response = client.post(f"{BASE}/{trade_conv}/reports", json={}, headers=_as("u1"))
        assert response.status_code == 400
