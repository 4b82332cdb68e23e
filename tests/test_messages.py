"""
Tests for the GET /messages endpoint.

Tests cover:
- Basic retrieval with default pagination
- Pagination with limit and offset
- Filtering by direction, status and phone
- Placeholders in listings
- Query parameter validation
"""

import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.main import app
from tests.payloads import BUSINESS_PHONE, CUSTOMER_PHONE, signed_post, status_event, text_message, webhook_payload


@pytest.fixture
def client(db_tables):
    with TestClient(app) as test_client:
        yield test_client


def deliver(client, messages=None, statuses=None):
    response = signed_post(
        client,
        webhook_payload(messages=messages, statuses=statuses),
        settings.WEBHOOK_SECRET,
    )
    assert response.status_code == 200


@pytest.fixture
def populated_client(client):
    """
    Three incoming messages from two customers and two outgoing placeholders:

    wamid.in1  incoming  from CUSTOMER_PHONE  delivered
    wamid.in2  incoming  from 14155550100     delivered
    wamid.in3  incoming  from CUSTOMER_PHONE  read (status seen first)
    wamid.out1 outgoing  to   CUSTOMER_PHONE  sent
    wamid.out2 outgoing  to   14155550100     failed
    """
    deliver(client, messages=[text_message("wamid.in1", body="first")])
    deliver(client, messages=[text_message("wamid.in2", body="second", from_phone="14155550100")])
    deliver(client, statuses=[status_event("wamid.in3", "read")])
    deliver(client, messages=[text_message("wamid.in3", body="third")])
    deliver(client, statuses=[status_event("wamid.out1", "sent")])
    deliver(client, statuses=[status_event("wamid.out2", "failed", recipient_id="14155550100")])
    return client


class TestBasicRetrieval:
    def test_empty_database(self, client):
        response = client.get("/messages")

        assert response.status_code == 200
        assert response.json() == {"data": [], "total": 0, "limit": 50, "offset": 0}

    def test_ordered_by_creation(self, populated_client):
        data = populated_client.get("/messages").json()

        assert data["total"] == 5
        assert [m["wa_message_id"] for m in data["data"]] == [
            "wamid.in1", "wamid.in2", "wamid.in3", "wamid.out1", "wamid.out2",
        ]

    def test_record_shape(self, populated_client):
        message = populated_client.get("/messages").json()["data"][0]

        assert message["wa_message_id"] == "wamid.in1"
        assert message["direction"] == "incoming"
        assert message["from"] == CUSTOMER_PHONE
        assert message["to"] == BUSINESS_PHONE
        assert message["message_type"] == "text"
        assert message["body"] == "first"
        assert message["status"] == "delivered"
        assert message["status_updated_at"] == "1970-01-01T00:00:50Z"
        assert message["created_at"].endswith("Z")
        assert message["updated_at"].endswith("Z")

    def test_placeholder_shape(self, populated_client):
        placeholder = populated_client.get("/messages", params={"direction": "outgoing"}).json()["data"][0]

        assert placeholder["wa_message_id"] == "wamid.out1"
        assert placeholder["from"] is None
        assert placeholder["to"] == CUSTOMER_PHONE
        assert placeholder["message_type"] is None
        assert placeholder["body"] is None

    def test_completed_placeholder_keeps_read(self, populated_client):
        data = populated_client.get("/messages", params={"status": "read"}).json()

        assert data["total"] == 1
        assert data["data"][0]["wa_message_id"] == "wamid.in3"
        assert data["data"][0]["body"] == "third"


class TestPagination:
    def test_limit(self, populated_client):
        data = populated_client.get("/messages", params={"limit": 2}).json()

        assert data["total"] == 5
        assert data["limit"] == 2
        assert len(data["data"]) == 2

    def test_offset(self, populated_client):
        data = populated_client.get("/messages", params={"limit": 2, "offset": 3}).json()

        assert [m["wa_message_id"] for m in data["data"]] == ["wamid.out1", "wamid.out2"]
        assert data["offset"] == 3

    def test_offset_past_end(self, populated_client):
        data = populated_client.get("/messages", params={"offset": 100}).json()

        assert data["data"] == []
        assert data["total"] == 5

    @pytest.mark.parametrize("params", [
        {"limit": 0},
        {"limit": 101},
        {"offset": -1},
        {"direction": "sideways"},
    ])
    def test_invalid_query_parameters(self, client, params):
        assert client.get("/messages", params=params).status_code == 422


class TestFilters:
    def test_by_direction(self, populated_client):
        incoming = populated_client.get("/messages", params={"direction": "incoming"}).json()
        outgoing = populated_client.get("/messages", params={"direction": "outgoing"}).json()

        assert incoming["total"] == 3
        assert outgoing["total"] == 2
        assert all(m["direction"] == "outgoing" for m in outgoing["data"])

    def test_by_status(self, populated_client):
        data = populated_client.get("/messages", params={"status": "delivered"}).json()

        assert [m["wa_message_id"] for m in data["data"]] == ["wamid.in1", "wamid.in2"]

    def test_by_phone_matches_sender_or_recipient(self, populated_client):
        data = populated_client.get("/messages", params={"phone": "14155550100"}).json()

        assert [m["wa_message_id"] for m in data["data"]] == ["wamid.in2", "wamid.out2"]

    def test_combined_filters(self, populated_client):
        data = populated_client.get(
            "/messages",
            params={"phone": CUSTOMER_PHONE, "direction": "incoming", "status": "delivered"},
        ).json()

        assert data["total"] == 1
        assert data["data"][0]["wa_message_id"] == "wamid.in1"

    def test_no_match(self, populated_client):
        data = populated_client.get("/messages", params={"status": "deleted"}).json()

        assert data == {"data": [], "total": 0, "limit": 50, "offset": 0}
