"""
Tests for the incoming message reconciler.

Tests cover:
- Creating records for new messages
- Validation failures (dropped, nothing stored)
- Per-type normalization and sanitization
- Completing placeholders without downgrading status
- Redelivery idempotence
- MessageReceived notification and optional mark-as-read
"""

import json

import pytest

from app.events import MessageReceived, Notifier
from app.message_reconciler import MessageReconciler, business_phone, normalize_message
from app.outcomes import CREATED, INVALID, UNCHANGED, UPDATED
from app.schemas import IncomingMessageEvent
from app.status_reconciler import StatusReconciler
from tests.payloads import BUSINESS_PHONE, CUSTOMER_PHONE, context, status_event, text_message


class TestCreate:
    def test_new_text_message(self, store):
        result = MessageReconciler(store).reconcile(text_message(body="Hi there"), context())

        assert result.outcome == CREATED
        record = result.record
        assert record.wa_message_id == "wamid.1"
        assert record.direction == "incoming"
        assert record.from_phone == CUSTOMER_PHONE
        assert record.to_phone == BUSINESS_PHONE
        assert record.counterparty_phone == CUSTOMER_PHONE
        assert record.message_type == "text"
        assert record.body == "Hi there"
        assert record.status == "delivered"
        assert record.status_updated_at == "1970-01-01T00:00:50Z"
        assert record.payload["profile_name"] == "Kerry Fisher"

    def test_falls_back_to_configured_business_phone(self, store):
        value = context()
        value["metadata"] = {}
        reconciler = MessageReconciler(store, default_business_phone="106540352242922")

        record = reconciler.reconcile(text_message(), value).record

        assert record.to_phone == "106540352242922"

    def test_display_number_is_reduced_to_digits(self):
        value = context(display_phone="+1 555-078-3881")
        assert business_phone(value) == "15550783881"


class TestValidation:
    @pytest.mark.parametrize("missing", ["id", "from", "timestamp", "type"])
    def test_missing_required_field(self, store, fetch, missing):
        message = text_message()
        del message[missing]

        result = MessageReconciler(store).reconcile(message, context())

        assert result.outcome == INVALID
        assert fetch("wamid.1") is None

    @pytest.mark.parametrize("field,value", [
        ("from", "+16315551181"),
        ("from", "1234567890123456"),
        ("from", "phone"),
        ("type", "sticker"),
        ("timestamp", "-5"),
        ("timestamp", "yesterday"),
        ("timestamp", "99999999999999"),
        ("timestamp", "1e20"),
        ("id", ""),
    ])
    def test_invalid_field(self, store, fetch, field, value):
        message = text_message()
        message[field] = value

        result = MessageReconciler(store).reconcile(message, context())

        assert result.outcome == INVALID
        assert store.find_by_provider_id("wamid.1") is None

    def test_non_dict_event(self, store):
        assert MessageReconciler(store).reconcile("garbage", context()).outcome == INVALID

    def test_invalid_event_emits_nothing(self, store):
        notifier = Notifier()
        received = []
        notifier.subscribe(MessageReceived, received.append)

        MessageReconciler(store, notifier=notifier).reconcile({"id": "wamid.1"}, context())

        assert received == []


class TestNormalization:
    def _normalize(self, message, value=None):
        event = IncomingMessageEvent.model_validate(message)
        return normalize_message(event, value or context())

    def test_text_is_sanitized_and_capped(self, store):
        message = text_message(body="  hello\x00 world  ")
        assert self._normalize(message)["text"] == "hello world"

        long_message = text_message(body="y" * 5000)
        record = MessageReconciler(store).reconcile(long_message, context()).record
        assert len(record.body) == 4096

    def test_image(self, store):
        message = {
            "from": CUSTOMER_PHONE, "id": "wamid.img", "timestamp": "60", "type": "image",
            "image": {"id": "media-1", "mime_type": "image/jpeg", "sha256": "abc", "caption": " look\x00 "},
        }
        record = MessageReconciler(store).reconcile(message, context()).record

        assert record.message_type == "image"
        assert json.loads(record.body) == {
            "id": "media-1", "mime_type": "image/jpeg", "sha256": "abc", "caption": "look",
        }

    def test_document_keeps_filename(self):
        message = {
            "from": CUSTOMER_PHONE, "id": "wamid.doc", "timestamp": "60", "type": "document",
            "document": {"id": "media-2", "filename": " invoice.pdf ", "mime_type": "application/pdf"},
        }
        data = self._normalize(message)["document"]

        assert data["filename"] == "invoice.pdf"
        assert data["caption"] is None

    def test_location(self):
        message = {
            "from": CUSTOMER_PHONE, "id": "wamid.loc", "timestamp": "60", "type": "location",
            "location": {"latitude": 13.69, "longitude": -89.19, "name": "Office", "address": "Main St"},
        }
        assert self._normalize(message)["location"] == {
            "latitude": 13.69, "longitude": -89.19, "name": "Office", "address": "Main St",
        }

    def test_interactive_button_reply(self):
        message = {
            "from": CUSTOMER_PHONE, "id": "wamid.int", "timestamp": "60", "type": "interactive",
            "interactive": {"type": "button_reply", "button_reply": {"id": "yes", "title": " Yes "}},
        }
        assert self._normalize(message)["interactive"] == {
            "type": "button_reply", "button_reply": {"id": "yes", "title": "Yes"},
        }

    def test_interactive_list_reply(self):
        message = {
            "from": CUSTOMER_PHONE, "id": "wamid.list", "timestamp": "60", "type": "interactive",
            "interactive": {
                "type": "list_reply",
                "list_reply": {"id": "row-1", "title": "Small", "description": "8 inch"},
            },
        }
        data = self._normalize(message)["interactive"]
        assert data["list_reply"] == {"id": "row-1", "title": "Small", "description": "8 inch"}

    def test_button_and_reaction(self):
        button = {
            "from": CUSTOMER_PHONE, "id": "wamid.btn", "timestamp": "60", "type": "button",
            "button": {"text": "Confirm", "payload": "CONFIRM_ORDER"},
        }
        reaction = {
            "from": CUSTOMER_PHONE, "id": "wamid.react", "timestamp": "60", "type": "reaction",
            "reaction": {"message_id": "wamid.out", "emoji": "\U0001F44D"},
        }

        assert self._normalize(button)["button"] == {"text": "Confirm", "payload": "CONFIRM_ORDER"}
        assert self._normalize(reaction)["reaction"] == {"message_id": "wamid.out", "emoji": "\U0001F44D"}

    def test_missing_profile_name(self):
        assert self._normalize(text_message(), context(profile_name=None))["profile_name"] is None


class TestMerge:
    def test_completes_read_placeholder_without_downgrade(self, store, fetch):
        StatusReconciler(store).reconcile(status_event(status="read", timestamp="110"), context())

        result = MessageReconciler(store).reconcile(text_message(), context())

        assert result.outcome == UPDATED
        record = fetch("wamid.1")
        assert record.message_type == "text"
        assert record.body == "Hello"
        assert record.status == "read"
        assert record.status_updated_at == "1970-01-01T00:01:50Z"
        assert record.direction == "incoming"
        assert record.from_phone == CUSTOMER_PHONE

    def test_raises_sent_placeholder_to_delivered(self, store, fetch):
        StatusReconciler(store).reconcile(status_event(status="sent", timestamp="40"), context())

        MessageReconciler(store).reconcile(text_message(timestamp="50"), context())

        record = fetch("wamid.1")
        assert record.status == "delivered"
        assert record.status_updated_at == "1970-01-01T00:00:50Z"

    def test_redelivery_is_unchanged(self, store, fetch):
        reconciler = MessageReconciler(store)
        reconciler.reconcile(text_message(), context())
        before = fetch("wamid.1")

        result = reconciler.reconcile(text_message(), context())

        assert result.outcome == UNCHANGED
        after = fetch("wamid.1")
        for column in ("wa_message_id", "from_phone", "to_phone", "direction",
                       "message_type", "body", "status", "status_updated_at", "created_at"):
            assert getattr(after, column) == getattr(before, column)

    def test_redelivery_keeps_existing_body(self, store, fetch):
        reconciler = MessageReconciler(store)
        reconciler.reconcile(text_message(body="original"), context())

        reconciler.reconcile(text_message(body="edited"), context())

        assert fetch("wamid.1").body == "original"


class TestSideEffects:
    def test_emits_message_received(self, store):
        notifier = Notifier()
        received = []
        notifier.subscribe(MessageReceived, received.append)
        reconciler = MessageReconciler(store, notifier=notifier)

        reconciler.reconcile(text_message(), context())
        reconciler.reconcile(text_message(), context())

        assert [event.created for event in received] == [True, False]
        assert received[0].record.wa_message_id == "wamid.1"

    def test_marks_as_read_after_reconciliation(self, store):
        marked = []
        MessageReconciler(store, mark_as_read=marked.append).reconcile(text_message(), context())
        assert marked == ["wamid.1"]

    def test_mark_as_read_failure_keeps_record(self, store, fetch):
        def failing_mark(wa_message_id):
            raise RuntimeError("provider down")

        result = MessageReconciler(store, mark_as_read=failing_mark).reconcile(text_message(), context())

        assert result.outcome == CREATED
        assert fetch("wamid.1").status == "delivered"

    def test_listener_failure_does_not_break_reconciliation(self, store, fetch):
        notifier = Notifier()

        def broken_listener(event):
            raise ValueError("listener bug")

        notifier.subscribe(MessageReceived, broken_listener)

        result = MessageReconciler(store, notifier=notifier).reconcile(text_message(), context())

        assert result.outcome == CREATED
        assert fetch("wamid.1") is not None
