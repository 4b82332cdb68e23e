"""
Reconciles one incoming `messages[]` sub-event into a WhatsAppMessage record.

The Cloud API may redeliver a message hours later, and a status webhook for
the same id may already have created a placeholder row. The record is
therefore upserted:

- no record: create it as incoming with status `delivered`
- placeholder: fill in type, body and phones; keep any higher status (`read`)
- complete record (redelivery): only the raw payload is refreshed

Status never moves below what a previously processed status event set.
"""

import json
import logging
import re
from typing import Any, Callable, Optional

from pydantic import ValidationError

from app.events import MessageReceived, Notifier
from app.exceptions import DuplicateKeyError, TransientStoreError
from app.outcomes import CREATED, INVALID, UNCHANGED, UPDATED, ReconcileResult
from app.schemas import IncomingMessageEvent
from app.status_policy import higher_of
from app.storage import MessageStore
from app.utils import mask_phone, provider_timestamp_to_iso, sanitize_input

logger = logging.getLogger(__name__)

INCOMING_STATUS = "delivered"


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    return sanitize_input(str(value))


def _media(content: dict, *extra_text_fields: str) -> dict:
    data = {
        "id": content.get("id"),
        "mime_type": content.get("mime_type"),
        "sha256": content.get("sha256"),
    }
    for name in extra_text_fields:
        data[name] = _clean(content.get(name))
    return data


def _location(content: dict) -> dict:
    return {
        "latitude": content.get("latitude"),
        "longitude": content.get("longitude"),
        "name": _clean(content.get("name")),
        "address": _clean(content.get("address")),
    }


def _interactive(content: dict) -> dict:
    interactive_type = content.get("type")
    data = {"type": interactive_type}

    if interactive_type == "button_reply":
        reply = content.get("button_reply") or {}
        data["button_reply"] = {
            "id": reply.get("id"),
            "title": _clean(reply.get("title")),
        }
    elif interactive_type == "list_reply":
        reply = content.get("list_reply") or {}
        data["list_reply"] = {
            "id": reply.get("id"),
            "title": _clean(reply.get("title")),
            "description": _clean(reply.get("description")),
        }
    return data


def _button(content: dict) -> dict:
    return {
        "text": _clean(content.get("text")),
        "payload": _clean(content.get("payload")),
    }


def _reaction(content: dict) -> dict:
    return {
        "message_id": content.get("message_id"),
        "emoji": _clean(content.get("emoji")),
    }


_CONTENT_NORMALIZERS: dict[str, Callable[[dict], Any]] = {
    "image": lambda c: _media(c, "caption"),
    "video": lambda c: _media(c, "caption"),
    "audio": lambda c: _media(c),
    "document": lambda c: _media(c, "filename", "caption"),
    "location": _location,
    "interactive": _interactive,
    "button": _button,
    "reaction": _reaction,
}


def profile_name(value: dict) -> Optional[str]:
    """Sender profile name from the sibling `contacts` array, if any."""
    contacts = value.get("contacts") or []
    if not contacts or not isinstance(contacts[0], dict):
        return None
    profile = contacts[0].get("profile") or {}
    return _clean(profile.get("name")) if isinstance(profile, dict) else None


def business_phone(value: dict, default: Optional[str] = None) -> Optional[str]:
    """Our own number, taken from `metadata.display_phone_number`."""
    metadata = value.get("metadata") or {}
    display = metadata.get("display_phone_number") if isinstance(metadata, dict) else None
    if display:
        return re.sub(r"\D", "", str(display)) or default
    return default


def normalize_message(event: IncomingMessageEvent, value: dict) -> dict:
    """
    Build the normalized message data stored as the record payload.

    Free text is sanitized; only the fields of the message's own type are kept.
    """
    message_type = event.type
    data = {
        "message_id": event.id,
        "from": event.from_phone,
        "timestamp": event.timestamp,
        "type": message_type,
        "profile_name": profile_name(value),
    }

    if message_type == "text":
        text = (event.text or {}).get("body")
        data["text"] = _clean(text) or None
    elif message_type == "contacts":
        data["contacts"] = event.contacts or []
    else:
        content = getattr(event, message_type) or {}
        data[message_type] = _CONTENT_NORMALIZERS[message_type](content)

    return data


def render_body(message_data: dict) -> Optional[str]:
    """Text messages keep their text; every other type stores its content as JSON."""
    message_type = message_data["type"]
    if message_type == "text":
        return message_data.get("text")
    return json.dumps(message_data.get(message_type), ensure_ascii=False, sort_keys=True)


class MessageReconciler:
    """
    Upserts incoming message events.

    Args:
        store: record store adapter bound to the current session
        notifier: receives a MessageReceived event after each reconciliation
        mark_as_read: optional callable invoked with the wa_message_id afterwards;
            failures are logged and never undo the reconciliation
        default_business_phone: used as to_phone when the webhook carries no metadata
    """

    def __init__(
        self,
        store: MessageStore,
        notifier: Optional[Notifier] = None,
        mark_as_read: Optional[Callable[[str], Any]] = None,
        default_business_phone: Optional[str] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.mark_as_read = mark_as_read
        self.default_business_phone = default_business_phone

    def reconcile(self, message: Any, value: Optional[dict] = None) -> ReconcileResult:
        value = value or {}

        try:
            event = IncomingMessageEvent.model_validate(message)
        except ValidationError as e:
            reasons = "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors())
            logger.warning(
                f"Dropping invalid message event: {reasons}",
                extra={"wa_message_id": message.get("id") if isinstance(message, dict) else None},
            )
            return ReconcileResult(INVALID)

        message_data = normalize_message(event, value)
        fields = {
            "wa_message_id": event.id,
            "from_phone": event.from_phone,
            "to_phone": business_phone(value, self.default_business_phone),
            "direction": "incoming",
            "message_type": event.type,
            "body": render_body(message_data),
            "status": INCOMING_STATUS,
            "status_updated_at": provider_timestamp_to_iso(event.timestamp),
            "payload": message_data,
        }

        logger.info(
            f"WhatsApp message received: {event.id}",
            extra={
                "wa_message_id": event.id,
                "type": event.type,
                "from": mask_phone(event.from_phone),
            },
        )

        existing = self.store.find_by_provider_id(event.id)
        if existing is None:
            try:
                record = self.store.create(fields)
                outcome = CREATED
            except DuplicateKeyError:
                # Another worker created the row between our lookup and insert
                existing = self.store.find_by_provider_id(event.id)
                if existing is None:
                    raise TransientStoreError(f"Message {event.id} vanished after duplicate key")
                record, outcome = self._merge(existing, fields)
        else:
            record, outcome = self._merge(existing, fields)

        logger.info(
            f"Message {event.id} reconciled: {outcome}",
            extra={"wa_message_id": event.id, "outcome": outcome, "status": record.status},
        )

        if self.notifier is not None:
            self.notifier.emit(MessageReceived(record=record, created=outcome == CREATED))

        if self.mark_as_read is not None:
            try:
                self.mark_as_read(event.id)
            except Exception as e:
                logger.error(
                    f"Failed to mark message as read: {e}",
                    extra={"wa_message_id": event.id},
                )

        return ReconcileResult(outcome, record)

    def _merge(self, existing, fields: dict):
        """Apply a message event to a record that already exists."""
        changes = {}

        if existing.message_type is None:
            # Placeholder created by a status event: complete it
            changes.update(
                direction=fields["direction"],
                from_phone=fields["from_phone"],
                to_phone=fields["to_phone"],
                message_type=fields["message_type"],
                body=fields["body"],
            )
        elif existing.body is None and fields["body"] is not None:
            changes["body"] = fields["body"]

        new_status = higher_of(existing.status, INCOMING_STATUS)
        if new_status != existing.status:
            changes["status"] = new_status
            changes["status_updated_at"] = fields["status_updated_at"]

        outcome = UPDATED if changes else UNCHANGED
        if outcome == UNCHANGED:
            logger.info(
                f"Duplicate delivery of message {existing.wa_message_id}",
                extra={"wa_message_id": existing.wa_message_id, "status": existing.status},
            )

        changes["payload"] = fields["payload"]
        record = self.store.update(existing, changes)
        return record, outcome
