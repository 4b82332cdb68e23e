"""
Applies one `statuses[]` sub-event to its WhatsAppMessage record.

Status webhooks are only sent for messages this business sent, but they can
outrun the message itself (or its own send-log write). When no record exists
a placeholder is created so the status is never lost; when one exists the
status is applied only if it does not rank below the current one.
"""

import logging
from typing import Any, Optional, Union

from pydantic import ValidationError

from app.events import Notifier, StatusUpdated
from app.exceptions import DuplicateKeyError, TransientStoreError
from app.outcomes import CREATED, DOWNGRADE_PREVENTED, INVALID, UPDATED, ReconcileResult
from app.schemas import StatusEvent
from app.status_policy import is_terminal, should_update
from app.storage import MessageStore
from app.utils import provider_timestamp_to_iso

logger = logging.getLogger(__name__)


class StatusReconciler:
    """Applies status events under the status priority policy."""

    def __init__(self, store: MessageStore, notifier: Optional[Notifier] = None):
        self.store = store
        self.notifier = notifier

    def reconcile(self, status: Any, value: Optional[dict] = None) -> ReconcileResult:
        try:
            event = StatusEvent.model_validate(status)
        except ValidationError as e:
            reasons = "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors())
            logger.warning(
                f"Dropping invalid status event: {reasons}",
                extra={"wa_message_id": status.get("id") if isinstance(status, dict) else None},
            )
            return ReconcileResult(INVALID)

        status_data = {
            "message_id": event.id,
            "recipient_id": event.recipient_id,
            "status": event.status,
            "timestamp": event.timestamp,
        }
        if event.errors is not None:
            status_data["errors"] = event.errors

        logger.info(
            f"WhatsApp status update: {event.id} -> {event.status}",
            extra={
                "wa_message_id": event.id,
                "status": event.status,
                "has_errors": event.errors is not None,
            },
        )

        return self.apply_status(
            event.id,
            event.status,
            timestamp=event.timestamp,
            recipient_id=event.recipient_id,
            payload=status_data,
        )

    def apply_status(
        self,
        wa_message_id: str,
        new_status: str,
        timestamp: Union[str, int, float, None] = None,
        recipient_id: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> ReconcileResult:
        """
        Apply a status to a record, creating a placeholder if none exists.

        Also used for statuses that never appear in the webhook `statuses`
        array, such as `deleted`.
        """
        status_updated_at = provider_timestamp_to_iso(timestamp)
        if payload is None:
            payload = {"message_id": wa_message_id, "status": new_status, "timestamp": timestamp}

        record = self.store.find_by_provider_id(wa_message_id)
        if record is None:
            try:
                record = self.store.create({
                    "wa_message_id": wa_message_id,
                    # For status webhooks we don't know the sender
                    "from_phone": None,
                    "to_phone": recipient_id,
                    "direction": "outgoing",
                    "message_type": None,
                    "body": None,
                    "status": new_status,
                    "status_updated_at": status_updated_at,
                    "payload": payload,
                })
            except DuplicateKeyError:
                # Lost the race against another worker: apply as an update instead
                record = self.store.find_by_provider_id(wa_message_id)
                if record is None:
                    raise TransientStoreError(f"Message {wa_message_id} vanished after duplicate key")
            else:
                logger.info(
                    f"Message {wa_message_id} not yet stored, placeholder created",
                    extra={"wa_message_id": wa_message_id, "status": new_status},
                )
                self._emit(record, None, new_status)
                return ReconcileResult(CREATED, record)

        if not should_update(record.status, new_status):
            logger.info(
                "WhatsApp status downgrade prevented",
                extra={
                    "wa_message_id": wa_message_id,
                    "current_status": record.status,
                    "attempted_status": new_status,
                    "terminal": is_terminal(record.status),
                },
            )
            return ReconcileResult(DOWNGRADE_PREVENTED, record)

        old_status = record.status
        record = self.store.update(record, {
            "status": new_status,
            "status_updated_at": status_updated_at,
            "payload": payload,
        })

        logger.info(
            f"Message {wa_message_id} status {old_status} -> {new_status}",
            extra={"wa_message_id": wa_message_id, "old_status": old_status, "status": new_status},
        )
        self._emit(record, old_status, new_status)
        return ReconcileResult(UPDATED, record)

    def _emit(self, record, old_status: Optional[str], new_status: str) -> None:
        if self.notifier is not None:
            self.notifier.emit(StatusUpdated(record=record, old_status=old_status, new_status=new_status))
