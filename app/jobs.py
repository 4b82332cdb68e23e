"""
Background units of work scheduled by the webhook dispatcher.

Each job reconciles exactly one sub-event in its own database session. No
caller waits on it: transient store errors (including losing an optimistic
concurrency race) are retried a few times with exponential backoff, then the
unit is logged as failed and dropped. Recovery after that relies on the
provider redelivering the webhook, which the reconcilers handle idempotently.
"""

import logging
import time
from typing import Any, Callable, Optional

from app.config import settings
from app.events import notifier
from app.exceptions import TransientStoreError
from app.message_reconciler import MessageReconciler
from app.metrics import record_reconciliation
from app.outcomes import FAILED, ReconcileResult
from app.status_reconciler import StatusReconciler
from app.storage import MessageStore, SessionLocal
from app.whatsapp_client import WhatsAppClient

logger = logging.getLogger(__name__)


def run_with_retry(
    kind: str,
    sub_event: Any,
    unit: Callable[[MessageStore], ReconcileResult],
    session_factory: Optional[Callable] = None,
) -> ReconcileResult:
    """
    Run a reconciliation unit with bounded retries.

    Every attempt gets a fresh session so the unit re-reads the record
    instead of reusing state from the failed attempt.
    """
    session_factory = session_factory or SessionLocal
    wa_message_id = sub_event.get("id") if isinstance(sub_event, dict) else None
    max_attempts = max(1, settings.RECONCILE_MAX_ATTEMPTS)

    for attempt in range(1, max_attempts + 1):
        db = session_factory()
        try:
            result = unit(MessageStore(db))
            record_reconciliation(kind, result.outcome)
            return result
        except TransientStoreError as e:
            logger.warning(
                f"Transient store error reconciling {kind} {wa_message_id} (attempt {attempt}): {e}",
                extra={"wa_message_id": wa_message_id, "attempt": attempt},
            )
            if attempt < max_attempts:
                delay = settings.RECONCILE_RETRY_BACKOFF * (2 ** (attempt - 1))
                time.sleep(delay)
        except Exception:
            logger.exception(
                f"Unexpected error reconciling {kind} {wa_message_id}",
                extra={"wa_message_id": wa_message_id, "attempt": attempt},
            )
            record_reconciliation(kind, FAILED)
            return ReconcileResult(FAILED)
        finally:
            db.close()

    logger.error(
        f"Reconciliation of {kind} {wa_message_id} failed after {max_attempts} attempts",
        extra={"wa_message_id": wa_message_id, "attempt": max_attempts},
    )
    record_reconciliation(kind, FAILED)
    return ReconcileResult(FAILED)


def _mark_as_read(wa_message_id: str) -> None:
    with WhatsAppClient.from_settings() as client:
        client.mark_as_read(wa_message_id)


def process_incoming_message(message: Any, value: dict) -> ReconcileResult:
    """Job for one element of `value.messages`."""
    mark_as_read = _mark_as_read if settings.WHATSAPP_MARK_AS_READ else None

    def unit(store: MessageStore) -> ReconcileResult:
        reconciler = MessageReconciler(
            store,
            notifier=notifier,
            mark_as_read=mark_as_read,
            default_business_phone=settings.WHATSAPP_PHONE_ID,
        )
        return reconciler.reconcile(message, value)

    return run_with_retry("message", message, unit)


def process_status_update(status: Any, value: dict) -> ReconcileResult:
    """Job for one element of `value.statuses`."""

    def unit(store: MessageStore) -> ReconcileResult:
        return StatusReconciler(store, notifier=notifier).reconcile(status, value)

    return run_with_retry("status", status, unit)


def process_out_of_band_status(wa_message_id: str, status: str, timestamp: Any = None) -> ReconcileResult:
    """Apply a status outside the webhook status set, e.g. `deleted`."""

    def unit(store: MessageStore) -> ReconcileResult:
        return StatusReconciler(store, notifier=notifier).apply_status(wa_message_id, status, timestamp=timestamp)

    return run_with_retry("status", {"id": wa_message_id}, unit)
