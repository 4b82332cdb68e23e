"""
Tests for reconciliation notifications and request-id propagation into background jobs.
"""

from app.events import MessageReceived, Notifier, StatusUpdated
from app.logging_utils import get_request_id, with_request_id
from app.outcomes import CREATED, DOWNGRADE_PREVENTED, UPDATED, ReconcileResult


class TestNotifier:
    def test_listeners_receive_only_their_event_type(self):
        notifier = Notifier()
        received, updates = [], []
        notifier.subscribe(MessageReceived, received.append)
        notifier.subscribe(StatusUpdated, updates.append)

        notifier.emit(StatusUpdated(record=None, old_status="sent", new_status="read"))

        assert received == []
        assert len(updates) == 1

    def test_unsubscribe(self):
        notifier = Notifier()
        updates = []
        notifier.subscribe(StatusUpdated, updates.append)
        notifier.unsubscribe(StatusUpdated, updates.append)
        notifier.unsubscribe(StatusUpdated, updates.append)

        notifier.emit(StatusUpdated(record=None, old_status=None, new_status="sent"))

        assert updates == []

    def test_failing_listener_does_not_stop_others(self):
        notifier = Notifier()
        updates = []

        def broken(event):
            raise RuntimeError("boom")

        notifier.subscribe(StatusUpdated, broken)
        notifier.subscribe(StatusUpdated, updates.append)

        notifier.emit(StatusUpdated(record=None, old_status="sent", new_status="failed"))

        assert len(updates) == 1


def test_status_updated_helpers():
    read = StatusUpdated(record=None, old_status="delivered", new_status="read")
    failed = StatusUpdated(record=None, old_status="sent", new_status="failed")

    assert read.is_read and not read.is_delivered and not read.is_failed
    assert failed.is_failed and not failed.is_deleted


def test_result_applied():
    assert ReconcileResult(CREATED).applied
    assert ReconcileResult(UPDATED).applied
    assert not ReconcileResult(DOWNGRADE_PREVENTED).applied


def test_with_request_id_sets_and_restores_context():
    seen = []

    def job(value):
        seen.append((value, get_request_id()))
        return value

    assert with_request_id(job, "req-123")("x") == "x"

    assert seen == [("x", "req-123")]
    assert get_request_id() is None
