"""
Fan-out of a verified webhook payload into independent reconciliation jobs.

One webhook may batch several messages and statuses across entries and
changes. Each sub-event becomes its own unit of work carrying the sub-event
and its sibling `value` object (metadata and contacts), so that units can run
in any order, on any worker, and be retried on their own.

The dispatcher only schedules. In the HTTP layer `schedule` is
BackgroundTasks.add_task, so the provider gets its 200 before any
reconciliation runs and never retries because the database was slow.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Union

from app.metrics import record_scheduled_event
from app.schemas import WebhookPayload

logger = logging.getLogger(__name__)

Schedule = Callable[..., Any]


@dataclass
class DispatchSummary:
    messages: int = 0
    statuses: int = 0

    @property
    def total(self) -> int:
        return self.messages + self.statuses


def dispatch_webhook(
    payload: Union[WebhookPayload, dict],
    schedule: Schedule,
    message_job: Callable[[dict, dict], Any],
    status_job: Callable[[dict, dict], Any],
) -> DispatchSummary:
    """
    Schedule one job per message and per status found in the payload.

    Args:
        payload: decoded webhook body, already authenticated
        schedule: called as schedule(job, sub_event, value)
        message_job: unit of work for a `messages[]` element
        status_job: unit of work for a `statuses[]` element

    Returns:
        Count of scheduled message and status jobs
    """
    if not isinstance(payload, WebhookPayload):
        payload = WebhookPayload.model_validate(payload)

    summary = DispatchSummary()

    for entry in payload.entry:
        for change in entry.changes:
            value = change.value.model_dump(exclude={"messages", "statuses"})

            for message in change.value.messages:
                schedule(message_job, message, value)
                summary.messages += 1
                record_scheduled_event("message")

            for status in change.value.statuses:
                schedule(status_job, status, value)
                summary.statuses += 1
                record_scheduled_event("status")

    logger.info(
        f"Webhook fanned out: {summary.messages} messages, {summary.statuses} statuses",
        extra={"entry_count": len(payload.entry), "messages": summary.messages, "statuses": summary.statuses},
    )
    return summary
