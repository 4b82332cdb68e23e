"""
Status priority policy for WhatsApp message records.

Statuses are ranked so that late or redelivered webhooks can never move a
record backwards:

    pending(0) < sent(1) < delivered(2) < read(3) < failed(4) < deleted(5)

`deleted` is reported out-of-band (recipient deleted the message for
everyone) and outranks `failed`, so once either terminal state is reached no
regular status can replace it.
"""

from typing import Optional

STATUS_PRIORITY = {
    "pending": 0,
    "sent": 1,
    "delivered": 2,
    "read": 3,
    "failed": 4,
    "deleted": 5,
}

# Statuses the Cloud API sends in the `statuses` array of a webhook
WEBHOOK_STATUSES = ("sent", "delivered", "read", "failed")

TERMINAL_STATUSES = ("failed", "deleted")

UNKNOWN_RANK = -1


def rank(status: Optional[str]) -> int:
    """Return the priority of a status, -1 for unknown or missing values."""
    if status is None:
        return UNKNOWN_RANK
    return STATUS_PRIORITY.get(status, UNKNOWN_RANK)


def should_update(current_status: Optional[str], new_status: str) -> bool:
    """
    Decide whether new_status may replace current_status.

    Equal ranks are accepted so that replaying the same event is a harmless
    overwrite rather than an error.
    """
    return rank(new_status) >= rank(current_status)


def higher_of(current_status: Optional[str], other_status: str) -> str:
    """Return whichever status ranks higher; ties keep current_status."""
    if current_status is not None and rank(current_status) >= rank(other_status):
        return current_status
    return other_status


def is_terminal(status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES
