"""
Outcome of reconciling a single webhook sub-event.
"""

from dataclasses import dataclass
from typing import Any, Optional

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"
DOWNGRADE_PREVENTED = "downgrade_prevented"
INVALID = "invalid"
FAILED = "failed"


@dataclass
class ReconcileResult:
    outcome: str
    record: Optional[Any] = None

    @property
    def applied(self) -> bool:
        return self.outcome in (CREATED, UPDATED)
