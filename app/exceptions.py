"""
Exception types shared by the store adapter, the reconcilers and the send client.

Store errors are split by how the background jobs react to them:
- DuplicateKeyError: lost a create race, converted into an update by the reconciler
- TransientStoreError: connectivity, timeout or a concurrent write; retried with backoff
"""

from typing import Any, Optional


class StoreError(Exception):
    """Base class for record store failures."""


class DuplicateKeyError(StoreError):
    """A record with the same wa_message_id already exists."""

    def __init__(self, wa_message_id: str):
        super().__init__(f"Message {wa_message_id} already exists")
        self.wa_message_id = wa_message_id


class TransientStoreError(StoreError):
    """The store could not complete the operation right now."""


class StaleRecordError(TransientStoreError):
    """The record was modified by another writer between read and update."""

    def __init__(self, wa_message_id: str):
        super().__init__(f"Message {wa_message_id} was modified concurrently")
        self.wa_message_id = wa_message_id


class WhatsAppAPIError(Exception):
    """Raised when the Cloud API rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: int = 0, response: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response or {}

    def _error(self) -> dict:
        error = self.response.get("error")
        return error if isinstance(error, dict) else {}

    @property
    def error_code(self) -> Optional[int]:
        return self._error().get("code")

    @property
    def error_subcode(self) -> Optional[int]:
        return self._error().get("error_subcode")

    @property
    def error_type(self) -> Optional[Any]:
        return self._error().get("type")
