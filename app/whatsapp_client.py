"""
Minimal WhatsApp Cloud API client.

Only the calls the reconciliation flow needs: marking an inbound message as
read, and sending a text message that is logged as an outgoing record so
later status webhooks find it.
"""

import logging
import time
from typing import Optional

import httpx

from app.config import settings
from app.exceptions import DuplicateKeyError, StoreError, WhatsAppAPIError
from app.status_policy import higher_of
from app.storage import MessageStore
from app.utils import utc_now_iso

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.facebook.com"


class WhatsAppClient:
    """
    Synchronous Cloud API client.

    Transport errors (connect failures, timeouts) are retried up to
    retry_times with retry_delay_ms between attempts. HTTP error responses are
    not retried and raise WhatsAppAPIError with the provider's error details.
    """

    def __init__(
        self,
        token: Optional[str],
        phone_id: Optional[str],
        api_version: str = "v20.0",
        timeout: float = 30.0,
        retry_times: int = 3,
        retry_delay_ms: int = 100,
        store: Optional[MessageStore] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.token = token
        self.phone_id = phone_id
        self.api_version = api_version
        self.retry_times = max(1, retry_times)
        self.retry_delay_ms = retry_delay_ms
        self.store = store
        self._http = httpx.Client(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, store: Optional[MessageStore] = None, **kwargs) -> "WhatsAppClient":
        return cls(
            token=settings.WHATSAPP_TOKEN,
            phone_id=settings.WHATSAPP_PHONE_ID,
            api_version=settings.WHATSAPP_API_VERSION,
            timeout=settings.WHATSAPP_TIMEOUT,
            retry_times=settings.WHATSAPP_RETRY_TIMES,
            retry_delay_ms=settings.WHATSAPP_RETRY_DELAY_MS,
            store=store,
            **kwargs,
        )

    @property
    def api_url(self) -> str:
        return f"{GRAPH_API_BASE}/{self.api_version}/{self.phone_id}/messages"

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # =========================================================================
    # API calls
    # =========================================================================

    def mark_as_read(self, wa_message_id: str) -> dict:
        """Mark an inbound message as read (blue ticks for the sender)."""
        logger.info(f"Marking message as read: {wa_message_id}")
        return self._post({
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": wa_message_id,
        })

    def send_text(self, to: str, text: str, preview_url: bool = False) -> dict:
        """
        Send a text message and log it as an outgoing record.

        Args:
            to: recipient phone number, digits only
            text: message body (max 4096 characters)
            preview_url: let WhatsApp render a link preview
        """
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"preview_url": preview_url, "body": text},
        }
        result = self._post(payload)
        self._log_outgoing_message(payload, result)
        return result

    # =========================================================================
    # Internals
    # =========================================================================

    def _post(self, payload: dict) -> dict:
        headers = {"Authorization": f"Bearer {self.token}"}
        last_error = None

        for attempt in range(1, self.retry_times + 1):
            try:
                response = self._http.post(self.api_url, json=payload, headers=headers)
                break
            except httpx.TransportError as e:
                last_error = e
                logger.warning(f"WhatsApp API transport error on attempt {attempt}: {e}")
                if attempt < self.retry_times:
                    time.sleep(self.retry_delay_ms / 1000)
        else:
            raise WhatsAppAPIError(
                f"Failed to reach WhatsApp API after {self.retry_times} attempts: {last_error}"
            ) from last_error

        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not response.is_success:
            error = data.get("error") if isinstance(data.get("error"), dict) else {}
            error_message = error.get("message", "Unknown error occurred")
            raise WhatsAppAPIError(
                f"WhatsApp API Error: {error_message}",
                status_code=response.status_code,
                response=data,
            )

        return data

    def _log_outgoing_message(self, payload: dict, response: dict) -> None:
        """
        Store the sent message so its status webhooks have a record to update.

        If a status webhook already created a placeholder for this id, the
        placeholder is completed instead. Store failures are logged only;
        the message has already been sent.
        """
        if self.store is None:
            return

        messages = response.get("messages") or []
        wa_message_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        if not wa_message_id:
            logger.warning("WhatsApp API response carried no message id; outgoing message not logged")
            return

        fields = {
            "wa_message_id": wa_message_id,
            "from_phone": self.phone_id,
            "to_phone": payload.get("to"),
            "direction": "outgoing",
            "message_type": payload.get("type"),
            "body": (payload.get("text") or {}).get("body"),
            "status": "sent",
            "status_updated_at": utc_now_iso(),
            "payload": {"request": payload, "response": response},
        }

        try:
            try:
                self.store.create(fields)
            except DuplicateKeyError:
                existing = self.store.find_by_provider_id(wa_message_id)
                if existing is None:
                    raise
                changes = {"payload": fields["payload"]}
                if existing.message_type is None:
                    changes.update(
                        from_phone=fields["from_phone"],
                        message_type=fields["message_type"],
                        body=fields["body"],
                    )
                status = higher_of(existing.status, "sent")
                if status != existing.status:
                    changes.update(status=status, status_updated_at=fields["status_updated_at"])
                self.store.update(existing, changes)
        except StoreError as e:
            logger.error(f"Failed to log outgoing WhatsApp message {wa_message_id}: {e}")
