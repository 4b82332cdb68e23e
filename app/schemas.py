"""
Pydantic schemas for request/response validation.

This module contains:
- Webhook payload models (the entry/changes/value envelope)
- Sub-event models validated by the reconcilers
- Response models for API responses
"""

import math
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator

from app.status_policy import WEBHOOK_STATUSES
from app.utils import is_valid_phone_number


MESSAGE_TYPES = (
    "text",
    "image",
    "video",
    "audio",
    "document",
    "location",
    "contacts",
    "interactive",
    "button",
    "reaction",
)


def _validate_provider_timestamp(value: Union[str, int, float]) -> Union[str, int, float]:
    """Cloud API timestamps are epoch seconds, usually sent as strings."""
    if isinstance(value, bool):
        raise ValueError("timestamp must be numeric")
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        raise ValueError("timestamp must be numeric")
    if not math.isfinite(numeric) or numeric < 0:
        raise ValueError("timestamp must be a non-negative number")
    try:
        datetime.fromtimestamp(int(numeric), tz=timezone.utc)
    except (OverflowError, ValueError, OSError):
        raise ValueError("timestamp is out of range")
    return value


# =============================================================================
# Webhook Envelope Models
# =============================================================================

class WebhookValue(BaseModel):
    """
    The `value` object of one change.

    Sub-events are kept as raw dicts: each one is validated independently by
    its reconciler so a single malformed event never rejects its siblings.
    """
    messaging_product: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    contacts: list[Any] = Field(default_factory=list)
    messages: list[Any] = Field(default_factory=list)
    statuses: list[Any] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @field_validator("contacts", "messages", "statuses", mode="before")
    @classmethod
    def null_list_as_empty(cls, v):
        return [] if v is None else v

    @field_validator("metadata", mode="before")
    @classmethod
    def null_metadata_as_empty(cls, v):
        return {} if v is None else v


class WebhookChange(BaseModel):
    field: Optional[str] = None
    value: WebhookValue = Field(default_factory=WebhookValue)

    @field_validator("value", mode="before")
    @classmethod
    def null_value_as_empty(cls, v):
        return {} if v is None else v


class WebhookEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WebhookChange] = Field(default_factory=list)

    @field_validator("changes", mode="before")
    @classmethod
    def null_changes_as_empty(cls, v):
        return [] if v is None else v


class WebhookPayload(BaseModel):
    """
    Pydantic model for the Cloud API webhook envelope.

    {"object": "whatsapp_business_account",
     "entry": [{"id": "...", "changes": [{"field": "messages", "value": {...}}]}]}
    """
    object: Optional[str] = None
    entry: list[WebhookEntry] = Field(default_factory=list)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "object": "whatsapp_business_account",
                    "entry": [
                        {
                            "id": "102290129340398",
                            "changes": [
                                {
                                    "field": "messages",
                                    "value": {
                                        "messaging_product": "whatsapp",
                                        "metadata": {
                                            "display_phone_number": "15550783881",
                                            "phone_number_id": "106540352242922"
                                        },
                                        "contacts": [
                                            {"profile": {"name": "Kerry Fisher"}, "wa_id": "16315551181"}
                                        ],
                                        "messages": [
                                            {
                                                "from": "16315551181",
                                                "id": "wamid.ABGGFlA5Fpa",
                                                "timestamp": "1504902988",
                                                "type": "text",
                                                "text": {"body": "this is a text message"}
                                            }
                                        ]
                                    }
                                }
                            ]
                        }
                    ]
                }
            ]
        }
    }

    @field_validator("entry", mode="before")
    @classmethod
    def null_entry_as_empty(cls, v):
        return [] if v is None else v


# =============================================================================
# Sub-event Models
# =============================================================================

class IncomingMessageEvent(BaseModel):
    """
    One element of `value.messages`.

    Validates:
    - id, from, timestamp, type: present and non-empty
    - from: digits only, 1-15 characters
    - type: one of the supported message types
    - timestamp: numeric, non-negative
    """
    id: str = Field(..., min_length=1)
    # Note: 'from' is a reserved word in Python, so we use alias
    from_phone: str = Field(..., alias="from")
    timestamp: Union[str, int, float]
    type: str

    text: Optional[dict[str, Any]] = None
    image: Optional[dict[str, Any]] = None
    video: Optional[dict[str, Any]] = None
    audio: Optional[dict[str, Any]] = None
    document: Optional[dict[str, Any]] = None
    location: Optional[dict[str, Any]] = None
    contacts: Optional[list[Any]] = None
    interactive: Optional[dict[str, Any]] = None
    button: Optional[dict[str, Any]] = None
    reaction: Optional[dict[str, Any]] = None

    model_config = {"populate_by_name": True}

    @field_validator("from_phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        if not is_valid_phone_number(v):
            raise ValueError("from must contain 1-15 digits")
        return v

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in MESSAGE_TYPES:
            raise ValueError(f"unsupported message type: {v}")
        return v

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v):
        return _validate_provider_timestamp(v)


class StatusEvent(BaseModel):
    """
    One element of `value.statuses`.

    Validates:
    - id, status: present
    - recipient_id: digits only, 1-15 characters (if present)
    - status: sent, delivered, read or failed
    - timestamp: numeric, non-negative (if present)
    """
    id: str = Field(..., min_length=1)
    status: str
    recipient_id: Optional[str] = None
    timestamp: Optional[Union[str, int, float]] = None
    errors: Optional[list[Any]] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in WEBHOOK_STATUSES:
            raise ValueError(f"unsupported status: {v}")
        return v

    @field_validator("recipient_id")
    @classmethod
    def validate_recipient(cls, v: Optional[str]) -> Optional[str]:
        if v in (None, ""):
            return None
        if not is_valid_phone_number(v):
            raise ValueError("recipient_id must contain 1-15 digits")
        return v

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v):
        if v in (None, ""):
            return None
        return _validate_provider_timestamp(v)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for successful webhook processing."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    """
    Response model for a single message record.
    Maps database fields to API response format.
    """
    wa_message_id: str = Field(..., description="Provider message identifier")
    direction: str = Field(..., description="incoming or outgoing")
    from_phone: Optional[str] = Field(
        None,
        alias="from",
        serialization_alias="from",
        description="Sender phone number"
    )
    to_phone: Optional[str] = Field(
        None,
        alias="to",
        serialization_alias="to",
        description="Recipient phone number"
    )
    message_type: Optional[str] = Field(None, description="Message type, null for placeholders")
    body: Optional[str] = Field(None, description="Text or JSON-encoded content")
    status: str = Field(..., description="Delivery status")
    status_updated_at: Optional[str] = Field(None, description="Provider time of last status change")
    created_at: str = Field(..., description="Server time the record was created")
    updated_at: str = Field(..., description="Server time the record was last written")

    model_config = {
        "populate_by_name": True,
        "from_attributes": True,  # Allow creating from ORM objects
    }


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages endpoint with pagination.
    """
    data: list[MessageResponse] = Field(
        default_factory=list,
        description="List of messages"
    )
    total: int = Field(
        ...,
        ge=0,
        description="Total messages matching filters (ignoring limit/offset)"
    )
    limit: int = Field(..., ge=1, le=100, description="Maximum messages per page")
    offset: int = Field(..., ge=0, description="Number of messages skipped")


class StatsResponse(BaseModel):
    """
    Response model for GET /stats endpoint.
    """
    total_messages: int = Field(..., ge=0, description="Total number of records")
    by_status: dict[str, int] = Field(default_factory=dict, description="Record count per status")
    by_direction: dict[str, int] = Field(default_factory=dict, description="Record count per direction")
    placeholders: int = Field(
        ...,
        ge=0,
        description="Records created by a status event whose message has not arrived"
    )


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
