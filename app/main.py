import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Literal

from fastapi import BackgroundTasks, FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config import settings
from app.dispatcher import dispatch_webhook
from app.jobs import process_incoming_message, process_status_update
from app.storage import init_db, check_db_health, get_db, MessageStore
from app.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data, with_request_id
from app.utils import verify_hmac_signature
from app.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from app.schemas import (
    HealthResponse,
    WebhookPayload,
    WebhookResponse,
    ErrorResponse,
    MessageResponse,
    MessagesListResponse,
    StatsResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="WhatsApp Webhook Reconciler",
    description="Reconciles WhatsApp Cloud API message and status webhooks into one record per message",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. WEBHOOK_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="WEBHOOK_SECRET not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    hub_mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    """
    Subscription handshake performed by Meta when the webhook URL is configured.

    Echoes hub.challenge when hub.mode is "subscribe" and the verify token matches.
    """
    if (
        hub_mode == "subscribe"
        and settings.WHATSAPP_VERIFY_TOKEN
        and hub_verify_token == settings.WHATSAPP_VERIFY_TOKEN
    ):
        logger.info("Webhook subscription verified")
        return PlainTextResponse(hub_challenge or "", status_code=status.HTTP_200_OK)

    logger.warning("Webhook subscription verification failed", extra={"mode": hub_mode})
    return PlainTextResponse("Invalid Verify Token", status_code=status.HTTP_403_FORBIDDEN)


@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
    }
)
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
) -> WebhookResponse:
    """
    Receive WhatsApp Cloud API events.

    - Validates the HMAC-SHA256 signature in X-Hub-Signature-256
    - Schedules one background job per message and per status
    - Returns 200 immediately; reconciliation outcome never changes the response

    Meta expects a fast 200 and retries with backoff otherwise, which is what
    produces late, duplicated and out-of-order deliveries in the first place.
    """
    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")

    if not verify_hmac_signature(raw_body, x_hub_signature_256, settings.WEBHOOK_SECRET):
        logger.warning(
            "WhatsApp webhook signature verification failed",
            extra={"client_ip": request.client.host if request.client else None},
        )
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request=request, result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="invalid signature"
        )

    try:
        payload = WebhookPayload.model_validate(json.loads(raw_body))
    except ValidationError as e:
        logger.error(f"Validation error: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(request=request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )
    except ValueError as e:
        # JSONDecodeError and undecodable bytes
        logger.error(f"Invalid JSON: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(request=request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid JSON: {str(e)}"
        )

    request_id = getattr(request.state, "request_id", None)

    def schedule(job, *args):
        background_tasks.add_task(with_request_id(job, request_id), *args)

    summary = dispatch_webhook(
        payload,
        schedule,
        message_job=process_incoming_message,
        status_job=process_status_update,
    )

    record_webhook_outcome("accepted")
    log_webhook_data(
        request=request,
        result="accepted",
        messages=summary.messages,
        statuses=summary.statuses,
    )

    return WebhookResponse(status="ok")


# =============================================================================
# Messages Route
# =============================================================================

@app.get(
    "/messages",
    response_model=MessagesListResponse,
)
async def list_messages(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    direction: Annotated[Literal["incoming", "outgoing"] | None, Query(description="Filter by direction")] = None,
    status_param: Annotated[str | None, Query(alias="status", description="Filter by delivery status")] = None,
    phone: Annotated[str | None, Query(description="Match sender or recipient phone")] = None,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    List reconciled message records with pagination and filtering.

    Ordering: records are ordered by creation (id ASC).
    """
    logger.info(f"GET /messages: limit={limit}, offset={offset}, direction={direction}, status={status_param}")

    records, total = MessageStore(db).list_messages(
        limit=limit,
        offset=offset,
        direction=direction,
        status=status_param,
        phone=phone,
    )

    data = [
        MessageResponse(
            wa_message_id=record.wa_message_id,
            direction=record.direction,
            from_phone=record.from_phone,
            to_phone=record.to_phone,
            message_type=record.message_type,
            body=record.body,
            status=record.status,
            status_updated_at=record.status_updated_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        for record in records
    ]

    return MessagesListResponse(
        data=data,
        total=total,
        limit=limit,
        offset=offset
    )


# =============================================================================
# Stats Route
# =============================================================================

@app.get(
    "/stats",
    response_model=StatsResponse,
)
async def get_statistics(
    db: Session = Depends(get_db)
) -> StatsResponse:
    """
    Record counts overall, per status and per direction, plus outstanding placeholders.
    """
    stats = MessageStore(db).get_stats()
    return StatsResponse(**stats)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
