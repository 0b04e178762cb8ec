import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import (
    Body,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from crm_inbox import service
from crm_inbox.config import settings
from crm_inbox.errors import InboxError
from crm_inbox.logging_utils import RequestLoggingMiddleware, log_inbox_data, setup_logging
from crm_inbox.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from crm_inbox.notifications import Broadcaster, EventType, InboxEvent, get_broadcaster
from crm_inbox.schemas import (
    BulkDeleteResponse,
    BulkReadResponse,
    CleanupResponse,
    ErrorResponse,
    HealthResponse,
    InboxResponse,
    InboxStats,
    MarkReadResponse,
    ReferencesRequest,
    WebhookRequest,
    WebhookResponse,
)
from crm_inbox.storage import check_db_health, get_db, init_db
from crm_inbox.utils import verify_hmac_signature


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="CRM Inbox API",
    description="Merged SMS/email inbox over the messages table and legacy lead history",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(InboxError)
async def inbox_error_handler(request: Request, exc: InboxError) -> JSONResponse:
    log_inbox_data(request, error_code=exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=exc.detail, code=exc.code, retryable=exc.retryable).model_dump(),
    )


def get_caller(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
    x_user_role: Annotated[str | None, Header(alias="X-User-Role")] = None,
) -> service.Caller:
    """Caller identity as forwarded by the authenticating gateway."""
    return service.Caller(user_id=x_user_id, role=x_user_role)


def _require_references(body: ReferencesRequest) -> list:
    if not body.message_ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid messageIds array"
        )
    return body.message_ids


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe: 200 only when WEBHOOK_SECRET is set and the database
    has both inbox tables, 503 otherwise.
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WEBHOOK_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
    }
)
async def webhook(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> WebhookResponse:
    """
    Store a sent or received message reported by the SMS/email transport.

    The body must carry a hex HMAC-SHA256 of the raw bytes in X-Signature.
    Redelivering the same (channel, provider_message_id) returns 200 with
    duplicate=true and stores nothing.
    """
    raw_body = await request.body()

    if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
        logger.error("Rejected webhook with missing or invalid signature")
        record_webhook_outcome("invalid_signature")
        log_inbox_data(request, result="invalid_signature", dup=False)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    try:
        payload = WebhookRequest.model_validate(json.loads(raw_body))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Webhook validation error: {e}")
        record_webhook_outcome("validation_error")
        log_inbox_data(request, result="validation_error", dup=False)
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )

    success, is_duplicate = service.ingest_message(db, payload, broadcaster)

    if not success:
        record_webhook_outcome("error")
        log_inbox_data(request, provider_message_id=payload.provider_message_id, result="error", dup=False)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to store message"
        )

    result = "duplicate" if is_duplicate else "created"
    record_webhook_outcome(result)
    log_inbox_data(
        request,
        provider_message_id=payload.provider_message_id,
        result=result,
        dup=is_duplicate,
    )
    return WebhookResponse(status="ok", duplicate=is_duplicate)


# =============================================================================
# Inbox Routes
# =============================================================================

def _inbox_response(view, stats, caller: service.Caller) -> InboxResponse:
    return InboxResponse(
        messages=view,
        stats=InboxStats(**stats),
        user_role=caller.role,
        user_id=caller.user_id,
    )


@app.get(
    "/messages",
    response_model=InboxResponse,
    responses={503: {"model": ErrorResponse, "description": "Store unavailable"}},
)
async def list_messages(
    request: Request,
    caller: service.Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> InboxResponse:
    """
    Merged SMS/email inbox, newest first.

    Admins see every lead's messages; other users see only leads booked
    to them. Rows of deleted or unknown leads are never shown.
    """
    view, stats = service.list_inbox(db, caller)
    log_inbox_data(request, result_count=len(view))
    return _inbox_response(view, stats, caller)


@app.get(
    "/messages/entity/{entity_id}",
    response_model=InboxResponse,
    responses={503: {"model": ErrorResponse, "description": "Store unavailable"}},
)
async def list_entity_messages(
    entity_id: str,
    request: Request,
    caller: service.Caller = Depends(get_caller),
    db: Session = Depends(get_db),
) -> InboxResponse:
    """Merged conversation for a single lead."""
    view, stats = service.list_inbox(db, caller, entity_id=entity_id)
    log_inbox_data(request, entity_id=entity_id, result_count=len(view))
    return _inbox_response(view, stats, caller)


@app.put("/messages/bulk-read", response_model=BulkReadResponse)
async def bulk_read(
    request: Request,
    body: Annotated[ReferencesRequest, Body()],
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> BulkReadResponse:
    """Mark several rows read. Each reference succeeds or fails on its own."""
    references = _require_references(body)
    results = service.mark_many_read(db, references, broadcaster)
    succeeded = sum(1 for r in results if r.success)
    log_inbox_data(request, reference_count=len(references), result=f"{succeeded}/{len(references)}")
    return BulkReadResponse(
        message=f"{succeeded}/{len(references)} messages marked as read",
        results=results,
    )


@app.put(
    "/messages/{reference}/read",
    response_model=MarkReadResponse,
    responses={404: {"model": ErrorResponse, "description": "Stale or unknown reference"}},
)
async def mark_message_read(
    reference: str,
    request: Request,
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> MarkReadResponse:
    """
    Mark one row read by its inbox id (messages-table id or entityId_timestamp).

    404 means the client holds stale data and should refresh.
    """
    result = service.mark_read(db, reference, broadcaster)
    log_inbox_data(request, reference=reference, result=result.source)
    return MarkReadResponse(reference=result.reference, entity_id=result.entity_id, source=result.source)


@app.post("/messages/bulk-delete", response_model=BulkDeleteResponse)
async def bulk_delete(
    request: Request,
    body: Annotated[ReferencesRequest, Body()],
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> BulkDeleteResponse:
    """Delete rows from both the lead history and the messages table."""
    references = _require_references(body)
    deleted, results = service.bulk_delete(db, references, broadcaster)
    log_inbox_data(request, reference_count=len(references), deleted=deleted)
    return BulkDeleteResponse(deleted=deleted, results=results)


@app.post(
    "/messages/cleanup-orphaned",
    response_model=CleanupResponse,
    responses={403: {"model": ErrorResponse, "description": "Admin role required"}},
)
async def cleanup_orphaned(
    request: Request,
    caller: service.Caller = Depends(get_caller),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> CleanupResponse:
    """Delete messages whose lead no longer exists. Admin only."""
    counts = service.cleanup_orphaned(db, caller, broadcaster)
    log_inbox_data(request, deleted=counts["deleted_count"])
    return CleanupResponse(**counts)


# =============================================================================
# Live Updates
# =============================================================================

@app.websocket("/ws/messages")
async def message_events(websocket: WebSocket) -> None:
    """Stream read/delete/new-message events so open inboxes stay current."""
    broadcaster = get_broadcaster()
    await websocket.accept()
    queue = broadcaster.subscribe()

    async def forward() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(event.model_dump(mode="json"))

    forwarder = None
    try:
        ack = InboxEvent(event=EventType.CONNECTION_ACK, data={"status": "connected"})
        await websocket.send_json(ack.model_dump(mode="json"))
        forwarder = asyncio.create_task(forward())
        # Clients only listen; reading here is how a disconnect is noticed
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Inbox websocket disconnected")
    finally:
        if forwarder is not None:
            forwarder.cancel()
        broadcaster.unsubscribe(queue)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus text exposition of request, webhook and inbox counters."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
