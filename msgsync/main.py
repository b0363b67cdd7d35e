import logging
from contextlib import asynccontextmanager
from typing import Annotated, List

from fastapi import FastAPI, Response, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from msgsync.config import settings
from msgsync.storage import (
    init_db,
    check_db_health,
    get_db,
    list_received,
    insert_received,
    mark_read,
    mark_all_read,
    list_sent,
    insert_sent,
    get_provider_settings,
    update_provider_settings,
)
from msgsync.logging_utils import setup_logging, RequestLoggingMiddleware
from msgsync.metrics import get_metrics, get_metrics_content_type
from msgsync.models import STATUS_FAILED, STATUS_SENT
from msgsync.provider import ProviderError
from msgsync.sync import SyncManager, resolve_token
from msgsync.utils import mask_token
from msgsync.schemas import (
    HealthResponse,
    ErrorResponse,
    ReceivedMessageCreate,
    ReceivedMessageResponse,
    SentMessageCreate,
    SentMessageResponse,
    SendMessageRequest,
    SendMessageResponse,
    MarkAllReadResponse,
    ProviderSettingsUpdate,
    ProviderSettingsResponse,
    PollSummary,
    SyncStatusResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Background inbox sync sessions, one per user
sync_manager = SyncManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, optionally start a sync session
    - Shutdown: cancel every sync session and close the provider client
    """
    init_db()
    if settings.SYNC_AUTOSTART_USER_ID:
        sync_manager.start(settings.SYNC_AUTOSTART_USER_ID)
    yield
    await sync_manager.stop_all()


app = FastAPI(
    title="Message Sync API",
    description="Sent/received message store with provider inbox synchronization",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
) -> str:
    """Owner of the request, as asserted by the upstream auth layer."""
    return x_user_id or settings.DEFAULT_USER_ID


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the schema
    is applied, 503 otherwise.

    A missing provider configuration does not affect readiness; sync simply
    stays idle until it is configured.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Received Message Routes
# =============================================================================

@app.get("/messages/received", response_model=List[ReceivedMessageResponse])
async def get_received_messages(
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> List[ReceivedMessageResponse]:
    """List the user's received messages, newest first."""
    messages = list_received(db, user_id)
    return [ReceivedMessageResponse.model_validate(msg) for msg in messages]


@app.post("/messages/received", response_model=ReceivedMessageResponse)
async def create_received_message(
    payload: ReceivedMessageCreate,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> ReceivedMessageResponse:
    """Record a received message by hand. Status starts as unread."""
    received = insert_received(
        db,
        user_id=user_id,
        sender=payload.sender,
        message=payload.message,
        ts=payload.ts,
    )
    return ReceivedMessageResponse.model_validate(received)


@app.put(
    "/messages/received/{message_id}/read",
    response_model=ReceivedMessageResponse,
    responses={404: {"model": ErrorResponse, "description": "Message not found"}},
)
async def mark_message_read(
    message_id: str,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> ReceivedMessageResponse:
    """Mark a received message as read. Repeating the call changes nothing."""
    received = mark_read(db, message_id, user_id=user_id)
    if received is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="message not found"
        )
    return ReceivedMessageResponse.model_validate(received)


@app.put("/messages/received/read-all", response_model=MarkAllReadResponse)
async def mark_all_messages_read(
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> MarkAllReadResponse:
    """Mark all of the user's unread messages as read; returns how many changed."""
    return MarkAllReadResponse(updated=mark_all_read(db, user_id))


# =============================================================================
# Sent Message Routes
# =============================================================================

@app.get("/messages/sent", response_model=List[SentMessageResponse])
async def get_sent_messages(
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> List[SentMessageResponse]:
    """List the user's sent messages, newest first."""
    messages = list_sent(db, user_id)
    return [SentMessageResponse.model_validate(msg) for msg in messages]


@app.post("/messages/sent", response_model=SentMessageResponse)
async def create_sent_message(
    payload: SentMessageCreate,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> SentMessageResponse:
    sent = insert_sent(
        db,
        user_id=user_id,
        recipient=payload.recipient,
        message=payload.message,
        status=payload.status,
    )
    return SentMessageResponse.model_validate(sent)


@app.post(
    "/messages/send",
    response_model=SendMessageResponse,
    responses={
        409: {"model": ErrorResponse, "description": "Provider token not configured"},
        502: {"model": ErrorResponse, "description": "Provider rejected the message"},
    },
)
async def send_message(
    payload: SendMessageRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
) -> SendMessageResponse:
    """
    Send a message through the provider and record it.

    The stored body carries the media link, when given, after the text.
    A provider failure is still recorded, with status failed. When the
    message went out but could not be stored, saved is false.
    """
    token = resolve_token(db)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="provider token not configured"
        )

    stored_body = payload.message
    if payload.link:
        stored_body = f"{payload.message}\n\nAttachment: {payload.link}"

    try:
        await sync_manager.client.send_message(
            token, payload.recipient, payload.message, link=payload.link
        )
    except ProviderError as e:
        logger.error(f"Send to {payload.recipient} failed: {e.message}")
        _record_sent(db, user_id, payload.recipient, stored_body, STATUS_FAILED)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="provider rejected message"
        )

    # The provider already accepted the message; a storage error must not
    # turn into a failure the client would retry
    sent = _record_sent(db, user_id, payload.recipient, stored_body, STATUS_SENT)
    return SendMessageResponse(
        status=STATUS_SENT,
        saved=sent is not None,
        record=SentMessageResponse.model_validate(sent) if sent is not None else None,
    )


def _record_sent(db: Session, user_id: str, recipient: str, body: str, sent_status: str):
    """Store a sent message, logging instead of raising on storage errors."""
    try:
        return insert_sent(db, user_id=user_id, recipient=recipient, message=body, status=sent_status)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to record {sent_status} message to {recipient}: {e}")
        return None


# =============================================================================
# Provider Settings Routes
# =============================================================================

def _provider_settings_response(row) -> ProviderSettingsResponse:
    if row is None:
        return ProviderSettingsResponse(configured=False)
    return ProviderSettingsResponse(
        token=mask_token(row.token),
        phone_number=row.phone_number,
        configured=bool(row.token and row.phone_number),
        updated_at=row.updated_at,
    )


@app.get("/provider-settings", response_model=ProviderSettingsResponse)
async def read_provider_settings(db: Session = Depends(get_db)) -> ProviderSettingsResponse:
    return _provider_settings_response(get_provider_settings(db))


@app.put("/provider-settings", response_model=ProviderSettingsResponse)
async def write_provider_settings(
    payload: ProviderSettingsUpdate,
    db: Session = Depends(get_db),
) -> ProviderSettingsResponse:
    """Save the provider token and phone number. Sync picks them up on its next run."""
    row = update_provider_settings(db, token=payload.token, phone_number=payload.phone_number)
    return _provider_settings_response(row)


# =============================================================================
# Sync Routes
# =============================================================================

@app.post("/sync/sessions", response_model=SyncStatusResponse)
async def start_sync_session(user_id: str = Depends(get_user_id)) -> SyncStatusResponse:
    """
    Start background sync for the user: a poll every POLL_INTERVAL_SECONDS
    and one backfill after BACKFILL_DELAY_SECONDS. Starting a running session
    is a no-op.
    """
    session = sync_manager.start(user_id)
    return session.status()


@app.delete("/sync/sessions", response_model=SyncStatusResponse)
async def stop_sync_session(user_id: str = Depends(get_user_id)) -> SyncStatusResponse:
    """Cancel the user's poller and any pending backfill."""
    await sync_manager.stop(user_id)
    return SyncStatusResponse(user_id=user_id, running=False)


@app.post("/sync/poll", response_model=PollSummary)
async def poll_now(user_id: str = Depends(get_user_id)) -> PollSummary:
    """Run one poll tick immediately."""
    return await sync_manager.poll_now(user_id)


@app.get("/sync/status", response_model=SyncStatusResponse)
async def sync_status(user_id: str = Depends(get_user_id)) -> SyncStatusResponse:
    session = sync_manager.get(user_id)
    if session is None:
        return SyncStatusResponse(user_id=user_id, running=False)
    return session.status()


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
