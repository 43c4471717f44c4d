import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from chatsync.aio import cancel_suppress, ensure_task
from chatsync.config import Settings, settings
from chatsync.errors import (
    ChatSyncError,
    ContactNotFoundError,
    InvalidRequestError,
    NotReadyError,
    ProviderUnavailableError,
    SessionNotFoundError,
)
from chatsync.handles import Provider, load_provider
from chatsync.history import HistorySync
from chatsync.ingest import MessageIngestor
from chatsync.logging_utils import RequestLoggingMiddleware, log_session_data, setup_logging
from chatsync.metrics import get_metrics, get_metrics_content_type
from chatsync.notifier import EventNotifier
from chatsync.schemas import (
    ConversationResponse,
    ConversationsResponse,
    ErrorResponse,
    FetchHistoryRequest,
    FetchHistoryResponse,
    HealthResponse,
    MessageResponse,
    QuickRepliesResponse,
    QuickReplyCreatedResponse,
    QuickReplyCreateRequest,
    QuickReplyDeleteRequest,
    QuickReplyResponse,
    SendMessageRequest,
    SessionNameRequest,
    SessionResponse,
    SessionsResponse,
    StartSessionRequest,
    StartSessionResponse,
    SuccessResponse,
    SyncSelectedRequest,
    UpdateContactRequest,
)
from chatsync.sessions import SessionManager
from chatsync import storage
from chatsync.utils import normalize_phone


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


# =============================================================================
# Service Wiring
# =============================================================================

@dataclass
class Services:
    notifier: EventNotifier
    ingestor: MessageIngestor
    manager: SessionManager
    history: HistorySync


def build_services(
    config: Settings,
    provider: Optional[Provider] = None,
    session_factory: sessionmaker = storage.SessionLocal,
) -> Services:
    """Construct the service graph; nothing here touches the event loop."""
    if provider is None:
        provider = load_provider(config.CLIENT_PROVIDER)

    notifier = EventNotifier()
    ingestor = MessageIngestor(session_factory)
    manager = SessionManager(
        provider,
        ingestor,
        notifier,
        session_factory,
        start_timeout=config.START_TIMEOUT_SECONDS,
        list_chats_limit=config.LIST_CHATS_LIMIT,
        list_chats_delay_ms=config.LIST_CHATS_DELAY_MS,
    )
    history = HistorySync(
        manager,
        ingestor,
        notifier,
        session_factory,
        min_local_messages=config.HISTORY_MIN_LOCAL_MESSAGES,
        fetch_batch=config.HISTORY_FETCH_BATCH,
        default_limit=config.HISTORY_DEFAULT_LIMIT,
        per_chat_limit=config.SYNC_PER_CHAT_LIMIT,
        inter_chat_delay_ms=config.SYNC_INTER_CHAT_DELAY_MS,
        sync_all_limit=config.SYNC_ALL_CHATS_LIMIT,
        catchup_max_chats=config.CATCHUP_MAX_CHATS,
        catchup_per_chat=config.CATCHUP_MESSAGES_PER_CHAT,
        catchup_delay_ms=config.CATCHUP_CHAT_DELAY_MS,
    )
    return Services(notifier=notifier, ingestor=ingestor, manager=manager, history=history)


def get_services(request: Request) -> Services:
    return request.app.state.services


# =============================================================================
# Error Mapping
# =============================================================================

ERROR_STATUS = {
    InvalidRequestError: status.HTTP_400_BAD_REQUEST,
    SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    ContactNotFoundError: status.HTTP_404_NOT_FOUND,
    NotReadyError: status.HTTP_409_CONFLICT,
    ProviderUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _error(status_code: int, reason: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=reason).model_dump())


async def chatsync_error_handler(request: Request, exc: ChatSyncError) -> JSONResponse:
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.warning(f"{request.url.path} failed: {exc}")
    return _error(status_code, str(exc))


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    reasons = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        reasons.append(f"{location}: {err.get('msg')}" if location else err.get("msg", "invalid request"))
    logger.warning(f"{request.url.path} validation error: {reasons}")
    return _error(status.HTTP_400_BAD_REQUEST, "; ".join(reasons) or "invalid request")


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(f"{request.url.path} database error: {exc}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "database error")


router = APIRouter()


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied, otherwise 503.
    """
    if not storage.check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Session Routes
# =============================================================================

@router.post(
    "/start-session",
    response_model=StartSessionResponse,
    responses={
        400: {"model": ErrorResponse, "description": "sessionName missing"},
        500: {"model": ErrorResponse, "description": "Handle could not be started"},
    },
)
async def start_session(
    request: Request,
    body: StartSessionRequest,
    services: Services = Depends(get_services),
) -> StartSessionResponse:
    """
    Start (or re-attach to) a session and wait for its first pairing code
    or ready event.

    Idempotent: a session that already has a live handle is left alone and
    its current status/pairing code is returned.
    """
    logger.info(f"POST /start-session: {body.session_name}")
    result = await services.manager.start(body.session_name, body.owner_id, wait=True)

    if not result.success:
        log_session_data(request, body.session_name, "start_failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.error)

    log_session_data(request, body.session_name, "already_running" if result.already_running else "started")
    return StartSessionResponse(session_id=result.session_name, status=result.status, pairing=result.pairing)


@router.post("/delete-session", response_model=SuccessResponse)
async def delete_session(
    request: Request,
    body: SessionNameRequest,
    services: Services = Depends(get_services),
) -> SuccessResponse:
    """Sign out, tear down the handle and delete the session with its history."""
    logger.info(f"POST /delete-session: {body.session_name}")
    existed = await services.manager.delete(body.session_name)
    log_session_data(request, body.session_name, "deleted" if existed else "not_found")
    return SuccessResponse()


@router.get("/sessions", response_model=SessionsResponse)
async def list_sessions(db: Session = Depends(storage.get_db)) -> SessionsResponse:
    """All persisted sessions with their last known status."""
    records = storage.list_sessions(db)
    return SessionsResponse(sessions=[SessionResponse.model_validate(record) for record in records])


# =============================================================================
# Conversation Routes
# =============================================================================

@router.post("/fetch-history", response_model=FetchHistoryResponse)
async def fetch_history(
    request: Request,
    body: FetchHistoryRequest,
    services: Services = Depends(get_services),
) -> FetchHistoryResponse:
    """
    Messages of one conversation, oldest first.

    Backfills from the live handle when the store holds too few.
    """
    messages = await services.history.load_history(body.session_name, body.contact_id, body.limit, body.before_id)
    log_session_data(request, body.session_name, "ok")
    return FetchHistoryResponse(messages=[MessageResponse.model_validate(message) for message in messages])


@router.post("/send-message", response_model=SuccessResponse)
async def send_message(
    request: Request,
    body: SendMessageRequest,
    services: Services = Depends(get_services),
) -> SuccessResponse:
    """Send a text message; the session must be connected."""
    await services.manager.send_message(body.session_name, body.target_number, body.text)
    log_session_data(request, body.session_name, "sent")
    return SuccessResponse()


@router.post("/list-conversations", response_model=ConversationsResponse)
async def list_conversations(
    request: Request,
    body: SessionNameRequest,
    services: Services = Depends(get_services),
) -> ConversationsResponse:
    """One-to-one chats of a connected session, most recent first."""
    conversations = await services.manager.list_conversations(body.session_name)
    log_session_data(request, body.session_name, "ok")
    return ConversationsResponse(chats=[ConversationResponse.model_validate(c) for c in conversations])


@router.post("/sync-selected", response_model=SuccessResponse)
async def sync_selected(
    request: Request,
    body: SyncSelectedRequest,
    services: Services = Depends(get_services),
) -> SuccessResponse:
    """
    Start a paced bulk import of the selected conversations.

    Returns immediately; progress arrives as sync-status / sync-progress /
    sync-complete events.
    """
    logger.info(f"POST /sync-selected: {body.session_name}, {len(body.contact_ids)} chats")
    services.history.sync_selected(body.session_name, body.contact_ids, body.per_chat_limit)
    log_session_data(request, body.session_name, "sync_started")
    return SuccessResponse()


@router.post("/update-contact", response_model=SuccessResponse)
async def update_contact(
    request: Request,
    body: UpdateContactRequest,
    db: Session = Depends(storage.get_db),
) -> SuccessResponse:
    """Explicit edit of a contact's display name, email, notes and tags."""
    record = storage.get_session_by_name(db, body.session_id)
    if record is None:
        raise SessionNotFoundError(body.session_id)

    phone_number = normalize_phone(body.contact_id)
    if phone_number is None:
        raise InvalidRequestError("contactId must contain digits")

    contact = storage.get_contact(db, record.id, phone_number)
    if contact is None:
        raise ContactNotFoundError(body.session_id, phone_number)

    storage.update_contact(db, contact, body.updates.model_dump(exclude_unset=True))
    log_session_data(request, body.session_id, "contact_updated")
    return SuccessResponse()


# =============================================================================
# Quick Reply Routes
# =============================================================================

@router.get("/quick-replies", response_model=QuickRepliesResponse)
async def list_quick_replies(db: Session = Depends(storage.get_db)) -> QuickRepliesResponse:
    replies = storage.list_quick_replies(db)
    return QuickRepliesResponse(data=[QuickReplyResponse.model_validate(reply) for reply in replies])


@router.post("/quick-replies", response_model=QuickReplyCreatedResponse)
async def create_quick_reply(
    body: QuickReplyCreateRequest,
    db: Session = Depends(storage.get_db),
) -> QuickReplyCreatedResponse:
    reply = storage.create_quick_reply(db, body.title, body.message)
    return QuickReplyCreatedResponse(data=QuickReplyResponse.model_validate(reply))


@router.post("/delete-quick-reply", response_model=SuccessResponse)
async def delete_quick_reply(
    body: QuickReplyDeleteRequest,
    db: Session = Depends(storage.get_db),
) -> SuccessResponse:
    if not storage.delete_quick_reply(db, body.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"quick reply {body.id} not found")
    return SuccessResponse()


# =============================================================================
# Metrics and Events
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


@router.websocket("/events")
async def events(websocket: WebSocket) -> None:
    """
    Stream lifecycle and sync events as JSON.

    Optional ?session=<name> limits the stream to one session.
    """
    services: Services = websocket.app.state.services
    session_filter = websocket.query_params.get("session")
    # Subscribe before accepting so nothing published after the handshake is missed
    subscription = services.notifier.subscribe()
    await websocket.accept()
    try:
        async for event in subscription:
            if session_filter and event.session_name != session_filter:
                continue
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        logger.debug("Event subscriber disconnected")
    finally:
        subscription.close()


# =============================================================================
# Application
# =============================================================================

def create_app(services: Optional[Services] = None, restore_on_startup: bool = True) -> FastAPI:
    """
    Build the FastAPI application around a service graph.

    Startup creates tables, wires services (from settings unless given) and
    restores previously connected sessions in the background. Shutdown tears
    every handle down without signing out.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        storage.init_db()
        app.state.services = services or build_services(settings)

        restore_task = None
        if restore_on_startup:
            restore_task = ensure_task(app.state.services.manager.restore_all(), name="restore-sessions")
        yield
        await cancel_suppress(restore_task)
        await app.state.services.manager.shutdown()

    application = FastAPI(
        title="Chat Sync API",
        description="Session lifecycle and message mirroring for paired messaging accounts",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(RequestLoggingMiddleware)
    application.add_exception_handler(ChatSyncError, chatsync_error_handler)
    application.add_exception_handler(HTTPException, http_error_handler)
    application.add_exception_handler(RequestValidationError, validation_error_handler)
    application.add_exception_handler(SQLAlchemyError, database_error_handler)
    application.include_router(router)
    return application


app = create_app()
