import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from sms_forwarder import __version__
from sms_forwarder.config import Settings, get_settings
from sms_forwarder.errors import ConfigurationError, InvalidInputError, NotFoundError
from sms_forwarder.events import EventRouter
from sms_forwarder.logging_utils import setup_logging, RequestLoggingMiddleware, record_callback_outcome
from sms_forwarder.metrics import get_metrics, get_metrics_content_type
from sms_forwarder.push import PushDispatcher
from sms_forwarder.relay import WebhookRelay
from sms_forwarder.schemas import (
    ActionResponse,
    CallStatusCallback,
    ErrorResponse,
    HealthResponse,
    MessageCountResponse,
    MessagesListResponse,
    PushTokenRequest,
    RegisterTokenResponse,
    ServiceSummary,
    SmsCallback,
    VoiceCallback,
)
from sms_forwarder.storage import DeviceTokenRegistry, MessageStore
from sms_forwarder.telephony import build_twilio_client


logger = logging.getLogger(__name__)

ENDPOINTS = {
    "sms": "/sms",
    "voice": "/voice",
    "callStatus": "/call-status",
    "api": "/api/messages",
    "pushToken": "/api/register-push-token",
    "testPush": "/api/test-push",
}

router = APIRouter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Load persisted messages and push tokens, build the telephony client
    - Shutdown: Close the outbound HTTP client if this app created it
    """
    state = app.state
    state.message_store.load_or_init()
    state.token_registry.load_or_init()
    state.twilio_client = build_twilio_client(state.settings)
    logger.info("Twilio client initialized successfully")
    logger.info(f"SMS Forwarder ready, webhooks: {ENDPOINTS['sms']}, {ENDPOINTS['voice']}, {ENDPOINTS['callStatus']}")
    yield
    if state.owns_http_client:
        await state.http_client.aclose()


# =============================================================================
# Dependencies
# =============================================================================

def get_event_router(request: Request) -> EventRouter:
    return request.app.state.event_router


def get_message_store(request: Request) -> MessageStore:
    return request.app.state.message_store


def get_token_registry(request: Request) -> DeviceTokenRegistry:
    return request.app.state.token_registry


def get_push_dispatcher(request: Request) -> PushDispatcher:
    return request.app.state.push_dispatcher


# =============================================================================
# Telephony Callback Routes
# =============================================================================

@router.post("/sms", response_class=Response)
async def sms_callback(
    request: Request,
    events: EventRouter = Depends(get_event_router),
) -> Response:
    """
    Inbound SMS callback.

    Stores the message, notifies registered devices, relays the webhook and
    acknowledges with an empty response document.
    """
    sid = None
    try:
        form = await request.form()
        callback = SmsCallback.model_validate(dict(form))
        sid = callback.message_sid
        document = await events.handle_sms(callback)
    except Exception as e:
        logger.exception(f"SMS processing error: {e}")
        record_callback_outcome(request, "sms", sid=sid, result="error")
        return PlainTextResponse("Error processing SMS", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    record_callback_outcome(request, "sms", sid=sid)
    return Response(content=document, media_type="text/xml")


@router.post("/voice", response_class=Response)
async def voice_callback(
    request: Request,
    events: EventRouter = Depends(get_event_router),
) -> Response:
    """
    Inbound call callback. Relays the call, then returns the forwarding document.
    """
    sid = None
    try:
        form = await request.form()
        callback = VoiceCallback.model_validate(dict(form))
        sid = callback.call_sid
        document = await events.handle_voice(callback)
    except Exception as e:
        logger.exception(f"Voice processing error: {e}")
        record_callback_outcome(request, "call", sid=sid, result="error")
        return PlainTextResponse("Error processing call", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    record_callback_outcome(request, "call", sid=sid)
    return Response(content=document, media_type="text/xml")


@router.post("/call-status", response_class=PlainTextResponse)
async def call_status_callback(
    request: Request,
    events: EventRouter = Depends(get_event_router),
) -> PlainTextResponse:
    """Call status callback. Relays the completed call details."""
    sid = None
    try:
        form = await request.form()
        callback = CallStatusCallback.model_validate(dict(form))
        sid = callback.call_sid
        body = await events.handle_call_status(callback)
    except Exception as e:
        logger.exception(f"Call status processing error: {e}")
        record_callback_outcome(request, "call_status", sid=sid, result="error")
        return PlainTextResponse("Error processing call status", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    record_callback_outcome(request, "call_status", sid=sid)
    return PlainTextResponse(body)


# =============================================================================
# Messages API Routes
# =============================================================================

@router.get("/api/messages", response_model=MessagesListResponse)
async def list_messages(store: MessageStore = Depends(get_message_store)) -> MessagesListResponse:
    """All stored messages, most recent first."""
    messages = store.all()
    logger.debug(f"GET /api/messages: returning {len(messages)} messages")
    return MessagesListResponse(messages=messages, count=len(messages))


@router.get("/api/messages/count", response_model=MessageCountResponse)
async def message_count(store: MessageStore = Depends(get_message_store)) -> MessageCountResponse:
    total, unread = store.counts()
    return MessageCountResponse(total=total, unread=unread)


@router.post(
    "/api/messages/{message_id}/read",
    response_model=ActionResponse,
    responses={404: {"model": ErrorResponse, "description": "Message not found"}},
)
async def mark_message_read(
    message_id: str,
    store: MessageStore = Depends(get_message_store),
) -> ActionResponse:
    await store.mark_read(message_id)
    return ActionResponse(message="Message marked as read")


@router.post(
    "/api/messages/{message_id}/replied",
    response_model=ActionResponse,
    responses={404: {"model": ErrorResponse, "description": "Message not found"}},
)
async def mark_message_replied(
    message_id: str,
    store: MessageStore = Depends(get_message_store),
) -> ActionResponse:
    """Mark a message replied. A replied message is always read."""
    await store.mark_replied(message_id)
    return ActionResponse(message="Message marked as replied")


# =============================================================================
# Push API Routes
# =============================================================================

@router.post(
    "/api/register-push-token",
    response_model=RegisterTokenResponse,
    responses={400: {"model": ErrorResponse, "description": "Push token missing"}},
)
async def register_push_token(
    request: Request,
    registry: DeviceTokenRegistry = Depends(get_token_registry),
) -> RegisterTokenResponse:
    """
    Register a device for push notifications. Re-registering is a no-op.

    Body: {"token": "<push token>"}
    """
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body.strip() else {}
        token_request = PushTokenRequest.model_validate(payload)
    except (ValueError, ValidationError) as e:
        logger.warning(f"Rejected push token registration body: {e}")
        raise InvalidInputError("Push token is required") from e

    await registry.register(token_request.token)
    return RegisterTokenResponse(
        message="Push token registered successfully",
        registered_tokens=len(registry),
    )


@router.post("/api/test-push", response_model=ActionResponse)
async def test_push(dispatcher: PushDispatcher = Depends(get_push_dispatcher)) -> ActionResponse:
    """Send a test notification to every registered device."""
    report = await dispatcher.dispatch(
        "Test Notification",
        "This is a test push notification from your SMS Forwarder",
        {"type": "test"},
    )
    return ActionResponse(message=f"Test notification sent to {report.attempted} devices")


# =============================================================================
# Service Routes
# =============================================================================

@router.get("/", response_model=ServiceSummary)
async def summary(
    store: MessageStore = Depends(get_message_store),
    registry: DeviceTokenRegistry = Depends(get_token_registry),
) -> ServiceSummary:
    total, unread = store.counts()
    return ServiceSummary(
        endpoints=ENDPOINTS,
        registered_devices=len(registry),
        message_count=total,
        unread_count=unread,
    )


@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(
    response: Response,
    store: MessageStore = Depends(get_message_store),
    registry: DeviceTokenRegistry = Depends(get_token_registry),
) -> HealthResponse:
    """
    Readiness probe - returns 200 only once both persisted collections are loaded.
    Otherwise returns 503 (Service Unavailable).
    """
    if not store.loaded or not registry.loaded:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Persisted state not loaded")
    return HealthResponse(status="ready")


@router.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Application Factory
# =============================================================================

async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=ErrorResponse(error=str(exc)).model_dump(),
    )


async def invalid_input_handler(request: Request, exc: InvalidInputError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(error=str(exc)).model_dump(),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(error="Internal server error").model_dump(),
    )


def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the application and every component it needs.

    Args:
        settings: Validated settings; read from the environment when omitted
        http_client: Shared client for push and webhook calls; created (and
            closed on shutdown) when omitted
    """
    if settings is None:
        settings = get_settings()

    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

    message_store = MessageStore(settings.MESSAGES_FILE)
    token_registry = DeviceTokenRegistry(settings.PUSH_TOKENS_FILE)
    push_dispatcher = PushDispatcher(token_registry, http_client, settings.PUSH_SERVICE_URL)
    webhook_relay = WebhookRelay(http_client, settings.WEBHOOK_URL)
    event_router = EventRouter(
        message_store,
        push_dispatcher,
        webhook_relay,
        forward_to=settings.FORWARD_TO_NUMBER,
        dial_timeout=settings.DIAL_TIMEOUT_SECONDS,
    )

    app = FastAPI(
        title="SMS Forwarder",
        description="Telephony callback relay with message storage and push notifications",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.http_client = http_client
    app.state.owns_http_client = owns_http_client
    app.state.message_store = message_store
    app.state.token_registry = token_registry
    app.state.push_dispatcher = push_dispatcher
    app.state.webhook_relay = webhook_relay
    app.state.event_router = event_router

    # Companion mobile client calls the API from any origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(InvalidInputError, invalid_input_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(router)
    return app


def run() -> None:
    """Entry point: validate configuration, then serve."""
    try:
        settings = get_settings()
    except ConfigurationError as e:
        setup_logging("INFO")
        logger.critical(str(e))
        sys.exit(1)

    setup_logging(settings.LOG_LEVEL)
    uvicorn.run(
        create_app(settings),
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
    )
