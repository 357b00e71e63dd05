from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable, Generator
from typing import Any

from fastapi import BackgroundTasks, Body, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .config import get_settings
from .currency import CurrencyConverter
from .database import Base, create_db_engine, create_session_factory, session_scope
from .domain import Platform, PurchaseEvent
from .errors import (
    EmptyReceiptError,
    NotificationAuthError,
    ProviderValidationError,
    UnsupportedPlatformError,
)
from .google_client import GooglePlayClient
from .provider import IAPProvider
from .providers import build_currency_converter, build_google_client, get_provider
from .repository import Database, SqlDatabase
from .schemas import (
    ErrorResponse,
    EventResponse,
    NotificationResponse,
    PurchaseRequest,
    ValidateRequest,
)
from .webhook import WebhookSender

# Needed so SQLAlchemy sees model metadata before create_all.
from . import models  # noqa: F401


settings = get_settings()

logger = logging.getLogger("iapsync")
logging.basicConfig(level=settings.log_level.upper(), format="%(message)s")


def _log_event(event: str, **fields: object) -> None:
    payload = {"event": event, **fields}
    logger.info(json.dumps(payload, ensure_ascii=False, default=str))


def _error_response(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


engine = create_db_engine(settings.database_url)
SessionLocal = create_session_factory(engine)

currency_converter: CurrencyConverter | None = None
google_client: GooglePlayClient | None = None
webhook_sender: WebhookSender | None = None

ProviderFactory = Callable[[str, Database], IAPProvider]

app = FastAPI(title=settings.app_name)


@app.on_event("startup")
def startup() -> None:
    global currency_converter, google_client, webhook_sender
    if settings.auto_create_tables:
        Base.metadata.create_all(bind=engine)
    currency_converter = build_currency_converter(settings)
    google_client = build_google_client(settings)
    webhook_sender = WebhookSender(
        endpoint=settings.webhook_outgoing_endpoint,
        auth_token=settings.webhook_auth_token,
        timeout_seconds=settings.webhook_timeout_seconds,
    )
    _log_event(
        "startup",
        environment=settings.environment,
        google_configured=google_client is not None,
        webhooks_enabled=settings.webhooks_enabled,
    )


def get_db() -> Generator[Session, None, None]:
    yield from session_scope(SessionLocal)


def get_database(session: Session = Depends(get_db)) -> Database:
    return SqlDatabase(session)


def get_provider_factory() -> ProviderFactory:
    def factory(platform: str, db: Database) -> IAPProvider:
        return get_provider(
            platform,
            settings,
            db,
            converter=currency_converter,
            google_client=google_client,
        )

    return factory


def get_webhook_sender() -> WebhookSender:
    if webhook_sender is None:
        return WebhookSender(endpoint=None)
    return webhook_sender


@app.middleware("http")
async def add_request_context(request: Request, call_next):  # type: ignore[no-untyped-def]
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        latency_ms = int((time.perf_counter() - started) * 1000)
        _log_event(
            "http_request_error",
            request_id=request_id,
            path=request.url.path,
            method=request.method,
            latency_ms=latency_ms,
        )
        raise
    latency_ms = int((time.perf_counter() - started) * 1000)
    response.headers["X-Request-ID"] = request_id
    _log_event(
        "http_request",
        request_id=request_id,
        path=request.url.path,
        method=request.method,
        status_code=response.status_code,
        latency_ms=latency_ms,
    )
    return response


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = "; ".join(error.get("msg", "invalid value") for error in exc.errors())
    _log_event("invalid_request", request_id=_request_id(request), message=message)
    return _error_response(400, "INVALID_REQUEST", message)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    _log_event(
        "http_exception",
        request_id=_request_id(request),
        status_code=exc.status_code,
        message=str(exc.detail),
    )
    return _error_response(exc.status_code, "HTTP_ERROR", str(exc.detail))


@app.exception_handler(ProviderValidationError)
async def provider_validation_handler(request: Request, exc: ProviderValidationError) -> JSONResponse:
    _log_event(
        "receipt_invalid",
        request_id=_request_id(request),
        provider_code=exc.code,
        message=str(exc),
    )
    return _error_response(400, "RECEIPT_INVALID", str(exc))


@app.exception_handler(UnsupportedPlatformError)
async def unsupported_platform_handler(request: Request, exc: UnsupportedPlatformError) -> JSONResponse:
    return _error_response(400, "UNSUPPORTED_PLATFORM", str(exc))


@app.exception_handler(EmptyReceiptError)
async def empty_receipt_handler(request: Request, exc: EmptyReceiptError) -> JSONResponse:
    _log_event("receipt_empty", request_id=_request_id(request), message=str(exc))
    return _error_response(400, "EMPTY_RECEIPT", str(exc))


@app.exception_handler(NotificationAuthError)
async def notification_auth_handler(request: Request, exc: NotificationAuthError) -> JSONResponse:
    _log_event(
        "notification_rejected",
        request_id=_request_id(request),
        path=request.url.path,
        message=str(exc),
    )
    return _error_response(403, "FORBIDDEN", str(exc))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return _error_response(500, "INTERNAL_ERROR", str(exc) or exc.__class__.__name__)


def _deliver(
    event: PurchaseEvent,
    sender: WebhookSender,
    background_tasks: BackgroundTasks,
) -> EventResponse:
    # Runs after the response is sent.
    background_tasks.add_task(sender.send, event)
    body = event.to_json()
    return EventResponse(type=body["type"], data=body["data"])


ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


@app.get("/health")
def health() -> dict[str, bool]:
    return {"ok": True}


@app.post("/validate", responses=ERROR_RESPONSES)
def validate(
    payload: ValidateRequest,
    request: Request,
    db: Database = Depends(get_database),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
) -> dict[str, Any]:
    provider = provider_factory(payload.platform, db)
    result = provider.validate(payload.token, payload.sku)
    _log_event("validate_success", request_id=_request_id(request), platform=payload.platform)
    return result.raw()


@app.post("/purchase", response_model=EventResponse, responses=ERROR_RESPONSES)
def purchase(
    payload: PurchaseRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Database = Depends(get_database),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    sender: WebhookSender = Depends(get_webhook_sender),
) -> EventResponse:
    provider = provider_factory(payload.platform, db)
    event = provider.process_token(
        payload.token,
        payload.sku,
        include_newer=payload.import_all,
        user_id=payload.user_id,
        sync_user_id=payload.sync_user_id,
    )
    _log_event(
        "purchase_processed",
        request_id=_request_id(request),
        platform=payload.platform,
        order_id=event.data.order_id,
        event_type=event.type.value,
        user_id=event.data.user_id,
    )
    return _deliver(event, sender, background_tasks)


def _handle_notification(
    platform: Platform,
    notification: dict[str, Any],
    request: Request,
    background_tasks: BackgroundTasks,
    db: Database,
    provider_factory: ProviderFactory,
    sender: WebhookSender,
) -> NotificationResponse:
    if settings.store_incoming_notifications:
        db.add_incoming_notification(platform, notification)
    provider = provider_factory(platform.value, db)
    event = provider.server_notification(notification)
    _log_event(
        "notification_processed",
        request_id=_request_id(request),
        platform=platform.value,
        event_type=event.type.value if event else None,
    )
    if event is None:
        return NotificationResponse()
    return NotificationResponse(event=_deliver(event, sender, background_tasks))


@app.post("/apple/notification", response_model=NotificationResponse, responses=ERROR_RESPONSES)
def apple_notification(
    request: Request,
    background_tasks: BackgroundTasks,
    notification: dict[str, Any] = Body(...),
    db: Database = Depends(get_database),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    sender: WebhookSender = Depends(get_webhook_sender),
) -> NotificationResponse:
    return _handle_notification(
        Platform.IOS, notification, request, background_tasks, db, provider_factory, sender
    )


@app.post("/google/notification", response_model=NotificationResponse, responses=ERROR_RESPONSES)
def google_notification(
    request: Request,
    background_tasks: BackgroundTasks,
    notification: dict[str, Any] = Body(...),
    db: Database = Depends(get_database),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    sender: WebhookSender = Depends(get_webhook_sender),
) -> NotificationResponse:
    return _handle_notification(
        Platform.ANDROID, notification, request, background_tasks, db, provider_factory, sender
    )
