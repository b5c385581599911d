import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError as SchemaError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from sms_gateway import __version__, inbox
from sms_gateway.config import settings
from sms_gateway.cors import CorsMiddleware
from sms_gateway.errors import AuthError, GatewayError, InternalError, ValidationError
from sms_gateway.events import received_event
from sms_gateway.hub import hub
from sms_gateway.logging_utils import setup_logging, RequestLoggingMiddleware, attach_log_data
from sms_gateway.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_auth_failure,
    record_incoming_outcome,
    record_send_outcome,
)
from sms_gateway.models import MessageKind
from sms_gateway.schemas import (
    DeleteResponse,
    ErrorResponse,
    IncomingMessageRequest,
    InboxResponse,
    MarkReadResponse,
    MessageResponse,
    SendRequest,
    SendResponse,
    StatusResponse,
    WebhookResponse,
)
from sms_gateway.sender import SendOrchestrator, get_orchestrator, orchestrator
from sms_gateway.status import build_status, service_state
from sms_gateway.storage import SessionLocal, get_db, init_db, insert_message
from sms_gateway.transport import Transport, get_transport
from sms_gateway.utils import verify_api_key, verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize the message store, mark the gateway running
    - Shutdown: Mark stopped and let in-flight sends finish
    """
    init_db()
    service_state.set_running(True)
    logger.info("SMS gateway started", extra={"port": settings.PORT, "send_mode": settings.SEND_MODE})
    yield
    service_state.set_running(False)
    await orchestrator.drain(settings.SHUTDOWN_GRACE_SECONDS)
    logger.info("SMS gateway stopped")


app = FastAPI(
    title="SMS Gateway API",
    description="Send, read and manage text messages over HTTP",
    version=__version__,
    lifespan=lifespan,
)

# Outermost last: request logging wraps the CORS gate
app.add_middleware(CorsMiddleware)
app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Error Handling
# =============================================================================

def error_response(status_code: int, message: str, headers: Optional[dict] = None, **extra) -> JSONResponse:
    content = {"error": message, "success": False}
    content.update(extra)
    response = JSONResponse(status_code=status_code, content=content, headers=headers)
    response.headers["Access-Control-Allow-Origin"] = "*"
    return response


def describe_errors(errors: list) -> str:
    """Flatten pydantic error dicts into one readable line."""
    parts = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else error.get("msg", ""))
    return "; ".join(parts)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return error_response(exc.status_code, exc.message, **exc.extra)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Router 404/405 in the gateway's JSON error shape."""
    return error_response(exc.status_code, str(exc.detail), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(status.HTTP_400_BAD_REQUEST, f"Bad Request: {describe_errors(exc.errors())}")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    error = InternalError()
    return error_response(error.status_code, error.message)


# =============================================================================
# Authentication
# =============================================================================

async def require_api_key(
    request: Request,
    x_api_key: Annotated[Optional[str], Header(alias="X-API-Key")] = None,
) -> None:
    """Reject the request unless X-API-Key equals the configured secret."""
    if not verify_api_key(x_api_key, settings.API_KEY):
        logger.warning("Rejected request with missing or invalid API key")
        record_auth_failure()
        attach_log_data(request, result="unauthorized")
        raise AuthError()


def parse_body(raw_body: bytes, model: type[BaseModel]) -> BaseModel:
    """Decode a JSON body into model, raising ValidationError (400) on failure."""
    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        raise ValidationError(f"Bad Request: invalid JSON ({e})")
    try:
        return model.model_validate(payload)
    except SchemaError as e:
        raise ValidationError(f"Bad Request: {describe_errors(e.errors())}")


# Every route on this router requires X-API-Key
protected = APIRouter(
    dependencies=[Depends(require_api_key)],
    responses={401: {"model": ErrorResponse, "description": "Missing or invalid API key"}},
)


# =============================================================================
# Status Route
# =============================================================================

@app.get("/status", response_model=StatusResponse)
def get_status(transport: Transport = Depends(get_transport)) -> StatusResponse:
    """
    Liveness and capability flags. No authentication.

    Capabilities are recomputed from the transport and the store on every call.
    """
    return build_status(transport)


# =============================================================================
# Inbox Routes
# =============================================================================

@protected.get("/inbox", response_model=InboxResponse)
def list_messages(
    limit: Annotated[int, Query(ge=1, description="Maximum number of messages to return")] = inbox.DEFAULT_LIMIT,
    unread: Annotated[bool, Query(description="Only unread messages")] = False,
    from_param: Annotated[Optional[str], Query(alias="from", description="Sender address substring")] = None,
    db: Session = Depends(get_db),
) -> InboxResponse:
    """
    List inbox messages, newest first.

    Query Parameters:
        - limit: Maximum messages (default 50, no upper bound)
        - unread: Only unread messages
        - from: Substring of the sender address

    totalCount and unreadCount cover the whole inbox regardless of filters.
    """
    logger.info(f"GET /inbox: limit={limit}, unread={unread}, from={from_param}")
    return inbox.list_inbox(db, limit=limit, only_unread=unread, from_address=from_param)


@protected.get(
    "/inbox/{message_id}",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_message(message_id: str, db: Session = Depends(get_db)) -> MessageResponse:
    return inbox.get_message(db, message_id)


@protected.post(
    "/inbox/{message_id}/read",
    response_model=MarkReadResponse,
    response_model_exclude_none=True,
    responses={400: {"model": MarkReadResponse}},
)
def mark_message_read(message_id: str, db: Session = Depends(get_db)):
    """Mark a message read. Repeating the call on a read message succeeds."""
    if inbox.mark_read(db, message_id):
        return MarkReadResponse(success=True, id=message_id)
    result = MarkReadResponse(success=False, id=message_id, error="Message not found")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.model_dump())


@protected.delete(
    "/inbox/{message_id}",
    response_model=DeleteResponse,
    response_model_exclude_none=True,
    responses={400: {"model": DeleteResponse}},
)
def delete_message(message_id: str, db: Session = Depends(get_db)):
    """Delete a message. An unknown id is reported with success=false."""
    deleted = inbox.delete(db, message_id)
    if deleted > 0:
        return DeleteResponse(success=True, id=message_id, deleted=deleted)
    result = DeleteResponse(success=False, id=message_id, deleted=0, error="Message not found")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.model_dump())


# =============================================================================
# Send Route
# =============================================================================

@protected.post(
    "/send",
    response_model=SendResponse,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse, "description": "Malformed body"}},
)
async def send_message(
    request: Request,
    sender: SendOrchestrator = Depends(get_orchestrator),
    transport: Transport = Depends(get_transport),
) -> SendResponse:
    """
    Send a text message.

    Body: {"to": "<address>", "message": "<text>"}

    With SEND_MODE=async the reply only confirms acceptance; the delivery
    outcome is published as a 'sent' event with the same messageId.
    """
    raw_body = await request.body()
    try:
        send_request = parse_body(raw_body, SendRequest)
    except ValidationError:
        record_send_outcome("validation_error")
        attach_log_data(request, result="validation_error")
        raise

    result = await sender.submit(send_request, transport, settings.SEND_MODE)
    attach_log_data(
        request,
        message_id=result.message_id,
        send_mode=settings.SEND_MODE,
        result="accepted" if settings.SEND_MODE == "async" else ("sent" if result.success else "failed"),
    )
    return result


# =============================================================================
# Inbound Message Route
# =============================================================================

@protected.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={400: {"model": ErrorResponse, "description": "Malformed body"}},
)
async def receive_message(
    request: Request,
    x_signature: Annotated[Optional[str], Header(alias="X-Signature")] = None,
) -> WebhookResponse:
    """
    Ingest a message received by the device radio.

    Stores it as an unread inbox message and publishes a 'received' event.
    When WEBHOOK_SECRET is set, X-Signature must carry the hex
    HMAC-SHA256 of the raw body.
    """
    raw_body = await request.body()

    if settings.WEBHOOK_SECRET:
        if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
            logger.error("Invalid or missing X-Signature on inbound message")
            record_incoming_outcome("invalid_signature")
            attach_log_data(request, result="invalid_signature")
            raise AuthError("invalid signature")

    try:
        incoming = parse_body(raw_body, IncomingMessageRequest)
    except ValidationError:
        record_incoming_outcome("validation_error")
        attach_log_data(request, result="validation_error")
        raise

    def store():
        with SessionLocal() as db:
            message = insert_message(
                db,
                address=incoming.from_address,
                body=incoming.body,
                kind=MessageKind.INBOX.value,
                read=False,
                date=incoming.timestamp,
            )
            return received_event(str(message.id), message.address, message.body, message.date)

    event = await run_in_threadpool(store)
    subscribers = hub.publish(event)

    message_id = event.data["id"]
    record_incoming_outcome("created")
    attach_log_data(request, message_id=message_id, result="created", subscribers=subscribers)
    return WebhookResponse(id=message_id)


# =============================================================================
# Metrics Route
# =============================================================================

@protected.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    The one route that answers in Prometheus text format instead of JSON.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


app.include_router(protected)
