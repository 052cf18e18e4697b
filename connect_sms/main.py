import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, status, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from connect_sms.collections import church_messages, church_visitor_messages
from connect_sms.config import settings
from connect_sms.counters import get_unread_counts, mark_conversation_read
from connect_sms.errors import ApiError, api_error_handler, validation_error_handler
from connect_sms.inbound import process_inbound_sms
from connect_sms.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from connect_sms.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from connect_sms.persister import persist_outbound
from connect_sms.phone import normalize_phone
from connect_sms.schemas import (
    CheckMessagesRequest,
    CheckMessagesResponse,
    ErrorResponse,
    HealthResponse,
    MarkReadRequest,
    MarkReadResponse,
    MessageResponse,
    MessagesListResponse,
    ProviderMessageResponse,
    SMSResponsesResponse,
    SendSmsRequest,
    SendSmsResponse,
    UnreadCountsResponse,
)
from connect_sms.sms_provider import SmsProviderError, TwilioSmsProvider, build_sms_provider, get_sms_provider
from connect_sms.storage import init_db, close_db, check_db_health, get_db, get_messages
from connect_sms.sync import fetch_history, fetch_history_concurrently, store_history
from connect_sms.utils import verify_twilio_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Twilio expects TwiML back from the webhook; an empty response sends no reply
EMPTY_TWIML = "<Response></Response>"

HISTORY_SOURCE = "twilio-api"

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Missing or invalid parameters"},
    500: {"model": ErrorResponse, "description": "Provider or storage failure"},
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the SMS provider client
    - Shutdown: release database connections
    """
    init_db()
    app.state.sms_provider = build_sms_provider(settings)
    yield
    app.state.sms_provider = None
    close_db()


app = FastAPI(
    title="Connect SMS API",
    description="Church SMS inbox: inbound attribution, unread counters and provider sync",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOWED_ORIGINS,
    allow_origin_regex=settings.CORS_FALLBACK_ORIGIN_REGEX or None,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Origin", "Accept", "X-Requested-With"],
)
# Added last so it wraps CORS and logs preflights too
app.add_middleware(RequestLoggingMiddleware)

app.add_exception_handler(ApiError, api_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. The SMS provider is configured

    Otherwise returns 503 (Service Unavailable).
    """
    if getattr(request.app.state, "sms_provider", None) is None:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="SMS provider not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Inbound Webhook Route
# =============================================================================

async def _read_webhook_params(request: Request) -> dict:
    """Twilio posts form data; JSON bodies are accepted for manual replays."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            payload = json.loads(await request.body() or b"{}")
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in webhook body: {e}")
            return {}
        return payload if isinstance(payload, dict) else {}

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@app.post(
    "/smsWebhook",
    response_class=Response,
    responses={
        200: {"content": {"text/xml": {}}, "description": "Empty TwiML response"},
        400: {"description": "Missing From or Body"},
        401: {"description": "Invalid Twilio signature"},
    },
)
async def sms_webhook(
    request: Request,
    x_twilio_signature: Annotated[str | None, Header(alias="X-Twilio-Signature")] = None,
    db: Session = Depends(get_db),
) -> Response:
    """
    Receive an inbound SMS from Twilio.

    The sender is attributed to a church and member or visitor, the message
    is stored globally and in the church's collections, and the unread
    counter for the sender is updated. The provider always gets an empty
    TwiML document back on success, including for redelivered messages.
    """
    params = await _read_webhook_params(request)
    sid = params.get("MessageSid") or params.get("SmsSid")
    logger.info(f"Received SMS webhook request: sid={sid}")

    if settings.TWILIO_VALIDATE_WEBHOOK and not verify_twilio_signature(
        str(request.url), params, x_twilio_signature or "", settings.TWILIO_AUTH_TOKEN
    ):
        logger.error("Invalid Twilio signature")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request=request, message_sid=sid, result="invalid_signature")
        return PlainTextResponse("invalid signature", status_code=status.HTTP_401_UNAUTHORIZED)

    from_phone = params.get("From")
    body = params.get("Body")
    if not isinstance(from_phone, str) or not isinstance(body, str) or not from_phone or not body:
        logger.error("Missing required webhook parameters")
        record_webhook_outcome("validation_error")
        log_webhook_data(request=request, message_sid=sid, result="validation_error")
        return PlainTextResponse("Missing parameters", status_code=status.HTTP_400_BAD_REQUEST)

    try:
        outcome = process_inbound_sms(
            db,
            from_phone=from_phone,
            to_phone=params.get("To"),
            body=body,
            twilio_sid=sid,
        )
    except Exception as e:
        logger.exception(f"Error processing SMS webhook: {e}")
        record_webhook_outcome("error")
        log_webhook_data(request=request, message_sid=sid, result="error")
        return PlainTextResponse(
            "Error processing request",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    record_webhook_outcome(outcome.result)
    log_webhook_data(
        request=request,
        message_sid=sid,
        church_id=outcome.attribution.church_id,
        dup=outcome.result == "duplicate",
        result=outcome.result,
    )
    return Response(content=EMPTY_TWIML, media_type="text/xml")


# =============================================================================
# Provider Sync Routes
# =============================================================================

@app.post("/checkTwilioMessages", response_model=CheckMessagesResponse, responses=ERROR_RESPONSES)
async def check_twilio_messages(
    payload: CheckMessagesRequest,
    db: Session = Depends(get_db),
    provider: TwilioSmsProvider = Depends(get_sms_provider),
) -> CheckMessagesResponse:
    """
    Pull the last messages to and from a number out of Twilio and store
    any the database does not have yet.
    """
    phone = normalize_phone(payload.phone_number)
    logger.info(
        f"Checking messages for phone: {phone}, churchId: {payload.church_id}, "
        f"memberId: {payload.member_id or 'none'}, visitorId: {payload.visitor_id or 'none'}"
    )

    try:
        messages = await run_in_threadpool(fetch_history, provider, phone)
        new_count = store_history(
            db,
            "checkTwilioMessages",
            messages,
            phone=phone,
            church_id=payload.church_id,
            member_id=payload.member_id,
            visitor_id=payload.visitor_id,
            source=HISTORY_SOURCE,
        )
    except (SmsProviderError, SQLAlchemyError) as e:
        logger.error(f"Error checking Twilio messages: {e}")
        raise ApiError(500, str(e))

    return CheckMessagesResponse(
        messages=[ProviderMessageResponse.from_provider(m) for m in messages],
        new_message_count=new_count,
    )


@app.get("/getSMSResponses", response_model=SMSResponsesResponse, responses=ERROR_RESPONSES)
async def get_sms_responses(
    phone: Annotated[str, Query(min_length=1)],
    church_id: Annotated[str, Query(alias="churchId", min_length=1)],
    visitor_id: Annotated[str | None, Query(alias="visitorId")] = None,
    db: Session = Depends(get_db),
    provider: TwilioSmsProvider = Depends(get_sms_provider),
) -> SMSResponsesResponse:
    """
    Fetch replies for a visitor conversation from Twilio, storing new ones.
    Both directions are requested from Twilio concurrently.
    """
    formatted = normalize_phone(phone)
    logger.info(f"Fetching SMS responses for phone: {formatted}, church: {church_id}, visitor: {visitor_id or 'unknown'}")

    try:
        messages = await fetch_history_concurrently(provider, formatted)
        new_count = store_history(
            db,
            "getSMSResponses",
            messages,
            phone=formatted,
            church_id=church_id,
            visitor_id=visitor_id,
            source=HISTORY_SOURCE,
        )
    except (SmsProviderError, SQLAlchemyError) as e:
        logger.error(f"Error fetching Twilio messages: {e}")
        raise ApiError(500, str(e))

    return SMSResponsesResponse(
        messages=[ProviderMessageResponse.from_provider(m) for m in messages],
        new_messages=new_count,
    )


# =============================================================================
# Outbound Route
# =============================================================================

@app.post("/sendSMS", response_model=SendSmsResponse, responses=ERROR_RESPONSES)
async def send_sms(
    payload: SendSmsRequest,
    db: Session = Depends(get_db),
    provider: TwilioSmsProvider = Depends(get_sms_provider),
) -> SendSmsResponse:
    """Send an SMS to a member or visitor and record it."""
    to = normalize_phone(payload.to)
    preview = payload.message[:30] + ("..." if len(payload.message) > 30 else "")
    logger.info(
        f"Sending SMS message to {to}: '{preview}', churchId: {payload.church_id}, "
        f"visitorId: {payload.visitor_id or 'none'}, messageId: {payload.message_id or payload.client_message_id or 'none'}"
    )

    try:
        sent = await run_in_threadpool(provider.send, to, payload.message)
    except SmsProviderError as e:
        raise ApiError(500, str(e))

    try:
        persist_outbound(
            db,
            to=to,
            text=payload.message,
            twilio_sid=sent.sid,
            church_id=payload.church_id,
            from_phone=sent.from_ or provider.from_number,
            sender_id=payload.sender_id,
            member_id=payload.member_id,
            member_name=payload.member_name,
            visitor_id=payload.visitor_id,
            visitor_name=payload.visitor_name,
            message_id=payload.message_id,
            client_message_id=payload.client_message_id,
        )
    except SQLAlchemyError as e:
        logger.error(f"SMS {sent.sid} sent but could not be stored: {e}")
        raise ApiError(500, str(e))

    return SendSmsResponse(message_id=sent.sid)


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/messages", response_model=MessagesListResponse, responses=ERROR_RESPONSES)
async def list_messages(
    church_id: Annotated[str, Query(alias="churchId", min_length=1)],
    member_id: Annotated[str | None, Query(alias="memberId")] = None,
    visitor_id: Annotated[str | None, Query(alias="visitorId")] = None,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """
    List a church's stored messages, oldest first.

    Visitor conversations are read from the church's visitorMessages
    collection; everything else from its messages collection.
    """
    if member_id and visitor_id:
        raise ApiError(400, "Pass either memberId or visitorId, not both")

    collection = church_visitor_messages(church_id) if visitor_id else church_messages(church_id)
    messages, total = get_messages(
        db=db,
        collection=collection,
        limit=limit,
        offset=offset,
        member_id=member_id,
        visitor_id=visitor_id,
    )

    return MessagesListResponse(
        data=[MessageResponse.model_validate(msg) for msg in messages],
        total=total,
        limit=limit,
        offset=offset,
    )


@app.get("/unreadCounts", response_model=UnreadCountsResponse)
async def unread_counts(
    church_id: Annotated[str, Query(alias="churchId", min_length=1)],
    db: Session = Depends(get_db),
) -> UnreadCountsResponse:
    """Unread badge counts per member and per visitor of a church."""
    counts = get_unread_counts(db, church_id)
    return UnreadCountsResponse(members=counts["members"], visitors=counts["visitors"])


@app.post("/markMessagesRead", response_model=MarkReadResponse, responses=ERROR_RESPONSES)
async def mark_messages_read(
    payload: MarkReadRequest,
    db: Session = Depends(get_db),
) -> MarkReadResponse:
    """Mark a member's or visitor's conversation read and reset their badge."""
    if bool(payload.member_id) == bool(payload.visitor_id):
        raise ApiError(400, "Exactly one of memberId or visitorId is required")

    try:
        updated, unread = mark_conversation_read(
            db,
            church_id=payload.church_id,
            member_id=payload.member_id,
            visitor_id=payload.visitor_id,
            reader_id=payload.reader_id,
        )
    except SQLAlchemyError as e:
        logger.error(f"Error marking messages read: {e}")
        raise ApiError(500, str(e))

    return MarkReadResponse(updated=updated, unread_count=unread)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in text exposition format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
