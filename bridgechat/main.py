import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Literal, Optional

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from bridgechat import services
from bridgechat.auth import require_service, require_user
from bridgechat.carrier import SmsGateway, TwilioGateway
from bridgechat.config import Settings, get_settings, settings as app_settings
from bridgechat.credentials import ServiceCredential, UserCredential
from bridgechat.dispatcher import dispatch_message
from bridgechat.domain import AppUserRef, Membership, Participant, SmsParticipantRef, member_id
from bridgechat.errors import BridgeChatError, ConfigurationError, MalformedRequestError, SignatureError
from bridgechat.logging_utils import setup_logging, RequestLoggingMiddleware, log_carrier_data
from bridgechat.metrics import (
    record_inbound_outcome,
    record_status_callback,
    get_metrics,
    get_metrics_content_type,
)
from bridgechat.reconciler import reconcile_status
from bridgechat.router import route_inbound_sms
from bridgechat.schemas import (
    AddAppUserRequest,
    AddSmsParticipantRequest,
    AddSmsParticipantResponse,
    DispatchRequest,
    DispatchResponse,
    ErrorResponse,
    GroupCreateRequest,
    GroupDetailResponse,
    GroupMemberResponse,
    GroupResponse,
    GroupsListResponse,
    GroupUpdateRequest,
    HealthResponse,
    MembershipResponse,
    MessageResponse,
    MessagesListResponse,
    ProfileResponse,
    ProfileUpdateRequest,
    SendMessageRequest,
    SendMessageResponse,
)
from bridgechat.services import ActionResult
from bridgechat.storage import init_db, check_db_health, get_db
from bridgechat.utils import EMPTY_TWIML, authenticate_carrier_request


# Setup structured JSON logging
setup_logging(app_settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Carrier-facing outcome label for each error raised before routing
_CARRIER_ERROR_RESULTS = {
    SignatureError: "invalid_signature",
    MalformedRequestError: "malformed",
    ConfigurationError: "config_error",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="BridgeChat API",
    description="Group messaging bridge between app users and SMS participants",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(BridgeChatError)
async def bridgechat_error_handler(request: Request, exc: BridgeChatError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def get_gateway(settings: Settings = Depends(get_settings)) -> Optional[SmsGateway]:
    """Carrier gateway, or None when carrier credentials are not configured."""
    if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_AUTH_TOKEN:
        return None
    return TwilioGateway.from_settings(settings)


def _carrier_error_result(exc: BridgeChatError) -> str:
    return _CARRIER_ERROR_RESULTS.get(type(exc), "error")


def _unwrap(result: ActionResult, response: Response):
    """Raise the action's failure as an HTTP error, or return its data."""
    if not result.success:
        raise HTTPException(status_code=result.status_code, detail=result.error)
    response.status_code = result.status_code
    return result.data


def _membership_response(membership: Membership) -> MembershipResponse:
    return MembershipResponse(
        group_id=membership.group_id,
        kind=membership.member.kind,
        member_id=member_id(membership.member),
        role=membership.role,
        joined_at=membership.joined_at,
    )


def _group_member_response(membership: Membership, participant: Optional[Participant]) -> GroupMemberResponse:
    return GroupMemberResponse(
        kind=membership.member.kind,
        member_id=member_id(membership.member),
        role=membership.role,
        joined_at=membership.joined_at,
        display_name=participant.display_name if participant else None,
        phone_number=participant.phone_number if participant else None,
    )


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
async def health_ready(response: Response, settings: Settings = Depends(get_settings)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. TWILIO_AUTH_TOKEN is set (inbound webhooks cannot be verified otherwise)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.TWILIO_AUTH_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="TWILIO_AUTH_TOKEN not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Carrier Webhook Routes
# =============================================================================

@app.post(
    "/webhooks/twilio/sms",
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        400: {"model": ErrorResponse, "description": "Missing required fields"},
    }
)
async def twilio_inbound_sms(
    request: Request,
    x_twilio_signature: Annotated[str | None, Header(alias="X-Twilio-Signature")] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Response:
    """
    Receive an inbound SMS from the carrier.

    - Verifies X-Twilio-Signature against TWILIO_WEBHOOK_URL (or the request URL)
    - Routes the message into the group bound to the `To` number
    - Acknowledges with empty TwiML whether or not the message was admitted,
      so the carrier does not retry unroutable messages
    """
    params = dict(await request.form())
    message_sid = params.get("MessageSid")
    url = settings.TWILIO_WEBHOOK_URL or str(request.url)

    try:
        authenticate_carrier_request(
            x_twilio_signature or "",
            url,
            params,
            settings.TWILIO_AUTH_TOKEN,
            enforce=settings.signature_checks_enabled,
        )
        result = route_inbound_sms(db, params)
    except BridgeChatError as e:
        outcome = _carrier_error_result(e)
        logger.error(f"Inbound SMS rejected: {e.message}")
        record_inbound_outcome(outcome)
        log_carrier_data(request, message_sid=message_sid, result=outcome)
        raise

    record_inbound_outcome(result.outcome.value)
    log_carrier_data(request, message_sid=message_sid, result=result.outcome.value)
    return Response(content=EMPTY_TWIML, media_type="application/xml")


@app.post(
    "/webhooks/twilio/status",
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        400: {"model": ErrorResponse, "description": "Missing required fields"},
    }
)
async def twilio_status_callback(
    request: Request,
    x_twilio_signature: Annotated[str | None, Header(alias="X-Twilio-Signature")] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Response:
    """
    Receive a delivery status callback for an outbound SMS.

    Unknown message ids are acknowledged without changes.
    """
    params = dict(await request.form())
    message_sid = params.get("MessageSid")
    url = settings.TWILIO_STATUS_CALLBACK_URL or str(request.url)

    try:
        authenticate_carrier_request(
            x_twilio_signature or "",
            url,
            params,
            settings.TWILIO_AUTH_TOKEN,
            enforce=settings.signature_checks_enabled,
        )
        result = reconcile_status(db, params)
    except BridgeChatError as e:
        outcome = _carrier_error_result(e)
        logger.error(f"Status callback rejected: {e.message}")
        record_status_callback(outcome)
        log_carrier_data(request, message_sid=message_sid, result=outcome)
        raise

    record_status_callback(result.outcome.value)
    log_carrier_data(request, message_sid=message_sid, result=result.outcome.value)
    return PlainTextResponse("OK")


# =============================================================================
# Internal Dispatch Route
# =============================================================================

@app.post(
    "/internal/dispatch",
    response_model=DispatchResponse,
    response_model_exclude_none=True,
    responses={
        401: {"model": ErrorResponse, "description": "Service credential required"},
        404: {"model": ErrorResponse, "description": "Message not found"},
        500: {"model": ErrorResponse, "description": "Dispatch failed"},
    }
)
def internal_dispatch(
    body: DispatchRequest,
    credential: ServiceCredential = Depends(require_service),
    db: Session = Depends(get_db),
    gateway: Optional[SmsGateway] = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> DispatchResponse:
    """
    Fan an app-origin message out to the group's SMS participants.

    Called by the store's insert trigger (or any trusted worker) with the
    service role key as bearer token.
    """
    logger.info(f"Dispatch requested for message {body.message_id} ({credential.reason})")
    if gateway is None:
        logger.error("Carrier credentials not configured")
        raise ConfigurationError("Server configuration error")

    report = dispatch_message(db, gateway, settings, body.message_id)
    if report.skipped:
        return DispatchResponse(skipped=True)
    return DispatchResponse(sent=report.sent, total=report.total, status=report.status)


# =============================================================================
# Profile Routes
# =============================================================================

@app.get("/profile", response_model=ProfileResponse)
def get_profile(
    response: Response,
    credential: UserCredential = Depends(require_user),
    db: Session = Depends(get_db),
):
    result = services.get_profile(db, credential)
    return _unwrap(result, response)


@app.patch("/profile", response_model=ProfileResponse)
def update_profile(
    body: ProfileUpdateRequest,
    response: Response,
    credential: UserCredential = Depends(require_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    result = services.update_profile(db, credential, settings, body.model_dump(exclude_unset=True))
    return _unwrap(result, response)


# =============================================================================
# Group Routes
# =============================================================================

@app.get("/groups", response_model=GroupsListResponse)
def list_groups(
    response: Response,
    credential: UserCredential = Depends(require_user),
    db: Session = Depends(get_db),
) -> GroupsListResponse:
    result = services.list_my_groups(db, credential)
    groups = _unwrap(result, response)
    return GroupsListResponse(data=[GroupResponse.model_validate(g) for g in groups])


@app.get("/groups/{group_id}", response_model=GroupDetailResponse)
def get_group(
    group_id: str,
    response: Response,
    credential: UserCredential = Depends(require_user),
    db: Session = Depends(get_db),
) -> GroupDetailResponse:
    """
    A group with its members. Members only.
    """
    result = services.get_group_with_members(db, credential, group_id)
    data = _unwrap(result, response)
    members = [_group_member_response(membership, participant) for membership, participant in data["members"]]
    return GroupDetailResponse(**GroupResponse.model_validate(data["group"]).model_dump(), members=members)


@app.post("/groups", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
def create_group(
    body: GroupCreateRequest,
    response: Response,
    credential: UserCredential = Depends(require_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    result = services.create_group(db, credential, body.name, body.routing_phone_number, settings)
    return _unwrap(result, response)


@app.patch("/groups/{group_id}", response_model=GroupResponse)
def update_group(
    group_id: str,
    body: GroupUpdateRequest,
    response: Response,
    credential: UserCredential = Depends(require_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    result = services.update_group(
        db,
        credential,
        group_id,
        settings,
        name=body.name,
        routing_phone_number=body.routing_phone_number,
    )
    return _unwrap(result, response)


@app.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_group(
    group_id: str,
    credential: UserCredential = Depends(require_user),
    db: Session = Depends(get_db),
) -> Response:
    result = services.delete_group(db, credential, group_id)
    if not result.success:
        raise HTTPException(status_code=result.status_code, detail=result.error)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Member Routes
# =============================================================================

@app.post(
    "/groups/{group_id}/members/sms",
    response_model=AddSmsParticipantResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_sms_member(
    group_id: str,
    body: AddSmsParticipantRequest,
    response: Response,
    credential: UserCredential = Depends(require_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    result = services.add_sms_participant(
        db, credential, group_id, body.phone_number, settings, display_name=body.display_name
    )
    return _unwrap(result, response)


@app.post(
    "/groups/{group_id}/members/users",
    response_model=MembershipResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_user_member(
    group_id: str,
    body: AddAppUserRequest,
    response: Response,
    credential: UserCredential = Depends(require_user),
    db: Session = Depends(get_db),
):
    result = services.add_app_user(db, credential, group_id, body.user_id)
    return _membership_response(_unwrap(result, response))


@app.delete("/groups/{group_id}/members/{kind}/{target_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_member(
    group_id: str,
    kind: Literal["users", "sms"],
    target_id: str,
    credential: UserCredential = Depends(require_user),
    db: Session = Depends(get_db),
) -> Response:
    if kind == "users":
        target = AppUserRef(user_id=target_id)
    else:
        target = SmsParticipantRef(sms_participant_id=target_id)

    result = services.remove_member(db, credential, group_id, target)
    if not result.success:
        raise HTTPException(status_code=result.status_code, detail=result.error)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/groups/{group_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
def leave_group(
    group_id: str,
    credential: UserCredential = Depends(require_user),
    db: Session = Depends(get_db),
) -> Response:
    result = services.leave_group(db, credential, group_id)
    if not result.success:
        raise HTTPException(status_code=result.status_code, detail=result.error)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Message Routes
# =============================================================================

@app.post(
    "/groups/{group_id}/messages",
    response_model=SendMessageResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
)
def send_message(
    group_id: str,
    body: SendMessageRequest,
    response: Response,
    credential: UserCredential = Depends(require_user),
    db: Session = Depends(get_db),
    gateway: Optional[SmsGateway] = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> SendMessageResponse:
    """
    Post a message to the group timeline and deliver it to the group's
    SMS participants.

    A failed SMS delivery does not fail the request: the message is stored
    with delivery_status "failed".
    """
    result = services.send_message(db, credential, group_id, body.content, gateway, settings)
    message = _unwrap(result, response)

    dispatch = None
    if result.dispatch is not None and not result.dispatch.skipped:
        dispatch = DispatchResponse(
            sent=result.dispatch.sent,
            total=result.dispatch.total,
            status=result.dispatch.status,
        )
    return SendMessageResponse(message=MessageResponse.model_validate(message), dispatch=dispatch)


@app.get("/groups/{group_id}/messages", response_model=MessagesListResponse)
def list_messages(
    group_id: str,
    response: Response,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    before: Annotated[datetime | None, Query(description="Only messages created before this time")] = None,
    credential: UserCredential = Depends(require_user),
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """
    List a group's messages, newest first. Members only.
    """
    result = services.list_messages(db, credential, group_id, limit=limit, before=before)
    messages = _unwrap(result, response)
    return MessagesListResponse(
        data=[MessageResponse.model_validate(m) for m in messages],
        limit=limit,
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - request_latency_seconds: Request latency histogram
    - inbound_sms_total / status_callbacks_total: carrier webhook outcomes
    - dispatch_recipients_total / dispatch_outcomes_total: outbound delivery
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
