import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Optional

from fastapi import FastAPI, Request, Response, Depends, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from relay.broadcast import BroadcastEngine
from relay.config import Settings, get_settings
from relay.delivery import PushSender, SmsSender, TwilioSmsSender, WebPushSender, generate_vapid_keys
from relay.dependencies import AdminOnly, Engine, Identity, Messages, Roster, get_settings_dep
from relay.errors import EmptyMessage, InvalidCode, RelayError
from relay.logging_utils import setup_logging, RequestLoggingMiddleware, log_broadcast_data
from relay.metrics import get_metrics, get_metrics_content_type
from relay.models import CleanupPolicy, Tier
from relay.schemas import (
    AddMemberRequest,
    AddMemberResponse,
    CheckNameRequest,
    CheckNameResponse,
    ErrorResponse,
    HealthResponse,
    LoginRequest,
    LoginResponse,
    MembersResponse,
    MemberView,
    MessagesResponse,
    MessageView,
    PublicKeyResponse,
    PushResults,
    SendRequest,
    SendResponse,
    SmsResults,
    SubscribeRequest,
    SubscribeResponse,
    SuccessResponse,
    UpdateMemberRequest,
    UpdateMemberResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from relay.storage import UNSET, IdentityStore, MessageLog, RosterStore

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    push_sender: Optional[PushSender] = None,
    sms_sender: Optional[SmsSender] = None,
) -> FastAPI:
    """
    Build the relay application.

    Args:
        settings: Configuration; defaults to the cached environment settings
        push_sender: Push channel; defaults to Web Push with the stored VAPID key
        sms_sender: SMS channel; defaults to Twilio when configured, else disabled
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: load or create the identity, build stores and the engine.
        Shutdown: close the SMS client if we opened one.
        """
        data_dir = Path(settings.DATA_DIR)
        data_dir.mkdir(parents=True, exist_ok=True)

        identity = IdentityStore(data_dir, key_factory=generate_vapid_keys)
        record = identity.get_or_create()
        roster = RosterStore(data_dir, identity)
        messages = MessageLog(data_dir)

        push = push_sender or WebPushSender(
            vapid_private_key=record.vapid_private_key,
            vapid_subject=settings.VAPID_SUBJECT,
            timeout=settings.DELIVERY_TIMEOUT_SECONDS,
        )
        owned_sms = None
        sms = sms_sender
        if sms is None:
            sms = owned_sms = TwilioSmsSender.from_settings(settings)

        app.state.settings = settings
        app.state.identity = identity
        app.state.roster = roster
        app.state.messages = messages
        app.state.engine = BroadcastEngine(
            roster=roster,
            messages=messages,
            push_sender=push,
            sms_sender=sms,
            app_name=settings.APP_NAME,
            cleanup_policy=CleanupPolicy(settings.EXPIRED_PUSH_POLICY),
        )

        if sms is None:
            logger.warning(
                "Twilio not configured - set TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, "
                "TWILIO_PHONE_NUMBER to enable SMS"
            )
        else:
            logger.info("SMS delivery enabled")
        logger.info(
            f"{settings.APP_NAME} ready. Group invite code: {record.group_code} | Admin code: {record.admin_code}"
        )
        yield
        if owned_sms is not None:
            owned_sms.close()

    app = FastAPI(
        title=f"{settings.APP_NAME} Relay",
        description="Group notification relay: admin broadcasts over Web Push and SMS",
        version="1.0.0",
        lifespan=lifespan,
        responses={
            422: {"model": ErrorResponse, "description": "Validation error"},
            500: {"model": ErrorResponse, "description": "Internal server error"},
        },
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_exception_handlers(app)
    register_routes(app)
    return app


# =============================================================================
# Error Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        logger.info(f"{type(exc).__name__}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"error": detail})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )


# =============================================================================
# Routes
# =============================================================================

def register_routes(app: FastAPI) -> None:

    # -------------------------------------------------------------------------
    # Health & Metrics
    # -------------------------------------------------------------------------

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """Liveness probe - always returns 200 once the app is running."""
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    async def health_ready(
        response: Response,
        identity: Identity,
        settings: Annotated[Settings, Depends(get_settings_dep)],
    ) -> HealthResponse:
        """
        Readiness probe - returns 200 only if the data directory is writable
        and the identity record is on disk. Otherwise returns 503.
        """
        if not os.access(settings.DATA_DIR, os.W_OK):
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason="Data directory not writable")
        if not identity.is_persisted():
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason="Identity record missing")
        return HealthResponse(status="ready")

    @app.get("/metrics")
    async def metrics() -> Response:
        """Expose Prometheus-style metrics."""
        return Response(content=get_metrics(), media_type=get_metrics_content_type())

    # -------------------------------------------------------------------------
    # Codes & Membership
    # -------------------------------------------------------------------------

    @app.get("/api/vapid-public-key", response_model=PublicKeyResponse)
    async def vapid_public_key(identity: Identity) -> PublicKeyResponse:
        return PublicKeyResponse(public_key=identity.get_or_create().vapid_public_key)

    @app.post("/api/verify-code", response_model=VerifyCodeResponse, response_model_exclude_none=True)
    async def verify_code(body: VerifyCodeRequest, identity: Identity) -> VerifyCodeResponse:
        tier = identity.verify(body.code)
        if tier is None:
            return VerifyCodeResponse(valid=False)
        return VerifyCodeResponse(valid=True, is_admin=tier is Tier.ADMIN)

    @app.post("/api/check-name", response_model=CheckNameResponse)
    async def check_name(body: CheckNameRequest, roster: Roster) -> CheckNameResponse:
        if not body.name or not body.name.strip():
            return CheckNameResponse(available=False, error="Name is required")
        available = roster.is_name_unique(body.name)
        return CheckNameResponse(available=available, error=None if available else "This name is already taken")

    @app.post(
        "/api/subscribe",
        response_model=SubscribeResponse,
        responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
    )
    async def subscribe(body: SubscribeRequest, identity: Identity, roster: Roster) -> SubscribeResponse:
        """Join the group with the group code (member) or the admin code (admin)."""
        tier = identity.verify(body.code)
        if tier is None:
            raise InvalidCode("Invalid group code")

        member_id, member = roster.add(
            name=body.name,
            push_subscription=body.subscription,
            phone=body.phone,
            is_admin=tier is Tier.ADMIN,
        )
        logger.info(f"{member.name} joined the group (push={member.has_push}, sms={member.has_phone})")
        return SubscribeResponse(id=member_id, is_admin=member.is_admin)

    @app.post(
        "/api/login",
        response_model=LoginResponse,
        responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    )
    async def login(body: LoginRequest, roster: Roster) -> LoginResponse:
        """Look up an existing member by name; does not create anything."""
        member_id, member = roster.login(body.name, body.code)
        return LoginResponse(id=member_id, name=member.name, is_admin=member.is_admin, phone=member.phone)

    @app.post("/api/logout", response_model=SuccessResponse)
    async def logout() -> SuccessResponse:
        # Sessions live client-side only
        return SuccessResponse()

    # -------------------------------------------------------------------------
    # Roster Administration
    # -------------------------------------------------------------------------

    @app.post(
        "/api/admin/members",
        response_model=AddMemberResponse,
        dependencies=[AdminOnly],
        responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
    )
    async def admin_add_member(body: AddMemberRequest, roster: Roster) -> AddMemberResponse:
        member_id, member = roster.add(name=body.name, phone=body.phone, is_admin=bool(body.is_admin))
        return AddMemberResponse(id=member_id, member=MemberView.from_record(member_id, member))

    @app.put(
        "/api/admin/members/{member_id}",
        response_model=UpdateMemberResponse,
        dependencies=[AdminOnly],
        responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    )
    async def admin_update_member(member_id: str, body: UpdateMemberRequest, roster: Roster) -> UpdateMemberResponse:
        provided = body.model_fields_set
        member = roster.update(
            member_id,
            name=body.name if "name" in provided else UNSET,
            phone=body.phone if "phone" in provided else UNSET,
            is_admin=body.is_admin if "is_admin" in provided else UNSET,
        )
        return UpdateMemberResponse(member=MemberView.from_record(member_id, member))

    @app.delete(
        "/api/admin/members/{member_id}",
        response_model=SuccessResponse,
        dependencies=[AdminOnly],
        responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    )
    async def admin_delete_member(member_id: str, roster: Roster) -> SuccessResponse:
        roster.remove(member_id)
        return SuccessResponse()

    @app.get("/api/members", response_model=MembersResponse, dependencies=[AdminOnly])
    async def list_members(roster: Roster) -> MembersResponse:
        return [MemberView.from_record(member_id, member) for member_id, member in roster.list()]

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    @app.post(
        "/api/send",
        response_model=SendResponse,
        responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
    )
    def send_message(body: SendRequest, request: Request, identity: Identity, engine: Engine) -> SendResponse:
        """
        Broadcast a message to every member (admin only).

        Runs in the threadpool: deliveries are blocking calls made one
        recipient at a time.
        """
        if identity.verify(body.admin_code) is not Tier.ADMIN:
            raise InvalidCode("Invalid admin code")
        if not body.message or not body.message.strip():
            raise EmptyMessage()

        result = engine.broadcast(body.message, body.sender_name)
        log_broadcast_data(request, result)

        return SendResponse(
            message=MessageView.model_validate(result.message.model_dump()),
            results=PushResults(
                sent=result.push_sent,
                failed=result.push_failed,
                no_subscription=result.push_no_subscription,
            ),
            sms_results=SmsResults(sent=result.sms_sent, failed=result.sms_failed),
        )

    @app.get("/api/messages", response_model=MessagesResponse)
    async def list_messages(messages: Messages) -> MessagesResponse:
        """Recent broadcasts, newest first."""
        return [MessageView.model_validate(record.model_dump()) for record in messages.recent()]


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)
