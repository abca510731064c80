from __future__ import annotations

from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    Header,
    Path,
    Query,
    Request,
    UploadFile,
)
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError as PydanticValidationError

from eduauth.api.schemas import (
    DeleteAccountRequest,
    ExchangeCodeRequest,
    InvalidateSessionsRequest,
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ReactivationRequestBody,
    RegisterRequest,
    ResendOTPRequest,
    VerifyRequest,
    envelope,
    field_errors,
)
from eduauth.logging import get_logger
from eduauth.service.auth import Outcome
from eduauth.service.errors import AuthenticationError, ValidationError
from eduauth.service.runtime import get_runtime
from eduauth.service.sessions import AuthContext, ClientInfo
from eduauth.service.tokens import extract_bearer

logger = get_logger(__name__)


async def _drain_background(background_tasks: BackgroundTasks) -> None:
    # Fire-and-forget work finishes before the request scope closes
    background_tasks.add_task(get_runtime().background.drain)


router = APIRouter(prefix="/api/auth", tags=["auth"], dependencies=[Depends(_drain_background)])


def resolve_client_ip(request: Request, trusted_hops: int) -> Optional[str]:
    """Client address, honouring ``X-Forwarded-For`` only through trusted proxies.

    Each of the ``trusted_hops`` proxies appends the address it received the
    request from, so the N-th entry from the right is the leftmost one a trusted
    proxy wrote. Anything further left is client supplied.
    """
    peer = request.client.host if request.client else None
    if trusted_hops <= 0:
        return peer
    forwarded = request.headers.get("X-Forwarded-For", "")
    hops = [entry.strip() for entry in forwarded.split(",") if entry.strip()]
    if not hops:
        return peer
    return hops[-min(trusted_hops, len(hops))]


def client_info(
    request: Request,
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
) -> ClientInfo:
    ip_address = resolve_client_ip(request, get_runtime().settings.trusted_proxy_hops)
    return ClientInfo(ip_address=ip_address, user_agent=user_agent)


async def get_current_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = extract_bearer(authorization)
    if not token:
        raise AuthenticationError("Authentication required", error_code="NO_TOKEN")
    runtime = get_runtime()
    context = await runtime.sessions.authenticate(token)
    if not context:
        raise AuthenticationError("Invalid or expired token", error_code="INVALID_TOKEN")
    await runtime.sessions.touch(context)
    return context


def _render(request: Request, outcome: Outcome) -> JSONResponse:
    body = envelope(
        success=True,
        message=outcome.message,
        code=outcome.code,
        request=request,
        data=outcome.data,
        meta=outcome.meta,
    )
    return JSONResponse(status_code=outcome.status_code, content=body)


@router.post("/register")
async def register(
    request: Request,
    first_name: str = Form("", alias="firstName"),
    last_name: str = Form("", alias="lastName"),
    email: str = Form(""),
    password: str = Form(""),
    role: str = Form("STUDENT"),
    profile_image: Optional[UploadFile] = File(None, alias="profileImage"),
    client: ClientInfo = Depends(client_info),
):
    runtime = get_runtime()
    upload = profile_image if profile_image is not None and profile_image.filename else None
    try:
        form = RegisterRequest(
            firstName=first_name, lastName=last_name, email=email, password=password, role=role
        )
    except PydanticValidationError as exc:
        raise ValidationError(
            "Validation failed", error_code="VALIDATION_ERROR", errors=field_errors(exc)
        ) from exc
    outcome = await runtime.auth.register(
        first_name=form.first_name,
        last_name=form.last_name,
        email=form.email,
        password=form.password,
        role=form.role,
        client=client,
        profile_image=upload,
    )
    return _render(request, outcome)


@router.post("/verify")
async def verify(body: VerifyRequest, request: Request, client: ClientInfo = Depends(client_info)):
    outcome = await get_runtime().auth.verify(
        client=client, token=body.token, email=body.email, otp=body.otp
    )
    return _render(request, outcome)


@router.post("/login")
async def login(
    body: LoginRequest,
    request: Request,
    client: ClientInfo = Depends(client_info),
    authorization: Optional[str] = Header(None),
):
    outcome = await get_runtime().auth.login(
        email=body.email,
        password=body.password,
        client=client,
        bearer=extract_bearer(authorization),
    )
    return _render(request, outcome)


@router.post("/logout")
async def logout(request: Request, principal: AuthContext = Depends(get_current_user)):
    outcome = await get_runtime().auth.logout(principal)
    return _render(request, outcome)


@router.get("/me")
async def me(request: Request, principal: AuthContext = Depends(get_current_user)):
    outcome = await get_runtime().auth.me(principal)
    return _render(request, outcome)


@router.post("/password-reset/request")
async def password_reset_request(
    body: PasswordResetRequest, request: Request, client: ClientInfo = Depends(client_info)
):
    outcome = await get_runtime().auth.request_password_reset(email=body.email, client=client)
    return _render(request, outcome)


@router.post("/password-reset/confirm")
async def password_reset_confirm(
    body: PasswordResetConfirm, request: Request, client: ClientInfo = Depends(client_info)
):
    outcome = await get_runtime().auth.confirm_password_reset(
        email=body.email, otp=body.otp, new_password=body.new_password, client=client
    )
    return _render(request, outcome)


@router.post("/otp/resend")
async def resend_otp(body: ResendOTPRequest, request: Request):
    outcome = await get_runtime().auth.resend_otp(email=body.email, otp_type=body.type)
    return _render(request, outcome)


@router.get("/otp/status/{email}")
async def otp_status(
    request: Request,
    email: str = Path(..., max_length=254),
    client: ClientInfo = Depends(client_info),
):
    outcome = await get_runtime().auth.otp_status(email=email, client=client)
    return _render(request, outcome)


@router.get("/oauth/{provider}")
async def oauth_start(provider: str, role: Optional[str] = Query(None, max_length=20)):
    started = await get_runtime().oauth.start(provider, role)
    return RedirectResponse(started["authorization_url"], status_code=302)


@router.get("/oauth/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
):
    runtime = get_runtime()
    try:
        target = await runtime.oauth.callback(provider, code, state, error)
    except Exception as exc:
        # The browser must always land on the frontend
        logger.exception("oauth_callback_failed", exc_info=exc, provider=provider)
        target = runtime.oauth.failure_redirect()
    return RedirectResponse(target, status_code=302)


@router.post("/oauth/exchange")
async def oauth_exchange(
    body: ExchangeCodeRequest, request: Request, client: ClientInfo = Depends(client_info)
):
    runtime = get_runtime()
    await runtime.limiter.enforce("auth_code_exchange", client.ip_address or "unknown")
    result = await runtime.oauth.exchange(body.code, client)
    meta = {
        "authMethod": "oauth_code_exchange",
        "isNewUser": result.pop("isNewUser"),
        "provider": result.pop("provider"),
    }
    return _render(
        request,
        Outcome(
            message="Authentication successful",
            code="AUTH_CODE_EXCHANGED",
            data=result,
            meta=meta,
        ),
    )


@router.get("/sessions")
async def list_sessions(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    principal: AuthContext = Depends(get_current_user),
):
    outcome = await get_runtime().auth.list_sessions(principal, page=page, limit=limit)
    return _render(request, outcome)


@router.post("/sessions/invalidate-all")
async def invalidate_all_sessions(
    request: Request,
    body: Optional[InvalidateSessionsRequest] = None,
    principal: AuthContext = Depends(get_current_user),
):
    body = body or InvalidateSessionsRequest()
    outcome = await get_runtime().auth.invalidate_sessions(
        principal, keep_current=body.keep_current, reason=body.reason
    )
    return _render(request, outcome)


@router.post("/account/reactivation-request")
async def reactivation_request(
    body: ReactivationRequestBody, request: Request, client: ClientInfo = Depends(client_info)
):
    outcome = await get_runtime().auth.request_reactivation(
        reason=body.reason,
        client=client,
        email=body.email,
        user_id=body.user_id,
        additional_info=body.additional_info,
    )
    return _render(request, outcome)


@router.get("/account/reactivation-status/{user_id}")
async def reactivation_status(
    request: Request,
    user_id: str = Path(..., max_length=64),
    client: ClientInfo = Depends(client_info),
):
    outcome = await get_runtime().auth.reactivation_status(user_id=user_id, client=client)
    return _render(request, outcome)


@router.delete("/account")
async def delete_account(
    body: DeleteAccountRequest,
    request: Request,
    client: ClientInfo = Depends(client_info),
    principal: AuthContext = Depends(get_current_user),
):
    outcome = await get_runtime().auth.delete_account(
        principal,
        password=body.password,
        reason=body.reason,
        confirmation=body.confirm_deletion,
        client=client,
    )
    return _render(request, outcome)
