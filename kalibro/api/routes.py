from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from kalibro.api.schemas import (
    AccountResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    OtpRequest,
    OtpRequestResponse,
    OtpVerifyRequest,
    OtpVerifyResponse,
    PasswordResetConfirm,
    RefreshResponse,
    RegistrationComplete,
    SecurityEventListResponse,
    SecurityEventResponse,
    SessionListResponse,
    SessionResponse,
    SessionsRevokedResponse,
    TokenRefreshRequest,
)
from kalibro.logging import get_logger
from kalibro.service.auth import TokenPair
from kalibro.service.errors import NotFoundError, error_for_failure
from kalibro.service.otp import OtpIssued, OtpPurpose
from kalibro.service.results import Failure, FailureKind, Result
from kalibro.service.runtime import get_runtime
from kalibro.service.tokens import TokenKind
from kalibro.storage.models import Account, AccountRole, ClientMeta

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _unwrap(result: Result):
    if not result.ok:
        raise error_for_failure(result.failure)
    return result.value


def _client_ip(request: Request, trusted_proxies: int) -> Optional[str]:
    peer = request.client.host if request.client else None
    if trusted_proxies <= 0:
        return peer
    hops = [
        hop.strip()
        for hop in request.headers.get("x-forwarded-for", "").split(",")
        if hop.strip()
    ]
    # Only the rightmost entries were appended by our own proxies
    if len(hops) < trusted_proxies:
        return peer
    return hops[-trusted_proxies]


def _client_meta(request: Request) -> ClientMeta:
    ip_address = _client_ip(request, get_runtime().settings.trusted_proxy_count)
    return ClientMeta(user_agent=request.headers.get("user-agent"), ip_address=ip_address)


def _access_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    runtime = get_runtime()
    if authorization:
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return request.cookies.get(runtime.settings.auth_cookie_name)


def _current_session_id(request: Request, authorization: Optional[str]) -> Optional[str]:
    token = _access_token(request, authorization)
    if not token:
        return None
    verification = get_runtime().auth.codec.verify(token, TokenKind.ACCESS)
    return verification.claims.sid if verification.ok else None


async def _authenticate(
    request: Request, authorization: Optional[str], required_role: Optional[str] = None
) -> Account:
    runtime = get_runtime()
    result = await runtime.auth.authenticate(
        authorization,
        request.cookies.get(runtime.settings.auth_cookie_name),
        required_role=required_role,
        client_meta=_client_meta(request),
    )
    return _unwrap(result)


async def get_user(request: Request, authorization: Optional[str] = Header(None)) -> Account:
    return await _authenticate(request, authorization)


async def get_staff_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> Account:
    return await _authenticate(request, authorization, AccountRole.STAFF.value)


async def get_admin_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> Account:
    return await _authenticate(request, authorization, AccountRole.ADMIN.value)


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        username=account.username,
        email=account.email,
        role=account.role,
        name=account.name,
        is_active=account.is_active,
    )


def _set_access_cookie(response: Response, token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.auth_cookie_name,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.access_token_ttl_seconds,
        path="/",
    )


def _apply_auth_cookies(response: Response, tokens: TokenPair) -> None:
    settings = get_runtime().settings
    _set_access_cookie(response, tokens.access_token)
    response.set_cookie(
        settings.refresh_cookie_name,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_seconds,
        path="/",
    )


def _clear_auth_cookies(response: Response) -> None:
    settings = get_runtime().settings
    for name in (settings.auth_cookie_name, settings.refresh_cookie_name):
        response.delete_cookie(name, path="/", secure=settings.cookie_secure, samesite="lax")


def _auth_envelope(account: Account, tokens: TokenPair) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            account=_account_response(account),
            session_id=tokens.session_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            access_expires_at=tokens.access_expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
        ),
    )


def _otp_envelope(issued: OtpIssued) -> Envelope:
    return Envelope(
        status="ok",
        data=OtpRequestResponse(
            message="Verification code sent",
            masked_email=issued.masked_identifier,
            expires_at=issued.expires_at,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with username or email and password.

    Failed attempts are counted per client IP; the sixth failure inside the
    window is refused with 429.
    """
    runtime = get_runtime()
    outcome = _unwrap(
        await runtime.auth.login(body.identifier, body.password, _client_meta(request))
    )
    _apply_auth_cookies(response, outcome.tokens)
    return _auth_envelope(outcome.account, outcome.tokens)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(request: Request, response: Response, body: Optional[TokenRefreshRequest] = None):
    runtime = get_runtime()
    refresh_token = (body.refresh_token if body else None) or request.cookies.get(
        runtime.settings.refresh_cookie_name
    )
    if not refresh_token:
        raise error_for_failure(Failure(FailureKind.MISSING_TOKEN, "Refresh token required"))
    refreshed = _unwrap(await runtime.auth.refresh(refresh_token, _client_meta(request)))
    _set_access_cookie(response, refreshed.access_token)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=refreshed.access_token,
            session_id=refreshed.session_id,
            expires_at=refreshed.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    refresh_token = (body.refresh_token if body else None) or request.cookies.get(
        runtime.settings.refresh_cookie_name
    )
    ack = await runtime.auth.logout(
        _access_token(request, authorization),
        refresh_token,
        all_devices=bool(body and body.all_devices),
        client_meta=_client_meta(request),
    )
    _clear_auth_cookies(response)
    return Envelope(
        status="ok", data=LogoutResponse(sessions_revoked=ack.sessions_revoked)
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_account(account: Account = Depends(get_user)):
    return Envelope(status="ok", data=_account_response(account))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_my_sessions(
    request: Request,
    authorization: Optional[str] = Header(None),
    account: Account = Depends(get_user),
):
    runtime = get_runtime()
    current = _current_session_id(request, authorization)
    records = await runtime.auth.list_sessions(account.id)
    items = [
        SessionResponse(
            id=record.id,
            created_at=record.created_at,
            last_used_at=record.last_used_at,
            expires_at=record.expires_at,
            user_agent=record.user_agent,
            ip_address=record.ip_address,
            current=record.id == current,
        )
        for record in records
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/auth/sessions", response_model=Envelope, tags=["auth"])
async def revoke_my_sessions(response: Response, account: Account = Depends(get_user)):
    """Sign out of every device."""
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_all_sessions(account.id)
    _clear_auth_cookies(response)
    return Envelope(status="ok", data=SessionsRevokedResponse(sessions_revoked=revoked))


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: OtpRequest):
    runtime = get_runtime()
    issued = _unwrap(await runtime.auth.request_password_reset(body.email))
    return _otp_envelope(issued)


@router.post("/auth/password-reset/verify", response_model=Envelope, tags=["auth"])
async def verify_password_reset(body: OtpVerifyRequest):
    runtime = get_runtime()
    _unwrap(await runtime.auth.verify_otp(OtpPurpose.PASSWORD_RESET, body.email, body.code))
    return Envelope(status="ok", data=OtpVerifyResponse())


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm, request: Request, response: Response):
    runtime = get_runtime()
    _unwrap(
        await runtime.auth.complete_password_reset(
            body.email, body.code, body.new_password, _client_meta(request)
        )
    )
    _clear_auth_cookies(response)
    return Envelope(status="ok", data={"message": "Password updated"})


@router.post("/auth/register/request", response_model=Envelope, tags=["auth"])
async def request_registration(body: OtpRequest):
    runtime = get_runtime()
    issued = _unwrap(await runtime.auth.request_registration(body.email))
    return _otp_envelope(issued)


@router.post("/auth/register/verify", response_model=Envelope, tags=["auth"])
async def verify_registration(body: OtpVerifyRequest):
    runtime = get_runtime()
    _unwrap(await runtime.auth.verify_otp(OtpPurpose.REGISTRATION, body.email, body.code))
    return Envelope(status="ok", data=OtpVerifyResponse())


@router.post(
    "/auth/register/complete", response_model=Envelope, status_code=201, tags=["auth"]
)
async def complete_registration(body: RegistrationComplete, request: Request, response: Response):
    runtime = get_runtime()
    outcome = _unwrap(
        await runtime.auth.complete_registration(
            body.email,
            body.code,
            username=body.username,
            password=body.password,
            name=body.name,
            client_meta=_client_meta(request),
        )
    )
    _apply_auth_cookies(response, outcome.tokens)
    return _auth_envelope(outcome.account, outcome.tokens)


async def _require_account(account_id: str) -> Account:
    runtime = get_runtime()
    account = await asyncio.to_thread(runtime.accounts.get_by_id, account_id)
    if account is None:
        raise NotFoundError("account not found", detail={"account_id": account_id})
    return account


@router.get("/admin/accounts/{account_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_list_sessions(
    account_id: str = Path(..., max_length=128),
    admin: Account = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await _require_account(account_id)
    records = await runtime.auth.list_sessions(account.id)
    items = [
        SessionResponse(
            id=record.id,
            created_at=record.created_at,
            last_used_at=record.last_used_at,
            expires_at=record.expires_at,
            user_agent=record.user_agent,
            ip_address=record.ip_address,
        )
        for record in records
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/admin/accounts/{account_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_revoke_sessions(
    account_id: str = Path(..., max_length=128),
    admin: Account = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await _require_account(account_id)
    revoked = await runtime.auth.revoke_all_sessions(account.id)
    logger.info(
        "admin_sessions_revoked", admin_id=admin.id, account_id=account.id, revoked=revoked
    )
    return Envelope(status="ok", data=SessionsRevokedResponse(sessions_revoked=revoked))


@router.get(
    "/admin/accounts/{account_id}/security-events", response_model=Envelope, tags=["admin"]
)
async def admin_security_events(
    account_id: str = Path(..., max_length=128),
    limit: int = Query(20, ge=1, le=100),
    admin: Account = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await _require_account(account_id)
    events = await runtime.auth.recent_security_events(account.id, limit)
    items = [
        SecurityEventResponse(
            id=event.id,
            type=event.type,
            timestamp=event.timestamp,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            details=event.details,
        )
        for event in events
    ]
    return Envelope(status="ok", data=SecurityEventListResponse(items=items))


@router.get("/staff/accounts/{account_id}", response_model=Envelope, tags=["staff"])
async def staff_get_account(
    account_id: str = Path(..., max_length=128),
    staff: Account = Depends(get_staff_user),
):
    account = await _require_account(account_id)
    return Envelope(status="ok", data=_account_response(account))
