from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from kalibro.config import Settings
from kalibro.logging import get_logger
from kalibro.service.blacklist import RevocationLedger
from kalibro.service.otp import OtpEngine, OtpIssued, OtpMailer, OtpPurpose, normalize_identifier
from kalibro.service.rate_limit import RateLimiter
from kalibro.service.results import FailureKind, Result
from kalibro.service.security_log import SecurityEventType, SecurityLog
from kalibro.service.sessions import SessionStore
from kalibro.service.tokens import TokenCodec, TokenError, TokenKind, TokenSubject
from kalibro.storage.accounts import AccountStore
from kalibro.storage.errors import ConstraintViolation, StoreUnavailable
from kalibro.storage.kv import KeyValueStore
from kalibro.storage.models import (
    Account,
    AccountRole,
    ClientMeta,
    OtpRecord,
    SecurityEvent,
    SessionRecord,
    from_timestamp,
)

logger = get_logger(__name__)

LOGIN_RATE_PURPOSE = "login"
_INVALID_LOGIN_MESSAGE = "Invalid username or password"


def password_strength_error(password: str) -> Optional[str]:
    """Return why a password is too weak, or None when it is acceptable."""
    if len(password) < 8:
        return "Password must be at least 8 characters long"
    if len(password) > 128:
        return "Password must be at most 128 characters long"
    if not re.search(r"[A-Z]", password):
        return "Password must contain at least one uppercase letter"
    if not re.search(r"[a-z]", password):
        return "Password must contain at least one lowercase letter"
    if not re.search(r"\d", password):
        return "Password must contain at least one number"
    return None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class RefreshedAccess:
    access_token: str
    session_id: str
    expires_at: datetime


@dataclass(frozen=True)
class LoginOutcome:
    account: Account
    tokens: TokenPair


@dataclass
class LogoutAck:
    user_id: Optional[str] = None
    access_revoked: bool = False
    refresh_revoked: bool = False
    sessions_revoked: int = 0


class AuthService:
    """Token issuance, request authentication, logout, and OTP-backed flows."""

    def __init__(
        self,
        accounts: AccountStore,
        kv: KeyValueStore,
        settings: Settings,
        *,
        mailer: OtpMailer,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.accounts = accounts
        self.kv = kv
        self.settings = settings
        self._clock = clock
        self.codec = TokenCodec(
            settings.jwt_secret,
            settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            clock=clock,
        )
        self.sessions = SessionStore(
            kv, ttl_seconds=settings.refresh_token_ttl_seconds, clock=clock
        )
        self.blacklist = RevocationLedger(kv)
        self.otp = OtpEngine(
            kv,
            RateLimiter(
                kv,
                limit=settings.otp_rate_limit,
                window_seconds=settings.otp_rate_window_minutes * 60,
                clock=clock,
            ),
            mailer,
            ttl_seconds=settings.otp_ttl_minutes * 60,
            max_attempts=settings.otp_max_attempts,
            clock=clock,
        )
        self.login_limiter = RateLimiter(
            kv,
            limit=settings.login_rate_limit,
            window_seconds=settings.login_rate_window_minutes * 60,
            clock=clock,
        )
        self.security_log = SecurityLog(
            kv,
            ttl_seconds=settings.security_log_ttl_days * 24 * 60 * 60,
            max_per_user=settings.security_log_max_per_user,
            clock=clock,
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # -- passwords -----------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account_id: str, password: str) -> bool:
        stored_hash = self.accounts.get_password_hash(account_id)
        if not stored_hash:
            logger.warning("password_record_missing", account_id=account_id)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable", account_id=account_id)
            return False

    # -- tokens ----------------------------------------------------------

    def _subject(self, account: Account, session_id: Optional[str]) -> TokenSubject:
        return TokenSubject(
            user_id=str(account.id),
            username=account.username,
            email=account.email,
            role=account.role,
            session_id=session_id,
        )

    async def issue_token_pair(
        self, account: Account, client_meta: Optional[ClientMeta] = None
    ) -> TokenPair:
        now = self._clock()
        session_id = SessionStore.new_session_id()
        subject = self._subject(account, session_id)
        access_token = self.codec.issue(subject, TokenKind.ACCESS)
        refresh_token = self.codec.issue(subject, TokenKind.REFRESH)
        await self.sessions.create(
            account.id, access_token, refresh_token, client_meta, session_id=session_id
        )
        logger.info("token_pair_issued", user_id=account.id, session_id=session_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session_id,
            access_expires_at=from_timestamp(now + self.codec.ttl_seconds[TokenKind.ACCESS]),
            refresh_expires_at=from_timestamp(now + self.codec.ttl_seconds[TokenKind.REFRESH]),
        )

    async def refresh(
        self, refresh_token: str, client_meta: Optional[ClientMeta] = None
    ) -> Result[RefreshedAccess]:
        verification = self.codec.verify(refresh_token, TokenKind.REFRESH)
        if not verification.ok:
            return self._invalid_refresh("token_rejected", error=verification.error.value)
        claims = verification.claims
        if await self.blacklist.is_blacklisted(refresh_token, kind=TokenKind.REFRESH):
            return self._invalid_refresh("token_blacklisted", user_id=claims.sub)
        if not claims.sid:
            return self._invalid_refresh("session_missing", user_id=claims.sub)
        session = await self.sessions.get(claims.sid)
        if (
            session is None
            or not session.is_active
            or session.refresh_fingerprint != TokenCodec.fingerprint(refresh_token)
        ):
            return self._invalid_refresh("session_invalid", user_id=claims.sub)
        account = self.accounts.get_by_id(claims.sub)
        if account is None or not account.is_active:
            return self._invalid_refresh("account_unavailable", user_id=claims.sub)

        access_token = self.codec.issue(self._subject(account, claims.sid), TokenKind.ACCESS)
        await self.sessions.rotate_access_fingerprint(claims.sid, access_token)
        await self.security_log.record(
            SecurityEventType.TOKEN_REFRESH, account.id, client_meta, session_id=claims.sid
        )
        return Result.success(
            RefreshedAccess(
                access_token=access_token,
                session_id=claims.sid,
                expires_at=from_timestamp(
                    self._clock() + self.codec.ttl_seconds[TokenKind.ACCESS]
                ),
            )
        )

    def _invalid_refresh(self, reason: str, **context) -> Result[RefreshedAccess]:
        logger.warning("refresh_rejected", reason=reason, **context)
        return Result.fail(FailureKind.INVALID_REFRESH, "Invalid or expired refresh token")

    # -- authentication gate ---------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def _role_allows(self, role: str, required: str) -> bool:
        if required == AccountRole.ADMIN.value:
            return role == AccountRole.ADMIN.value
        if required == AccountRole.STAFF.value:
            return role in {AccountRole.ADMIN.value, AccountRole.STAFF.value}
        return role == required

    async def authenticate(
        self,
        authorization: Optional[str] = None,
        cookie_token: Optional[str] = None,
        *,
        required_role: Optional[str] = None,
        client_meta: Optional[ClientMeta] = None,
    ) -> Result[Account]:
        token = self._extract_bearer(authorization) or (cookie_token or None)
        if not token:
            return Result.fail(FailureKind.MISSING_TOKEN, "Authentication required")

        verification = self.codec.verify(token, TokenKind.ACCESS)
        if verification.error == TokenError.EXPIRED:
            return Result.fail(FailureKind.TOKEN_EXPIRED, "Token has expired")
        if not verification.ok:
            return Result.fail(FailureKind.INVALID_TOKEN, "Invalid or expired token")
        claims = verification.claims

        if await self.blacklist.is_blacklisted(token):
            return Result.fail(FailureKind.INVALID_TOKEN, "Token has been revoked")

        # Claims identify the account; its current state comes from the store
        account = self.accounts.get_by_id(claims.sub)
        if account is None:
            return Result.fail(FailureKind.USER_NOT_FOUND, "Account no longer exists")
        if not account.is_active:
            return Result.fail(FailureKind.USER_INACTIVE, "Account is inactive")

        if claims.sid:
            # A missing session record does not block authentication
            await self.sessions.touch(claims.sid)

        if required_role and not self._role_allows(account.role, required_role):
            await self.security_log.record(
                SecurityEventType.UNAUTHORIZED_ACCESS,
                account.id,
                client_meta,
                required_role=required_role,
                role=account.role,
            )
            return Result.fail(FailureKind.FORBIDDEN, "Insufficient permissions")
        return Result.success(account)

    # -- revocation --------------------------------------------------------

    async def revoke_access_token(self, access_token: str) -> bool:
        """Blacklist one access token without touching its session."""
        verification = self.codec.verify(access_token, TokenKind.ACCESS)
        if not verification.ok:
            return False
        return await self.blacklist.blacklist(
            access_token, verification.claims.remaining_seconds(self._clock())
        )

    async def logout(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str] = None,
        *,
        all_devices: bool = False,
        client_meta: Optional[ClientMeta] = None,
    ) -> LogoutAck:
        ack = LogoutAck()
        now = self._clock()
        access_claims = None
        refresh_claims = None
        if access_token:
            verification = self.codec.verify(access_token, TokenKind.ACCESS)
            access_claims = verification.claims if verification.ok else None
        if refresh_token:
            verification = self.codec.verify(refresh_token, TokenKind.REFRESH)
            refresh_claims = verification.claims if verification.ok else None
        claims = access_claims or refresh_claims
        ack.user_id = claims.sub if claims else None

        if all_devices and ack.user_id:
            ack.sessions_revoked = await self.sessions.revoke_all_for_user(ack.user_id)
        elif access_claims and access_claims.sid:
            await self.sessions.revoke(access_claims.sid, TokenKind.ACCESS)
        if access_claims:
            ack.access_revoked = await self.blacklist.blacklist(
                access_token, access_claims.remaining_seconds(now)
            )
        if refresh_claims:
            if refresh_claims.sid and not all_devices:
                await self.sessions.revoke(refresh_claims.sid, TokenKind.REFRESH)
            ack.refresh_revoked = await self.blacklist.blacklist(
                refresh_token, refresh_claims.remaining_seconds(now), kind=TokenKind.REFRESH
            )

        event_type = SecurityEventType.LOGOUT if claims else SecurityEventType.LOGOUT_ERROR
        await self.security_log.record(
            event_type, ack.user_id, client_meta, all_devices=all_devices
        )
        return ack

    async def list_sessions(self, user_id: str) -> List[SessionRecord]:
        return await self.sessions.list_for_user(user_id)

    async def revoke_all_sessions(self, user_id: str) -> int:
        return await self.sessions.revoke_all_for_user(user_id)

    async def recent_security_events(self, user_id: str, limit: int = 20) -> List[SecurityEvent]:
        return await self.security_log.recent_for_user(user_id, limit)

    # -- login -------------------------------------------------------------

    async def login(
        self,
        identifier: str,
        password: str,
        client_meta: Optional[ClientMeta] = None,
    ) -> Result[LoginOutcome]:
        meta = client_meta or ClientMeta()
        client_key = meta.ip_address or "unknown"
        try:
            limited = await self.login_limiter.is_limited(LOGIN_RATE_PURPOSE, client_key)
        except StoreUnavailable as exc:
            logger.error("login_rate_limit_unavailable", error=str(exc))
            return Result.fail(
                FailureKind.STORE_UNAVAILABLE, "Login is temporarily unavailable"
            )
        if not limited.allowed:
            return Result.fail(
                FailureKind.RATE_LIMITED,
                "Too many failed login attempts. Please try again later.",
                retry_after_seconds=limited.retry_after_seconds,
            )

        account = self.accounts.get_by_username_or_email(identifier)
        if account is None or not account.is_active or not self.verify_password(account.id, password):
            try:
                await self.login_limiter.hit(LOGIN_RATE_PURPOSE, client_key)
            except StoreUnavailable as exc:
                logger.warning("login_rate_limit_record_failed", error=str(exc))
            await self.security_log.record(
                SecurityEventType.LOGIN_FAILED,
                account.id if account else None,
                meta,
                reason="inactive" if account and not account.is_active else "credentials",
            )
            return Result.fail(FailureKind.INVALID_CREDENTIALS, _INVALID_LOGIN_MESSAGE)

        try:
            await self.login_limiter.reset(LOGIN_RATE_PURPOSE, client_key)
        except StoreUnavailable as exc:
            logger.warning("login_rate_limit_reset_failed", error=str(exc))
        tokens = await self.issue_token_pair(account, meta)
        await self.security_log.record(
            SecurityEventType.LOGIN, account.id, meta, session_id=tokens.session_id
        )
        return Result.success(LoginOutcome(account=account, tokens=tokens))

    # -- one-time passwords ------------------------------------------------

    async def request_otp(self, purpose: OtpPurpose, identifier: str) -> Result[OtpIssued]:
        return await self.otp.request_otp(purpose, identifier)

    async def verify_otp(
        self, purpose: OtpPurpose, identifier: str, code: str
    ) -> Result[OtpRecord]:
        return await self.otp.verify_otp(purpose, identifier, code)

    async def request_password_reset(self, email: str) -> Result[OtpIssued]:
        if self.accounts.get_by_email(normalize_identifier(email)) is None:
            return Result.fail(FailureKind.ACCOUNT_NOT_FOUND, "No account found with this email address")
        return await self.otp.request_otp(OtpPurpose.PASSWORD_RESET, email)

    async def complete_password_reset(
        self,
        email: str,
        code: str,
        new_password: str,
        client_meta: Optional[ClientMeta] = None,
    ) -> Result[Account]:
        weakness = password_strength_error(new_password)
        if weakness:
            return Result.fail(FailureKind.WEAK_PASSWORD, weakness)
        account = self.accounts.get_by_email(normalize_identifier(email))
        if account is None:
            return Result.fail(FailureKind.ACCOUNT_NOT_FOUND, "No account found with this email address")
        verified = await self.otp.verify_otp(OtpPurpose.PASSWORD_RESET, email, code)
        if not verified.ok:
            return Result(failure=verified.failure)

        self.accounts.update_password(account.id, self.hash_password(new_password))
        try:
            await self.otp.consume(OtpPurpose.PASSWORD_RESET, email)
        except StoreUnavailable as exc:
            logger.error("otp_consume_failed", purpose=OtpPurpose.PASSWORD_RESET.value, error=str(exc))
        revoked = await self.sessions.revoke_all_for_user(account.id)
        await self.security_log.record(
            SecurityEventType.PASSWORD_RESET, account.id, client_meta, sessions_revoked=revoked
        )
        return Result.success(account)

    async def request_registration(self, email: str) -> Result[OtpIssued]:
        if self.accounts.get_by_email(normalize_identifier(email)) is not None:
            return Result.fail(FailureKind.ACCOUNT_EXISTS, "An account with this email already exists")
        return await self.otp.request_otp(OtpPurpose.REGISTRATION, email)

    async def complete_registration(
        self,
        email: str,
        code: str,
        *,
        username: str,
        password: str,
        name: Optional[str] = None,
        client_meta: Optional[ClientMeta] = None,
    ) -> Result[LoginOutcome]:
        weakness = password_strength_error(password)
        if weakness:
            return Result.fail(FailureKind.WEAK_PASSWORD, weakness)
        email = normalize_identifier(email)
        if self.accounts.get_by_email(email) is not None:
            return Result.fail(FailureKind.ACCOUNT_EXISTS, "An account with this email already exists")
        verified = await self.otp.verify_otp(OtpPurpose.REGISTRATION, email, code)
        if not verified.ok:
            return Result(failure=verified.failure)

        try:
            account = self.accounts.create_account(
                username=username,
                email=email,
                password_hash=self.hash_password(password),
                role=AccountRole.STUDENT.value,
                name=name,
            )
        except ConstraintViolation as exc:
            return Result.fail(FailureKind.ACCOUNT_EXISTS, exc.message, **exc.detail)
        try:
            await self.otp.consume(OtpPurpose.REGISTRATION, email)
        except StoreUnavailable as exc:
            logger.error("otp_consume_failed", purpose=OtpPurpose.REGISTRATION.value, error=str(exc))
        tokens = await self.issue_token_pair(account, client_meta)
        await self.security_log.record(
            SecurityEventType.REGISTRATION, account.id, client_meta, session_id=tokens.session_id
        )
        return Result.success(LoginOutcome(account=account, tokens=tokens))


__all__ = [
    "AuthService",
    "LoginOutcome",
    "LogoutAck",
    "RefreshedAccess",
    "TokenPair",
    "password_strength_error",
]
