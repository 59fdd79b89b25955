from __future__ import annotations

import asyncio
import hmac
import math
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol

from kalibro.logging import get_logger
from kalibro.service.rate_limit import RateLimiter
from kalibro.service.results import FailureKind, Result
from kalibro.storage.errors import StoreUnavailable
from kalibro.storage.kv import KeyValueStore
from kalibro.storage.models import OtpRecord, from_timestamp

logger = get_logger(__name__)

_OTP_FORMAT = re.compile(r"^\d{6}$")
_MASK_PATTERN = re.compile(r"^(.{2})(.*)(@.*)$")


class OtpPurpose(str, Enum):
    PASSWORD_RESET = "reset"
    REGISTRATION = "register"


class OtpMailer(Protocol):
    def send_otp(self, to_email: str, code: str, purpose: str, ttl_minutes: int) -> bool: ...


@dataclass(frozen=True)
class OtpIssued:
    masked_identifier: str
    expires_at: datetime


def otp_key(purpose: OtpPurpose, identifier: str) -> str:
    return f"otp:{purpose.value}:{identifier}"


def otp_attempts_key(purpose: OtpPurpose, identifier: str) -> str:
    return f"{otp_key(purpose, identifier)}:attempts"


def normalize_identifier(identifier: str) -> str:
    return identifier.strip().lower()


def generate_otp_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def is_valid_otp_format(code: str) -> bool:
    return bool(_OTP_FORMAT.match(code.strip()))


def mask_identifier(identifier: str) -> str:
    """Mask an email for display, e.g. ``jo****@example.com``."""
    return _MASK_PATTERN.sub(
        lambda match: match.group(1) + "*" * min(len(match.group(2)), 8) + match.group(3),
        identifier,
    )


class OtpEngine:
    """Issues and checks six-digit codes per (purpose, identifier).

    State machine: absent -> pending -> (consumed | expired | exhausted) ->
    absent. A successful verify leaves the record in place so a later step
    (password reset, registration) can verify again and then ``consume`` it.
    Store failures are surfaced, never swallowed.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        rate_limiter: RateLimiter,
        mailer: OtpMailer,
        *,
        ttl_seconds: int = 10 * 60,
        max_attempts: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.rate_limiter = rate_limiter
        self.mailer = mailer
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self._clock = clock

    async def request_otp(self, purpose: OtpPurpose, identifier: str) -> Result[OtpIssued]:
        identifier = normalize_identifier(identifier)
        key = otp_key(purpose, identifier)
        try:
            decision = await self.rate_limiter.hit(purpose.value, identifier)
            if not decision.allowed:
                logger.warning(
                    "otp_rate_limited",
                    purpose=purpose.value,
                    identifier=mask_identifier(identifier),
                    retry_after_seconds=decision.retry_after_seconds,
                )
                return Result.fail(
                    FailureKind.RATE_LIMITED,
                    "Too many code requests. Please try again later.",
                    retry_after_seconds=decision.retry_after_seconds,
                )
            # Resend replaces any pending code
            await self.kv.delete(key, otp_attempts_key(purpose, identifier))
            code = generate_otp_code()
            expires_at = from_timestamp(self._clock() + self.ttl_seconds)
            record = OtpRecord(
                purpose=purpose.value,
                identifier=identifier,
                code=code,
                expires_at=expires_at,
            )
            stored = await self.kv.set_with_ttl(key, record.to_json(), self.ttl_seconds)
        except StoreUnavailable as exc:
            logger.error("otp_store_failed", purpose=purpose.value, error=str(exc))
            return Result.fail(
                FailureKind.STORE_UNAVAILABLE, "Verification codes are temporarily unavailable."
            )
        if not stored:
            logger.error("otp_store_unconfigured", purpose=purpose.value)
            return Result.fail(
                FailureKind.STORE_UNAVAILABLE, "Verification codes are temporarily unavailable."
            )

        sent = await asyncio.to_thread(
            self.mailer.send_otp, identifier, code, purpose.value, self.ttl_seconds // 60
        )
        if not sent:
            try:
                await self.kv.delete(key)
            except StoreUnavailable as exc:
                logger.error("otp_rollback_failed", purpose=purpose.value, error=str(exc))
            logger.warning(
                "otp_delivery_failed", purpose=purpose.value, identifier=mask_identifier(identifier)
            )
            return Result.fail(
                FailureKind.DELIVERY_FAILED,
                "Failed to send verification code. Please try again.",
            )

        logger.info(
            "otp_issued",
            purpose=purpose.value,
            identifier=mask_identifier(identifier),
            expires_at=expires_at.isoformat(),
        )
        return Result.success(OtpIssued(mask_identifier(identifier), expires_at))

    async def verify_otp(
        self, purpose: OtpPurpose, identifier: str, code: str
    ) -> Result[OtpRecord]:
        identifier = normalize_identifier(identifier)
        key = otp_key(purpose, identifier)
        attempts_key = otp_attempts_key(purpose, identifier)
        try:
            record = await self._load(key, attempts_key)
            if record is None:
                return Result.fail(
                    FailureKind.OTP_NOT_FOUND,
                    "No verification code found. Please request a new one.",
                )

            now = self._clock()
            remaining = record.expires_at.timestamp() - now
            if remaining < 0:
                await self.kv.delete(key, attempts_key)
                return Result.fail(
                    FailureKind.OTP_EXPIRED,
                    "Verification code has expired. Please request a new one.",
                )
            if record.attempts >= self.max_attempts:
                await self.kv.delete(key, attempts_key)
                return self._exhausted()

            if not hmac.compare_digest(record.code.encode(), code.strip().encode()):
                # Counter never outlives the code it guards
                attempts = await self.kv.increment(attempts_key, max(1, math.ceil(remaining)))
                if attempts >= self.max_attempts:
                    await self.kv.delete(key, attempts_key)
                    logger.warning(
                        "otp_attempts_exhausted",
                        purpose=purpose.value,
                        identifier=mask_identifier(identifier),
                    )
                    return self._exhausted()
                attempts_remaining = self.max_attempts - attempts
                return Result.fail(
                    FailureKind.OTP_MISMATCH,
                    f"Invalid verification code. {attempts_remaining} attempts remaining.",
                    attempts_remaining=attempts_remaining,
                )
        except StoreUnavailable as exc:
            logger.error("otp_verify_store_failed", purpose=purpose.value, error=str(exc))
            return Result.fail(
                FailureKind.STORE_UNAVAILABLE, "Verification codes are temporarily unavailable."
            )

        logger.info("otp_verified", purpose=purpose.value, identifier=mask_identifier(identifier))
        return Result.success(record)

    async def consume(self, purpose: OtpPurpose, identifier: str) -> None:
        identifier = normalize_identifier(identifier)
        await self.kv.delete(otp_key(purpose, identifier), otp_attempts_key(purpose, identifier))

    async def _load(self, key: str, attempts_key: str) -> Optional[OtpRecord]:
        raw = await self.kv.get(key)
        if raw is None:
            return None
        attempts_raw = await self.kv.get(attempts_key)
        try:
            return OtpRecord.from_json(raw, attempts=int(attempts_raw or 0))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("otp_record_corrupt", error=str(exc))
            await self.kv.delete(key, attempts_key)
            return None

    def _exhausted(self) -> Result[OtpRecord]:
        return Result.fail(
            FailureKind.OTP_ATTEMPTS_EXHAUSTED,
            "Too many invalid attempts. Please request a new code.",
            attempts_remaining=0,
        )


__all__ = [
    "OtpEngine",
    "OtpIssued",
    "OtpMailer",
    "OtpPurpose",
    "generate_otp_code",
    "is_valid_otp_format",
    "mask_identifier",
    "normalize_identifier",
]
