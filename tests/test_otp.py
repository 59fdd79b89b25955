"""Tests for one-time password issuance and verification."""

import asyncio

from kalibro.service.otp import (
    OtpEngine,
    OtpPurpose,
    generate_otp_code,
    is_valid_otp_format,
    mask_identifier,
    otp_attempts_key,
    otp_key,
)
from kalibro.service.rate_limit import RateLimiter
from kalibro.service.results import FailureKind
from kalibro.storage.kv import MemoryKeyValueStore, RedisKeyValueStore

EMAIL = "reader@library.example"
RESET = OtpPurpose.PASSWORD_RESET


def _engine(kv, mailer, clock, **kwargs):
    limiter = RateLimiter(kv, limit=5, window_seconds=900, clock=clock)
    return OtpEngine(kv, limiter, mailer, ttl_seconds=600, max_attempts=5, clock=clock, **kwargs)


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestHelpers:
    def test_generated_codes_are_six_digits(self):
        for _ in range(200):
            code = generate_otp_code()
            assert is_valid_otp_format(code)

    def test_format_check(self):
        assert is_valid_otp_format("012345")
        assert not is_valid_otp_format("12345")
        assert not is_valid_otp_format("12a456")

    def test_mask_identifier(self):
        assert mask_identifier("reader@library.example") == "re****@library.example"
        assert mask_identifier("averyveryverylongname@x.example") == "av********@x.example"
        assert mask_identifier("ab@x.example") == "ab@x.example"


class TestRequest:
    async def test_request_sends_and_stores_code(self, kv, mailer, clock):
        engine = _engine(kv, mailer, clock)
        result = await engine.request_otp(RESET, "  Reader@Library.example ")

        assert result.ok
        assert result.value.masked_identifier == "re****@library.example"
        assert mailer.sent[-1].to_email == EMAIL
        assert mailer.sent[-1].purpose == "reset"
        assert mailer.sent[-1].ttl_minutes == 10
        assert await kv.get(otp_key(RESET, EMAIL)) is not None
        assert await kv.ttl(otp_key(RESET, EMAIL)) == 600

    async def test_resend_replaces_code_and_attempts(self, kv, mailer, clock):
        engine = _engine(kv, mailer, clock)
        await engine.request_otp(RESET, EMAIL)
        first = mailer.last_code()
        await engine.verify_otp(RESET, EMAIL, _wrong(first))
        assert await kv.get(otp_attempts_key(RESET, EMAIL)) == "1"

        await engine.request_otp(RESET, EMAIL)
        second = mailer.last_code()
        assert await kv.get(otp_attempts_key(RESET, EMAIL)) is None
        assert (await engine.verify_otp(RESET, EMAIL, second)).ok

    async def test_sixth_request_is_rate_limited(self, kv, mailer, clock):
        engine = _engine(kv, mailer, clock)
        for _ in range(5):
            assert (await engine.request_otp(RESET, EMAIL)).ok
        result = await engine.request_otp(RESET, EMAIL)

        assert result.kind == FailureKind.RATE_LIMITED
        assert result.failure.detail["retry_after_seconds"] == 900
        assert len(mailer.sent) == 5

    async def test_delivery_failure_rolls_back_code(self, kv, mailer, clock):
        engine = _engine(kv, mailer, clock)
        mailer.fail = True
        result = await engine.request_otp(RESET, EMAIL)

        assert result.kind == FailureKind.DELIVERY_FAILED
        assert await kv.get(otp_key(RESET, EMAIL)) is None
        assert (await engine.verify_otp(RESET, EMAIL, "123456")).kind == FailureKind.OTP_NOT_FOUND

    async def test_unconfigured_store_reports_unavailable(self, mailer, clock):
        kv = RedisKeyValueStore(None)
        engine = _engine(kv, mailer, clock)
        result = await engine.request_otp(RESET, EMAIL)
        assert result.kind == FailureKind.STORE_UNAVAILABLE
        assert mailer.sent == []

    async def test_purposes_do_not_share_codes(self, kv, mailer, clock):
        engine = _engine(kv, mailer, clock)
        await engine.request_otp(RESET, EMAIL)
        code = mailer.last_code()
        result = await engine.verify_otp(OtpPurpose.REGISTRATION, EMAIL, code)
        assert result.kind == FailureKind.OTP_NOT_FOUND


class TestVerify:
    async def test_correct_code_verifies_without_consuming(self, kv, mailer, clock):
        engine = _engine(kv, mailer, clock)
        await engine.request_otp(RESET, EMAIL)
        code = mailer.last_code()

        first = await engine.verify_otp(RESET, EMAIL, code)
        assert first.ok
        assert first.value.identifier == EMAIL
        assert (await engine.verify_otp(RESET, EMAIL, code)).ok

        await engine.consume(RESET, EMAIL)
        assert (await engine.verify_otp(RESET, EMAIL, code)).kind == FailureKind.OTP_NOT_FOUND

    async def test_missing_code(self, kv, mailer, clock):
        result = await _engine(kv, mailer, clock).verify_otp(RESET, EMAIL, "123456")
        assert result.kind == FailureKind.OTP_NOT_FOUND

    async def test_mismatch_counts_down_then_exhausts(self, kv, mailer, clock):
        engine = _engine(kv, mailer, clock)
        await engine.request_otp(RESET, EMAIL)
        wrong = _wrong(mailer.last_code())

        remaining = []
        for _ in range(4):
            result = await engine.verify_otp(RESET, EMAIL, wrong)
            assert result.kind == FailureKind.OTP_MISMATCH
            remaining.append(result.failure.detail["attempts_remaining"])
        assert remaining == [4, 3, 2, 1]

        fifth = await engine.verify_otp(RESET, EMAIL, wrong)
        assert fifth.kind == FailureKind.OTP_ATTEMPTS_EXHAUSTED
        sixth = await engine.verify_otp(RESET, EMAIL, mailer.last_code())
        assert sixth.kind == FailureKind.OTP_NOT_FOUND

    async def test_expired_code_is_removed(self, kv, mailer, clock):
        engine = _engine(kv, mailer, clock)
        await engine.request_otp(RESET, EMAIL)
        code = mailer.last_code()
        clock.advance(599)
        assert (await engine.verify_otp(RESET, EMAIL, code)).ok
        clock.advance(2)
        assert (await engine.verify_otp(RESET, EMAIL, code)).kind in {
            FailureKind.OTP_EXPIRED,
            FailureKind.OTP_NOT_FOUND,
        }
        assert await kv.get(otp_key(RESET, EMAIL)) is None

    async def test_expiry_detected_when_record_outlives_its_deadline(self, kv, mailer, clock):
        engine = _engine(kv, mailer, clock)
        await engine.request_otp(RESET, EMAIL)
        code = mailer.last_code()
        raw = await kv.get(otp_key(RESET, EMAIL))
        # Keep the key alive past the record's own expiry
        await kv.set_with_ttl(otp_key(RESET, EMAIL), raw, 3600)
        clock.advance(601)

        result = await engine.verify_otp(RESET, EMAIL, code)
        assert result.kind == FailureKind.OTP_EXPIRED
        assert await kv.get(otp_key(RESET, EMAIL)) is None

    async def test_attempt_counter_expires_with_code(self, kv, mailer, clock):
        engine = _engine(kv, mailer, clock)
        await engine.request_otp(RESET, EMAIL)
        clock.advance(100)
        await engine.verify_otp(RESET, EMAIL, _wrong(mailer.last_code()))
        assert await kv.ttl(otp_attempts_key(RESET, EMAIL)) == 500

    async def test_concurrent_wrong_guesses_cannot_exceed_cap(self, mailer, clock):
        class YieldingStore(MemoryKeyValueStore):
            async def get(self, key):
                value = await super().get(key)
                await asyncio.sleep(0)
                return value

        kv = YieldingStore(clock=clock)
        engine = _engine(kv, mailer, clock)
        await engine.request_otp(RESET, EMAIL)
        wrong = _wrong(mailer.last_code())

        results = await asyncio.gather(
            *[engine.verify_otp(RESET, EMAIL, wrong) for _ in range(5)]
        )
        kinds = [r.kind for r in results]
        assert kinds.count(FailureKind.OTP_ATTEMPTS_EXHAUSTED) == 1
        assert kinds.count(FailureKind.OTP_MISMATCH) == 4
        after = await engine.verify_otp(RESET, EMAIL, mailer.last_code())
        assert after.kind == FailureKind.OTP_NOT_FOUND
