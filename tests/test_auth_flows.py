"""Tests for login, password reset and registration flows."""

import pytest

from conftest import DEFAULT_PASSWORD
from kalibro.service.auth import password_strength_error
from kalibro.service.otp import OtpPurpose, otp_key
from kalibro.service.results import FailureKind
from kalibro.storage.models import ClientMeta

EMAIL = "reader@library.example"
META = ClientMeta(user_agent="pytest", ip_address="192.0.2.10")


class TestPasswords:
    def test_hash_is_salted_argon2id(self, auth_service):
        first = auth_service.hash_password(DEFAULT_PASSWORD)
        second = auth_service.hash_password(DEFAULT_PASSWORD)
        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify_password(self, auth_service, make_account):
        account = make_account()
        assert auth_service.verify_password(account.id, DEFAULT_PASSWORD) is True
        assert auth_service.verify_password(account.id, "Wrong1Password") is False

    def test_unreadable_hash_fails_closed(self, auth_service, make_account, accounts):
        account = make_account()
        accounts.update_password(account.id, "$2b$12$not-an-argon-hash")
        assert auth_service.verify_password(account.id, DEFAULT_PASSWORD) is False

    @pytest.mark.parametrize(
        "password",
        ["Sh0rt", "alllowercase1", "ALLUPPERCASE1", "NoDigitsHere", "x" * 120 + "Aa1" * 3],
    )
    def test_weak_passwords(self, password):
        assert password_strength_error(password) is not None

    def test_strong_password(self):
        assert password_strength_error("Library2024") is None


class TestLogin:
    async def test_login_by_username_or_email(self, auth_service, make_account):
        account = make_account()
        by_name = await auth_service.login("reader", DEFAULT_PASSWORD, META)
        by_email = await auth_service.login("READER@library.example", DEFAULT_PASSWORD, META)

        assert by_name.ok and by_email.ok
        assert by_name.value.account.id == account.id
        assert by_name.value.tokens.session_id != by_email.value.tokens.session_id
        assert len(await auth_service.list_sessions(account.id)) == 2

    async def test_failures_share_one_generic_message(self, auth_service, make_account, accounts):
        account = make_account()
        wrong_password = await auth_service.login("reader", "Wrong1Password", META)
        unknown_user = await auth_service.login("ghost", DEFAULT_PASSWORD, META)
        accounts.set_active(account.id, False)
        inactive = await auth_service.login("reader", DEFAULT_PASSWORD, META)

        for result in (wrong_password, unknown_user, inactive):
            assert result.kind == FailureKind.INVALID_CREDENTIALS
            assert result.failure.message == "Invalid username or password"

    async def test_sixth_failed_login_from_one_ip_is_limited(self, auth_service, make_account):
        make_account()
        for _ in range(5):
            result = await auth_service.login("reader", "Wrong1Password", META)
            assert result.kind == FailureKind.INVALID_CREDENTIALS

        blocked = await auth_service.login("reader", DEFAULT_PASSWORD, META)
        assert blocked.kind == FailureKind.RATE_LIMITED
        assert blocked.failure.detail["retry_after_seconds"] == 900

        other_ip = await auth_service.login(
            "reader", DEFAULT_PASSWORD, ClientMeta(ip_address="192.0.2.99")
        )
        assert other_ip.ok

    async def test_limit_lifts_after_window(self, auth_service, make_account, clock):
        make_account()
        for _ in range(5):
            await auth_service.login("reader", "Wrong1Password", META)
        clock.advance(900)
        assert (await auth_service.login("reader", DEFAULT_PASSWORD, META)).ok

    async def test_successful_login_clears_failures(self, auth_service, make_account):
        make_account()
        for _ in range(4):
            await auth_service.login("reader", "Wrong1Password", META)
        assert (await auth_service.login("reader", DEFAULT_PASSWORD, META)).ok
        for _ in range(4):
            await auth_service.login("reader", "Wrong1Password", META)
        assert (await auth_service.login("reader", DEFAULT_PASSWORD, META)).ok

    async def test_login_events_are_recorded(self, auth_service, make_account):
        account = make_account()
        await auth_service.login("reader", "Wrong1Password", META)
        await auth_service.login("reader", DEFAULT_PASSWORD, META)
        events = await auth_service.recent_security_events(account.id)
        assert [e.type for e in events] == ["login", "login_failed"]
        assert events[0].ip_address == "192.0.2.10"


class TestPasswordReset:
    async def test_unknown_email_is_reported(self, auth_service):
        result = await auth_service.request_password_reset("ghost@library.example")
        assert result.kind == FailureKind.ACCOUNT_NOT_FOUND

    async def test_full_reset_flow(self, auth_service, make_account, mailer, kv):
        account = make_account()
        before = await auth_service.issue_token_pair(account)

        requested = await auth_service.request_password_reset(EMAIL)
        assert requested.ok
        code = mailer.last_code(EMAIL)
        assert (await auth_service.verify_otp(OtpPurpose.PASSWORD_RESET, EMAIL, code)).ok

        done = await auth_service.complete_password_reset(EMAIL, code, "Brand1NewPass", META)
        assert done.ok
        assert await kv.get(otp_key(OtpPurpose.PASSWORD_RESET, EMAIL)) is None
        assert await auth_service.list_sessions(account.id) == []
        assert (await auth_service.refresh(before.refresh_token)).kind == FailureKind.INVALID_REFRESH
        assert (await auth_service.login("reader", "Brand1NewPass", META)).ok
        assert (await auth_service.login("reader", DEFAULT_PASSWORD, META)).kind == (
            FailureKind.INVALID_CREDENTIALS
        )

    async def test_weak_new_password_keeps_code_usable(self, auth_service, make_account, mailer):
        make_account()
        await auth_service.request_password_reset(EMAIL)
        code = mailer.last_code(EMAIL)

        weak = await auth_service.complete_password_reset(EMAIL, code, "weak", META)
        assert weak.kind == FailureKind.WEAK_PASSWORD
        assert (await auth_service.complete_password_reset(EMAIL, code, "Brand1NewPass", META)).ok

    async def test_wrong_code_does_not_change_password(self, auth_service, make_account, mailer):
        make_account()
        await auth_service.request_password_reset(EMAIL)
        code = mailer.last_code(EMAIL)
        wrong = "000000" if code != "000000" else "111111"

        result = await auth_service.complete_password_reset(EMAIL, wrong, "Brand1NewPass", META)
        assert result.kind == FailureKind.OTP_MISMATCH
        assert (await auth_service.login("reader", DEFAULT_PASSWORD, META)).ok

    async def test_reset_code_cannot_be_reused(self, auth_service, make_account, mailer):
        make_account()
        await auth_service.request_password_reset(EMAIL)
        code = mailer.last_code(EMAIL)
        assert (await auth_service.complete_password_reset(EMAIL, code, "Brand1NewPass", META)).ok
        again = await auth_service.complete_password_reset(EMAIL, code, "Other1Password", META)
        assert again.kind == FailureKind.OTP_NOT_FOUND


class TestRegistration:
    async def test_existing_email_is_reported(self, auth_service, make_account):
        make_account()
        result = await auth_service.request_registration(EMAIL)
        assert result.kind == FailureKind.ACCOUNT_EXISTS

    async def test_full_registration_flow(self, auth_service, mailer, accounts):
        email = "newcomer@library.example"
        assert (await auth_service.request_registration(email)).ok
        code = mailer.last_code(email)
        assert mailer.sent[-1].purpose == "register"

        result = await auth_service.complete_registration(
            email, code, username="newcomer", password="Welcome1Reader", name="New Comer", client_meta=META
        )
        assert result.ok
        account = result.value.account
        assert account.role == "student"
        assert accounts.get_by_email(email).id == account.id
        tokens = result.value.tokens
        assert (await auth_service.authenticate(f"Bearer {tokens.access_token}")).ok
        events = await auth_service.recent_security_events(account.id)
        assert events[0].type == "registration"

    async def test_taken_username_is_a_conflict(self, auth_service, make_account, mailer):
        make_account()
        email = "second@library.example"
        await auth_service.request_registration(email)
        result = await auth_service.complete_registration(
            email, mailer.last_code(email), username="reader", password="Welcome1Reader"
        )
        assert result.kind == FailureKind.ACCOUNT_EXISTS

    async def test_registration_requires_valid_code(self, auth_service, mailer):
        email = "newcomer@library.example"
        result = await auth_service.complete_registration(
            email, "123456", username="newcomer", password="Welcome1Reader"
        )
        assert result.kind == FailureKind.OTP_NOT_FOUND
