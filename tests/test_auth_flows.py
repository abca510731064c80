from datetime import timedelta
from io import BytesIO

import pytest
from starlette.datastructures import Headers, UploadFile

from eduauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from eduauth.service.sessions import ClientInfo
from eduauth.service.verification import OTPPurpose
from eduauth.storage.models import utcnow

PASSWORD = "Secret123"
IPHONE = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148 Safari/604.1"


def _upload(content_type="image/png", size=16):
    return UploadFile(
        file=BytesIO(b"\x89PNG" + b"0" * size),
        filename="avatar.png",
        headers=Headers({"content-type": content_type}),
    )


async def _register(stack, client_info, email="ada@example.com", **kwargs):
    return await stack.auth.register(
        first_name="Ada",
        last_name="Lovelace",
        email=email,
        password=kwargs.pop("password", PASSWORD),
        role=kwargs.pop("role", "STUDENT"),
        client=client_info,
        **kwargs,
    )


async def _login(stack, client_info, email="ada@example.com", password=PASSWORD):
    outcome = await stack.auth.login(email=email, password=password, client=client_info)
    await stack.background.drain()
    return outcome


async def _context(stack, token):
    context = await stack.sessions.authenticate(token)
    assert context is not None
    return context


class TestRegistration:
    async def test_register_creates_unverified_account(self, stack, client_info):
        outcome = await _register(stack, client_info, email="  Ada@Example.COM ")
        assert outcome.status_code == 201
        assert outcome.code == "REGISTRATION_SUCCESS"
        assert outcome.data["user"]["email"] == "ada@example.com"
        assert outcome.data["needsVerification"] is True
        assert outcome.data["emailSent"] is True

        user = stack.store.get_user_by_email("ada@example.com")
        assert user.is_verified is False
        assert stack.store.get_role_profile(user.id).role == "STUDENT"
        assert [n.type for n in stack.store.list_notifications(user.id)] == ["WELCOME"]
        assert len(stack.email.of_kind("verification")) == 1

    async def test_reregistering_unverified_reissues_code(self, stack, client_info):
        first = await _register(stack, client_info)
        again = await _register(stack, client_info)

        assert again.status_code == 200
        assert again.code == "VERIFICATION_RESENT"
        assert again.data["user"]["id"] == first.data["user"]["id"]
        assert len(stack.email.of_kind("verification")) == 2
        # The latest code is the one that verifies
        verified = await stack.auth.verify(
            client=client_info, email="ada@example.com", otp=stack.email.last_otp("ada@example.com")
        )
        assert verified.data["user"]["id"] == first.data["user"]["id"]

    async def test_reissue_is_throttled_per_email(self, stack, client_info):
        await _register(stack, client_info)
        for _ in range(3):
            await _register(stack, client_info)
        with pytest.raises(RateLimitedError) as excinfo:
            await _register(stack, client_info)
        assert excinfo.value.message == "Please wait before requesting another code."

    async def test_verified_email_conflicts(self, stack, client_info):
        await stack.register_verified()
        with pytest.raises(ConflictError) as excinfo:
            await _register(stack, client_info)
        assert excinfo.value.error_code == "USER_ALREADY_EXISTS"

    async def test_profile_image_is_stored(self, stack, client_info):
        outcome = await _register(stack, client_info, profile_image=_upload())
        url = outcome.data["user"]["profileImage"]
        assert url.startswith("/uploads/profile_images/")
        assert stack.images.path_for(url.rsplit("/", 1)[-1]).exists()

    async def test_image_removed_when_registration_fails(self, stack, client_info):
        await stack.register_verified()
        with pytest.raises(ConflictError):
            await _register(stack, client_info, profile_image=_upload())
        assert not any(stack.images.base.glob("*"))

    async def test_rejects_non_image_upload(self, stack, client_info):
        with pytest.raises(ValidationError) as excinfo:
            await _register(stack, client_info, profile_image=_upload("text/plain"))
        assert excinfo.value.error_code == "INVALID_FILE_TYPE"
        assert stack.store.get_user_by_email("ada@example.com") is None

    async def test_rejects_oversize_upload(self, stack, client_info):
        with pytest.raises(ValidationError) as excinfo:
            await _register(stack, client_info, profile_image=_upload(size=2 * 1024 * 1024))
        assert excinfo.value.error_code == "FILE_TOO_LARGE"

    async def test_email_failure_does_not_fail_registration(
        self, make_stack, failing_email, client_info
    ):
        stack = make_stack(email=failing_email)
        outcome = await _register(stack, client_info)
        assert outcome.status_code == 201
        assert outcome.data["emailSent"] is False
        assert stack.store.get_user_by_email("ada@example.com") is not None

    async def test_register_is_rate_limited_per_ip(self, stack, client_info):
        for i in range(5):
            await _register(stack, client_info, email=f"user{i}@example.com")
        with pytest.raises(RateLimitedError):
            await _register(stack, client_info, email="late@example.com")


class TestVerification:
    async def test_otp_verification_logs_in(self, stack, client_info):
        await _register(stack, client_info)
        outcome = await stack.auth.verify(
            client=client_info, email="ada@example.com", otp=stack.email.last_otp("ada@example.com")
        )
        assert outcome.code == "VERIFICATION_SUCCESS"
        assert outcome.meta == {"isNewUser": True, "autoLogin": True, "verificationMethod": "otp"}
        assert outcome.data["user"]["isVerified"] is True
        assert outcome.data["user"]["lastLogin"] is not None
        context = await _context(stack, outcome.data["token"])
        assert context.user.is_verified
        assert stack.email.of_kind("welcome")
        assert (await stack.verification.otp_status("ada@example.com"))["exists"] is False

    async def test_link_token_verification(self, stack, client_info):
        await _register(stack, client_info)
        _, _, payload = stack.email.of_kind("verification")[-1]
        outcome = await stack.auth.verify(client=client_info, token=payload["token"])
        assert outcome.meta["verificationMethod"] == "token"
        assert stack.store.get_user_by_email("ada@example.com").is_verified

    async def test_unknown_link_token(self, stack, client_info):
        with pytest.raises(ValidationError) as excinfo:
            await stack.auth.verify(client=client_info, token="f" * 64)
        assert excinfo.value.error_code == "INVALID_TOKEN"

    async def test_wrong_otp_reports_remaining_attempts(self, stack, client_info):
        await _register(stack, client_info)
        otp = stack.email.last_otp("ada@example.com")
        wrong = "".join(str((int(d) + 1) % 10) for d in otp)
        with pytest.raises(ValidationError) as excinfo:
            await stack.auth.verify(client=client_info, email="ada@example.com", otp=wrong)
        assert excinfo.value.error_code == "OTP_VERIFICATION_FAILED"
        assert excinfo.value.detail["remainingAttempts"] == 2
        assert stack.store.get_user_by_email("ada@example.com").is_verified is False

    async def test_input_errors(self, stack, client_info):
        with pytest.raises(ValidationError) as excinfo:
            await stack.auth.verify(client=client_info, email="ada@example.com", otp="12ab")
        assert excinfo.value.error_code == "INVALID_OTP_FORMAT"
        with pytest.raises(ValidationError) as excinfo:
            await stack.auth.verify(client=client_info, email="ada@example.com")
        assert excinfo.value.error_code == "MISSING_REQUIRED_FIELDS"
        with pytest.raises(NotFoundError):
            await stack.auth.verify(client=client_info, email="ghost@example.com", otp="123456")

    async def test_already_verified(self, stack, client_info):
        await stack.register_verified()
        with pytest.raises(ValidationError) as excinfo:
            await stack.auth.verify(client=client_info, email="ada@example.com", otp="123456")
        assert excinfo.value.error_code == "ALREADY_VERIFIED"


class TestLogin:
    async def test_login_success(self, stack, client_info):
        await stack.register_verified()
        outcome = await _login(stack, client_info)
        assert outcome.code == "LOGIN_SUCCESS"
        assert outcome.meta == {"loginMethod": "password"}
        context = await _context(stack, outcome.data["token"])
        assert context.user.email == "ada@example.com"

    async def test_wrong_password_and_unknown_email_look_alike(self, stack, client_info):
        await stack.register_verified()
        for email, password in (("ada@example.com", "Wrong1234"), ("ghost@example.com", PASSWORD)):
            with pytest.raises(AuthenticationError) as excinfo:
                await _login(stack, client_info, email=email, password=password)
            assert excinfo.value.error_code == "INVALID_CREDENTIALS"
            assert excinfo.value.message == "Invalid email or password"

    async def test_unverified_account(self, stack, client_info):
        await _register(stack, client_info)
        with pytest.raises(ForbiddenError) as excinfo:
            await _login(stack, client_info)
        assert excinfo.value.error_code == "EMAIL_NOT_VERIFIED"

    async def test_deactivated_account(self, stack, client_info):
        await stack.register_verified()
        user = stack.store.get_user_by_email("ada@example.com")
        stack.store.update_user(user.id, is_active=False)
        await stack.accounts.invalidate(user.id, user.email)
        with pytest.raises(ForbiddenError) as excinfo:
            await _login(stack, client_info)
        assert excinfo.value.error_code == "ACCOUNT_DEACTIVATED"

    async def test_banned_account_reports_reason(self, stack, client_info):
        await stack.register_verified()
        user = stack.store.get_user_by_email("ada@example.com")
        stack.store.update_user(user.id, is_banned=True, ban_reason="spam", banned_at=utcnow())
        await stack.accounts.invalidate(user.id, user.email)
        with pytest.raises(ForbiddenError) as excinfo:
            await _login(stack, client_info)
        assert excinfo.value.error_code == "ACCOUNT_BANNED"
        assert excinfo.value.detail["banReason"] == "spam"

    async def test_stale_replica_does_not_hide_a_ban(self, stack, client_info):
        await stack.register_verified()
        user = stack.store.get_user_by_email("ada@example.com")
        await stack.accounts.warm(user)
        stack.store.update_user(user.id, is_banned=True, ban_reason="spam", banned_at=utcnow())
        # The cached replica still reads as an active account
        assert (await stack.cache.get_user("ada@example.com"))["isBanned"] is False
        with pytest.raises(ForbiddenError) as excinfo:
            await _login(stack, client_info)
        assert excinfo.value.error_code == "ACCOUNT_BANNED"

    async def test_already_authenticated(self, stack, client_info):
        verified = await stack.register_verified()
        with pytest.raises(ValidationError) as excinfo:
            await stack.auth.login(
                email="ada@example.com",
                password=PASSWORD,
                client=client_info,
                bearer=verified.data["token"],
            )
        assert excinfo.value.error_code == "ALREADY_AUTHENTICATED"

    async def test_new_device_triggers_alert(self, stack, client_info):
        await stack.register_verified()
        await _login(stack, client_info)
        assert stack.email.of_kind("login_alert") == []

        await _login(stack, ClientInfo("203.0.113.9", IPHONE))
        alerts = stack.email.of_kind("login_alert")
        assert len(alerts) == 1
        assert alerts[0][2]["deviceType"] == "mobile"

    async def test_logout_revokes_token(self, stack, client_info):
        await stack.register_verified()
        token = (await _login(stack, client_info)).data["token"]
        outcome = await stack.auth.logout(await _context(stack, token))
        assert outcome.data == {"tokenBlacklisted": True, "sessionsTerminated": 1}
        assert await stack.sessions.authenticate(token) is None


class TestPasswordReset:
    async def test_unknown_email_gets_generic_answer(self, stack, client_info):
        outcome = await stack.auth.request_password_reset(email="ghost@example.com", client=client_info)
        assert outcome.code == "PASSWORD_RESET_REQUESTED"
        assert outcome.message.startswith("If an account with that email exists")
        assert stack.email.sent == []

    async def test_reset_changes_password_and_signs_out_everywhere(self, stack, client_info):
        verified = await stack.register_verified()
        second = (await _login(stack, client_info)).data["token"]

        await stack.auth.request_password_reset(email="ada@example.com", client=client_info)
        otp = stack.email.last_otp("ada@example.com")
        outcome = await stack.auth.confirm_password_reset(
            email="ada@example.com", otp=otp, new_password="NewSecret456", client=client_info
        )
        assert outcome.code == "PASSWORD_RESET_SUCCESS"
        assert outcome.data == {
            "passwordChanged": True,
            "sessionsInvalidated": 2,
            "securityNotificationSent": True,
        }
        for token in (verified.data["token"], second):
            assert await stack.sessions.authenticate(token) is None
        user = stack.store.get_user_by_email("ada@example.com")
        assert stack.store.list_user_sessions(user.id) == []

        alerts = [n for n in stack.store.list_notifications(user.id) if n.type == "SECURITY_ALERT"]
        assert alerts and alerts[-1].priority == "HIGH"
        assert stack.email.of_kind("password_changed")

        with pytest.raises(AuthenticationError):
            await _login(stack, client_info)
        assert (await _login(stack, client_info, password="NewSecret456")).code == "LOGIN_SUCCESS"

    async def test_registration_code_cannot_reset_password(self, stack, client_info):
        await stack.register_verified()
        await stack.verification.issue_otp("ada@example.com", OTPPurpose.REGISTRATION)
        otp = (await stack.cache.get_json("otp:ada@example.com"))["otp"]
        with pytest.raises(ValidationError) as excinfo:
            await stack.auth.confirm_password_reset(
                email="ada@example.com", otp=otp, new_password="NewSecret456", client=client_info
            )
        assert excinfo.value.detail["reason"] == "not_found"

    async def test_request_is_limited_per_email(self, stack, client_info):
        for i in range(3):
            await stack.auth.request_password_reset(
                email="ada@example.com", client=ClientInfo(f"10.0.1.{i}", "pytest")
            )
        with pytest.raises(RateLimitedError):
            await stack.auth.request_password_reset(
                email="ada@example.com", client=ClientInfo("10.0.2.1", "pytest")
            )

    async def test_cache_outage_keeps_answer_generic(self, make_stack, failing_cache, client_info):
        stack = make_stack(cache=failing_cache)
        stack.store.create_user(
            "ada@example.com", "Ada", "Lovelace", role="STUDENT", is_verified=True
        )
        outcome = await stack.auth.request_password_reset(email="ada@example.com", client=client_info)
        assert outcome.code == "PASSWORD_RESET_REQUESTED"
        assert stack.email.sent == []


class TestOTPManagement:
    async def test_resend_registration_code(self, stack, client_info):
        await _register(stack, client_info)
        outcome = await stack.auth.resend_otp(email="ada@example.com", otp_type="verification")
        assert outcome.code == "OTP_RESENT"
        assert outcome.data["expiresIn"] == 10
        assert outcome.data["remainingAttempts"] == 3
        assert len(stack.email.of_kind("verification")) == 2

    async def test_resend_for_verified_account(self, stack, client_info):
        await stack.register_verified()
        with pytest.raises(ValidationError) as excinfo:
            await stack.auth.resend_otp(email="ada@example.com", otp_type="verification")
        assert excinfo.value.error_code == "ALREADY_VERIFIED"
        outcome = await stack.auth.resend_otp(email="ada@example.com", otp_type="password_reset")
        assert outcome.data["expiresIn"] == 15

    async def test_resend_for_unknown_email(self, stack):
        with pytest.raises(NotFoundError):
            await stack.auth.resend_otp(email="ghost@example.com", otp_type="verification")

    async def test_status(self, stack, client_info):
        await _register(stack, client_info)
        outcome = await stack.auth.otp_status(email="ADA@example.com", client=client_info)
        assert outcome.data["exists"] is True
        assert outcome.data["remainingAttempts"] == 3


class TestSessionManagement:
    async def test_invalidate_keeping_current(self, stack, client_info):
        verified = await stack.register_verified()
        other = (await _login(stack, client_info)).data["token"]
        context = await _context(stack, verified.data["token"])

        outcome = await stack.auth.invalidate_sessions(context, keep_current=True)
        assert outcome.data == {
            "sessionsInvalidated": 1,
            "tokensBlacklisted": 1,
            "currentSessionKept": True,
        }
        assert await stack.sessions.authenticate(verified.data["token"]) is not None
        assert await stack.sessions.authenticate(other) is None

    async def test_invalidate_everything(self, stack, client_info):
        verified = await stack.register_verified()
        context = await _context(stack, verified.data["token"])
        outcome = await stack.auth.invalidate_sessions(context, keep_current=False, reason="lost phone")
        assert outcome.data["currentSessionKept"] is False
        assert await stack.sessions.authenticate(verified.data["token"]) is None

    async def test_list_sessions(self, stack, client_info):
        verified = await stack.register_verified()
        context = await _context(stack, verified.data["token"])
        outcome = await stack.auth.list_sessions(context, page=1, limit=10)
        assert outcome.code == "SESSIONS_RETRIEVED"
        assert outcome.data["sessions"][0]["isCurrent"] is True


class TestReactivation:
    async def _deactivated(self, stack):
        await stack.register_verified()
        user = stack.store.get_user_by_email("ada@example.com")
        return stack.store.update_user(user.id, is_active=False)

    async def test_active_account_is_refused(self, stack, client_info):
        await stack.register_verified()
        with pytest.raises(ValidationError) as excinfo:
            await stack.auth.request_reactivation(
                reason="Please restore my account", client=client_info, email="ada@example.com"
            )
        assert excinfo.value.error_code == "ACCOUNT_ALREADY_ACTIVE"

    async def test_request_notifies_admins_and_blocks_duplicates(self, stack, client_info):
        admin = stack.store.create_user(
            "root@example.com", "Root", "Admin", role="ADMIN", is_verified=True
        )
        user = await self._deactivated(stack)

        outcome = await stack.auth.request_reactivation(
            reason="Please restore my account", client=client_info, user_id=user.id
        )
        assert outcome.status_code == 201
        assert outcome.data["status"] == "PENDING"
        assert outcome.data["expectedReviewTime"] == "3-5 business days"
        assert [n.type for n in stack.store.list_notifications(admin.id)] == ["REACTIVATION_REQUEST"]
        assert stack.email.of_kind("reactivation_received")

        with pytest.raises(ConflictError) as excinfo:
            await stack.auth.request_reactivation(
                reason="Please restore my account", client=client_info, email="ada@example.com"
            )
        assert excinfo.value.error_code == "REQUEST_ALREADY_EXISTS"

    async def test_recent_ban_is_in_cooldown(self, stack, client_info):
        await stack.register_verified()
        user = stack.store.get_user_by_email("ada@example.com")
        stack.store.update_user(user.id, is_banned=True, banned_at=utcnow() - timedelta(days=3))
        with pytest.raises(ForbiddenError) as excinfo:
            await stack.auth.request_reactivation(
                reason="Please restore my account", client=client_info, user_id=user.id
            )
        assert excinfo.value.error_code == "REACTIVATION_COOLDOWN_ACTIVE"
        assert "canRequestAfter" in excinfo.value.detail

    async def test_old_ban_may_request(self, stack, client_info):
        await stack.register_verified()
        user = stack.store.get_user_by_email("ada@example.com")
        stack.store.update_user(user.id, is_banned=True, banned_at=utcnow() - timedelta(days=31))
        outcome = await stack.auth.request_reactivation(
            reason="Please restore my account", client=client_info, user_id=user.id
        )
        assert outcome.code == "REACTIVATION_REQUEST_SUBMITTED"

    async def test_status(self, stack, client_info):
        user = await self._deactivated(stack)
        with pytest.raises(NotFoundError) as excinfo:
            await stack.auth.reactivation_status(user_id=user.id, client=client_info)
        assert excinfo.value.error_code == "REQUEST_NOT_FOUND"

        await stack.auth.request_reactivation(
            reason="Please restore my account", client=client_info, user_id=user.id
        )
        outcome = await stack.auth.reactivation_status(user_id=user.id, client=client_info)
        assert outcome.data["status"] == "PENDING"
        assert outcome.data["accountStatus"] == {"isActive": False, "isBanned": False}
        assert await stack.cache.get_json(f"reactivation_status:{user.id}") == outcome.data

    async def test_missing_identifier(self, stack, client_info):
        with pytest.raises(ValidationError) as excinfo:
            await stack.auth.request_reactivation(reason="Please restore", client=client_info)
        assert excinfo.value.error_code == "MISSING_REQUIRED_FIELDS"


class TestAccountDeletion:
    async def test_requires_confirmation_phrase(self, stack, client_info):
        verified = await stack.register_verified()
        context = await _context(stack, verified.data["token"])
        with pytest.raises(ValidationError) as excinfo:
            await stack.auth.delete_account(
                context, password=PASSWORD, reason="Leaving the platform", confirmation="yes", client=client_info
            )
        assert excinfo.value.error_code == "DELETION_NOT_CONFIRMED"

    async def test_requires_password(self, stack, client_info):
        verified = await stack.register_verified()
        context = await _context(stack, verified.data["token"])
        with pytest.raises(AuthenticationError) as excinfo:
            await stack.auth.delete_account(
                context,
                password="Wrong1234",
                reason="Leaving the platform",
                confirmation="DELETE_MY_ACCOUNT",
                client=client_info,
            )
        assert excinfo.value.error_code == "INVALID_PASSWORD"

    async def test_anonymizes_and_frees_the_email(self, stack, client_info):
        verified = await stack.register_verified()
        user_id = verified.data["user"]["id"]
        context = await _context(stack, verified.data["token"])

        outcome = await stack.auth.delete_account(
            context,
            password=PASSWORD,
            reason="Leaving the platform",
            confirmation="DELETE_MY_ACCOUNT",
            client=client_info,
        )
        assert outcome.code == "ACCOUNT_DELETED"
        assert outcome.data["sessionsInvalidated"] == 1

        user = stack.store.get_user(user_id)
        assert user.is_active is False
        assert user.email.startswith("deleted_") and user.email.endswith("_ada@example.com")
        assert (user.first_name, user.last_name) == ("Deleted", "User")
        assert stack.store.get_account_deletion(user_id).original_email == "ada@example.com"
        assert await stack.sessions.authenticate(verified.data["token"]) is None
        assert stack.email.of_kind("account_deleted")[0][1] == "ada@example.com"

        with pytest.raises(AuthenticationError):
            await _login(stack, client_info)
        fresh = await _register(stack, ClientInfo("10.9.9.9", "pytest"))
        assert fresh.status_code == 201
        assert fresh.data["user"]["id"] != user_id

    async def test_me(self, stack):
        verified = await stack.register_verified()
        outcome = await stack.auth.me(await _context(stack, verified.data["token"]))
        assert outcome.data["user"]["email"] == "ada@example.com"
        assert "isBanned" not in outcome.data["user"]
