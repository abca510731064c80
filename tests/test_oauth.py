from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from eduauth.service.errors import AuthenticationError, ValidationError
from eduauth.service.oauth import OAuthService
from eduauth.service.sessions import EXCHANGE_CODE_DEVICE


def google_transport(calls, *, email="grace@example.com", status=200, verified=True):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.host == "oauth2.googleapis.com":
            if status != 200:
                return httpx.Response(status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "provider-token"})
        if request.url.path == "/oauth2/v2/userinfo":
            assert request.headers["Authorization"] == "Bearer provider-token"
            return httpx.Response(
                200,
                json={
                    "id": "g-123",
                    "email": email,
                    "given_name": "Grace",
                    "family_name": "Hopper",
                    "picture": "https://example.com/grace.png",
                    "verified_email": verified,
                },
            )
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def github_transport():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "github.com":
            return httpx.Response(200, json={"access_token": "gh-token"})
        if request.url.path == "/user":
            return httpx.Response(200, json={"id": 42, "login": "octo", "name": None, "email": None})
        if request.url.path == "/user/emails":
            return httpx.Response(
                200,
                json=[
                    {"email": "old@example.com", "primary": False, "verified": True},
                    {"email": "Octo@Example.com", "primary": True, "verified": True},
                ],
            )
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.fixture
def calls():
    return []


@pytest.fixture
def oauth_factory(stack):
    stack.settings.google_client_id = "google-client"
    stack.settings.google_client_secret = "google-secret"
    stack.settings.github_client_id = "github-client"
    stack.settings.github_client_secret = "github-secret"

    def _make(transport):
        return OAuthService(
            stack.store, stack.cache, stack.settings, stack.accounts, stack.sessions, transport=transport
        )

    return _make


@pytest.fixture
def oauth(oauth_factory, calls):
    return oauth_factory(google_transport(calls))


def _code_from(redirect: str) -> str:
    query = parse_qs(urlparse(redirect).query)
    assert query["success"] == ["true"]
    return query["code"][0]


class TestStart:
    async def test_builds_authorization_url_and_stores_role(self, oauth, stack):
        started = await oauth.start("google", "instructor")
        url = urlparse(started["authorization_url"])
        query = parse_qs(url.query)
        assert url.netloc == "accounts.google.com"
        assert query["client_id"] == ["google-client"]
        assert query["state"] == [started["state"]]
        assert query["redirect_uri"][0].endswith("/google/callback")
        pending = await stack.cache.get_json(f"oauth_role:{started['state']}")
        assert pending == {"role": "INSTRUCTOR", "provider": "google"}

    async def test_rejects_bad_input(self, oauth, stack):
        with pytest.raises(ValidationError) as excinfo:
            await oauth.start("myspace")
        assert excinfo.value.error_code == "UNSUPPORTED_PROVIDER"
        with pytest.raises(ValidationError) as excinfo:
            await oauth.start("google", "ADMIN")
        assert excinfo.value.error_code == "INVALID_ROLE"
        stack.settings.github_client_id = None
        with pytest.raises(ValidationError) as excinfo:
            await oauth.start("github")
        assert excinfo.value.error_code == "PROVIDER_NOT_CONFIGURED"


class TestCallback:
    async def test_new_user_gets_role_from_state(self, oauth, stack, calls, client_info):
        started = await oauth.start("google", "INSTRUCTOR")
        redirect = await oauth.callback("google", "provider-code", started["state"])
        assert redirect.startswith(f"{stack.settings.frontend_url}/auth/callback?")
        code = _code_from(redirect)

        user = stack.store.get_user_by_email("grace@example.com")
        assert user.role == "INSTRUCTOR"
        assert user.is_verified is True
        assert user.profile_image == "https://example.com/grace.png"
        assert [link.provider for link in stack.store.list_user_auth_providers(user.id)] == ["google"]
        row = stack.store.get_session_by_token(code)
        assert row.device_type == EXCHANGE_CODE_DEVICE
        assert len(calls) == 2

        result = await oauth.exchange(code, client_info)
        assert result["isNewUser"] is True
        assert result["provider"] == "google"
        assert result["user"]["email"] == "grace@example.com"
        assert await stack.sessions.authenticate(result["token"]) is not None

    async def test_existing_account_is_linked(self, oauth, stack, client_info):
        await stack.register_verified(email="grace@example.com")
        started = await oauth.start("google")
        code = _code_from(await oauth.callback("google", "provider-code", started["state"]))
        result = await oauth.exchange(code, client_info)
        assert result["isNewUser"] is False
        user = stack.store.get_user_by_email("grace@example.com")
        assert user.role == "STUDENT"
        assert [link.provider for link in stack.store.list_user_auth_providers(user.id)] == ["google"]

    async def test_unverified_provider_email_is_not_linked(self, oauth_factory, stack, calls):
        await stack.register_verified(email="grace@example.com")
        oauth = oauth_factory(google_transport(calls, verified=False))
        started = await oauth.start("google")
        redirect = await oauth.callback("google", "provider-code", started["state"])
        assert redirect == f"{stack.settings.frontend_url}/login?error=auth_failed"

        user = stack.store.get_user_by_email("grace@example.com")
        assert stack.store.list_user_auth_providers(user.id) == []
        assert all(s.device_type != EXCHANGE_CODE_DEVICE for s in stack.store.list_user_sessions(user.id))

    async def test_unknown_or_reused_state_fails(self, oauth, stack):
        failure = f"{stack.settings.frontend_url}/login?error=auth_failed"
        assert await oauth.callback("google", "provider-code", "forged-state") == failure

        started = await oauth.start("google")
        assert (await oauth.callback("google", "provider-code", started["state"])).startswith(
            f"{stack.settings.frontend_url}/auth/callback"
        )
        assert await oauth.callback("google", "provider-code", started["state"]) == failure

    async def test_state_bound_to_provider(self, oauth, stack):
        started = await oauth.start("google")
        redirect = await oauth.callback("github", "provider-code", started["state"])
        assert redirect.endswith("/login?error=auth_failed")

    async def test_provider_error_redirects_to_failure(self, oauth, stack):
        started = await oauth.start("google")
        redirect = await oauth.callback("google", None, started["state"], error="access_denied")
        assert redirect.endswith("/login?error=auth_failed")

    async def test_token_endpoint_failure(self, oauth_factory, stack, calls):
        oauth = oauth_factory(google_transport(calls, status=400))
        started = await oauth.start("google")
        redirect = await oauth.callback("google", "provider-code", started["state"])
        assert redirect.endswith("/login?error=auth_failed")
        assert stack.store.get_user_by_email("grace@example.com") is None

    async def test_banned_account_is_refused(self, oauth, stack):
        user = stack.store.create_user(
            "grace@example.com", "Grace", "Hopper", role="STUDENT", is_verified=True
        )
        stack.store.update_user(user.id, is_banned=True)
        started = await oauth.start("google")
        redirect = await oauth.callback("google", "provider-code", started["state"])
        assert redirect.endswith("/login?error=auth_failed")

    async def test_github_falls_back_to_primary_email(self, oauth_factory, stack):
        oauth = oauth_factory(github_transport())
        started = await oauth.start("github")
        code = _code_from(await oauth.callback("github", "provider-code", started["state"]))
        user = stack.store.get_user_by_email("octo@example.com")
        assert user is not None
        assert user.first_name == "octo"
        assert stack.store.get_session_by_token(code).user_id == user.id


class TestExchange:
    async def test_code_is_single_use(self, oauth, stack, client_info):
        started = await oauth.start("google")
        code = _code_from(await oauth.callback("google", "provider-code", started["state"]))

        await oauth.exchange(code, client_info)
        with pytest.raises(AuthenticationError) as excinfo:
            await oauth.exchange(code, client_info)
        assert excinfo.value.error_code == "INVALID_AUTH_CODE"
        assert await stack.cache.get_json(f"auth_code:{code}") is None

    async def test_durable_row_gates_without_cache_entry(self, oauth, stack, client_info):
        user = stack.store.create_user(
            "grace@example.com", "Grace", "Hopper", role="STUDENT", is_verified=True
        )
        code = await oauth.issue_exchange_code(user, "google", is_new_user=False)
        await stack.cache.delete(f"auth_code:{code}")

        result = await oauth.exchange(code, client_info)
        assert result["user"]["id"] == user.id
        assert result["provider"] is None

    async def test_missing_and_unknown_codes(self, oauth, client_info):
        with pytest.raises(ValidationError) as excinfo:
            await oauth.exchange("", client_info)
        assert excinfo.value.error_code == "MISSING_AUTH_CODE"
        with pytest.raises(AuthenticationError) as excinfo:
            await oauth.exchange("0" * 64, client_info)
        assert excinfo.value.error_code == "INVALID_AUTH_CODE"

    async def test_login_token_is_not_an_exchange_code(self, oauth, stack, client_info):
        verified = await stack.register_verified()
        with pytest.raises(AuthenticationError):
            await oauth.exchange(verified.data["token"], client_info)
        # The login session survives the attempt
        assert await stack.sessions.authenticate(verified.data["token"]) is not None
