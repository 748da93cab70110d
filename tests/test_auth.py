"""Tests for tccbridge.auth."""

from __future__ import annotations

import pytest
from aioresponses import aioresponses
from yarl import URL

from tccbridge._constants import API_BASE, VERIFICATION_TOKEN_FIELD
from tccbridge.auth import (
    AuthFlow,
    LoginOutcome,
    classify_login_response,
    extract_device_id,
    extract_verification_token,
    landed_in_app,
    truncate_for_log,
)
from tccbridge.errors import (
    CredentialsMissingError,
    InvalidCredentialsError,
    LoginNetworkError,
    LoginRateLimitedError,
    UnexpectedLoginResponseError,
)
from tccbridge.ratelimit import RateLimiter
from tccbridge.session import Session

LOGIN_URL = f"{API_BASE}/portal"
CONTROL_URL = f"{API_BASE}/portal/Device/Control/1234567"

LOGIN_PAGE = (
    '<form action="/portal" method="post">'
    f'<input name="{VERIFICATION_TOKEN_FIELD}" type="hidden" value="tok123" />'
    '<input name="UserName" /></form>'
)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestExtractors:
    def test_verification_token(self):
        assert extract_verification_token(LOGIN_PAGE) == "tok123"

    def test_verification_token_missing(self):
        assert extract_verification_token("<form></form>") == ""

    def test_device_id(self):
        assert extract_device_id(CONTROL_URL) == 1234567

    def test_device_id_missing(self):
        assert extract_device_id(f"{API_BASE}/portal/Locations") == 0

    def test_truncate(self):
        assert truncate_for_log("x" * 10, limit=4) == "xxxx..."
        assert truncate_for_log("short") == "short"


class TestLandedInApp:
    @pytest.mark.parametrize(
        "url",
        [CONTROL_URL, f"{API_BASE}/portal/Locations", f"{API_BASE}/portal/123/Zones"],
    )
    def test_inside(self, url):
        assert landed_in_app(url)

    @pytest.mark.parametrize(
        "url",
        [
            LOGIN_URL,
            f"{LOGIN_URL}/",
            f"{API_BASE}/portal/Account/Login",
            f"{API_BASE}/portal/Error",
            f"{API_BASE}/other",
        ],
    )
    def test_outside(self, url):
        assert not landed_in_app(url)


class TestClassifyLoginResponse:
    def test_lockout_url(self):
        url = f"{API_BASE}/portal/TooManyAttempts"
        assert classify_login_response(200, url, "") is LoginOutcome.RATE_LIMITED

    def test_lockout_body(self):
        body = "Your account is temporarily locked."
        assert classify_login_response(200, LOGIN_URL, body) is LoginOutcome.RATE_LIMITED

    def test_http_429(self):
        assert classify_login_response(429, LOGIN_URL, "") is LoginOutcome.RATE_LIMITED

    def test_invalid_credentials(self):
        body = "<div class='error'>Login failed. Invalid username or password.</div>"
        assert classify_login_response(200, LOGIN_URL, body) is LoginOutcome.INVALID_CREDENTIALS

    def test_failure_text_beats_success_marker_on_login_page(self):
        body = "Welcome! The password is incorrect."
        assert classify_login_response(200, LOGIN_URL, body) is LoginOutcome.INVALID_CREDENTIALS

    def test_landing_in_app_is_success(self):
        assert classify_login_response(200, CONTROL_URL, "") is LoginOutcome.SUCCESS

    def test_landing_in_app_ignores_failure_words(self):
        body = "Invalid filter"
        assert classify_login_response(200, CONTROL_URL, body) is LoginOutcome.SUCCESS

    def test_success_marker(self):
        body = '<a id="LogoutLink">Log off</a>'
        assert classify_login_response(200, LOGIN_URL, body) is LoginOutcome.SUCCESS

    def test_unexpected(self):
        assert classify_login_response(200, LOGIN_URL, "<html/>") is LoginOutcome.UNEXPECTED
        assert classify_login_response(500, CONTROL_URL, "") is LoginOutcome.UNEXPECTED


# ---------------------------------------------------------------------------
# AuthFlow (HTTP mocked)
# ---------------------------------------------------------------------------


def _flow(username: str = "user@example.com", password: str = "secret") -> AuthFlow:
    session = Session()
    session.set_credentials(username, password)
    return AuthFlow(session, RateLimiter(per_minute=60, burst=100))


class TestAuthFlow:
    async def test_missing_credentials_makes_no_request(self):
        flow = _flow("", "")
        with aioresponses() as m:
            with pytest.raises(CredentialsMissingError):
                await flow.login()
            assert not m.requests

    async def test_success_via_redirect(self):
        flow = _flow()
        try:
            with aioresponses() as m:
                m.get(LOGIN_URL, body=LOGIN_PAGE)
                m.post(LOGIN_URL, status=302, headers={"Location": CONTROL_URL})
                m.get(CONTROL_URL, body="<html>thermostat</html>")
                await flow.login()

                calls = m.requests[("POST", URL(LOGIN_URL))]
                form = calls[0].kwargs["data"]
                assert form["UserName"] == "user@example.com"
                assert form["Password"] == "secret"
                assert form["RememberMe"] == "false"
                assert form[VERIFICATION_TOKEN_FIELD] == "tok123"

            assert flow._session.is_authenticated()
            assert flow._session.get_last_device_id() == 1234567
        finally:
            await flow._session.close()

    async def test_token_is_optional(self):
        flow = _flow()
        try:
            with aioresponses() as m:
                m.get(LOGIN_URL, body="<form></form>")
                m.post(LOGIN_URL, body='<a id="LogoutLink">Log off</a>')
                await flow.login()
                form = m.requests[("POST", URL(LOGIN_URL))][0].kwargs["data"]
                assert VERIFICATION_TOKEN_FIELD not in form
            assert flow._session.is_authenticated()
        finally:
            await flow._session.close()

    async def test_invalid_credentials(self):
        flow = _flow()
        try:
            with aioresponses() as m:
                m.get(LOGIN_URL, body=LOGIN_PAGE)
                m.post(LOGIN_URL, body="Login failed: invalid username or password")
                with pytest.raises(InvalidCredentialsError):
                    await flow.login()
            assert not flow._session.is_authenticated()
        finally:
            await flow._session.close()

    async def test_rate_limited(self):
        flow = _flow()
        try:
            with aioresponses() as m:
                m.get(LOGIN_URL, body=LOGIN_PAGE)
                m.post(LOGIN_URL, body="Too many attempts. Try again later.")
                with pytest.raises(LoginRateLimitedError):
                    await flow.login()
        finally:
            await flow._session.close()

    async def test_unexpected_response(self):
        flow = _flow()
        try:
            with aioresponses() as m:
                m.get(LOGIN_URL, body=LOGIN_PAGE)
                m.post(LOGIN_URL, status=503, body="maintenance")
                with pytest.raises(UnexpectedLoginResponseError) as exc_info:
                    await flow.login()
            assert exc_info.value.status == 503
            assert exc_info.value.body == "maintenance"
        finally:
            await flow._session.close()

    async def test_network_error(self):
        flow = _flow()
        try:
            with aioresponses():
                with pytest.raises(LoginNetworkError, match="Login request failed"):
                    await flow.login()
        finally:
            await flow._session.close()
