"""Form-based portal login and classification of its outcome.

The portal has no API contract for login: success, bad credentials and
lockouts are all told apart by where the POST redirects to and by fragments
of the returned HTML.  Those heuristics live here and nowhere else.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from urllib.parse import urlsplit

import aiohttp

from tccbridge._constants import API_BASE, BROWSER_HEADERS, LOGIN_PATH, VERIFICATION_TOKEN_FIELD
from tccbridge.errors import (
    CredentialsMissingError,
    InvalidCredentialsError,
    LoginNetworkError,
    LoginRateLimitedError,
    UnexpectedLoginResponseError,
)
from tccbridge.ratelimit import RateLimiter
from tccbridge.session import Session

_LOGGER = logging.getLogger(__name__)

_TOKEN_RE = re.compile(rf'name="{re.escape(VERIFICATION_TOKEN_FIELD)}"[^>]*value="([^"]+)"')
_DEVICE_ID_RE = re.compile(r"/Device/Control/(\d+)")

_LOCKOUT_URL_MARKERS: tuple[str, ...] = ("toomanyattempts",)
_LOCKOUT_BODY_MARKERS: tuple[str, ...] = (
    "toomanyattempts",
    "too many attempts",
    "temporarily locked",
)
_FAILURE_MARKERS: tuple[str, ...] = ("login failed", "invalid", "incorrect")
_SUCCESS_MARKERS: tuple[str, ...] = ("LogoutLink", "SignOut", "Welcome")

_HTTP_OK = 200
_HTTP_TOO_MANY_REQUESTS = 429


class LoginOutcome(str, Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    INVALID_CREDENTIALS = "invalid_credentials"
    UNEXPECTED = "unexpected"


def extract_verification_token(html: str) -> str:
    """Return the anti-forgery token embedded in the login form, or ``""``."""
    match = _TOKEN_RE.search(html)
    return match.group(1) if match else ""


def extract_device_id(url: str) -> int:
    """Return the device id from a ``/Device/Control/<id>`` URL, or ``0``."""
    match = _DEVICE_ID_RE.search(url)
    return int(match.group(1)) if match else 0


def landed_in_app(url: str) -> bool:
    """True when *url* is inside the portal proper.

    The bare ``/portal`` path is the login form itself, so it does not count;
    neither do login or error pages.
    """
    path = urlsplit(url).path.rstrip("/").lower()
    if not path.startswith("/portal/"):
        return False
    return "login" not in path and "/error" not in path


def classify_login_response(status: int, final_url: str, body: str) -> LoginOutcome:
    """Classify the response to the login POST (after redirects).

    Lockout wins over everything; explicit failure text wins over success
    markers unless the redirect already landed inside the portal.
    """
    url_lower = final_url.lower()
    body_lower = body.lower()

    if (
        status == _HTTP_TOO_MANY_REQUESTS
        or any(m in url_lower for m in _LOCKOUT_URL_MARKERS)
        or any(m in body_lower for m in _LOCKOUT_BODY_MARKERS)
    ):
        return LoginOutcome.RATE_LIMITED
    if status != _HTTP_OK:
        return LoginOutcome.UNEXPECTED

    in_app = landed_in_app(final_url)
    if not in_app and any(m in body_lower for m in _FAILURE_MARKERS):
        return LoginOutcome.INVALID_CREDENTIALS
    if in_app or any(m in body for m in _SUCCESS_MARKERS):
        return LoginOutcome.SUCCESS
    return LoginOutcome.UNEXPECTED


def truncate_for_log(text: str, limit: int = 500) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class AuthFlow:
    """Performs the two-request login handshake against the portal.

    1. ``GET /portal`` and scrape the anti-forgery token (optional; some
       deployments omit it).
    2. ``POST /portal`` with the credentials as a urlencoded form.
    3. Classify the final URL and body; on success mark *session*
       authenticated and remember any device id in the redirect URL.

    Each request first takes a token from *limiter*.
    """

    def __init__(
        self,
        session: Session,
        limiter: RateLimiter,
        base_url: str = API_BASE,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._session = session
        self._limiter = limiter
        self._base_url = base_url.rstrip("/")
        self._log = logger or _LOGGER

    async def login(self) -> None:
        """Log in with the session's credentials.

        Raises:
            CredentialsMissingError: No credentials set; no request is made.
            LoginRateLimitedError: The portal reports a lockout.
            InvalidCredentialsError: The portal rejected the credentials.
            LoginNetworkError: The portal could not be reached.
            UnexpectedLoginResponseError: Anything else.
        """
        username, password = self._session.get_credentials()
        if not username or not password:
            raise CredentialsMissingError("Credentials not set.")

        http = self._session.http()
        url = f"{self._base_url}{LOGIN_PATH}"
        try:
            await self._limiter.acquire()
            async with http.get(url, headers=BROWSER_HEADERS) as resp:
                page = await resp.text()

            token = extract_verification_token(page)
            if not token:
                self._log.debug("Login page has no %s", VERIFICATION_TOKEN_FIELD)
            form = {"UserName": username, "Password": password, "RememberMe": "false"}
            if token:
                form[VERIFICATION_TOKEN_FIELD] = token

            await self._limiter.acquire()
            async with http.post(url, data=form, headers=BROWSER_HEADERS) as resp:
                status = resp.status
                final_url = str(resp.url)
                body = await resp.text()
        except (aiohttp.ClientError, TimeoutError) as e:
            raise LoginNetworkError(f"Login request failed: {str(e) or type(e).__name__}") from e

        self._log.debug("Login final URL: %s (status %d)", final_url, status)

        device_id = extract_device_id(final_url)
        if device_id:
            self._log.debug("Device id %d found in login redirect", device_id)
            self._session.set_last_device_id(device_id)

        outcome = classify_login_response(status, final_url, body)
        if outcome is LoginOutcome.SUCCESS:
            self._session.mark_authenticated()
            self._log.debug("Login successful")
            return
        if outcome is LoginOutcome.RATE_LIMITED:
            raise LoginRateLimitedError(
                "Login rate limited: too many attempts, please wait a few minutes."
            )
        if outcome is LoginOutcome.INVALID_CREDENTIALS:
            raise InvalidCredentialsError("Login failed: invalid credentials.")
        self._log.debug("Login response: %s", truncate_for_log(body))
        raise UnexpectedLoginResponseError(status, final_url, truncate_for_log(body))
