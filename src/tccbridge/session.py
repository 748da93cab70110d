"""Authenticated portal session: shared cookie-bearing transport plus auth state."""

from __future__ import annotations

import threading
import time

import aiohttp

from tccbridge._constants import REQUEST_TIMEOUT, SESSION_EXPIRY


class Session:
    """Credentials, the cookie jar and an authenticated/expired state machine.

    The portal keeps its session in cookies, so every request must go through
    the one :class:`aiohttp.ClientSession` returned by :meth:`http`.  The
    session counts as authenticated only while the flag is set *and* the last
    successful call is within *expiry* seconds.

    All accessors take an internal lock so the poll loop and interactive
    callers can share one instance.
    """

    def __init__(
        self,
        *,
        expiry: float = SESSION_EXPIRY,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self._lock = threading.Lock()
        self._expiry = expiry
        self._timeout = timeout
        self._http: aiohttp.ClientSession | None = None
        self._username = ""
        self._password = ""
        self._authenticated = False
        self._last_login = 0.0
        self._last_device_id = 0

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def http(self) -> aiohttp.ClientSession:
        """Return the shared HTTP session, creating it on first use.

        Must be called from a running event loop.
        """
        with self._lock:
            if self._http is None or self._http.closed:
                self._http = aiohttp.ClientSession(
                    cookie_jar=aiohttp.CookieJar(),
                    timeout=aiohttp.ClientTimeout(total=self._timeout),
                )
            return self._http

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        with self._lock:
            http, self._http = self._http, None
        if http is not None and not http.closed:
            await http.close()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def set_credentials(self, username: str, password: str) -> None:
        """Store new credentials; the session must log in again afterwards."""
        with self._lock:
            self._username = username
            self._password = password
            self._authenticated = False

    def get_credentials(self) -> tuple[str, str]:
        with self._lock:
            return self._username, self._password

    def has_credentials(self) -> bool:
        with self._lock:
            return bool(self._username and self._password)

    # ------------------------------------------------------------------
    # Auth state
    # ------------------------------------------------------------------

    def is_authenticated(self) -> bool:
        with self._lock:
            if not self._authenticated:
                return False
            return time.monotonic() - self._last_login <= self._expiry

    def mark_authenticated(self) -> None:
        with self._lock:
            self._authenticated = True
            self._last_login = time.monotonic()

    def mark_unauthenticated(self) -> None:
        with self._lock:
            self._authenticated = False

    def refresh_session(self) -> None:
        """Slide the expiry window after a successful authenticated call."""
        with self._lock:
            self._last_login = time.monotonic()

    def clear_session(self) -> None:
        """Drop all cookies and reset to unauthenticated.

        Used before a forced re-login so a stale portal session cannot mask
        bad credentials.
        """
        with self._lock:
            if self._http is not None:
                self._http.cookie_jar.clear()
            self._authenticated = False
            self._last_login = 0.0

    @property
    def last_login(self) -> float:
        """Monotonic timestamp of the last login or refresh (``0.0`` if never)."""
        with self._lock:
            return self._last_login

    # ------------------------------------------------------------------
    # Discovery aid
    # ------------------------------------------------------------------

    def set_last_device_id(self, device_id: int) -> None:
        with self._lock:
            self._last_device_id = device_id

    def get_last_device_id(self) -> int:
        """Device id seen in the last post-login redirect, or ``0``."""
        with self._lock:
            return self._last_device_id
