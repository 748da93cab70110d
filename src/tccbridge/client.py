"""Total Connect Comfort portal client.

Provides programmatic access to thermostats through the (undocumented)
Total Connect Comfort web portal.  The :class:`Client` class is the main
entry point; it logs in on demand, throttles every request and normalises
the portal's responses into :class:`~tccbridge.models.ThermostatState`::

    import asyncio
    from tccbridge import Client

    async with Client() as client:
        client.set_credentials("email@example.com", "password")
        devices = await client.get_devices()
        await client.set_heat_setpoint(devices[0].device_id, 68.0)
"""

from __future__ import annotations

import json
import logging
import time

import aiohttp

from tccbridge._constants import (
    API_BASE,
    BROWSER_HEADERS,
    CONTROL_PATH,
    DEVICE_DATA_PATH,
    JSON_HEADERS,
    LIST_ENDPOINTS,
)
from tccbridge._crypto import decrypt_string, encrypt_string, load_or_create_key
from tccbridge.auth import AuthFlow, truncate_for_log
from tccbridge.config import Config
from tccbridge.errors import ControlSubmitError, SessionExpiredError
from tccbridge.models import ControlRequest, SystemMode, ThermostatState, mode_to_vendor
from tccbridge.parser import parse_device_data, parse_device_list
from tccbridge.ratelimit import PollCache, RateLimiter
from tccbridge.session import Session

_LOGGER = logging.getLogger(__name__)

_HTTP_OK = 200
_HTTP_UNAUTHORIZED = 401

_API_HEADERS: dict[str, str] = {**BROWSER_HEADERS, **JSON_HEADERS}


class Client:
    """Total Connect Comfort portal client.

    Composes a :class:`~tccbridge.session.Session` (cookies + auth state), a
    :class:`~tccbridge.ratelimit.RateLimiter`, a
    :class:`~tccbridge.ratelimit.PollCache` and the login
    :class:`~tccbridge.auth.AuthFlow`.  All collaborators can be injected,
    which is how tests run without waiting on the real one-per-minute limit.
    """

    def __init__(
        self,
        base_url: str = API_BASE,
        *,
        session: Session | None = None,
        limiter: RateLimiter | None = None,
        poll_cache: PollCache | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session or Session()
        self._limiter = limiter or RateLimiter()
        self._poll_cache = poll_cache or PollCache()
        self._log = logger or _LOGGER
        self._auth = AuthFlow(self._session, self._limiter, self._base_url, logger=self._log)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_config(cls, config: Config, *, logger: logging.Logger | None = None) -> Client:
        """Build a client from :class:`~tccbridge.config.Config` settings."""
        return cls(
            config.base_url,
            session=Session(timeout=config.request_timeout),
            limiter=RateLimiter(config.rate_per_minute, config.rate_burst),
            logger=logger,
        )

    @classmethod
    def from_saved(cls, config: Config, *, logger: logging.Logger | None = None) -> Client:
        """Build a client and load the credentials saved under ``config.data_dir``.

        Raises :class:`FileNotFoundError` if no credentials file exists and
        :class:`ValueError` if the stored password cannot be decrypted.
        """
        path = config.credentials_path
        if not path.exists():
            raise FileNotFoundError(
                f"No saved credentials at {path}. Run `tccbridge login` first."
            )
        creds = json.loads(path.read_text())
        key = load_or_create_key(config.key_path)
        client = cls.from_config(config, logger=logger)
        client.set_credentials(
            str(creds.get("username", "")),
            decrypt_string(str(creds.get("password", "")), key),
        )
        return client

    def save_credentials(self, config: Config) -> None:
        """Persist the credentials with the password encrypted at rest."""
        username, password = self._session.get_credentials()
        key = load_or_create_key(config.key_path, replace_invalid=True)
        path = config.credentials_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps({"username": username, "password": encrypt_string(password, key)}, indent=2)
        )
        path.chmod(0o600)

    async def close(self) -> None:
        await self._session.close()

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def poll_cache(self) -> PollCache:
        return self._poll_cache

    @property
    def is_authenticated(self) -> bool:
        return self._session.is_authenticated()

    @property
    def cached_devices(self) -> list[ThermostatState]:
        """Device list from the last successful live fetch."""
        return self._poll_cache.devices

    def set_credentials(self, username: str, password: str) -> None:
        self._session.set_credentials(username, password)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def login(self) -> None:
        """Log in to the portal.

        See :meth:`tccbridge.auth.AuthFlow.login` for the errors raised.
        """
        await self._auth.login()

    async def _ensure_authenticated(self) -> None:
        if self._session.is_authenticated():
            return
        last_login = self._session.last_login
        if last_login:
            self._log.info(
                "Portal session idle for %.0f seconds; logging in again",
                time.monotonic() - last_login,
            )
        await self._auth.login()

    async def test_connection(self) -> list[ThermostatState]:
        """Verify the credentials with a fresh login and a live device fetch.

        Cookies and the poll cache are dropped first so neither a still-valid
        portal session nor cached devices can hide bad credentials.  Meant
        for interactive "check my login" requests, not the poll loop.
        """
        self._session.clear_session()
        self._poll_cache.invalidate()
        await self._auth.login()
        return await self.get_devices()

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def get_devices(self) -> list[ThermostatState]:
        """Return all thermostats on the account.

        Within the minimum poll interval a non-empty cached list is returned
        without any request.  Otherwise each list endpoint is tried in turn;
        when none yields devices, the device id seen in the last login
        redirect is fetched directly.
        """
        await self._ensure_authenticated()

        cached = self._poll_cache.get()
        if cached is not None:
            self._log.debug("Returning %d cached devices", len(cached))
            return cached

        devices: list[ThermostatState] = []
        for endpoint in LIST_ENDPOINTS:
            devices = await self._fetch_device_list(endpoint)
            if devices:
                self._log.debug("Found %d devices from %s", len(devices), endpoint)
                break

        last_device_id = self._session.get_last_device_id()
        if not devices and last_device_id:
            self._log.debug("Trying known device id %d", last_device_id)
            try:
                device = await self.get_device_data(last_device_id)
            except (aiohttp.ClientError, TimeoutError) as e:
                self._log.debug("Known device %d fetch failed: %s", last_device_id, e)
                device = None
            if device is not None:
                devices.append(device)

        if devices:
            self._poll_cache.store(devices)
            self._session.refresh_session()
        return devices

    async def get_device_data(self, device_id: int) -> ThermostatState | None:
        """Fetch one thermostat's detail record.

        Returns ``None`` when the portal answers without usable device data.

        Raises:
            SessionExpiredError: The portal answered 401.  The session is
                marked unauthenticated; the caller decides whether to log in
                again and retry.
            aiohttp.ClientResponseError: Any other HTTP error status.
        """
        await self._ensure_authenticated()
        await self._limiter.acquire()

        http = self._session.http()
        url = f"{self._base_url}{DEVICE_DATA_PATH.format(device_id=device_id)}"
        async with http.get(url, headers=_API_HEADERS) as resp:
            if resp.status == _HTTP_UNAUTHORIZED:
                self._session.mark_unauthenticated()
                raise SessionExpiredError("Session expired.")
            resp.raise_for_status()
            body = await resp.read()

        state = parse_device_data(body, device_id, logger=self._log)
        if state is None:
            return None
        if not state.name:
            state.name = next(
                (d.name for d in self._poll_cache.devices if d.device_id == device_id), ""
            )
        self._session.refresh_session()
        return state

    async def _fetch_device_list(self, endpoint: str) -> list[ThermostatState]:
        """Fetch and parse one list endpoint; ``[]`` when it has nothing usable."""
        await self._limiter.acquire()
        http = self._session.http()
        try:
            async with http.get(f"{self._base_url}{endpoint}", headers=_API_HEADERS) as resp:
                status = resp.status
                final_url = str(resp.url)
                body = await resp.read()
        except (aiohttp.ClientError, TimeoutError) as e:
            self._log.debug("Endpoint %s failed: %s", endpoint, e)
            return []

        self._log.debug(
            "%s response (status %d, url %s): %s",
            endpoint,
            status,
            final_url,
            truncate_for_log(body.decode("utf-8", "replace")),
        )
        if status == _HTTP_UNAUTHORIZED:
            self._session.mark_unauthenticated()
            raise SessionExpiredError("Session expired.")
        lowered = final_url.lower()
        if "error" in lowered or "login" in lowered:
            self._log.debug("Endpoint %s redirected to %s", endpoint, final_url)
            return []
        return parse_device_list(body, logger=self._log)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def set_heat_setpoint(self, device_id: int, temperature: float) -> None:
        """Set and hold the heating setpoint (device units)."""
        await self._submit_control(
            ControlRequest(
                device_id=device_id,
                heat_setpoint=temperature,
                status_heat=1,
                heat_next_period=0,
            )
        )

    async def set_cool_setpoint(self, device_id: int, temperature: float) -> None:
        """Set and hold the cooling setpoint (device units)."""
        await self._submit_control(
            ControlRequest(
                device_id=device_id,
                cool_setpoint=temperature,
                status_cool=1,
                cool_next_period=0,
            )
        )

    async def set_system_mode(self, device_id: int, mode: SystemMode | str) -> None:
        """Change the system mode.

        Raises :class:`ValueError` for a mode the portal has no code for.
        """
        await self._submit_control(
            ControlRequest(device_id=device_id, system_switch=mode_to_vendor(mode))
        )

    async def _submit_control(self, request: ControlRequest) -> None:
        """POST a sparse control request, then force the next poll to be live.

        Raises:
            SessionExpiredError: The portal answered 401.
            ControlSubmitError: Any other non-200 status; carries the body.
        """
        await self._ensure_authenticated()
        await self._limiter.acquire()

        http = self._session.http()
        payload = request.to_payload()
        self._log.debug("Submitting control: %s", payload)
        async with http.post(
            f"{self._base_url}{CONTROL_PATH}", json=payload, headers=_API_HEADERS
        ) as resp:
            if resp.status == _HTTP_UNAUTHORIZED:
                self._session.mark_unauthenticated()
                raise SessionExpiredError("Session expired.")
            if resp.status != _HTTP_OK:
                raise ControlSubmitError(resp.status, await resp.text())

        self._session.refresh_session()
        self._poll_cache.invalidate()
