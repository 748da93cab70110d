"""Keeps the protocol bridge in step with the portal.

The :class:`SyncEngine` runs the poll loop and handles control commands from
the bridge or an interactive caller.  It only depends on the small capability
protocols defined here (:class:`CloudAPI`, :class:`ProtocolBridge`,
:class:`StateStore`), so tests substitute fakes for all three.

Poll ticks and commands are not serialised against each other: both upsert
the same per-device snapshot and the later write wins.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable, MutableMapping
from typing import Any, Protocol, TypeVar

import aiohttp

from tccbridge._constants import DEFAULT_POLL_INTERVAL
from tccbridge.errors import (
    DeviceNotFoundError,
    LoginError,
    LoginNetworkError,
    LoginRateLimitedError,
    SessionExpiredError,
    TccError,
    UnrecognizedCommandError,
)
from tccbridge.models import (
    ACTION_SET_COOL,
    ACTION_SET_HEAT,
    ACTION_SET_MODE,
    Command,
    Event,
    EventSource,
    EventType,
    SystemMode,
    ThermostatState,
    celsius_to_fahrenheit,
    fahrenheit_to_celsius,
)

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")

_SETPOINT_ACTIONS: dict[str, str] = {ACTION_SET_HEAT: "heat", ACTION_SET_COOL: "cool"}

# Errors that abandon a poll tick or fail a command without stopping the engine
_CALL_ERRORS = (TccError, aiohttp.ClientError, TimeoutError)


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class CloudAPI(Protocol):
    """What the engine needs from the portal client."""

    @property
    def is_authenticated(self) -> bool: ...

    async def login(self) -> None: ...

    async def get_devices(self) -> list[ThermostatState]: ...

    async def get_device_data(self, device_id: int) -> ThermostatState | None: ...

    async def set_heat_setpoint(self, device_id: int, temperature: float) -> None: ...

    async def set_cool_setpoint(self, device_id: int, temperature: float) -> None: ...

    async def set_system_mode(self, device_id: int, mode: SystemMode | str) -> None: ...

    async def test_connection(self) -> list[ThermostatState]: ...


class ProtocolBridge(Protocol):
    """What the engine needs from the protocol bridge."""

    async def update_state(self, state: ThermostatState) -> int: ...


class StateStore(Protocol):
    """What the engine needs from the state store."""

    def save_state(self, state: ThermostatState) -> None: ...

    def get_state(self, device_id: int) -> ThermostatState | None: ...

    def get_all_states(self) -> list[ThermostatState]: ...

    def get_first_state(self) -> ThermostatState | None: ...

    def log_event(
        self,
        source: EventSource,
        event_type: EventType,
        message: str,
        details: dict[str, object] | None = None,
    ) -> Event: ...


class _ContextAdapter(logging.LoggerAdapter[logging.Logger]):
    """Prefixes each record with its tick or command context."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        context = " ".join(f"{k}={v}" for k, v in (self.extra or {}).items())
        return f"[{context}] {msg}", kwargs


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SyncEngine:
    """Polls the portal and relays changes and commands.

    Args:
        client: Portal client (see :class:`CloudAPI`).
        store: Last-known state and event log (see :class:`StateStore`).
        bridge: Protocol bridge to forward changes to; ``None`` disables
            forwarding (one-shot CLI commands).
        poll_interval: Seconds between poll ticks.
        logger: Logger for all engine output.
    """

    def __init__(
        self,
        client: CloudAPI,
        store: StateStore,
        bridge: ProtocolBridge | None = None,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._bridge = bridge
        self._poll_interval = poll_interval
        self._log = logger or _LOGGER
        self._ticks = itertools.count(1)
        self._commands = itertools.count(1)

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Poll now, then every ``poll_interval`` seconds until cancelled."""
        self._log.info("Starting poll loop (interval: %s seconds)", self._poll_interval)
        while True:
            try:
                await self.poll_once()
            except OSError:
                self._log.exception("Poll tick abandoned: state store write failed")
            await asyncio.sleep(self._poll_interval)

    async def poll_once(self) -> list[ThermostatState]:
        """Run one poll tick and return the devices it saw.

        Portal failures are logged and recorded as events; they end the tick
        (with an empty result) but never raise.  A device whose state cannot
        be saved is skipped.  An :class:`OSError` from recording an event
        propagates; :meth:`run` logs it and keeps polling.
        """
        log = _ContextAdapter(self._log, {"tick": next(self._ticks)})

        if not self._client.is_authenticated:
            try:
                await self._client.login()
            except TccError as e:
                self._record_login_failure(e, log)
                return []

        try:
            devices = await self._with_relogin(self._client.get_devices)
        except LoginError as e:
            self._record_login_failure(e, log)
            return []
        except _CALL_ERRORS as e:
            log.error("Failed to poll portal: %s", e)
            self._store.log_event(EventSource.TCC, EventType.ERROR, f"Poll failed: {e}")
            return []

        for device in devices:
            try:
                await self._sync_device(device, log)
            except OSError:
                log.exception("Failed to save thermostat state for device %d", device.device_id)
        log.debug("Polled %d devices", len(devices))
        return devices

    async def _sync_device(self, device: ThermostatState, log: _ContextAdapter) -> None:
        previous = self._store.get_state(device.device_id)
        self._store.save_state(device)
        if not device.differs_from(previous):
            return

        u = device.units.upper()
        summary = (
            f"temp={device.current_temp:.1f}°{u}, heat={device.heat_setpoint:.1f}°{u}, "
            f"cool={device.cool_setpoint:.1f}°{u}, mode={device.system_mode.value}"
        )
        log.info("Device %d changed: %s", device.device_id, summary)
        self._store.log_event(
            EventSource.TCC,
            EventType.STATE_CHANGE,
            f"State changed: {summary}",
            {
                "device_id": device.device_id,
                "current_temp": device.current_temp,
                "heat_setpoint": device.heat_setpoint,
                "cool_setpoint": device.cool_setpoint,
                "system_mode": device.system_mode.value,
                "humidity": device.humidity,
            },
        )
        if await self._forward(device, log):
            self._store.log_event(
                EventSource.MATTER,
                EventType.STATE_CHANGE,
                f"Sent to bridge: {summary}",
                {"device_id": device.device_id},
            )

    async def _forward(self, device: ThermostatState, log: _ContextAdapter) -> bool:
        """Push *device* to the bridge; ``True`` on success."""
        if self._bridge is None:
            return False
        try:
            generation = await self._bridge.update_state(device)
        except _CALL_ERRORS as e:
            log.warning("Failed to update bridge state: %s", e)
            return False
        log.debug("Pushed device %d as generation %s", device.device_id, generation)
        return True

    def _record_login_failure(self, e: Exception, log: _ContextAdapter) -> None:
        if isinstance(e, LoginRateLimitedError):
            log.warning("Portal rate limited: %s", e)
            self._store.log_event(
                EventSource.TCC, EventType.ERROR, "Rate limited by portal", {"error": str(e)}
            )
        elif isinstance(e, LoginNetworkError):
            log.error("Portal connection failed: %s", e)
            self._store.log_event(
                EventSource.TCC,
                EventType.CONNECTION,
                "Connection to portal failed (timeout or network error)",
                {"error": str(e)},
            )
        else:
            log.warning("Portal login failed: %s", e)
            self._store.log_event(EventSource.TCC, EventType.ERROR, f"Login failed: {e}")

    async def _with_relogin(self, call: Callable[..., Awaitable[_T]], *args: Any) -> _T:
        """Await ``call(*args)``, logging in again and retrying once on expiry."""
        try:
            return await call(*args)
        except SessionExpiredError:
            self._log.info("Portal session expired; logging in again")
            await self._client.login()
            return await call(*args)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def handle_command(self, cmd: Command, source: EventSource = EventSource.HOMEKIT) -> None:
        """Apply a command from the protocol bridge (setpoints in Celsius).

        Raises :class:`~tccbridge.errors.UnrecognizedCommandError` for an
        unknown action; see :meth:`set_setpoint` and :meth:`set_mode` for
        the rest.
        """
        if cmd.action == ACTION_SET_MODE:
            await self.set_mode(cmd.value, cmd.device_id, source=source)
        elif cmd.action in _SETPOINT_ACTIONS:
            await self.set_setpoint(
                _SETPOINT_ACTIONS[cmd.action],
                _as_temperature(cmd.value),
                cmd.device_id,
                celsius=True,
                source=source,
            )
        else:
            self._log.warning("Unknown command: %s", cmd.action)
            raise UnrecognizedCommandError(f"Unknown command: {cmd.action}")

    async def set_setpoint(
        self,
        kind: str,
        value: float,
        device_id: int | None = None,
        *,
        celsius: bool = False,
        source: EventSource = EventSource.USER,
    ) -> ThermostatState | None:
        """Set and hold the ``heat`` or ``cool`` setpoint.

        *value* is in Fahrenheit unless *celsius* is set; it is converted to
        the units the device last reported (Fahrenheit when unknown) before
        submission.  Returns the refreshed device state, or ``None`` if the
        refetch failed.

        Raises:
            ValueError: *kind* is neither ``heat`` nor ``cool``.
            DeviceNotFoundError: No device id given and none known.
            TccError: The submission failed; nothing is persisted.
        """
        if kind not in ("heat", "cool"):
            raise ValueError(f"Invalid setpoint kind '{kind}'. Expected: heat | cool")
        device_id = self._resolve_device(device_id)
        log = _ContextAdapter(self._log, {"command": next(self._commands)})

        previous = self._store.get_state(device_id)
        old = 0.0
        units = "F"
        if previous is not None:
            old = previous.heat_setpoint if kind == "heat" else previous.cool_setpoint
            units = previous.units.upper()
        target = _to_device_units(value, celsius=celsius, units=units)

        submit = self._client.set_heat_setpoint if kind == "heat" else self._client.set_cool_setpoint
        await self._submit(log, source, f"set {kind} setpoint", submit, device_id, target)
        refreshed = await self._refresh(device_id, log)

        message = (
            f"{kind.capitalize()} setpoint changed from {old:.1f}°{units} to {target:.1f}°{units}"
        )
        self._store.log_event(
            source,
            EventType.TEMP_CHANGE,
            message,
            {
                "device_id": device_id,
                "type": kind,
                "old_setpoint": old,
                "new_setpoint": target,
                "units": units,
            },
        )
        log.info("%s: %s", source.value, message)
        return refreshed

    async def set_mode(
        self,
        mode: object,
        device_id: int | None = None,
        *,
        source: EventSource = EventSource.USER,
    ) -> ThermostatState | None:
        """Change the system mode.

        Returns the refreshed device state, or ``None`` if the refetch
        failed.  Raises :class:`ValueError` for a mode name that cannot be
        submitted, otherwise as :meth:`set_setpoint`.
        """
        if not isinstance(mode, (str, SystemMode)):
            raise ValueError(f"Invalid system mode value: {mode!r}")
        new_mode = SystemMode.parse(mode.value if isinstance(mode, SystemMode) else mode)
        if new_mode is SystemMode.UNKNOWN:
            raise ValueError(f"Invalid system mode '{mode}'.")
        device_id = self._resolve_device(device_id)
        log = _ContextAdapter(self._log, {"command": next(self._commands)})

        previous = self._store.get_state(device_id)
        old_mode = previous.system_mode.value if previous is not None else SystemMode.UNKNOWN.value

        await self._submit(
            log, source, "set mode", self._client.set_system_mode, device_id, new_mode
        )
        refreshed = await self._refresh(device_id, log)

        message = f"Mode changed from {old_mode} to {new_mode.value}"
        self._store.log_event(
            source,
            EventType.MODE_CHANGE,
            message,
            {"device_id": device_id, "old_mode": old_mode, "new_mode": new_mode.value},
        )
        log.info("%s: %s", source.value, message)
        return refreshed

    async def test_connection(self) -> list[ThermostatState]:
        """Re-verify the stored credentials with a fresh login.

        The outcome is recorded as a ``credentials`` event; failures are
        re-raised for the caller to report.
        """
        try:
            devices = await self._client.test_connection()
        except _CALL_ERRORS as e:
            self._log.warning("Connection test failed: %s", e)
            self._store.log_event(
                EventSource.USER,
                EventType.CREDENTIALS,
                "Connection test failed",
                {"error": str(e)},
            )
            raise
        self._store.log_event(
            EventSource.USER,
            EventType.CREDENTIALS,
            f"Connection test succeeded ({len(devices)} devices)",
        )
        return devices

    def _resolve_device(self, device_id: int | None) -> int:
        if device_id:
            return device_id
        first = self._store.get_first_state()
        if first is None:
            raise DeviceNotFoundError("No known device to send the command to.")
        return first.device_id

    async def _submit(
        self,
        log: _ContextAdapter,
        source: EventSource,
        what: str,
        call: Callable[..., Awaitable[None]],
        *args: Any,
    ) -> None:
        try:
            await self._with_relogin(call, *args)
        except _CALL_ERRORS as e:
            log.error("Failed to %s from %s: %s", what, source.value, e)
            self._store.log_event(
                source, EventType.ERROR, f"Failed to {what}", {"error": str(e)}
            )
            raise

    async def _refresh(
        self,
        device_id: int,
        log: _ContextAdapter,
    ) -> ThermostatState | None:
        """Refetch *device_id* after a change, then persist and forward it."""
        try:
            state = await self._with_relogin(self._client.get_device_data, device_id)
        except _CALL_ERRORS as e:
            log.warning("Failed to fetch device %d after change: %s", device_id, e)
            return None
        if state is None:
            log.warning("No data for device %d after change", device_id)
            return None
        self._store.save_state(state)
        await self._forward(state, log)
        return state


def _to_device_units(value: float, *, celsius: bool, units: str) -> float:
    if units == "C":
        return value if celsius else fahrenheit_to_celsius(value)
    return celsius_to_fahrenheit(value) if celsius else value


def _as_temperature(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"Invalid setpoint value: {value!r}")
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid setpoint value: {value!r}") from None
