"""Adapter for the protocol bridge service.

The bridge is a separate process that presents the thermostat to a smart-home
ecosystem.  It exposes a small HTTP API:

- ``POST /state``: the canonical state in Celsius (camelCase keys).
- ``GET /status``: bridge health and pairing status.
- ``GET /events`` (WebSocket): ``{"type": "command", "data": {...}}`` messages
  when a user changes the thermostat from the ecosystem side.

Pushing a state makes the bridge update its own attributes, which it may
report back as commands.  Every push therefore carries a ``generation``; the
:class:`GenerationTracker` recognises a command that merely echoes a push.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable

import aiohttp

from tccbridge._constants import BRIDGE_RECONNECT_INTERVAL, BRIDGE_TIMEOUT, DEFAULT_BRIDGE_URL
from tccbridge.errors import BridgeError
from tccbridge.models import (
    ACTION_SET_COOL,
    ACTION_SET_HEAT,
    ACTION_SET_MODE,
    Command,
    SystemMode,
    ThermostatState,
)

_LOGGER = logging.getLogger(__name__)

CommandHandler = Callable[[Command], Awaitable[None]]

_SETPOINT_TOLERANCE = 0.01  # degrees Celsius
_SETPOINT_KEYS: dict[str, str] = {
    ACTION_SET_HEAT: "heatSetpoint",
    ACTION_SET_COOL: "coolSetpoint",
}


class GenerationTracker:
    """Issues push generations and recognises commands that echo them.

    Keeps the payloads of the last *history* generations.  A command is an
    echo when it names one of those generations and its value equals what
    that generation pushed.  Overlapping pushes each get their own
    generation, so an echo of an older push is still recognised.
    """

    def __init__(self, history: int = 32) -> None:
        self._history = history
        self._current = 0
        self._pushed: OrderedDict[int, dict[str, object]] = OrderedDict()

    @property
    def current(self) -> int:
        """The most recently issued generation (``0`` before any push)."""
        return self._current

    def issue(self, payload: dict[str, object]) -> int:
        self._current += 1
        self._pushed[self._current] = dict(payload)
        while len(self._pushed) > self._history:
            self._pushed.popitem(last=False)
        return self._current

    def is_echo(self, cmd: Command) -> bool:
        if cmd.generation is None:
            return False
        pushed = self._pushed.get(cmd.generation)
        if pushed is None:
            return False
        if cmd.device_id is not None and pushed.get("deviceId") != cmd.device_id:
            return False

        if cmd.action == ACTION_SET_MODE:
            return SystemMode.parse(cmd.value).value == pushed.get("systemMode")
        key = _SETPOINT_KEYS.get(cmd.action)
        if key is None:
            return False
        try:
            value = float(str(cmd.value))
            previous = float(str(pushed.get(key)))
        except ValueError:
            return False
        return abs(value - previous) <= _SETPOINT_TOLERANCE


class BridgeClient:
    """HTTP/WebSocket client for the protocol bridge."""

    def __init__(
        self,
        base_url: str = DEFAULT_BRIDGE_URL,
        *,
        timeout: float = BRIDGE_TIMEOUT,
        tracker: GenerationTracker | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._tracker = tracker or GenerationTracker()
        self._log = logger or _LOGGER
        self._http: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @property
    def tracker(self) -> GenerationTracker:
        return self._tracker

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()
            self._http = None

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def update_state(self, state: ThermostatState) -> int:
        """Push *state* (converted to Celsius) and return its generation.

        Raises :class:`~tccbridge.errors.BridgeError` on a non-200 answer;
        transport errors propagate as :mod:`aiohttp` exceptions.
        """
        payload = state.to_bridge_payload()
        generation = self._tracker.issue(payload)
        payload["generation"] = generation
        self._log.debug(
            "Pushing device %d: temp=%.1f°C heat=%.1f°C cool=%.1f°C mode=%s (generation %d)",
            state.device_id,
            payload["currentTemp"],
            payload["heatSetpoint"],
            payload["coolSetpoint"],
            payload["systemMode"],
            generation,
        )
        async with self._session().post(f"{self._base_url}/state", json=payload) as resp:
            if resp.status != 200:
                raise BridgeError(f"Bridge rejected state update: {resp.status}")
        return generation

    async def get_status(self) -> dict[str, object]:
        async with self._session().get(f"{self._base_url}/status") as resp:
            if resp.status != 200:
                raise BridgeError(f"Bridge status request failed: {resp.status}")
            data = await resp.json(content_type=None)
        if not isinstance(data, dict):
            raise BridgeError("Bridge status is not a JSON object.")
        return data

    # ------------------------------------------------------------------
    # Command channel (WebSocket)
    # ------------------------------------------------------------------

    async def listen(self, handler: CommandHandler) -> Subscription:
        """Dispatch bridge commands to *handler* until stopped.

        Runs in a background task that reconnects every
        ``BRIDGE_RECONNECT_INTERVAL`` seconds after a disconnect.  Echoes of
        this client's own pushes are dropped before reaching *handler*.

        Returns a :class:`Subscription` whose :meth:`~Subscription.stop`
        method cancels the listener.
        """
        task = asyncio.create_task(self._run_listen_loop(handler))
        return Subscription(task, self)

    async def _run_listen_loop(self, handler: CommandHandler) -> None:
        ws_url = "ws" + self._base_url[len("http") :] + "/events"
        while True:
            try:
                async with self._session().ws_connect(ws_url) as ws:
                    self._ws = ws
                    self._log.info("Connected to bridge events at %s", ws_url)
                    try:
                        async for message in ws:
                            if message.type is aiohttp.WSMsgType.TEXT:
                                await self.dispatch(message.data, handler)
                            elif message.type is aiohttp.WSMsgType.ERROR:
                                break
                    finally:
                        self._ws = None
            except (aiohttp.ClientError, TimeoutError) as e:
                self._log.debug("Bridge events connection failed: %s", e)
            # CancelledError is not caught, so Subscription.stop() still works.
            await asyncio.sleep(BRIDGE_RECONNECT_INTERVAL)

    async def dispatch(self, raw: str | bytes, handler: CommandHandler) -> bool:
        """Decode one event message and hand a genuine command to *handler*.

        Returns ``True`` when *handler* was called.  Malformed messages,
        non-command events and echoes are logged and skipped; a failing
        handler is logged without stopping the listener.
        """
        try:
            event = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            self._log.debug("Ignoring malformed bridge message: %r", raw)
            return False
        if not isinstance(event, dict) or event.get("type") != "command":
            return False
        data = event.get("data")
        if not isinstance(data, dict):
            return False
        try:
            cmd = Command.from_event(data)
        except ValueError:
            self._log.debug("Ignoring malformed bridge command: %r", data)
            return False

        if self._tracker.is_echo(cmd):
            self._log.debug(
                "Dropping echo of generation %s: %s=%s", cmd.generation, cmd.action, cmd.value
            )
            return False

        self._log.info("Bridge command: %s=%s", cmd.action, cmd.value)
        try:
            await handler(cmd)
        except Exception:
            self._log.exception("Bridge command %s failed", cmd.action)
        return True


class Subscription:
    """Handle for the bridge command listener.

    Returned by :meth:`BridgeClient.listen`.  Call :meth:`stop` to cancel
    the background listener, or :meth:`wait` to block until it ends.
    """

    def __init__(self, task: asyncio.Task[None], bridge: BridgeClient) -> None:
        self._task = task
        self._bridge = bridge

    @property
    def is_connected(self) -> bool:
        """True while the events WebSocket is open."""
        return self._bridge._ws is not None

    async def stop(self) -> None:
        """Cancel the listener and wait for cleanup."""
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task

    async def wait(self) -> None:
        """Wait until the listener ends.

        Raises :class:`asyncio.CancelledError` if the task is cancelled
        externally (e.g. by *Ctrl-C*).
        """
        await self._task
