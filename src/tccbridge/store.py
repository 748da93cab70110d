"""Last-known thermostat state and the event log.

:class:`MemoryStore` keeps everything in process; :class:`JsonStore` adds a
JSON file that is rewritten atomically after every change.  Both are
synchronous: the sync engine treats the store as authoritative for "last
known" comparisons.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

from tccbridge._constants import MAX_EVENTS
from tccbridge.models import Event, EventSource, EventType, ThermostatState

_LOGGER = logging.getLogger(__name__)


class MemoryStore:
    """In-process state store.

    Snapshots are upserted by device id (last write wins).  The event log
    keeps the newest *max_events* entries.
    """

    def __init__(self, *, max_events: int = MAX_EVENTS) -> None:
        self._max_events = max_events
        self._states: dict[int, ThermostatState] = {}
        self._events: list[Event] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # State snapshots
    # ------------------------------------------------------------------

    def save_state(self, state: ThermostatState) -> None:
        with self._lock:
            self._states[state.device_id] = dataclasses.replace(state)
            self._persist()

    def get_state(self, device_id: int) -> ThermostatState | None:
        with self._lock:
            state = self._states.get(device_id)
            return dataclasses.replace(state) if state is not None else None

    def get_all_states(self) -> list[ThermostatState]:
        """All snapshots, ordered by device id."""
        with self._lock:
            return [dataclasses.replace(self._states[k]) for k in sorted(self._states)]

    def get_first_state(self) -> ThermostatState | None:
        """The snapshot with the lowest device id, if any."""
        states = self.get_all_states()
        return states[0] if states else None

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def log_event(
        self,
        source: EventSource,
        event_type: EventType,
        message: str,
        details: dict[str, object] | None = None,
    ) -> Event:
        event = Event(source=source, event_type=event_type, message=message, details=details)
        with self._lock:
            self._events.append(event)
            del self._events[: -self._max_events]
            self._persist()
        return event

    def get_events(
        self,
        *,
        source: EventSource | None = None,
        event_type: EventType | None = None,
        limit: int = 100,
    ) -> list[Event]:
        """Newest-first events, optionally filtered by source and type."""
        with self._lock:
            matching = [
                e
                for e in reversed(self._events)
                if (source is None or e.source == source)
                and (event_type is None or e.event_type == event_type)
            ]
        return matching[:limit]

    def prune_events(self, older_than: timedelta) -> int:
        """Drop events older than *older_than*; returns how many were removed."""
        cutoff = datetime.now(UTC) - older_than
        with self._lock:
            before = len(self._events)
            self._events = [e for e in self._events if e.timestamp >= cutoff]
            removed = before - len(self._events)
            if removed:
                self._persist()
        return removed

    def _persist(self) -> None:
        """Hook for subclasses; called with the lock held after every change."""


class JsonStore(MemoryStore):
    """State store backed by a JSON file.

    The file is loaded on construction and replaced atomically (write to a
    sibling temp file, then rename) after every change.
    """

    def __init__(self, path: Path, *, max_events: int = MAX_EVENTS) -> None:
        super().__init__(max_events=max_events)
        self._path = path
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return
        data = json.loads(self._path.read_text())
        if not isinstance(data, dict):
            raise ValueError(f"State file {self._path} must contain a JSON object.")
        for raw in data.get("states", []):
            state = ThermostatState.from_dict(raw)
            self._states[state.device_id] = state
        self._events = [Event.from_dict(raw) for raw in data.get("events", [])]
        _LOGGER.debug(
            "Loaded %d states and %d events from %s",
            len(self._states),
            len(self._events),
            self._path,
        )

    def _persist(self) -> None:
        data = {
            "states": [self._states[k].to_dict() for k in sorted(self._states)],
            "events": [e.to_dict() for e in self._events],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        tmp.replace(self._path)
