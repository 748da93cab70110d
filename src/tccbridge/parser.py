"""Normalise the portal's JSON payloads into :class:`ThermostatState` records.

The list endpoints answer with one of two shapes, depending on the account
and the day::

    [{"DeviceID": 1, "Name": "Hall", "DispTemperature": 67.0, ...}, ...]

    [{"LocationID": 9, "Name": "Home", "Zones": [{"DeviceID": 1, ...}]}, ...]

:func:`parse_device_list` tries the flat shape first, then the nested one, and
returns an empty list when neither yields a record.  Malformed payloads are
never an error here: callers treat an empty result as "this endpoint had no
data" and move on.
"""

from __future__ import annotations

import json
import logging

from tccbridge.errors import ParseError
from tccbridge.models import ThermostatState, clamp_humidity, equipment_flags, mode_from_vendor

_LOGGER = logging.getLogger(__name__)

# Keys under which a location record nests its zones
_ZONE_CONTAINERS: tuple[str, ...] = ("Zones", "Devices")


def parse_device_list(
    body: bytes | str, *, logger: logging.Logger | None = None
) -> list[ThermostatState]:
    """Parse a device-list payload; ``[]`` when no known shape matches."""
    log = logger or _LOGGER
    try:
        data = _decode(body)
    except ParseError as e:
        log.debug("Device list not parseable: %s", e)
        return []

    states = _parse_flat(data, log)
    if states:
        log.debug("Parsed as zone array: %d zones", len(states))
        return states

    states = _parse_locations(data, log)
    if states:
        log.debug("Parsed as location array: %d zones", len(states))
    return states


def parse_device_data(
    body: bytes | str,
    device_id: int,
    *,
    logger: logging.Logger | None = None,
) -> ThermostatState | None:
    """Parse a per-device detail payload (``latestData.uiData``).

    Returns ``None`` when the payload does not carry device data.
    """
    log = logger or _LOGGER
    try:
        data = _decode(body)
        if not isinstance(data, dict):
            raise ParseError("detail payload is not an object")
        latest = data.get("latestData")
        ui = latest.get("uiData") if isinstance(latest, dict) else None
        if not isinstance(ui, dict):
            raise ParseError("detail payload has no latestData.uiData")
        heating, cooling = equipment_flags(ui.get("EquipmentOutputStatus"))
        return ThermostatState(
            device_id=device_id,
            name=str(ui.get("Name") or ""),
            current_temp=_number(ui, "DispTemperature"),
            heat_setpoint=_number(ui, "HeatSetpoint"),
            cool_setpoint=_number(ui, "CoolSetpoint"),
            system_mode=mode_from_vendor(ui.get("SystemSwitchPosition")),
            humidity=clamp_humidity(ui.get("IndoorHumidity")),
            is_heating=heating,
            is_cooling=cooling,
            units=_units(ui),
        )
    except ParseError as e:
        log.debug("Device %d data not parseable: %s", device_id, e)
        return None


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _decode(body: bytes | str) -> object:
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
        raise ParseError(f"invalid JSON: {e}") from None


def _parse_flat(data: object, log: logging.Logger) -> list[ThermostatState]:
    if not isinstance(data, list):
        return []
    return _parse_zones(data, log)


def _parse_locations(data: object, log: logging.Logger) -> list[ThermostatState]:
    if not isinstance(data, list):
        return []
    states: list[ThermostatState] = []
    for location in data:
        if not isinstance(location, dict):
            continue
        zones = next(
            (location[k] for k in _ZONE_CONTAINERS if isinstance(location.get(k), list)),
            None,
        )
        if zones is None:
            continue
        log.debug("Location %s has %d zones", location.get("Name", "?"), len(zones))
        states.extend(_parse_zones(zones, log))
    return states


def _parse_zones(records: list[object], log: logging.Logger) -> list[ThermostatState]:
    states: list[ThermostatState] = []
    for record in records:
        if not isinstance(record, dict) or "DeviceID" not in record:
            continue
        try:
            states.append(_zone_to_state(record))
        except ParseError as e:
            log.debug("Skipping zone record: %s", e)
    return states


def _zone_to_state(record: dict[str, object]) -> ThermostatState:
    try:
        device_id = int(str(record["DeviceID"]))
    except (TypeError, ValueError):
        raise ParseError(f"invalid DeviceID {record.get('DeviceID')!r}") from None
    heating, cooling = equipment_flags(record.get("EquipmentOutputStatus"))
    return ThermostatState(
        device_id=device_id,
        name=str(record.get("Name") or ""),
        current_temp=_number(record, "DispTemperature"),
        heat_setpoint=_number(record, "HeatSetpoint"),
        cool_setpoint=_number(record, "CoolSetpoint"),
        system_mode=mode_from_vendor(record.get("SystemSwitchPosition")),
        humidity=clamp_humidity(record.get("IndoorHumidity")),
        is_heating=heating,
        is_cooling=cooling,
        units=_units(record),
    )


def _number(record: dict[str, object], key: str) -> float:
    value = record.get(key)
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ParseError(f"{key} is not a number: {value!r}")
    try:
        return float(str(value))
    except ValueError:
        raise ParseError(f"{key} is not a number: {value!r}") from None


def _units(record: dict[str, object]) -> str:
    units = str(record.get("DisplayUnits") or "F").upper()
    return "C" if units.startswith("C") else "F"
