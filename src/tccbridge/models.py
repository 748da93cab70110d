"""Canonical thermostat types, vendor code tables and unit conversions."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum


class SystemMode(str, Enum):
    """Thermostat operating mode, independent of the vendor's numeric codes."""

    OFF = "off"
    HEAT = "heat"
    COOL = "cool"
    AUTO = "auto"
    EMERGENCY = "emergency"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> SystemMode:
        """Map a mode name to a member; anything unrecognised is ``UNKNOWN``."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class EventSource(str, Enum):
    """Origin of an event-log entry."""

    TCC = "tcc"
    MATTER = "matter"
    HOMEKIT = "homekit"
    USER = "user"
    SYSTEM = "system"


class EventType(str, Enum):
    """Category of an event-log entry."""

    TEMP_CHANGE = "temp_change"
    MODE_CHANGE = "mode_change"
    CONNECTION = "connection"
    CREDENTIALS = "credentials"
    ERROR = "error"
    INFO = "info"
    STATE_CHANGE = "state_change"


# SystemSwitchPosition as reported and accepted by the portal
VENDOR_MODES: dict[int, SystemMode] = {
    0: SystemMode.EMERGENCY,
    1: SystemMode.HEAT,
    2: SystemMode.OFF,
    3: SystemMode.COOL,
    4: SystemMode.AUTO,
}

_vendor_codes: dict[SystemMode, int] = {mode: code for code, mode in VENDOR_MODES.items()}

# EquipmentOutputStatus
EQUIPMENT_OFF = 0
EQUIPMENT_HEATING = 1
EQUIPMENT_COOLING = 2

ACTION_SET_MODE = "setSystemMode"
ACTION_SET_HEAT = "setHeatingSetpoint"
ACTION_SET_COOL = "setCoolingSetpoint"


def mode_from_vendor(code: object) -> SystemMode:
    """Convert a vendor system-switch code to a :class:`SystemMode`.

    Codes missing from :data:`VENDOR_MODES` (and non-integer values) map to
    :attr:`SystemMode.UNKNOWN`.
    """
    try:
        return VENDOR_MODES.get(int(str(code)), SystemMode.UNKNOWN)
    except (TypeError, ValueError):
        return SystemMode.UNKNOWN


def mode_to_vendor(mode: SystemMode | str) -> int:
    """Convert a mode to the vendor system-switch code.

    Raises :class:`ValueError` for ``unknown`` or unrecognised names, so an
    unmappable mode is never silently submitted as some other mode.
    """
    parsed = mode if isinstance(mode, SystemMode) else SystemMode.parse(mode)
    if parsed not in _vendor_codes:
        expected = " | ".join(m.value for m in _vendor_codes)
        raise ValueError(f"Invalid system mode '{mode}'. Expected: {expected}")
    return _vendor_codes[parsed]


def equipment_flags(status: object) -> tuple[bool, bool]:
    """Return ``(is_heating, is_cooling)`` for a vendor equipment-status code."""
    try:
        code = int(str(status))
    except (TypeError, ValueError):
        return False, False
    return code == EQUIPMENT_HEATING, code == EQUIPMENT_COOLING


def clamp_humidity(value: object) -> int:
    """Round a humidity reading and clamp it into ``[0, 100]``."""
    try:
        pct = round(float(str(value)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, pct))


def fahrenheit_to_celsius(value: float) -> float:
    return (value - 32) * 5 / 9


def celsius_to_fahrenheit(value: float) -> float:
    return value * 9 / 5 + 32


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ThermostatState:
    """Canonical state of one thermostat, in the device's native units."""

    device_id: int
    """Stable portal device id."""

    name: str = ""
    current_temp: float = 0.0
    heat_setpoint: float = 0.0
    cool_setpoint: float = 0.0
    system_mode: SystemMode = SystemMode.UNKNOWN

    humidity: int = 0
    """Indoor relative humidity, always within ``[0, 100]``."""

    is_heating: bool = False
    is_cooling: bool = False

    units: str = "F"
    """Display units reported by the device (``F`` or ``C``)."""

    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        self.humidity = clamp_humidity(self.humidity)
        if not isinstance(self.system_mode, SystemMode):
            self.system_mode = SystemMode.parse(self.system_mode)

    def differs_from(self, other: ThermostatState | None) -> bool:
        """True when any observable field differs from *other* (or there is none)."""
        if other is None:
            return True
        return (
            self.current_temp != other.current_temp
            or self.heat_setpoint != other.heat_setpoint
            or self.cool_setpoint != other.cool_setpoint
            or self.system_mode != other.system_mode
            or self.humidity != other.humidity
        )

    def to_bridge_payload(self) -> dict[str, object]:
        """Render this state in the protocol bridge's units (Celsius)."""
        convert = (lambda v: v) if self.units.upper() == "C" else fahrenheit_to_celsius
        return {
            "deviceId": self.device_id,
            "name": self.name,
            "currentTemp": convert(self.current_temp),
            "heatSetpoint": convert(self.heat_setpoint),
            "coolSetpoint": convert(self.cool_setpoint),
            "systemMode": self.system_mode.value,
            "humidity": self.humidity,
            "isHeating": self.is_heating,
            "isCooling": self.is_cooling,
        }

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {f.name: getattr(self, f.name) for f in fields(self)}
        data["system_mode"] = self.system_mode.value
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> ThermostatState:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        updated = kwargs.get("updated_at")
        if isinstance(updated, str):
            kwargs["updated_at"] = datetime.fromisoformat(updated)
        return cls(**kwargs)  # type: ignore[arg-type]


@dataclass
class ControlRequest:
    """Sparse control submission; only the fields that change are sent."""

    device_id: int
    system_switch: int | None = None
    heat_setpoint: float | None = None
    cool_setpoint: float | None = None
    heat_next_period: int | None = None
    cool_next_period: int | None = None
    status_heat: int | None = None
    status_cool: int | None = None

    def to_payload(self) -> dict[str, object]:
        """Build the JSON body in the portal's field names, omitting unset fields."""
        mapping = {
            "SystemSwitch": self.system_switch,
            "HeatSetpoint": self.heat_setpoint,
            "CoolSetpoint": self.cool_setpoint,
            "HeatNextPeriod": self.heat_next_period,
            "CoolNextPeriod": self.cool_next_period,
            "StatusHeat": self.status_heat,
            "StatusCool": self.status_cool,
        }
        payload: dict[str, object] = {"DeviceID": self.device_id}
        payload.update({k: v for k, v in mapping.items() if v is not None})
        return payload


@dataclass
class Command:
    """An inbound control command from the protocol bridge or an interactive caller."""

    action: str
    value: object
    device_id: int | None = None

    generation: int | None = None
    """Push generation the bridge had applied when it emitted this command."""

    @classmethod
    def from_event(cls, data: dict[str, object]) -> Command:
        device_id = data.get("deviceId")
        generation = data.get("generation")
        return cls(
            action=str(data.get("action", "")),
            value=data.get("value"),
            device_id=int(str(device_id)) if device_id not in (None, "", 0) else None,
            generation=int(str(generation)) if generation is not None else None,
        )


@dataclass
class Event:
    """One event-log entry as kept by a state store."""

    source: EventSource
    event_type: EventType
    message: str
    details: dict[str, object] | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, object]:
        return {
            "source": self.source.value,
            "event_type": self.event_type.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> Event:
        details = data.get("details")
        return cls(
            source=EventSource(str(data["source"])),
            event_type=EventType(str(data["event_type"])),
            message=str(data.get("message", "")),
            details=details if isinstance(details, dict) else None,
            timestamp=datetime.fromisoformat(str(data["timestamp"])),
        )
