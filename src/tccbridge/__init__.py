"""Bridge Total Connect Comfort thermostats to a smart-home protocol bridge."""

from tccbridge.bridge import BridgeClient, GenerationTracker, Subscription
from tccbridge.client import Client
from tccbridge.config import Config
from tccbridge.errors import (
    ControlSubmitError,
    CredentialsMissingError,
    InvalidCredentialsError,
    LoginError,
    LoginNetworkError,
    LoginRateLimitedError,
    SessionExpiredError,
    TccError,
)
from tccbridge.models import Command, SystemMode, ThermostatState
from tccbridge.store import JsonStore, MemoryStore
from tccbridge.sync import SyncEngine

__all__ = [
    "BridgeClient",
    "Client",
    "Command",
    "Config",
    "ControlSubmitError",
    "CredentialsMissingError",
    "GenerationTracker",
    "InvalidCredentialsError",
    "JsonStore",
    "LoginError",
    "LoginNetworkError",
    "LoginRateLimitedError",
    "MemoryStore",
    "SessionExpiredError",
    "Subscription",
    "SyncEngine",
    "SystemMode",
    "TccError",
    "ThermostatState",
]
