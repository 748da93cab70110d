"""Exceptions raised by the portal client and the sync engine."""

from __future__ import annotations


class TccError(Exception):
    """Base class for every error raised by :mod:`tccbridge`."""


class CredentialsMissingError(TccError):
    """Raised when a login is attempted before credentials were set."""


class LoginError(TccError):
    """Base class for failed login attempts."""


class LoginRateLimitedError(LoginError):
    """The portal locked the account out after too many attempts.

    Transient: the next timer tick or user action is the retry.
    """


class InvalidCredentialsError(LoginError):
    """The portal rejected the username or password."""


class LoginNetworkError(LoginError):
    """The login request could not reach the portal (timeout, refused, DNS)."""


class UnexpectedLoginResponseError(LoginError):
    """The login response matched none of the known outcomes."""

    def __init__(self, status: int, url: str, body: str = "") -> None:
        self.status = status
        self.url = url
        self.body = body
        super().__init__(f"Login failed: unexpected response {status} at {url}")


class SessionExpiredError(TccError):
    """The portal answered 401; log in again before retrying the call."""


class ParseError(TccError):
    """A payload did not match any known response shape.

    Absorbed by the parser and treated as "no data", never surfaced to callers.
    """


class ControlSubmitError(TccError):
    """A control submission came back with a non-success status."""

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"Control request failed: {status} - {body}")


class UnrecognizedCommandError(TccError):
    """An inbound command named an action the engine does not handle."""


class DeviceNotFoundError(TccError):
    """No target device could be resolved for a command."""


class BridgeError(TccError):
    """The protocol bridge answered a push or status request with an error."""
