"""Internal constants pinned to the Total Connect Comfort web portal."""

from __future__ import annotations

from pathlib import Path

API_BASE = "https://mytotalconnectcomfort.com"

LOGIN_PATH = "/portal"
LOCATIONS_PATH = "/portal/Location/GetLocationListData"
ZONE_LIST_PATH = "/portal/Device/GetZoneListData"
DEVICE_DATA_PATH = "/portal/Device/CheckDataSession/{device_id}"
CONTROL_PATH = "/portal/Device/SubmitControlScreenChanges"

# Tried in order; the first endpoint that parses to a non-empty list wins.
LIST_ENDPOINTS: tuple[str, ...] = (LOCATIONS_PATH, ZONE_LIST_PATH)

VERIFICATION_TOKEN_FIELD = "__RequestVerificationToken"

MIN_POLL_INTERVAL = 600  # seconds between live device-list fetches
SESSION_EXPIRY = 1800  # seconds of inactivity before the portal drops a session

RATE_LIMIT_PER_MINUTE = 1.0
RATE_LIMIT_BURST = 5

DEFAULT_POLL_INTERVAL = 600
DEFAULT_BRIDGE_URL = "http://localhost:5540"
REQUEST_TIMEOUT = 30.0

CONFIG_DIR = Path.home() / ".config" / "tccbridge"
CONFIG_FILE = CONFIG_DIR / "config.json"
CRED_FILE_NAME = "credentials.json"
KEY_FILE_NAME = "encryption.key"
STATE_FILE_NAME = "state.json"

BROWSER_HEADERS: dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Upgrade-Insecure-Requests": "1",
}

JSON_HEADERS: dict[str, str] = {
    "Accept": "application/json, text/javascript, */*; q=0.01",
    "X-Requested-With": "XMLHttpRequest",
}

BRIDGE_TIMEOUT = 10.0
BRIDGE_RECONNECT_INTERVAL = 5  # seconds between bridge WebSocket reconnects
MAX_EVENTS = 1000  # event-log entries kept by the JSON store
