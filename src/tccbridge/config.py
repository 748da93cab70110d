"""Runtime configuration, read from ``~/.config/tccbridge/config.json``."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

from tccbridge._constants import (
    API_BASE,
    CONFIG_DIR,
    CRED_FILE_NAME,
    DEFAULT_BRIDGE_URL,
    DEFAULT_POLL_INTERVAL,
    KEY_FILE_NAME,
    RATE_LIMIT_BURST,
    RATE_LIMIT_PER_MINUTE,
    REQUEST_TIMEOUT,
    STATE_FILE_NAME,
)


@dataclass
class Config:
    """Settings for the client, the sync engine and the bridge adapter.

    The minimum interval between live device-list fetches is a fixed
    constant and cannot be configured.
    """

    base_url: str = API_BASE
    poll_interval: int = DEFAULT_POLL_INTERVAL
    """Seconds between poll-loop ticks."""

    bridge_url: str = DEFAULT_BRIDGE_URL
    rate_per_minute: float = RATE_LIMIT_PER_MINUTE
    rate_burst: int = RATE_LIMIT_BURST
    request_timeout: float = REQUEST_TIMEOUT
    data_dir: Path = field(default_factory=lambda: CONFIG_DIR)

    @classmethod
    def load(cls, path: Path) -> Config:
        """Overlay the JSON object at *path* on the defaults.

        A missing file yields the defaults; unknown keys are ignored.
        Raises :class:`ValueError` if the file is not a JSON object.
        """
        if not path.exists():
            return cls()
        data = json.loads(path.read_text())
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a JSON object.")
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        if "data_dir" in kwargs:
            kwargs["data_dir"] = Path(str(kwargs["data_dir"])).expanduser()
        return cls(**kwargs)

    def save(self, path: Path) -> None:
        data = asdict(self)
        data["data_dir"] = str(self.data_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2))

    @property
    def credentials_path(self) -> Path:
        return self.data_dir / CRED_FILE_NAME

    @property
    def key_path(self) -> Path:
        return self.data_dir / KEY_FILE_NAME

    @property
    def state_path(self) -> Path:
        return self.data_dir / STATE_FILE_NAME
