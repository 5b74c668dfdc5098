"""
Agent configuration

Settings live in ``settings.json`` under the agent data directory. The work
queue token and endpoint may be overridden from the environment so that
secrets do not need to be written to disk.
"""

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from filelock import FileLock

from .exceptions import ConfigurationError

DEFAULT_DATA_DIR = Path.home() / ".scan_agent"
DEFAULT_HOST_URL = "https://nrtiedu.turnitin.com/"
DEFAULT_FOLDER_NAME = "Bio 2"
TOKEN_PREFIX = "ext_"

ENV_API_TOKEN = "SCAN_AGENT_API_TOKEN"
ENV_API_URL = "SCAN_AGENT_API_URL"


@dataclass
class PhaseTimeouts:
    """Per-phase deadlines and polling cadence, in seconds"""
    download: float = 120.0
    authenticate: float = 15.0
    navigation: float = 120.0
    upload: float = 60.0
    result: float = 20 * 60.0
    artifacts: float = 120.0
    navigation_check_interval: float = 3.0
    result_poll_interval: float = 3.0
    refresh_every_polls: int = 20
    reporting_max_attempts: int = 3
    reporting_backoff_seconds: float = 1.0

    def validate(self):
        for item in fields(self):
            value = getattr(self, item.name)
            if value < 0:
                raise ConfigurationError(f"`timeouts.{item.name}` must be >= 0", item.name)
        if self.refresh_every_polls < 1:
            raise ConfigurationError("`timeouts.refresh_every_polls` must be >= 1", "refresh_every_polls")
        if self.reporting_max_attempts < 1:
            raise ConfigurationError("`timeouts.reporting_max_attempts` must be >= 1", "reporting_max_attempts")


@dataclass
class AgentSettings:
    """Operator-provided agent configuration"""
    api_url: str = ""
    api_token: Optional[str] = None
    host_url: str = DEFAULT_HOST_URL
    target_folder: str = DEFAULT_FOLDER_NAME
    auto_launch: bool = True
    require_secondary_report: bool = True
    auto_process_next: bool = True
    poll_interval_seconds: float = 60.0
    headless: bool = True
    timeouts: PhaseTimeouts = field(default_factory=PhaseTimeouts)

    @property
    def home_url(self) -> str:
        return self.host_url.rstrip("/") + "/home"

    @property
    def cookie_domain(self) -> str:
        hostname = urlparse(self.host_url).hostname or ""
        return f".{hostname}" if hostname else ""

    def validate(self):
        """Validate settings, raising ConfigurationError on the first problem"""
        parsed = urlparse(self.host_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"Invalid host URL: {self.host_url}", "host_url")

        if self.api_url:
            parsed = urlparse(self.api_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ConfigurationError(f"Invalid work queue URL: {self.api_url}", "api_url")

        if self.api_token:
            validate_api_token(self.api_token)

        if not self.target_folder or not self.target_folder.strip():
            raise ConfigurationError("Target folder name cannot be empty", "target_folder")

        if self.poll_interval_seconds < 1:
            raise ConfigurationError("`poll_interval_seconds` must be >= 1", "poll_interval_seconds")

        self.timeouts.validate()

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AgentSettings":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}

        timeouts_raw = values.pop("timeouts", None) or {}
        if not isinstance(timeouts_raw, dict):
            raise ConfigurationError("`timeouts` must be a mapping", "timeouts")
        timeout_names = {f.name for f in fields(PhaseTimeouts)}
        timeouts = PhaseTimeouts(**{k: v for k, v in timeouts_raw.items() if k in timeout_names})

        return cls(timeouts=timeouts, **values)


def validate_api_token(token: str) -> str:
    """Check the token's shape before it is saved or used"""
    token = (token or "").strip()
    if not token:
        raise ConfigurationError("Work queue token cannot be empty", "api_token")
    if not token.startswith(TOKEN_PREFIX):
        raise ConfigurationError(f'Invalid token format. Should start with "{TOKEN_PREFIX}"', "api_token")
    return token


def settings_path(data_dir: Path) -> Path:
    return Path(data_dir) / "settings.json"


def load_settings(data_dir: Path = DEFAULT_DATA_DIR, environ: Optional[dict] = None) -> AgentSettings:
    """Load settings from the data directory and apply environment overrides"""
    environ = os.environ if environ is None else environ
    path = settings_path(data_dir)

    raw = {}
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8")) or {}
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Settings file is not valid JSON: {e}", str(path))
        if not isinstance(raw, dict):
            raise ConfigurationError("Settings root must be a mapping", str(path))

    settings = AgentSettings.from_dict(raw)

    if environ.get(ENV_API_TOKEN):
        settings.api_token = environ[ENV_API_TOKEN].strip()
    if environ.get(ENV_API_URL):
        settings.api_url = environ[ENV_API_URL].strip()

    settings.validate()
    return settings


def save_settings(settings: AgentSettings, data_dir: Path = DEFAULT_DATA_DIR) -> Path:
    """Persist settings atomically with respect to other agent processes"""
    settings.validate()
    path = settings_path(data_dir)
    path.parent.mkdir(parents=True, exist_ok=True)

    with FileLock(str(path) + ".lock"):
        path.write_text(json.dumps(settings.to_dict(), indent=2), encoding="utf-8")
    return path
