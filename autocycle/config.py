"""
Configuration for autocycle.

All configuration flows through this module. Values are loaded from environment
variables (via .env file) and validated with Pydantic. Every component receives
the slice of config it needs at construction time, so several independent
instances can live side by side in one process (tests rely on this).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

# Resolve .env relative to the project root (one level above autocycle/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

DEFAULT_HOME = Path("~/.mcp")


class ClaudeConfig(BaseSettings):
    """Configuration for the Anthropic-backed executor."""

    api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    model: str = Field("claude-sonnet-4-5-20250929", alias="AUTOCYCLE_MODEL")
    max_tokens: int = Field(8192, alias="AUTOCYCLE_MAX_TOKENS")
    request_timeout_seconds: float = Field(600.0, alias="AUTOCYCLE_REQUEST_TIMEOUT_SECONDS")
    retry_max_retries: int = Field(3, alias="AUTOCYCLE_RETRY_MAX_RETRIES")
    retry_base_delay: float = Field(0.5, alias="AUTOCYCLE_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(8.0, alias="AUTOCYCLE_RETRY_MAX_DELAY")
    retry_exponential_base: float = Field(2.0, alias="AUTOCYCLE_RETRY_EXPONENTIAL_BASE")
    retry_jitter_range: float = Field(0.25, alias="AUTOCYCLE_RETRY_JITTER_RANGE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def require_api_key(self) -> "ClaudeConfig":
        if isinstance(self.api_key, str):
            self.api_key = self.api_key.strip() or None
        if not self.api_key:
            raise ValueError("No authentication configured. Set ANTHROPIC_API_KEY.")
        return self

    @model_validator(mode="after")
    def normalize_runtime_limits(self) -> "ClaudeConfig":
        self.max_tokens = max(1, int(self.max_tokens))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.retry_max_retries = max(0, int(self.retry_max_retries))
        self.retry_base_delay = max(0.05, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        self.retry_exponential_base = max(1.0, float(self.retry_exponential_base))
        self.retry_jitter_range = max(0.0, min(1.0, float(self.retry_jitter_range)))
        return self


class StoreConfig(BaseSettings):
    """Where persisted state lives and how backups are kept."""

    home_dir: Path = Field(DEFAULT_HOME, alias="AUTOCYCLE_HOME")
    # 0 => keep every backup (no pruning)
    max_backups: int = Field(0, alias="AUTOCYCLE_MAX_BACKUPS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize(self) -> "StoreConfig":
        self.home_dir = Path(self.home_dir).expanduser()
        self.max_backups = max(0, int(self.max_backups))
        return self


class HeartbeatConfig(BaseSettings):
    """Configuration for the cycle scheduler."""

    interval: float = Field(300.0, alias="AUTOCYCLE_INTERVAL")
    session_title_prefix: str = Field("Heartbeat Cycle", alias="AUTOCYCLE_SESSION_TITLE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "HeartbeatConfig":
        self.interval = max(1.0, float(self.interval))
        self.session_title_prefix = self.session_title_prefix.strip() or "Heartbeat Cycle"
        return self


class LockConfig(BaseSettings):
    """Location of the single-instance marker file."""

    pid_file: Optional[Path] = Field(None, alias="AUTOCYCLE_PID_FILE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}


def _isolated(settings_cls: type[BaseSettings], **values) -> BaseSettings:
    """
    Instantiate *settings_cls* from its field defaults and *values* only.

    Every field is passed as an init kwarg, which pydantic-settings ranks above
    both os.environ and the .env file. Keys may be field names or aliases.
    """
    params = {}
    for name, field in settings_cls.model_fields.items():
        params[field.alias or name] = field.default
    for key, value in values.items():
        field = settings_cls.model_fields.get(key)
        params[field.alias if field is not None and field.alias else key] = value
    return settings_cls(_env_file=None, **params)


class AutocycleConfig:
    """
    Master configuration that composes the subsystem configs.

    Nothing reads the environment after this object is built. Pass explicit
    sub-configs to override anything (tests build one per tmp directory).
    """

    def __init__(
        self,
        *,
        store: StoreConfig | None = None,
        heartbeat: HeartbeatConfig | None = None,
        lock: LockConfig | None = None,
    ) -> None:
        self.store = store if store is not None else StoreConfig()
        self.heartbeat = heartbeat if heartbeat is not None else HeartbeatConfig()
        self.lock = lock if lock is not None else LockConfig()
        # The executor config is built lazily: status/stop never need an API key.
        self._claude: ClaudeConfig | None = None

        # Derive the marker path from the home dir unless set explicitly.
        if self.lock.pid_file is None:
            self.lock.pid_file = self.store.home_dir / "heartbeat.pid"
        else:
            self.lock.pid_file = Path(self.lock.pid_file).expanduser()

        self._resolve_paths()

    @classmethod
    def for_home(cls, home_dir: Path, **heartbeat_overrides) -> "AutocycleConfig":
        """Build a config rooted at *home_dir* without consulting the environment."""
        store = _isolated(StoreConfig, AUTOCYCLE_HOME=home_dir)
        heartbeat = _isolated(HeartbeatConfig, **heartbeat_overrides)
        lock = _isolated(LockConfig, AUTOCYCLE_PID_FILE=store.home_dir / "heartbeat.pid")
        return cls(store=store, heartbeat=heartbeat, lock=lock)

    @property
    def claude(self) -> ClaudeConfig:
        if self._claude is None:
            self._claude = ClaudeConfig()
        return self._claude

    @property
    def home_dir(self) -> Path:
        return self.store.home_dir

    @property
    def pid_file(self) -> Path:
        assert self.lock.pid_file is not None
        return self.lock.pid_file

    def _resolve_paths(self) -> None:
        """Resolve relative paths against the project root, not the CWD."""
        def _resolve(p: Path) -> Path:
            if p.is_absolute():
                return p
            return (_PROJECT_ROOT / p).resolve()

        self.store.home_dir = _resolve(self.store.home_dir)
        self.lock.pid_file = _resolve(self.pid_file)

    def __repr__(self) -> str:
        return (
            f"AutocycleConfig(home={self.store.home_dir}, "
            f"interval={self.heartbeat.interval}s, "
            f"pid_file={self.lock.pid_file})"
        )
