"""Configuration loading for claudehub."""

import json
import logging
import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from claudehub.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
DEFAULT_COMMAND = "claude"
DEFAULT_RATE_LIMIT_MARKER = "You've hit your limit"


def hub_home() -> Path:
    """Directory holding the hub config, registry state and log file."""
    override = os.environ.get("CLAUDE_HUB_HOME", "").strip()
    if override:
        return Path(os.path.expanduser(override))
    return Path.home() / ".claude-hub"


def default_account_dir() -> Path:
    """Config directory the wrapped CLI uses when none is set."""
    return Path.home() / ".claude"


def expand_path(value: str | Path) -> Path:
    return Path(os.path.expanduser(str(value).strip()))


def account_env(config_dir: Path, base: dict[str, str] | None = None) -> dict[str, str]:
    """
    Environment for running the wrapped CLI under an account.

    CLAUDE_CONFIG_DIR is only set for non-default directories; setting it to
    the default directory changes how the CLI locates its own settings.
    """
    env = dict(os.environ if base is None else base)
    if expand_path(config_dir) != default_account_dir():
        env["CLAUDE_CONFIG_DIR"] = str(config_dir)
    else:
        env.pop("CLAUDE_CONFIG_DIR", None)
    return env


class ScoringWeights(BaseModel):
    """Tunable weights for account scoring."""

    model_config = ConfigDict(frozen=True)

    session_weight: float = Field(default=0.6, ge=0, le=1)
    window_weight: float = Field(default=0.4, ge=0, le=1)
    active_session_penalty: float = Field(default=15.0, ge=0)
    last_used_penalty: float = Field(default=5.0, ge=0)
    session_bonus_per_hour: float = Field(default=0.5, ge=0)
    session_bonus_cap_hours: float = Field(default=24.0, gt=0)
    window_bonus_per_day: float = Field(default=2.5, ge=0)
    window_bonus_cap_days: float = Field(default=7.0, gt=0)

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "ScoringWeights":
        # Scores are only comparable when the base score stays on a 0-100 scale.
        if abs(self.session_weight + self.window_weight - 1.0) > 1e-6:
            raise ValueError("session_weight and window_weight must sum to 1")
        return self


class HubConfig(BaseModel):
    """Validated contents of config.json."""

    model_config = ConfigDict(extra="ignore")

    accounts: dict[str, Path] = Field(default_factory=dict)
    sync_on_start: bool = True
    command: str = DEFAULT_COMMAND
    rate_limit_marker: str = Field(default=DEFAULT_RATE_LIMIT_MARKER, min_length=1)
    escape_timeout: float = Field(default=0.05, gt=0, le=1.0)
    usage_cache_seconds: float = Field(default=30.0, ge=0)
    scoring: ScoringWeights = Field(default_factory=ScoringWeights)
    state_file: Path | None = None
    log_file: Path | None = None

    @field_validator("accounts", mode="before")
    @classmethod
    def _expand_accounts(cls, value: object) -> object:
        if isinstance(value, dict):
            return {str(name): str(expand_path(path)) for name, path in value.items()}
        return value

    @field_validator("state_file", "log_file", mode="before")
    @classmethod
    def _expand_optional(cls, value: object) -> object:
        if isinstance(value, (str, Path)) and str(value).strip():
            return str(expand_path(value))
        return None

    @property
    def resolved_state_file(self) -> Path:
        return self.state_file or hub_home() / "state.json"

    @property
    def resolved_log_file(self) -> Path:
        return self.log_file or hub_home() / "hub.log"


def config_path() -> Path:
    return hub_home() / CONFIG_FILE


def config_exists() -> bool:
    return config_path().is_file()


def load_config(path: Path | None = None) -> HubConfig:
    """
    Load and validate the hub configuration.

    Raises:
        ConfigError: If the file is missing, unreadable or fails validation.
    """
    path = path or config_path()
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path} (run `hub --init`)") from None
    except OSError as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc

    try:
        return HubConfig.model_validate_json(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}:\n{exc}") from exc


def save_config(config: HubConfig, path: Path | None = None) -> Path:
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json", exclude_none=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    return path


def write_default_config(path: Path | None = None) -> Path:
    """Seed a config with the default account directory."""
    path = path or config_path()
    if path.exists():
        raise ConfigError(f"Configuration already exists: {path}")
    config = HubConfig(accounts={"main": default_account_dir()})
    logger.info("Writing default config to %s", path)
    return save_config(config, path)


def validate_config(config: HubConfig) -> None:
    """
    Check the configuration is usable for launching a session.

    Raises:
        ConfigError: If no accounts are configured or an account path is missing.
    """
    if not config.accounts:
        raise ConfigError("No accounts configured. Add at least one account to config.json.")
    for name, account_path in config.accounts.items():
        if not account_path.is_dir():
            raise ConfigError(f"Account '{name}' path does not exist: {account_path}")
