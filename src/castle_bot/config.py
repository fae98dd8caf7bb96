"""
Configuration schema using Pydantic.

Credentials are loaded exclusively from environment variables (or a local
``.env`` file). Everything else can be set in a YAML file and overridden
per-field with ``CASTLE_BOT_*`` environment variables.
"""

import os
from pathlib import Path
from typing import Optional, List, Dict, Any

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


HOME_URL = "https://lordsandknights.com/"


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required values."""

    def __init__(self, message: str, field: Optional[str] = None, suggestions: Optional[List[str]] = None):
        self.message = message
        self.field = field
        self.suggestions = suggestions or []
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        lines = [self.message]
        if self.field:
            lines.append(f"  Field: {self.field}")
        if self.suggestions:
            lines.append("  Suggestions:")
            for s in self.suggestions:
                lines.append(f"    - {s}")
        return "\n".join(lines)


class Credentials(BaseSettings):
    """
    Game account credentials.

    Never stored in config files. Read from EMAIL / PASSWORD / SERVER.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    email: str = ""
    password: str = ""
    server: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.email and self.password)

    def require(self) -> "Credentials":
        """Return self, or raise if the account is not configured."""
        missing = [name.upper() for name in ("email", "password") if not getattr(self, name)]
        if missing:
            raise ConfigurationError(
                f"Missing credentials: {', '.join(missing)}",
                field=missing[0],
                suggestions=[
                    "Create a .env file with EMAIL=... and PASSWORD=...",
                    "Or export the variables before starting the bot",
                ],
            )
        return self

    def masked(self) -> Dict[str, str]:
        """Credential status suitable for display."""
        email = self.email
        return {
            "EMAIL": f"{email[:3]}...{email[-4:]}" if len(email) > 8 else ("****" if email else "not set"),
            "PASSWORD": "****" if self.password else "not set",
            "SERVER": self.server or "not set",
        }


class SleepConfig(BaseModel):
    """Sleep scheduling between cycles."""

    min_ms: int = Field(default=30_000, ge=1_000, le=3_600_000)
    max_ms: int = Field(default=600_000, ge=1_000, le=6 * 3_600_000)
    free_finish_threshold_ms: int = Field(
        default=300_000, ge=0, le=3_600_000,
        description="Constructions below this remaining time can be finished for free",
    )

    @model_validator(mode='after')
    def validate_bounds(self) -> 'SleepConfig':
        if self.min_ms > self.max_ms:
            raise ValueError(f"sleep.min_ms ({self.min_ms}) must be <= sleep.max_ms ({self.max_ms})")
        return self


class TimingConfig(BaseModel):
    """Loop timing and failure escalation."""

    loop_interval_ms: int = Field(default=30_000, ge=1_000, le=3_600_000)
    retry_delay_ms: int = Field(default=5_000, ge=100, le=600_000, description="Delay after session-level failures")
    long_retry_delay_ms: int = Field(default=60_000, ge=1_000, le=3_600_000, description="Delay after hard failures")
    max_consecutive_failures: int = Field(default=3, ge=1, le=50)
    stale_tolerance: float = Field(default=0.5, gt=0.0, le=10.0)


class GameConfig(BaseModel):
    """Game rules the loop needs to know about."""

    max_building_queue: int = Field(default=2, ge=1, le=10)
    fallback_upgrades: bool = Field(default=True, description="Upgrade any affordable building when the recommended one cannot start")
    missions_enabled: bool = Field(default=True)
    targets: Dict[str, int] = Field(default_factory=dict, description="Target level overrides by building type")


class HealthConfig(BaseModel):
    """Selectors and patterns used by the page health checker."""

    url_patterns: List[str] = Field(default=[r"lordsandknights\.com", r"lnk\."])
    overlay_selectors: List[str] = Field(
        default=[
            ".dialog:visible",
            ".modal:visible",
            '[class*="overlay"]:visible',
            ".loading-screen:visible",
            ".error-dialog:visible",
        ]
    )
    error_selectors: Dict[str, str] = Field(
        default={
            ".error-message": "error",
            '[class*="error"]': "error",
            ".connection-lost": "connection",
            ".session-expired": "session",
        }
    )
    view_selectors: Dict[str, str] = Field(
        default={
            "buildings": ".table--global-overview--buildings",
            "recruitment": ".table--global-overview--recruitment",
            "trading": ".table--global-overview--trading",
        }
    )
    max_attempts: int = Field(default=2, ge=1, le=20)
    delay_ms: int = Field(default=1_000, ge=0, le=60_000)


class RecoveryConfig(BaseModel):
    """Escalating recovery behaviour."""

    home_url: str = Field(default=HOME_URL)
    popup_selectors: List[str] = Field(
        default=[
            "div.event-pop-up-button",
            ".event-pop-up-button.ButtonRedAccept",
            'button:has-text("OK")',
            'text="Accept"',
        ]
    )
    settle_ms: int = Field(default=1_000, ge=0, le=60_000, description="Wait after dismissing overlays")
    wait_ms: int = Field(default=3_000, ge=0, le=60_000, description="Wait used by the wait/reload/navigate tiers")
    navigation_timeout_ms: int = Field(default=30_000, ge=1_000, le=300_000)


class SolverConfig(BaseModel):
    """Decision service connection."""

    address: str = Field(default="http://localhost:50051")
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    max_attempts: int = Field(default=2, ge=1, le=10)


class BrowserConfig(BaseModel):
    """Playwright browser launch options."""

    user_data_dir: str = Field(default="~/.castle-bot/browser-data")
    headless: bool = Field(default=True)
    block_media: bool = Field(default=True, description="Abort image/font/media requests to save memory")
    viewport_width: int = Field(default=1920, ge=320, le=7680)
    viewport_height: int = Field(default=1080, ge=240, le=4320)


class MetricsConfig(BaseModel):
    """Telemetry collection."""

    enabled: bool = Field(default=False)
    sample_interval_seconds: float = Field(default=5.0, gt=0, le=600)


class MemoryConfig(BaseModel):
    """System memory pressure thresholds."""

    min_available_mb: int = Field(default=500, ge=0)
    min_swap_free_mb: int = Field(default=200, ge=0)
    max_used_percent: float = Field(default=90.0, gt=0, le=100)


class StorageConfig(BaseModel):
    """Storage and persistence configuration."""

    base_path: str = Field(default="~/.castle-bot")
    log_file: Optional[str] = Field(default=None, description="JSON log file, relative to base_path")
    save_debug: bool = Field(default=False, description="Save screenshot and HTML when a recovery tier fails")


class BotConfig(BaseModel):
    """Root configuration for the castle bot."""

    sleep: SleepConfig = Field(default_factory=SleepConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    game: GameConfig = Field(default_factory=GameConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    solver: SolverConfig = Field(default_factory=SolverConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    dry_run: bool = Field(default=False, description="Run a single cycle and exit")

    @property
    def storage_path(self) -> Path:
        """Get resolved storage path."""
        return Path(self.storage.base_path).expanduser()

    @property
    def metrics_path(self) -> Path:
        return self.storage_path / "metrics"

    @property
    def debug_path(self) -> Path:
        return self.storage_path / "debug"

    @property
    def log_path(self) -> Optional[Path]:
        if not self.storage.log_file:
            return None
        return self.storage_path / self.storage.log_file

    @model_validator(mode='after')
    def validate_consistency(self) -> 'BotConfig':
        """Validate cross-field consistency."""
        if self.timing.retry_delay_ms > self.timing.long_retry_delay_ms:
            raise ValueError(
                f"timing.retry_delay_ms ({self.timing.retry_delay_ms}) "
                f"must be <= timing.long_retry_delay_ms ({self.timing.long_retry_delay_ms})"
            )
        return self


def get_default_config_path() -> Path:
    """Get default config file path."""
    return Path.home() / ".castle-bot" / "config.yaml"


def load_config(config_path: Optional[str] = None) -> BotConfig:
    """
    Load configuration from YAML file.

    Falls back to defaults if the default file doesn't exist.
    Environment variables override file values.

    Args:
        config_path: Path to config file (optional)

    Returns:
        Loaded configuration

    Raises:
        ConfigurationError: If the config file is missing or invalid
    """
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(
                f"Config file not found: {path}",
                suggestions=[
                    f"Create the config file at {path}",
                    "Use 'castle-bot config --init' to write a default config",
                    "Or run without --config to use defaults",
                ]
            )
    else:
        path = get_default_config_path()

    data: Dict[str, Any] = {}

    if path.exists():
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            raise ConfigurationError(
                f"Invalid YAML in config file: {path}",
                suggestions=[
                    f"Check syntax at line {mark.line + 1 if mark else 'unknown'}",
                    "Use 'castle-bot config --show' to see a valid layout",
                ]
            )
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file must contain a mapping: {path}")

    data = _deep_merge(data, _get_env_overrides())

    try:
        config = BotConfig(**data)
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid configuration: {e}",
            suggestions=[
                "Check field names and values in your config",
                "Use 'castle-bot config --show' to see the defaults",
            ]
        )

    return config


# Env var -> (section, field); None section means a root field
ENV_MAPPINGS = {
    "CASTLE_BOT_SOLVER_ADDRESS": ("solver", "address"),
    "SOLVER_ADDRESS": ("solver", "address"),
    "CASTLE_BOT_HOME_URL": ("recovery", "home_url"),
    "CASTLE_BOT_HEADLESS": ("browser", "headless"),
    "CASTLE_BOT_USER_DATA_DIR": ("browser", "user_data_dir"),
    "CASTLE_BOT_LOOP_INTERVAL_MS": ("timing", "loop_interval_ms"),
    "CASTLE_BOT_MAX_BUILDING_QUEUE": ("game", "max_building_queue"),
    "CASTLE_BOT_METRICS": ("metrics", "enabled"),
    "CASTLE_BOT_STORAGE_PATH": ("storage", "base_path"),
    "CASTLE_BOT_DRY_RUN": (None, "dry_run"),
}


def _get_env_overrides() -> Dict[str, Any]:
    """Get configuration overrides from environment variables."""
    overrides: Dict[str, Any] = {}

    for env_key, (section, field) in ENV_MAPPINGS.items():
        raw = os.environ.get(env_key)
        if not raw:
            continue

        value: Any = raw
        if raw.isdigit():
            value = int(raw)
        elif raw.lower() in ("true", "false", "1", "0", "yes", "no"):
            value = raw.lower() in ("true", "1", "yes")

        if section is None:
            overrides[field] = value
        else:
            overrides.setdefault(section, {})[field] = value

    return overrides


def _deep_merge(base: Dict, overlay: Dict) -> Dict:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def save_config(config: BotConfig, config_path: Optional[str] = None) -> Path:
    """Save configuration to YAML file."""
    path = Path(config_path) if config_path else get_default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)

    return path
