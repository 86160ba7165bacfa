"""Engine configuration.

Values are resolved in this order:
1. Environment variables (e.g. DATABASE_URL)
2. A YAML config file (.tokenengine.yaml in the working directory,
   then ~/.tokenengine/config.yaml), using lower-case keys
3. Built-in defaults
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

import yaml

CONFIG_FILENAME = ".tokenengine.yaml"
USER_CONFIG_DIR = Path.home() / ".tokenengine"


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the tokenization engine."""

    database_url: str = "sqlite+aiosqlite:///./tokenengine.db"
    sqlalchemy_echo: bool = False

    # Ledger settlement collaborator
    settlement_url: str = "http://localhost:8100"
    settlement_timeout: float = 10.0

    # Flat withholding applied to every payout line (0.10 = 10%)
    distribution_withholding_rate: Decimal = Decimal("0.10")

    # Marketplace listings expire after this many days unless told otherwise
    listing_ttl_days: int = 30

    # 0 disables the in-process sweep loop (use manage.py sweep or cron instead)
    scheduler_interval_seconds: float = 0.0

    log_level: str = "INFO"

    otlp_enabled: bool = True
    otlp_endpoint: str = "http://localhost:4318/v1/metrics"
    otlp_export_interval: int = 5000


def find_config() -> Path | None:
    """Find config file (project first, then user).

    Returns:
        Path to config file if found, None otherwise.
    """
    project_config = Path(CONFIG_FILENAME)
    if project_config.exists():
        return project_config

    user_config = USER_CONFIG_DIR / "config.yaml"
    if user_config.exists():
        return user_config

    return None


def load_config_file(path: Path | None = None) -> dict:
    """Load config from a YAML file.

    Returns:
        Config dictionary, or empty dict if no config found.
    """
    if path is None:
        path = find_config()
    if path is None:
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


_CONVERTERS = {
    "database_url": str,
    "sqlalchemy_echo": _as_bool,
    "settlement_url": str,
    "settlement_timeout": float,
    "distribution_withholding_rate": lambda v: Decimal(str(v)),
    "listing_ttl_days": int,
    "scheduler_interval_seconds": float,
    "log_level": lambda v: str(v).upper(),
    "otlp_enabled": _as_bool,
    "otlp_endpoint": str,
    "otlp_export_interval": int,
}


def load_settings(
    environ: dict[str, str] | None = None,
    config_path: Path | None = None,
) -> Settings:
    """Build Settings from environment variables and the optional YAML file.

    Raises:
        ValueError: If a value cannot be converted or is out of range
    """
    if environ is None:
        environ = dict(os.environ)
    file_values = load_config_file(config_path)

    values = {}
    for key, convert in _CONVERTERS.items():
        raw = environ.get(key.upper())
        if raw is None:
            raw = file_values.get(key)
        if raw is None:
            continue
        try:
            values[key] = convert(raw)
        except (ArithmeticError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid value for {key.upper()}: {raw!r}") from e

    settings = Settings(**values)

    rate = settings.distribution_withholding_rate
    if rate < 0 or rate >= 1:
        raise ValueError("DISTRIBUTION_WITHHOLDING_RATE must be in [0, 1)")
    if settings.listing_ttl_days <= 0:
        raise ValueError("LISTING_TTL_DAYS must be positive")

    return settings


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, loaded once."""
    return load_settings()
