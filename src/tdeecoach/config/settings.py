"""Settings for tdeecoach, read from ``~/.tdeecoach/config.yaml``.

Every section is optional in the file; missing keys keep their defaults.
``TDEECOACH_CONFIG`` points at a different config file.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

CONFIG_ENV_VAR = "TDEECOACH_CONFIG"


def _home_dir() -> Path:
    return Path.home() / ".tdeecoach"


def _default_db_path() -> Path:
    return _home_dir() / "tdeecoach.db"


def default_config_path() -> Path:
    """Config file location, honouring ``TDEECOACH_CONFIG``."""
    override = os.getenv(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return _home_dir() / "config.yaml"


@dataclass
class DatabaseConfig:
    """Where the SQLite file lives and how long to wait on a busy writer."""

    path: Path = field(default_factory=_default_db_path)
    timeout_seconds: float = 5.0


@dataclass
class MetabolicConfig:
    """Trend smoothing and TDEE estimation parameters.

    ``whoosh_protection`` is off by default: back-solved TDEE then uses the
    raw energy balance and sudden water-weight drops are not dampened.
    """

    weight_ema_alpha: float = 0.1
    tdee_ema_alpha: float = 0.05
    tdee_ema_alpha_responsive: float = 0.10
    step_responsiveness_threshold: float = 0.20
    cold_start_days: int = 7
    default_activity_multiplier: float = 1.55
    athlete_multiplier: float = 1.10
    default_seed_tdee: int = 2000
    whoosh_protection: bool = False
    recent_window_days: int = 7


@dataclass
class CoachingConfig:
    """Weekly target bounds and maintenance drift."""

    min_calories: int = 1200
    max_calories: int = 6000
    maintenance_tolerance_kg: float = 1.5
    micro_adjustment_kcal: int = 150
    default_goal_rate: float = 0.5


@dataclass
class LoggingConfig:
    level: str = "WARNING"


@dataclass
class DefaultsConfig:
    backfill_days: int = 90


@dataclass
class Settings:
    """All configuration sections."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    metabolic: MetabolicConfig = field(default_factory=MetabolicConfig)
    coaching: CoachingConfig = field(default_factory=CoachingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Read a config file over the defaults.

        Args:
            config_path: YAML file to read (default: ``default_config_path()``)

        Returns:
            Defaults when the file is missing or empty
        """
        config_path = config_path or default_config_path()
        settings = cls()
        if not config_path.exists():
            return settings

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        database = data.get("database") or {}
        if "path" in database:
            settings.database.path = Path(database["path"]).expanduser()
        if "timeout_seconds" in database:
            settings.database.timeout_seconds = float(database["timeout_seconds"])

        for name in ("metabolic", "coaching", "logging", "defaults"):
            _apply_section(getattr(settings, name), data.get(name))

        return settings

    def save(self, config_path: Optional[Path] = None) -> None:
        """Write every section to YAML, creating parent directories."""
        config_path = config_path or default_config_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "database": {
                "path": str(self.database.path),
                "timeout_seconds": self.database.timeout_seconds,
            },
            "metabolic": asdict(self.metabolic),
            "coaching": asdict(self.coaching),
            "logging": asdict(self.logging),
            "defaults": asdict(self.defaults),
        }
        with open(config_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def _apply_section(section: Any, values: Optional[dict]) -> None:
    """Copy known keys from a YAML mapping onto a config dataclass.

    Values are coerced to the type of the field's default; unknown keys are
    ignored.
    """
    if not values:
        return
    for f in fields(section):
        if f.name not in values:
            continue
        current = getattr(section, f.name)
        value = values[f.name]
        if isinstance(current, bool):
            setattr(section, f.name, bool(value))
        elif isinstance(current, (int, float, str)):
            setattr(section, f.name, type(current)(value))
        else:
            setattr(section, f.name, value)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, loaded on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def reload_settings() -> Settings:
    """Drop the cached settings and read the config file again."""
    global _settings
    _settings = Settings.load()
    return _settings
