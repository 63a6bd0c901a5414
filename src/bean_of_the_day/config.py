"""
Configuration for the Bean of the Day service.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

logger = logging.getLogger(__name__)

PLUGIN_NAME = "datasette-coffee-beans"


@dataclass
class SchedulerConfig:
    """Nightly selection schedule."""

    enabled: bool = False  # Run inside the Datasette process
    timezone: str | None = None  # None uses the system local time
    run_on_startup: bool = False
    random_seed: int | None = None

    def get_timezone(self) -> ZoneInfo | None:
        """Resolve the configured timezone, falling back to UTC if unknown."""
        if not self.timezone:
            return None
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown timezone {self.timezone!r}, using UTC")
            return ZoneInfo("UTC")


@dataclass
class BotdConfig:
    """Complete service configuration."""

    db_path: Path = field(default_factory=lambda: Path("coffee_beans.db"))
    initial_data_path: Path = field(default_factory=lambda: Path("data/coffeebeans.json"))
    busy_timeout_seconds: float = 30.0

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BotdConfig":
        """Create config from the plugin configuration dictionary."""
        config = cls()

        if "coffee_db_path" in data:
            config.db_path = Path(data["coffee_db_path"])
        if "initial_data_path" in data:
            config.initial_data_path = Path(data["initial_data_path"])
        if "busy_timeout_seconds" in data:
            config.busy_timeout_seconds = float(data["busy_timeout_seconds"])

        if "scheduler" in data:
            scheduler = data["scheduler"] or {}
            config.scheduler = SchedulerConfig(
                enabled=scheduler.get("enabled", False),
                timezone=scheduler.get("timezone"),
                run_on_startup=scheduler.get("run_on_startup", False),
                random_seed=scheduler.get("random_seed"),
            )

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "BotdConfig":
        """Load config from a YAML file (datasette.yaml format)."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        plugin_config = (data.get("plugins") or {}).get(PLUGIN_NAME) or {}
        return cls.from_dict(plugin_config)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for JSON serialization."""
        return {
            "coffee_db_path": str(self.db_path),
            "initial_data_path": str(self.initial_data_path),
            "busy_timeout_seconds": self.busy_timeout_seconds,
            "scheduler": {
                "enabled": self.scheduler.enabled,
                "timezone": self.scheduler.timezone,
                "run_on_startup": self.scheduler.run_on_startup,
                "random_seed": self.scheduler.random_seed,
            },
        }
