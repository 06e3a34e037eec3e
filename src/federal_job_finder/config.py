"""YAML + environment configuration."""

import os
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path

import yaml
from loguru import logger

from federal_job_finder.errors import ConfigError

DEFAULT_DATA_DIR = Path.home() / ".federal-job-finder"


@dataclass
class Settings:
    api_base_url: str = "https://data.usajobs.gov/api"
    api_key: str = ""
    user_agent: str = "FederalJobFinder/1.0"  # USAJobs expects the registered e-mail
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0

    cache_max_age_days: float = 7
    favorite_check_interval: float = 3600  # seconds, 0 disables periodic sync

    connectivity_probe_url: str | None = "https://data.usajobs.gov"
    connectivity_probe_interval: float = 30.0
    connectivity_probe_timeout: float = 5.0

    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / "jobs.db"

    @property
    def state_path(self) -> Path:
        return Path(self.data_dir) / "sync_state.jsonl"

    @property
    def cache_max_age(self) -> timedelta:
        return timedelta(days=self.cache_max_age_days)

    @property
    def is_api_key_configured(self) -> bool:
        return bool(self.api_key)


ENV_OVERRIDES = {
    "USAJOBS_API_KEY": "api_key",
    "USAJOBS_USER_AGENT": "user_agent",
    "USAJOBS_BASE_URL": "api_base_url",
    "FJF_DATA_DIR": "data_dir",
    "FJF_LOG_LEVEL": "log_level",
}


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings from an optional YAML file, then apply environment overrides.

    Args:
        config_path: YAML file path; falls back to $FJF_CONFIG when omitted

    Returns:
        Settings

    Raises:
        ConfigError: If the file cannot be read or is not a YAML mapping
    """
    config_path = config_path or os.environ.get("FJF_CONFIG")
    raw: dict = {}

    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML file {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Failed to read file {path}: {e}")

        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Invalid config file format: {path}. Expected a mapping.")
        raw = loaded

    known = {f.name for f in fields(Settings)}
    for key in sorted(set(raw) - known):
        logger.warning(f"Ignoring unknown config key '{key}'")

    values = {k: v for k, v in raw.items() if k in known}

    for env_var, attr in ENV_OVERRIDES.items():
        env_value = os.environ.get(env_var)
        if env_value:
            values[attr] = env_value

    if "data_dir" in values:
        values["data_dir"] = Path(values["data_dir"]).expanduser()
    if values.get("log_file"):
        values["log_file"] = str(Path(values["log_file"]).expanduser())

    settings = Settings(**values)

    if not settings.is_api_key_configured:
        logger.warning("USAJobs API key not configured! Set USAJOBS_API_KEY or api_key in the config file")

    return settings
