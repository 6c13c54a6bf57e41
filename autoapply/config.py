"""Load settings from config/settings.yaml and the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from autoapply.errors import ConfigError
from autoapply.log import get_logger

log = get_logger(__name__)

load_dotenv()

ROOT_DIR: Path = Path(__file__).resolve().parent.parent
CONFIG_DIR: Path = ROOT_DIR / "config"
SETTINGS_PATH: Path = CONFIG_DIR / "settings.yaml"
DATA_DIR: Path = ROOT_DIR / "data"

# settings.yaml key -> environment variable that overrides it
_ENV_KEYS: dict[str, str] = {
    "database_url": "DATABASE_URL",
    "groq_api_key": "GROQ_API_KEY",
    "llm_model": "GROQ_LLM_MODEL",
    "llm_base_url": "GROQ_BASE_URL",
    "expansion_timeout": "EXPANSION_TIMEOUT",
    "scoring_timeout": "SCORING_TIMEOUT",
    "sweep_interval_minutes": "SWEEP_INTERVAL_MINUTES",
    "digest_hour": "DIGEST_HOUR",
    "cache_cleanup_hour": "CACHE_CLEANUP_HOUR",
    "search_cache_ttl_hours": "SEARCH_CACHE_TTL_HOURS",
    "lookback_hours": "LOOKBACK_HOURS",
    "new_postings_limit": "NEW_POSTINGS_LIMIT",
    "smtp_host": "SMTP_HOST",
    "smtp_port": "SMTP_PORT",
    "smtp_user": "SMTP_USER",
    "smtp_password": "SMTP_PASSWORD",
    "from_email": "FROM_EMAIL",
    "relevance_dictionary_path": "RELEVANCE_DICTIONARY_PATH",
    "schedule_timezone": "SCHEDULE_TZ",
}


@dataclass
class Settings:
    database_url: str = f"sqlite:///{DATA_DIR / 'autoapply.db'}"
    groq_api_key: str = ""
    llm_model: str = "llama-3.3-70b-versatile"
    llm_base_url: str = "https://api.groq.com/openai/v1"
    expansion_timeout: float = 12.0
    scoring_timeout: float = 65.0
    sweep_interval_minutes: int = 30
    digest_hour: int = 18
    cache_cleanup_hour: int = 2
    search_cache_ttl_hours: int = 6
    lookback_hours: int = 24
    new_postings_limit: int = 20
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_email: str = ""
    relevance_dictionary_path: str = ""
    schedule_timezone: str = "Africa/Lagos"

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)


def get_env(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def _coerce(name: str, value: Any, target: Any) -> Any:
    if isinstance(target, bool):
        return str(value).lower() in ("1", "true", "yes")
    try:
        if isinstance(target, int):
            return int(value)
        if isinstance(target, float):
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from exc
    return str(value)


def load_settings(path: Path | None = None) -> Settings:
    """Defaults, then settings.yaml, then environment variables."""
    settings = Settings()
    path = path or SETTINGS_PATH

    file_values: dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{path.name} root must be a mapping")
        file_values = loaded
        log.debug("Loaded settings from %s", path)

    known = {f.name for f in fields(Settings)}
    for key in file_values:
        if key not in known:
            log.warning("Ignoring unknown setting %r in %s", key, path.name)

    for name in known:
        default = getattr(settings, name)
        if name in file_values and file_values[name] is not None:
            setattr(settings, name, _coerce(name, file_values[name], default))
        env_value = get_env(_ENV_KEYS.get(name, name.upper()))
        if env_value:
            setattr(settings, name, _coerce(name, env_value, default))

    if not settings.from_email:
        settings.from_email = settings.smtp_user
    return settings


def ensure_dirs() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
