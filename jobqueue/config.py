from typing import Dict

from pydantic import BaseModel

from .models import DEFAULTS
from .storage import JobStore

ALLOWED_CONFIG_KEYS = set(DEFAULTS) | {"shutdown"}


class Settings(BaseModel):
    tick_interval: float = DEFAULTS["tick_interval"]
    default_timeout_ms: int = DEFAULTS["default_timeout_ms"]
    default_concurrency: int = DEFAULTS["default_concurrency"]
    default_max_attempts: int = DEFAULTS["default_max_attempts"]
    stats_window_hours: float = DEFAULTS["stats_window_hours"]
    reaper_grace_seconds: float = DEFAULTS["reaper_grace_seconds"]
    cleanup_days: float = DEFAULTS["cleanup_days"]
    event_buffer: int = DEFAULTS["event_buffer"]


def load_settings(store: JobStore) -> Settings:
    """Settings from the store's config table; unknown rows are ignored."""
    values: Dict[str, str] = store.config_all()
    return Settings(**{k: v for k, v in values.items() if k in Settings.model_fields})


def get_config(store: JobStore, key: str) -> str:
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    return store.config_get(key, str(DEFAULTS.get(key, "")))


def set_config(store: JobStore, key: str, value: str) -> None:
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    if key in Settings.model_fields:
        # reject values that would not load back
        Settings(**{key: value})
    store.config_set(key, value)
