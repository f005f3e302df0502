"""Service configuration read from the environment."""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from typing import List, Optional

CHUNK_SIZE = 1024 * 256


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, "")
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    return max(value, minimum)


@dataclass
class Settings:
    max_concurrent_downloads: int = 3
    rate_limit_rpm: int = 10
    max_duration: int = 7200
    cookies_file: Optional[str] = None
    proxy_url: Optional[str] = None
    temp_dir: str = field(default_factory=lambda: os.path.join(tempfile.gettempdir(), "viddown"))
    chunk_size: int = CHUNK_SIZE
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    default_locale: str = "en"
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Build settings from environment variables, falling back to defaults."""
    origins = [item.strip() for item in os.getenv("CORS_ORIGINS", "*").split(",") if item.strip()]
    return Settings(
        max_concurrent_downloads=_int_env("MAX_CONCURRENT_DOWNLOADS", 3, minimum=1),
        rate_limit_rpm=_int_env("RATE_LIMIT_RPM", 10, minimum=1),
        max_duration=_int_env("MAX_DURATION", 7200, minimum=1),
        cookies_file=os.getenv("COOKIES_FILE") or None,
        proxy_url=os.getenv("PROXY_URL") or None,
        temp_dir=os.getenv("TEMP_DIR") or os.path.join(tempfile.gettempdir(), "viddown"),
        chunk_size=_int_env("CHUNK_SIZE", CHUNK_SIZE, minimum=1024),
        cors_origins=origins or ["*"],
        default_locale=(os.getenv("DEFAULT_LOCALE") or "en").lower(),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )
