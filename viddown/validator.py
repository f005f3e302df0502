"""Source URL classification and duration policy."""
from __future__ import annotations

import re
from enum import Enum
from typing import Dict, Optional, Pattern
from urllib.parse import urlparse

from .errors import ValidationError


class Platform(str, Enum):
    YOUTUBE = "youtube"
    INSTAGRAM = "instagram"
    TIKTOK = "tiktok"
    UNKNOWN = "unknown"


PLATFORM_PATTERNS: Dict[Platform, Pattern[str]] = {
    Platform.YOUTUBE: re.compile(r"(youtube\.com|youtu\.be|music\.youtube\.com)", re.IGNORECASE),
    Platform.INSTAGRAM: re.compile(r"(instagram\.com|instagr\.am)", re.IGNORECASE),
    Platform.TIKTOK: re.compile(r"(tiktok\.com|vm\.tiktok\.com)", re.IGNORECASE),
}


class Validator:
    def __init__(self, max_duration: int) -> None:
        self.max_duration = max_duration

    def validate_url(self, raw_url: Optional[str]) -> Platform:
        """Return the platform a URL belongs to, raising ``ValidationError`` otherwise."""
        try:
            parsed = urlparse((raw_url or "").strip())
        except ValueError as exc:
            raise ValidationError("invalid_url", str(exc)) from exc
        if not parsed.scheme or not parsed.netloc:
            raise ValidationError("invalid_url", f"no host in {raw_url!r}")

        for platform, pattern in PLATFORM_PATTERNS.items():
            if pattern.search(parsed.netloc):
                return platform
        raise ValidationError("unsupported_platform", parsed.netloc)

    def validate_duration(self, duration: Optional[float]) -> None:
        if duration and duration > self.max_duration:
            raise ValidationError("duration_too_long", f"{duration}s > {self.max_duration}s")
