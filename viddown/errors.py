"""Error taxonomy and client-facing messages.

Every error carries a message ``code``; the text returned to the client is
looked up in ``MESSAGES`` for the caller's locale. ``detail`` holds internal
diagnostics (yt-dlp output, transport errors) and is only ever logged.
"""
from __future__ import annotations

from typing import Dict, Optional

RETRY_AFTER_SECONDS = 60

MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "url_required": "URL parameter is required",
        "invalid_encoding": "Invalid URL encoding",
        "invalid_url": "Invalid URL",
        "unsupported_platform": "Unsupported platform",
        "duration_too_long": "Video duration exceeds maximum allowed",
        "invalid_request": "Invalid request",
        "method_not_allowed": "Method not allowed",
        "not_found": "Not found",
        "server_busy": "Server is busy. Please try again later.",
        "rate_limited": "Too many requests. Please wait a minute.",
        "metadata_failed": "Failed to analyze URL",
        "resolve_failed": "Failed to get download URL",
        "upstream_failed": "Failed to download",
        "merge_failed": "Download failed",
        "stream_failed": "Stream failed",
        "thumbnail_forbidden": "Domain not allowed",
        "thumbnail_failed": "Failed to fetch thumbnail",
        "client_closed": "Request cancelled",
        "internal": "Internal server error",
    },
    "ru": {
        "url_required": "Параметр URL обязателен",
        "invalid_encoding": "Неверная кодировка URL",
        "invalid_url": "Неверный URL",
        "unsupported_platform": "Платформа не поддерживается",
        "duration_too_long": "Видео длиннее допустимого",
        "invalid_request": "Неверный запрос",
        "method_not_allowed": "Метод не поддерживается",
        "not_found": "Не найдено",
        "server_busy": "Сервер занят. Попробуйте позже.",
        "rate_limited": "Слишком много запросов. Подождите минуту.",
        "metadata_failed": "Не удалось проанализировать ссылку",
        "resolve_failed": "Не удалось получить ссылку для загрузки",
        "upstream_failed": "Не удалось скачать",
        "merge_failed": "Ошибка загрузки",
        "stream_failed": "Ошибка передачи",
        "thumbnail_forbidden": "Домен не разрешён",
        "thumbnail_failed": "Не удалось получить превью",
        "client_closed": "Запрос отменён",
        "internal": "Внутренняя ошибка сервера",
    },
}


def negotiate_locale(accept_language: Optional[str], default: str = "en") -> str:
    """Pick the first supported language from an Accept-Language header."""
    for part in (accept_language or "").split(","):
        tag = part.split(";", 1)[0].strip().lower()
        primary = tag.split("-", 1)[0]
        if primary in MESSAGES:
            return primary
    return default if default in MESSAGES else "en"


def message_for(code: str, locale: str = "en") -> str:
    table = MESSAGES.get(locale, MESSAGES["en"])
    return table.get(code) or MESSAGES["en"].get(code) or MESSAGES["en"]["internal"]


class ViddownError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    default_code = "internal"

    def __init__(self, code: Optional[str] = None, detail: Optional[str] = None) -> None:
        self.code = code or self.default_code
        self.detail = detail
        super().__init__(detail or self.code)

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return None


class ValidationError(ViddownError):
    """Bad input: undecodable locator, unsupported platform, duration over the bound."""

    status_code = 400
    default_code = "invalid_request"


class ForbiddenError(ViddownError):
    status_code = 403
    default_code = "thumbnail_forbidden"


class AdmissionRejected(ViddownError):
    """Raised when the request is refused before any work starts."""

    status_code = 503
    default_code = "server_busy"


class ServerBusy(AdmissionRejected):
    status_code = 503
    default_code = "server_busy"


class RateLimited(AdmissionRejected):
    status_code = 429
    default_code = "rate_limited"

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        return {"Retry-After": str(RETRY_AFTER_SECONDS)}


class ResolutionError(ViddownError):
    """The extraction tool failed to resolve a format or materialize a file."""

    status_code = 500
    default_code = "resolve_failed"


class UpstreamError(ResolutionError):
    status_code = 502
    default_code = "upstream_failed"


class ClientDisconnected(ViddownError):
    """The client left before any response header was sent."""

    # nginx's "client closed request"; nobody reads it, but it keeps aborts out of the 5xx logs
    status_code = 499
    default_code = "client_closed"


class TransferInterrupted(ViddownError):
    """The transfer broke after headers were committed; only logged, never answered."""

    default_code = "stream_failed"
