"""FastAPI backend for viddown.

This service exposes:
- GET  /api/health    : service readiness and yt-dlp version
- GET  /api/config    : public limits for the frontend
- POST /api/analyze   : metadata and the ranked format list for a URL
- GET  /api/download  : streams the selected format (also served at /download)
- GET  /api/thumbnail : proxies preview images from known CDNs

Run with:
    uvicorn server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import unquote, urlparse

import httpx
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from viddown import __version__
from viddown.config import Settings, load_settings
from viddown.errors import ForbiddenError, UpstreamError, ValidationError, ViddownError, message_for, negotiate_locale
from viddown.extraction import DEFAULT_USER_AGENT, ExtractionClient, YtDlpClient, rank_formats
from viddown.gate import ConcurrencyGate
from viddown.log import configure_logging
from viddown.ratelimit import RateLimiter, RateLimitMiddleware
from viddown.streaming import ClosingStreamingResponse, StreamingOrchestrator, TransferRequest, default_http_client
from viddown.validator import PLATFORM_PATTERNS, Validator

logger = logging.getLogger("viddown.server")

THUMBNAIL_DOMAINS = (
    "i.ytimg.com",
    "img.youtube.com",
    "i1.ytimg.com",
    "i2.ytimg.com",
    "i3.ytimg.com",
    "i4.ytimg.com",
    "i9.ytimg.com",
    "yt3.ggpht.com",
    "instagram.com",
    "cdninstagram.com",
    "scontent.cdninstagram.com",
    "tiktokcdn.com",
    "p16-sign-va.tiktokcdn.com",
    "p16-sign-sg.tiktokcdn.com",
)

HTTP_STATUS_CODES = {404: "not_found", 405: "method_not_allowed"}

router = APIRouter()


class AnalyzeRequest(BaseModel):
    url: str


def is_allowed_thumbnail(raw_url: str) -> bool:
    try:
        host = (urlparse(raw_url).hostname or "").lower()
    except ValueError:
        return False
    return any(host == domain or host.endswith("." + domain) for domain in THUMBNAIL_DOMAINS)


def _locale(request: Request) -> str:
    return negotiate_locale(request.headers.get("accept-language"), request.app.state.settings.default_locale)


@router.get("/")
async def root() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/api/health")
async def healthcheck(request: Request) -> Dict[str, Any]:
    """Return service readiness, uptime and slot usage."""
    state = request.app.state
    version = getattr(state.extractor, "version", None)
    return {
        "status": "ok",
        "version": __version__,
        "uptime": f"{int(time.monotonic() - state.started_at)}s",
        "yt_dlp": (version() if callable(version) else None) or "unknown",
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "max_concurrent_downloads": state.gate.capacity,
        "available_slots": state.gate.available(),
    }


@router.get("/api/config")
async def public_config(request: Request) -> Dict[str, Any]:
    settings: Settings = request.app.state.settings
    return {
        "max_duration": settings.max_duration,
        "platforms": [platform.value for platform in PLATFORM_PATTERNS],
        "rate_limit_rpm": settings.rate_limit_rpm,
        "max_concurrent_downloads": settings.max_concurrent_downloads,
    }


@router.post("/api/analyze")
async def analyze(payload: AnalyzeRequest, request: Request) -> Dict[str, Any]:
    """Validate a URL and return its metadata with the ranked format list."""
    state = request.app.state
    platform = state.validator.validate_url(payload.url)
    with state.gate.slot():
        info = await run_in_threadpool(state.extractor.resolve_metadata, payload.url.strip())
    state.validator.validate_duration(info.duration)
    logger.info("Analyzed url=%s title=%s formats=%d", payload.url, info.title, len(info.formats))
    return {
        "platform": platform.value,
        "title": info.title,
        "duration": info.duration,
        "thumbnail": info.thumbnail,
        "formats": [fmt.to_dict() for fmt in rank_formats(info.formats)],
    }


@router.get("/api/download")
async def download(
    request: Request,
    url: Optional[str] = Query(None, description="Percent-encoded source URL"),
    format_id: Optional[str] = Query(None, description="yt-dlp format id, or video+audio pair"),
    kind: Optional[str] = Query(None, alias="type", description="video or audio"),
):
    """Stream the selected format back to the client.

    - single format ids are proxied from the source CDN, honouring Range
    - composite ids (``137+140``) are merged to mp4 on disk, then streamed
    """
    transfer = TransferRequest.from_query(url, format_id, kind)
    return await request.app.state.orchestrator.stream(
        transfer,
        range_header=request.headers.get("range"),
        is_disconnected=request.is_disconnected,
    )


router.add_api_route("/download", download, methods=["GET"], include_in_schema=False)


@router.get("/api/thumbnail")
async def thumbnail(request: Request, url: Optional[str] = Query(None)):
    if not url:
        raise ValidationError("url_required")
    thumbnail_url = unquote(url)
    if not is_allowed_thumbnail(thumbnail_url):
        logger.warning("Blocked thumbnail request for unknown domain url=%s", thumbnail_url)
        raise ForbiddenError("thumbnail_forbidden", thumbnail_url)

    client: httpx.AsyncClient = request.app.state.http_client_factory()
    headers = {"User-Agent": DEFAULT_USER_AGENT, "Accept": "image/*", "Referer": "https://www.youtube.com/"}
    try:
        upstream = await client.send(client.build_request("GET", thumbnail_url, headers=headers), stream=True)
    except httpx.HTTPError as exc:
        await client.aclose()
        logger.error("Failed to fetch thumbnail url=%s error=%s", thumbnail_url, exc)
        raise UpstreamError("thumbnail_failed", str(exc)) from exc

    async def close() -> None:
        await upstream.aclose()
        await client.aclose()

    if upstream.status_code != 200:
        await close()
        logger.warning("Thumbnail fetch failed url=%s status=%d", thumbnail_url, upstream.status_code)
        return JSONResponse(
            {"error": message_for("thumbnail_failed", _locale(request))}, status_code=upstream.status_code
        )

    return ClosingStreamingResponse(
        upstream.aiter_raw(),
        media_type=upstream.headers.get("content-type") or "image/jpeg",
        headers={"Cache-Control": "public, max-age=3600"},
        on_close=close,
    )


async def viddown_error_handler(request: Request, exc: ViddownError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s failed code=%s detail=%s", request.url.path, exc.code, exc.detail)
    return JSONResponse(
        {"error": message_for(exc.code, _locale(request))},
        status_code=exc.status_code,
        headers=exc.headers,
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = HTTP_STATUS_CODES.get(exc.status_code)
    message = message_for(code, _locale(request)) if code else str(exc.detail)
    return JSONResponse({"error": message}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse({"error": message_for("invalid_request", _locale(request))}, status_code=400)


def create_app(
    settings: Optional[Settings] = None,
    extractor: Optional[ExtractionClient] = None,
    http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
) -> FastAPI:
    """Wire the gate, limiter, validator and orchestrator into a FastAPI app."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    extractor = extractor or YtDlpClient(
        temp_dir=settings.temp_dir,
        cookies_file=settings.cookies_file,
        proxy_url=settings.proxy_url,
    )
    http_client_factory = http_client_factory or (lambda: default_http_client(settings.proxy_url))
    limiter = RateLimiter(settings.rate_limit_rpm)
    gate = ConcurrencyGate(settings.max_concurrent_downloads)
    validator = Validator(settings.max_duration)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        limiter.start_sweeper()
        try:
            yield
        finally:
            await limiter.stop_sweeper()

    app = FastAPI(title="viddown API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.started_at = time.monotonic()
    app.state.extractor = extractor
    app.state.http_client_factory = http_client_factory
    app.state.rate_limiter = limiter
    app.state.gate = gate
    app.state.validator = validator
    app.state.orchestrator = StreamingOrchestrator(
        extractor,
        gate,
        validator,
        chunk_size=settings.chunk_size,
        http_client_factory=http_client_factory,
    )

    app.include_router(router)
    app.add_exception_handler(ViddownError, viddown_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.add_middleware(
        RateLimitMiddleware,
        limiter=limiter,
        exempt_paths=("/", "/api/health", "/api/config"),
        default_locale=settings.default_locale,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Accept", "Authorization", "Content-Type", "Range"],
        expose_headers=["Content-Disposition", "Content-Length", "Content-Type", "Content-Range"],
        max_age=300,
    )
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("server:app", host="0.0.0.0", port=8000, reload=False)
