"""Download orchestration: admission, strategy choice and byte streaming.

A request holds one gate slot from admission until its response body is
finished. Every resource acquired on the way (slot, upstream connection,
open file, merged temp file) is pushed onto one ``AsyncExitStack``. If the
handler fails before a response exists the stack unwinds immediately;
otherwise it is handed to ``ClosingStreamingResponse`` which unwinds it once
the ASGI call ends, whatever the reason.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import threading
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import quote, unquote

import anyio
import httpx
from starlette.concurrency import run_in_threadpool
from starlette.responses import Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from .config import CHUNK_SIZE
from .errors import (
    ClientDisconnected,
    ResolutionError,
    ServerBusy,
    TransferInterrupted,
    UpstreamError,
    ValidationError,
    ViddownError,
)
from .extraction import DEFAULT_USER_AGENT, ExtractionClient
from .gate import ConcurrencyGate
from .validator import Validator

logger = logging.getLogger(__name__)

BEST_FORMAT = "best"
COMPOSITE_SEPARATOR = "+"
DISCONNECT_POLL_SECONDS = 0.5

_FILENAME_SUBSTITUTES = {
    '"': "'",
    "\\": "_",
    "/": "_",
    ":": "-",
    "*": "_",
    "?": "_",
    "<": "_",
    ">": "_",
    "|": "_",
}
_FILENAME_TABLE = str.maketrans(_FILENAME_SUBSTITUTES)
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class OutputKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"


class Strategy(str, Enum):
    DIRECT = "direct"
    MERGE = "merge"


class TransferState(str, Enum):
    RECEIVED = "received"
    ADMITTED = "admitted"
    STRATEGY_SELECTED = "strategy_selected"
    DIRECT_STREAMING = "direct_streaming"
    MERGE_STREAMING = "merge_streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TransferRequest:
    source_url: str
    format_id: str = BEST_FORMAT
    kind: OutputKind = OutputKind.VIDEO
    started_at: float = field(default_factory=time.monotonic)
    state: TransferState = TransferState.RECEIVED
    bytes_written: int = 0
    error: Optional[ViddownError] = None

    @classmethod
    def from_query(
        cls, url: Optional[str], format_id: Optional[str] = None, kind: Optional[str] = None
    ) -> "TransferRequest":
        if not url:
            raise ValidationError("url_required")
        try:
            decoded = unquote(url, errors="strict")
        except UnicodeDecodeError as exc:
            raise ValidationError("invalid_encoding", str(exc)) from exc
        output = OutputKind.AUDIO if (kind or "").lower() == OutputKind.AUDIO.value else OutputKind.VIDEO
        return cls(source_url=decoded, format_id=(format_id or "").strip() or BEST_FORMAT, kind=output)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


def select_strategy(format_id: str) -> Strategy:
    """Composite ``video+audio`` selectors are merged locally, the rest proxied."""
    return Strategy.MERGE if COMPOSITE_SEPARATOR in (format_id or BEST_FORMAT) else Strategy.DIRECT


def sanitize_filename(filename: str) -> str:
    """ASCII-only fallback filename for the legacy ``filename=`` parameter.

    The result is a fixed point: sanitizing it again returns it unchanged.
    """
    cleaned = _CONTROL_CHARS.sub(" ", (filename or "").translate(_FILENAME_TABLE))
    cleaned = cleaned.encode("ascii", "ignore").decode("ascii").rstrip(" .")
    stem, dot, ext = cleaned.rpartition(".")
    if not dot:
        stem, ext = cleaned, ""
    stem = stem.strip(" .") or "download"
    # the trailing strip above guarantees a non-empty extension after a dot
    ext = ext.replace(" ", "")
    return f"{stem}.{ext}" if ext else stem


def content_disposition(filename: str) -> str:
    return f"attachment; filename=\"{sanitize_filename(filename)}\"; filename*=UTF-8''{quote(filename, safe='')}"


class ClosingStreamingResponse(StreamingResponse):
    """Streaming response that runs ``on_close`` once the ASGI call ends.

    ``on_close`` runs after success, client disconnect, send errors and
    cancellation alike, and is shielded from cancellation itself.
    """

    def __init__(self, content, *, on_close: Callable[[], Awaitable[object]], **kwargs) -> None:
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self._on_close()


def default_http_client(proxy_url: Optional[str] = None) -> httpx.AsyncClient:
    # No read timeout: transfers are bounded in count by the gate, not in duration.
    return httpx.AsyncClient(proxy=proxy_url, timeout=None, follow_redirects=True)


class StreamingOrchestrator:
    def __init__(
        self,
        extractor: ExtractionClient,
        gate: ConcurrencyGate,
        validator: Validator,
        *,
        chunk_size: int = CHUNK_SIZE,
        http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        proxy_url: Optional[str] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        disconnect_poll: float = DISCONNECT_POLL_SECONDS,
    ) -> None:
        self.extractor = extractor
        self.gate = gate
        self.validator = validator
        self.chunk_size = chunk_size
        self.http_client_factory = http_client_factory or (lambda: default_http_client(proxy_url))
        self.user_agent = user_agent
        self.disconnect_poll = disconnect_poll

    async def stream(
        self,
        transfer: TransferRequest,
        *,
        range_header: Optional[str] = None,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> Response:
        """Admit ``transfer`` and return a response that streams it.

        Raises before any body is produced when admission, validation or
        resolution fails; the slot and any temp file are released by then.
        """
        if not self.gate.try_acquire():
            transfer.state = TransferState.FAILED
            logger.warning("Server busy, all download slots occupied")
            raise ServerBusy()
        transfer.state = TransferState.ADMITTED

        try:
            async with AsyncExitStack() as stack:
                stack.callback(self.gate.release)
                self.validator.validate_url(transfer.source_url)

                strategy = select_strategy(transfer.format_id)
                transfer.state = TransferState.STRATEGY_SELECTED
                logger.info(
                    "Starting download url=%s format=%s strategy=%s",
                    transfer.source_url,
                    transfer.format_id,
                    strategy.value,
                )
                if strategy is Strategy.MERGE:
                    return await self._stream_merged(transfer, stack, is_disconnected)
                return await self._stream_direct(transfer, stack, range_header)
        except ViddownError as exc:
            transfer.state = TransferState.FAILED
            transfer.error = exc
            raise
        except BaseException:
            transfer.state = TransferState.FAILED
            raise

    async def _stream_direct(
        self, transfer: TransferRequest, stack: AsyncExitStack, range_header: Optional[str]
    ) -> Response:
        try:
            direct = await run_in_threadpool(self.extractor.resolve_direct, transfer.source_url, transfer.format_id)
        except ResolutionError as exc:
            logger.error("Failed to get direct URL url=%s error=%s", transfer.source_url, exc.detail)
            raise
        logger.info("Got direct URL filename=%s", direct.filename)

        client = self.http_client_factory()
        stack.push_async_callback(client.aclose)

        headers = {"User-Agent": self.user_agent, **direct.headers}
        if range_header:
            headers["Range"] = range_header
        try:
            upstream = await client.send(client.build_request("GET", direct.url, headers=headers), stream=True)
        except httpx.HTTPError as exc:
            logger.error("Failed to fetch from source url=%s error=%s", transfer.source_url, exc)
            raise UpstreamError("upstream_failed", str(exc)) from exc
        stack.push_async_callback(upstream.aclose)

        if upstream.status_code == 416:
            # resume past the end: the client already has every byte
            transfer.state = TransferState.COMPLETED
            logger.info("Range not satisfiable range=%s url=%s", range_header, transfer.source_url)
            mirrored = {"Accept-Ranges": "bytes"}
            if "content-range" in upstream.headers:
                mirrored["Content-Range"] = upstream.headers["content-range"]
            return Response(status_code=416, headers=mirrored)

        if upstream.status_code >= 400:
            logger.error("Source answered %d for url=%s", upstream.status_code, transfer.source_url)
            raise UpstreamError("upstream_failed", f"upstream status {upstream.status_code}")

        response_headers = {
            "Content-Disposition": content_disposition(direct.filename),
            "Accept-Ranges": "bytes",
            "Cache-Control": "no-cache",
        }
        content_length = upstream.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > 0:
            response_headers["Content-Length"] = content_length
        status_code = 200
        if upstream.status_code == 206:
            status_code = 206
            if "content-range" in upstream.headers:
                response_headers["Content-Range"] = upstream.headers["content-range"]

        transfer.state = TransferState.DIRECT_STREAMING
        return ClosingStreamingResponse(
            self._pump(transfer, upstream.aiter_raw(self.chunk_size), direct.filename, "direct"),
            status_code=status_code,
            media_type=direct.content_type,
            headers=response_headers,
            on_close=stack.pop_all().aclose,
        )

    async def _stream_merged(
        self,
        transfer: TransferRequest,
        stack: AsyncExitStack,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]],
    ) -> Response:
        logger.info("Downloading merged video format=%s", transfer.format_id)
        cancel = threading.Event()
        watcher = None
        if is_disconnected is not None:
            watcher = asyncio.ensure_future(self._watch_disconnect(is_disconnected, cancel))
        try:
            merged = await run_in_threadpool(
                self.extractor.materialize_merged, transfer.source_url, transfer.format_id, cancel
            )
        except ClientDisconnected:
            logger.info("Merge cancelled, client disconnected format=%s", transfer.format_id)
            raise
        except ResolutionError as exc:
            logger.error("Merged download failed format=%s error=%s", transfer.format_id, exc.detail)
            raise
        finally:
            if watcher is not None:
                watcher.cancel()
        stack.callback(merged.release)

        try:
            handle = await anyio.open_file(merged.path, "rb")
        except OSError as exc:
            logger.error("Failed to open temp file path=%s error=%s", merged.path, exc)
            raise ResolutionError("stream_failed", str(exc)) from exc
        stack.push_async_callback(handle.aclose)
        try:
            size = os.fstat(handle.wrapped.fileno()).st_size
        except OSError as exc:
            logger.error("Failed to stat temp file path=%s error=%s", merged.path, exc)
            raise ResolutionError("stream_failed", str(exc)) from exc

        media_type = "audio/mp4" if transfer.kind is OutputKind.AUDIO else "video/mp4"
        headers = {
            "Content-Length": str(size),
            "Content-Disposition": content_disposition(merged.filename),
            "Accept-Ranges": "bytes",
            "Cache-Control": "no-cache",
        }
        logger.info("Streaming to client filename=%s size=%d", merged.filename, size)

        async def read_chunks() -> AsyncIterator[bytes]:
            while True:
                chunk = await handle.read(self.chunk_size)
                if not chunk:
                    return
                yield chunk

        transfer.state = TransferState.MERGE_STREAMING
        return ClosingStreamingResponse(
            self._pump(transfer, read_chunks(), merged.filename, "merged"),
            media_type=media_type,
            headers=headers,
            on_close=stack.pop_all().aclose,
        )

    async def _pump(
        self, transfer: TransferRequest, chunks: AsyncIterator[bytes], filename: str, label: str
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in chunks:
                yield chunk
                transfer.bytes_written += len(chunk)
        except httpx.HTTPError as exc:
            transfer.state = TransferState.FAILED
            # headers are committed; the body is simply truncated
            transfer.error = TransferInterrupted("stream_failed", str(exc))
            logger.error("Stream interrupted error=%s written=%d", exc, transfer.bytes_written)
            return
        except (asyncio.CancelledError, GeneratorExit, OSError):
            transfer.state = TransferState.FAILED
            logger.info("Client went away filename=%s written=%d", filename, transfer.bytes_written)
            raise
        transfer.state = TransferState.COMPLETED
        logger.info(
            "Download complete (%s) filename=%s size=%d duration=%.1fs",
            label,
            filename,
            transfer.bytes_written,
            transfer.elapsed,
        )

    async def _watch_disconnect(
        self, is_disconnected: Callable[[], Awaitable[bool]], cancel: threading.Event
    ) -> None:
        while not cancel.is_set():
            if await is_disconnected():
                logger.info("Client disconnected during merge, cancelling extraction")
                cancel.set()
                return
            await asyncio.sleep(self.disconnect_poll)
