"""yt-dlp boundary: metadata, direct URLs and merged files.

The streaming core only depends on the ``ExtractionClient`` protocol;
``YtDlpClient`` is the production implementation on top of the yt-dlp
Python API.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

import yt_dlp
from yt_dlp.utils import DownloadCancelled, DownloadError

from .errors import ClientDisconnected, ResolutionError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0 Safari/537.36"
)
DEFAULT_HTTP_HEADERS = {"User-Agent": DEFAULT_USER_AGENT}

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".m4a": "audio/mp4",
    ".mp3": "audio/mpeg",
    ".opus": "audio/opus",
}

TARGET_RESOLUTIONS = (360, 480, 720, 1080)
RESOLUTION_LABELS = {360: "360p", 480: "480p", 720: "720p HD", 1080: "1080p Full HD"}


@dataclass
class Format:
    id: str
    type: str
    quality: str
    ext: str
    size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if not data["size"]:
            data.pop("size")
        return data


@dataclass
class VideoInfo:
    title: str
    duration: int
    thumbnail: Optional[str]
    formats: List[Format] = field(default_factory=list)
    extractor: Optional[str] = None


@dataclass
class DirectStream:
    url: str
    filename: str
    content_type: str
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class MergedFile:
    path: str
    filename: str
    release: Callable[[], None]


class ExtractionClient(Protocol):
    def resolve_metadata(self, url: str) -> VideoInfo:
        ...

    def resolve_direct(self, url: str, format_id: str) -> DirectStream:
        ...

    def materialize_merged(
        self, url: str, format_id: str, cancel: Optional[threading.Event] = None
    ) -> MergedFile:
        ...


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(os.path.splitext(filename)[1].lower(), "application/octet-stream")


def parse_formats(raw_formats: List[Dict[str, Any]]) -> List[Format]:
    """Reduce yt-dlp's format list to distinct audio and mp4 video entries."""
    formats: List[Format] = []
    seen = set()
    for raw in raw_formats:
        format_id = raw.get("format_id")
        if not format_id:
            continue
        vcodec = raw.get("vcodec") or "none"
        acodec = raw.get("acodec") or "none"
        ext = raw.get("ext") or ""

        if vcodec == "none" and acodec != "none":
            kind = "audio"
            abr = raw.get("abr") or 0
            quality = f"{abr:.0f}kbps" if abr > 0 else "audio"
        elif vcodec != "none":
            kind = "video"
            # mp4 only; webm/vp9 plays poorly on stock Windows players
            if ext != "mp4":
                continue
            height = raw.get("height") or 0
            resolution = raw.get("resolution") or ""
            if height > 0:
                quality = f"{height}p"
            elif resolution and resolution != "audio only":
                quality = resolution
            else:
                continue
        else:
            continue

        key = (kind, quality, ext)
        if key in seen:
            continue
        seen.add(key)
        size = raw.get("filesize") or raw.get("filesize_approx") or 0
        formats.append(Format(id=str(format_id), type=kind, quality=quality, ext=ext, size=int(size)))
    return formats


def _bitrate(quality: str) -> int:
    try:
        return int(quality[: -len("kbps")]) if quality.endswith("kbps") else int(quality)
    except ValueError:
        return 0


def rank_formats(formats: List[Format]) -> List[Format]:
    """Offer best audio plus video+audio and video-only choices per target resolution."""
    best: List[Format] = []

    best_audio: Optional[Format] = None
    for fmt in formats:
        if fmt.type == "audio" and (best_audio is None or _bitrate(fmt.quality) > _bitrate(best_audio.quality)):
            best_audio = fmt

    if best_audio is not None:
        best.append(
            Format(
                id=best_audio.id,
                type="audio",
                quality=f"Best audio ({best_audio.quality})",
                ext="m4a",
                size=best_audio.size,
            )
        )

    for resolution in TARGET_RESOLUTIONS:
        label = RESOLUTION_LABELS[resolution]
        match = next(
            (fmt for fmt in formats if fmt.type == "video" and fmt.quality.startswith(str(resolution))),
            None,
        )
        if match is None:
            continue
        if best_audio is not None:
            best.append(
                Format(
                    id=f"{match.id}+{best_audio.id}",
                    type="video",
                    quality=f"{label} (video + audio)",
                    ext="mp4",
                    size=match.size + best_audio.size,
                )
            )
        best.append(
            Format(id=match.id, type="video_only", quality=f"{label} (video only)", ext=match.ext, size=match.size)
        )
    return best


class YtDlpClient:
    """``ExtractionClient`` backed by the yt-dlp library."""

    def __init__(
        self,
        temp_dir: str,
        cookies_file: Optional[str] = None,
        proxy_url: Optional[str] = None,
    ) -> None:
        self.temp_dir = temp_dir
        self.cookies_file = cookies_file
        self.proxy_url = proxy_url

    @staticmethod
    def version() -> Optional[str]:
        return getattr(yt_dlp, "__version__", None)

    def build_options(self, **overrides: Any) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "nocheckcertificate": True,
            "source_address": "0.0.0.0",
            "http_headers": dict(DEFAULT_HTTP_HEADERS),
        }
        if self.cookies_file and os.path.exists(self.cookies_file):
            options["cookiefile"] = self.cookies_file
        if self.proxy_url:
            options["proxy"] = self.proxy_url
        options.update(overrides)
        return options

    def resolve_metadata(self, url: str) -> VideoInfo:
        try:
            with yt_dlp.YoutubeDL(self.build_options(skip_download=True)) as ydl:
                info = ydl.extract_info(url, download=False)
        except DownloadError as exc:
            raise ResolutionError("metadata_failed", str(exc)) from exc

        return VideoInfo(
            title=info.get("title") or info.get("id") or "",
            duration=int(info.get("duration") or 0),
            thumbnail=info.get("thumbnail"),
            formats=parse_formats(info.get("formats") or []),
            extractor=info.get("extractor"),
        )

    def resolve_direct(self, url: str, format_id: str) -> DirectStream:
        options = self.build_options(format=format_id, outtmpl="%(title)s.%(ext)s", skip_download=True)
        try:
            with yt_dlp.YoutubeDL(options) as ydl:
                info = ydl.extract_info(url, download=False)
                filename = ydl.prepare_filename(info)
        except DownloadError as exc:
            raise ResolutionError("resolve_failed", str(exc)) from exc

        # A selector like "best" may still resolve to separate streams; the first one is served.
        chosen = (info.get("requested_formats") or [info])[0]
        direct_url = chosen.get("url")
        if not direct_url:
            raise ResolutionError("resolve_failed", f"no direct URL for format {format_id!r}")

        filename = os.path.basename(filename) or f"{info.get('id') or 'download'}.{chosen.get('ext') or 'bin'}"
        headers = chosen.get("http_headers") or info.get("http_headers") or {}
        return DirectStream(
            url=direct_url,
            filename=filename,
            content_type=content_type_for(filename),
            headers={str(key): str(value) for key, value in headers.items()},
        )

    def materialize_merged(
        self, url: str, format_id: str, cancel: Optional[threading.Event] = None
    ) -> MergedFile:
        """Download and mux ``format_id`` into an mp4 owned by the caller.

        The file lives in a private directory; ``release`` removes it.
        """
        os.makedirs(self.temp_dir, exist_ok=True)
        work_dir = tempfile.mkdtemp(prefix="dl_", dir=self.temp_dir)

        def release() -> None:
            shutil.rmtree(work_dir, ignore_errors=True)

        def abort_if_cancelled(_status: Dict[str, Any]) -> None:
            if cancel is not None and cancel.is_set():
                raise DownloadCancelled("client disconnected")

        options = self.build_options(
            format=format_id,
            outtmpl=os.path.join(work_dir, "%(id)s.%(ext)s"),
            merge_output_format="mp4",
            # re-encode audio to AAC so Opus tracks play inside mp4
            postprocessor_args={"merger+ffmpeg_o": ["-c:v", "copy", "-c:a", "aac"]},
            progress_hooks=[abort_if_cancelled],
            postprocessor_hooks=[abort_if_cancelled],
            overwrites=True,
            updatetime=False,
        )

        try:
            try:
                with yt_dlp.YoutubeDL(options) as ydl:
                    info = ydl.extract_info(url, download=True)
            except DownloadCancelled as exc:
                raise ClientDisconnected("client_closed", "merge cancelled by client disconnect") from exc
            except DownloadError as exc:
                raise ResolutionError("merge_failed", str(exc)) from exc

            requested = (info.get("requested_downloads") or [{}])[0]
            path = requested.get("filepath") or requested.get("_filename")
            if not path or not os.path.exists(path):
                path = os.path.join(work_dir, f"{info.get('id')}.mp4")
            if not os.path.exists(path):
                raise ResolutionError("merge_failed", "merged file was not created")
        except BaseException:
            release()
            raise

        title = info.get("title") or info.get("id") or "download"
        logger.debug("Merged %s into %s", format_id, path)
        return MergedFile(path=path, filename=f"{title}.mp4", release=release)
