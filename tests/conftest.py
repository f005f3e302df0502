import os

import httpx
import pytest
from fastapi.testclient import TestClient

import server
from viddown.config import Settings
from viddown.errors import ResolutionError
from viddown.extraction import DirectStream, Format, MergedFile, VideoInfo

YOUTUBE_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
CDN_URL = "https://rr1---sn.googlevideo.com/videoplayback?id=1"
UPSTREAM_BODY = b"0123456789"


class FakeExtractor:
    """In-memory extraction client recording every call."""

    def __init__(self, merged_path=None):
        self.merged_path = merged_path
        self.calls = []
        self.release_calls = 0
        self.fail_direct = False
        self.fail_merge = False
        self.direct = DirectStream(
            url=CDN_URL,
            filename="Клип: live?.mp4",
            content_type="video/mp4",
            headers={"Referer": "https://www.youtube.com/"},
        )
        self.metadata = VideoInfo(
            title="Clip",
            duration=212,
            thumbnail="https://i.ytimg.com/vi/dQw4w9WgXcQ/hq.jpg",
            formats=[
                Format(id="140", type="audio", quality="129kbps", ext="m4a", size=100),
                Format(id="139", type="audio", quality="48kbps", ext="m4a", size=40),
                Format(id="18", type="video", quality="360p", ext="mp4", size=500),
                Format(id="137", type="video", quality="1080p", ext="mp4", size=4000),
            ],
            extractor="youtube",
        )

    def resolve_metadata(self, url):
        self.calls.append(("metadata", url))
        return self.metadata

    def resolve_direct(self, url, format_id):
        self.calls.append(("direct", url, format_id))
        if self.fail_direct:
            raise ResolutionError("resolve_failed", "ERROR: Requested format is not available")
        return self.direct

    def materialize_merged(self, url, format_id, cancel=None):
        self.calls.append(("merge", url, format_id))
        if self.fail_merge:
            raise ResolutionError("merge_failed", "ERROR: ffmpeg exited with code 1")

        def release():
            self.release_calls += 1
            if os.path.exists(self.merged_path):
                os.remove(self.merged_path)

        return MergedFile(path=self.merged_path, filename="Merged clip.mp4", release=release)


def upstream_handler(request):
    if "fail" in request.url.path:
        return httpx.Response(500, content=b"nope")
    range_header = request.headers.get("range")
    if range_header == "bytes=10-":
        return httpx.Response(416, headers={"Content-Range": "bytes */10"})
    if range_header == "bytes=0-3":
        return httpx.Response(
            206,
            headers={"Content-Range": "bytes 0-3/10", "Content-Type": "video/mp4"},
            content=UPSTREAM_BODY[:4],
        )
    return httpx.Response(200, headers={"Content-Type": "image/jpeg"}, content=UPSTREAM_BODY)


def mock_http_client():
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream_handler))


@pytest.fixture
def merged_file(tmp_path):
    path = tmp_path / "dl_merged.mp4"
    path.write_bytes(b"merged-video-bytes")
    return str(path)


@pytest.fixture
def extractor(merged_file):
    return FakeExtractor(merged_path=merged_file)


@pytest.fixture
def make_client(tmp_path, extractor):
    def factory(http_client_factory=mock_http_client, **overrides):
        options = {"temp_dir": str(tmp_path), "rate_limit_rpm": 1000, "max_concurrent_downloads": 2}
        options.update(overrides)
        app = server.create_app(Settings(**options), extractor=extractor, http_client_factory=http_client_factory)
        return TestClient(app)

    return factory
