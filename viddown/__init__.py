"""viddown: admission-controlled media download service built on yt-dlp."""

__version__ = "1.0.0"
