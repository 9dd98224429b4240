"""Watch live-stream channels and record them with streamlink or yt-dlp."""

__version__ = "0.1.0"
