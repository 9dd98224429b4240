import re
import unicodedata
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

# zero-width and directional marks, soft hyphen, CGJ, Arabic letter mark
_INVISIBLE = re.compile(r"[\u200B-\u200D\uFEFF\u2060\u202A-\u202E\u00AD\u034F\u061C]")

PLATFORM_HOSTS = (
    ("twitch.tv", "twitch"),
    ("youtube.com", "youtube"),
    ("youtu.be", "youtube"),
    ("chaturbate.com", "chaturbate"),
    ("kick.com", "kick"),
    ("stripchat.com", "stripchat"),
    ("bongacams.com", "bongacams"),
)

BASE_URLS = {
    "twitch": "https://twitch.tv/",
    "chaturbate": "https://chaturbate.com/",
    "kick": "https://kick.com/",
    "stripchat": "https://stripchat.com/",
    "bongacams": "https://bongacams.com/",
}


@dataclass
class ParsedStreamUrl:
    url: str
    platform: str
    username: str
    display_name: str


def sanitize_url(value: str) -> str:
    """Removes invisible Unicode characters (category Cf included) and trims whitespace."""
    cleaned = _INVISIBLE.sub("", value or "")
    cleaned = "".join(ch for ch in cleaned if unicodedata.category(ch) != "Cf")
    return cleaned.strip()


def detect_platform(value: str) -> str:
    lower = (value or "").lower()
    for host, platform in PLATFORM_HOSTS:
        if host in lower:
            return platform
    return "other"


def build_stream_url(username: str, platform: str) -> str:
    base = BASE_URLS.get((platform or "").lower())
    if base:
        return f"{base}{username}"
    return username


def _first_segment(path: str) -> str:
    parts = [p for p in path.split("/") if p]
    return sanitize_url(parts[0]) if parts else ""


def normalize_stream_url(value: str, platform: Optional[str] = None) -> ParsedStreamUrl:
    """
    Accepts either a full URL or a bare username and returns a canonical
    channel URL plus the platform, username and a display name.
    """
    url = sanitize_url(value)
    detected = platform or detect_platform(url)
    username = ""
    display_name = ""

    if not url.startswith(("http://", "https://")):
        if detected == "youtube":
            if "youtube.com" in url or "youtu.be" in url:
                url = f"https://{url}"
            username = url
            display_name = "YouTube Stream"
        else:
            username = url
            url = build_stream_url(username, detected)
            display_name = username
    else:
        parsed = urlparse(url)
        path = parsed.path or ""
        if detected == "youtube":
            if "/channel/" in path or "/@" in path:
                username = sanitize_url(path.rstrip("/").split("/")[-1])
                display_name = username.replace("@", "")
            else:
                display_name = "YouTube Stream"
        elif detected in BASE_URLS:
            # rebuild without trailing slashes, query strings or stray characters
            username = _first_segment(path)
            display_name = username
            url = build_stream_url(username, detected)
        else:
            parts = [p for p in path.split("/") if p]
            username = sanitize_url(parts[-1]) if parts else ""
            display_name = username or parsed.hostname or url

    return ParsedStreamUrl(
        url=url,
        platform=detected,
        username=username,
        display_name=display_name or username or url,
    )
