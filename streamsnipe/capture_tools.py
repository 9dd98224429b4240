"""
Determines which capture tool records a given platform and how each tool
is driven: quality arguments, resilience flags and the text markers used to
read its state from stdout/stderr.
"""

from dataclasses import dataclass
from typing import List, Tuple

STREAMLINK = "streamlink"
YT_DLP = "yt-dlp"

# Platforms that work well with Streamlink
STREAMLINK_PLATFORMS = (
    "twitch",
    "youtube",
    "kick",
    "afreecatv",
    "trovo",
    "facebook",
    "vimeo",
    "dailymotion",
)

# Platforms Streamlink does not support (or dropped); unknown ones land here too
YT_DLP_PLATFORMS = (
    "chaturbate",
    "stripchat",
    "bongacams",
    "myfreecams",
    "cam4",
    "other",
)

YT_DLP_HEIGHTS = {
    "1080p": 1080,
    "720p": 720,
    "480p": 480,
}


@dataclass(frozen=True)
class ToolProfile:
    """Per-tool vocabulary. Markers are matched as case-sensitive substrings."""
    name: str
    stdout_start_markers: Tuple[str, ...]
    stderr_start_markers: Tuple[str, ...]
    fatal_markers: Tuple[str, ...]
    error_marker: str = "error"


PROFILES = {
    STREAMLINK: ToolProfile(
        name=STREAMLINK,
        stdout_start_markers=(
            "Opening stream",
            "Starting output",
            "Writing output to",
            "Stream ended",
            "[download]",
        ),
        stderr_start_markers=(
            "Found matching plugin",
            "Available streams:",
            "Opening stream",
        ),
        fatal_markers=(
            "No playable streams found",
            "Unable to open URL",
            "Failed to start stream",
        ),
    ),
    YT_DLP: ToolProfile(
        name=YT_DLP,
        stdout_start_markers=(
            "[download]",
            "[hlsnative]",
            "Destination:",
        ),
        stderr_start_markers=(
            "[download]",
            "[hlsnative]",
        ),
        fatal_markers=(
            "ERROR:",
        ),
    ),
}


def select_tool(platform: str) -> str:
    """Returns the capture tool for a platform, defaulting to yt-dlp."""
    normalized = (platform or "").lower()
    if normalized in STREAMLINK_PLATFORMS:
        return STREAMLINK
    # yt-dlp has the broader extractor coverage, so unknown platforms go there too
    return YT_DLP


def quality_arg(tool: str, quality: str) -> str:
    """
    Translates a named quality into the tool's own selector.
    Streamlink understands names like "best" or "720p" directly; yt-dlp needs
    an explicit format expression. Unknown qualities fall back to "best".
    """
    if tool == STREAMLINK:
        return quality
    q = (quality or "").lower()
    if q in ("best", "worst"):
        return q
    height = YT_DLP_HEIGHTS.get(q)
    if height is None:
        return "best"
    return f"bestvideo[height<={height}]+bestaudio/best[height<={height}]"


def build_capture_args(tool: str, url: str, quality: str, output_path: str) -> List[str]:
    """Argument vector (without the binary) for a long-running capture."""
    if tool == STREAMLINK:
        return [
            url, quality,
            '-o', output_path,
            '--force',
            '--hls-live-restart',        # resume from the live edge after segment gaps
            '--stream-timeout', '120',
            '--retry-streams', '10',
            '--retry-max', '20',
            '--retry-open', '3',
            '--hls-segment-timeout', '120',
        ]
    return [
        url,
        '-f', quality,
        '-o', output_path,
        '--no-part',
        '--hls-use-mpegts',              # keeps the partial file playable
        '--newline',                     # one progress line per update
        '--retries', '10',
        '--fragment-retries', '20',
        '--socket-timeout', '120',
    ]
