import json
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

# dataclass field -> key used in config.json and in the environment
KEYS = {
    "streamlink_path": "STREAMLINK_PATH",
    "yt_dlp_path": "YT_DLP_PATH",
    "default_quality": "DEFAULT_QUALITY",
    "default_format": "DEFAULT_FORMAT",
    "poll_interval_seconds": "POLLING_INTERVAL_SECONDS",
    "recordings_path": "DOWNLOAD_PATH",
    "startup_grace_seconds": "STARTUP_GRACE_SECONDS",
    "startup_timeout_seconds": "STARTUP_TIMEOUT_SECONDS",
    "stop_kill_delay_seconds": "STOP_KILL_DELAY_SECONDS",
    "probe_timeout_seconds": "PROBE_TIMEOUT_SECONDS",
    "quick_probe_timeout_seconds": "QUICK_PROBE_TIMEOUT_SECONDS",
    "auto_cleanup_enabled": "AUTO_CLEANUP_ENABLED",
    "auto_cleanup_days": "AUTO_CLEANUP_DAYS",
    "cleanup_hour": "CLEANUP_HOUR",
    "webhook_url": "WEBHOOK_URL",
    "channels": "CHANNELS",
}

# only read from the file; a channel list does not fit in an env var
FILE_ONLY = {"channels"}

POSITIVE = {
    "poll_interval_seconds",
    "startup_grace_seconds",
    "startup_timeout_seconds",
    "stop_kill_delay_seconds",
    "probe_timeout_seconds",
    "quick_probe_timeout_seconds",
    "auto_cleanup_days",
}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    val = str(value).strip().lower()
    if val in {"1", "true", "yes", "y", "on"}:
        return True
    if val in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"invalid bool: {value}")


@dataclass
class Config:
    streamlink_path: str = "streamlink"
    yt_dlp_path: str = "yt-dlp"
    default_quality: str = "best"
    default_format: str = "ts"
    poll_interval_seconds: float = 60.0
    recordings_path: str = "./recordings"
    startup_grace_seconds: float = 10.0
    startup_timeout_seconds: float = 60.0
    stop_kill_delay_seconds: float = 5.0
    probe_timeout_seconds: float = 15.0
    quick_probe_timeout_seconds: float = 10.0
    auto_cleanup_enabled: bool = False
    auto_cleanup_days: int = 30
    cleanup_hour: int = 5
    webhook_url: Optional[str] = None
    channels: List[Dict[str, Any]] = field(default_factory=list)

    def tool_path(self, tool: str) -> str:
        if tool == "streamlink":
            return self.streamlink_path
        return self.yt_dlp_path


def _coerce(name: str, raw: Any, default: Any) -> Any:
    key = KEYS[name]
    # JSON null means "use the default"
    if raw is None:
        return default
    try:
        if name == "channels":
            if not isinstance(raw, list):
                raise ValueError("expected a list")
            return raw
        if name == "webhook_url":
            text = str(raw).strip()
            return text or None
        if isinstance(default, bool):
            return _parse_bool(raw)
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
        return str(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"invalid value for {key}: {raw!r} ({e})") from e


def _validate(name: str, value: Any) -> None:
    key = KEYS[name]
    if name in POSITIVE and value <= 0:
        raise ValueError(f"invalid value for {key}: {value!r} (must be greater than 0)")
    if name == "cleanup_hour" and not 0 <= value <= 23:
        raise ValueError(f"invalid value for {key}: {value!r} (must be between 0 and 23)")


def load_config(config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Loads defaults, then config.json (if given), then environment overrides.
    Keys in the file are matched case-insensitively against KEYS.
    """
    env = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    if config_path:
        with open(config_path, "r", encoding="utf-8") as f:
            file_data = json.load(f)
        by_key = {str(k).upper(): v for k, v in file_data.items()}
        for name, key in KEYS.items():
            if key in by_key:
                values[name] = by_key[key]

    for name, key in KEYS.items():
        if name in FILE_ONLY:
            continue
        if key in env:
            values[name] = env[key]

    defaults = Config()
    kwargs = {}
    for f in fields(Config):
        if f.name in values:
            value = _coerce(f.name, values[f.name], getattr(defaults, f.name))
            _validate(f.name, value)
            kwargs[f.name] = value
    return Config(**kwargs)
