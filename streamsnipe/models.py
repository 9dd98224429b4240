import datetime as _dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


def now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat(timespec="milliseconds")


class RecordingStatus(str, Enum):
    RECORDING = "recording"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def terminal(self) -> bool:
        return self is not RecordingStatus.RECORDING


@dataclass
class Channel:
    id: str
    url: str
    platform: str
    name: str
    auto_record: bool = True
    quality: str = "best"
    enabled: bool = True
    is_live: bool = False
    last_checked: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "platform": self.platform,
            "name": self.name,
            "autoRecord": self.auto_record,
            "quality": self.quality,
            "enabled": self.enabled,
            "isLive": self.is_live,
            "lastChecked": self.last_checked,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Recording:
    id: str
    url: str
    platform: str
    title: str
    status: RecordingStatus
    quality: str
    format: str
    channel_id: Optional[str] = None
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    error: Optional[str] = None
    started_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "channelId": self.channel_id,
            "url": self.url,
            "platform": self.platform,
            "title": self.title,
            "status": self.status.value,
            "quality": self.quality,
            "format": self.format,
            "filePath": self.file_path,
            "fileSize": self.file_size,
            "error": self.error,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }


@dataclass
class ActiveCaptureHandle:
    """In-memory tie between a recording id and its running capture process."""
    recording_id: str
    process: Any
    start_time: _dt.datetime
    url: str
    file_path: str
