"""
Channel and recording storage as seen by the engine.

The engine only depends on the two protocols below. The in-memory classes
back the command line tools and the tests; a real deployment plugs its own
database-backed repository in their place.
"""

import copy
import logging
import uuid
from typing import Dict, Iterable, List, Optional, Protocol

from .errors import RepositoryError
from .models import Channel, Recording, RecordingStatus, now_iso
from .urls import normalize_stream_url

logger = logging.getLogger(__name__)

# written only by the detection path
DETECTION_FIELDS = {"is_live", "last_checked"}


class ChannelRepository(Protocol):
    def find_enabled_auto_record(self) -> List[Channel]: ...

    def find_by_id(self, channel_id: str) -> Optional[Channel]: ...

    def update(self, channel_id: str, **fields) -> Optional[Channel]: ...


class RecordingRepository(Protocol):
    def create(self, **fields) -> Recording: ...

    def update(self, recording_id: str, **fields) -> Optional[Recording]: ...

    def find_by_id(self, recording_id: str) -> Optional[Recording]: ...

    def find_all(self) -> List[Recording]: ...

    def delete(self, recording_id: str) -> bool: ...


class InMemoryChannelRepository:
    def __init__(self, channels: Iterable[Channel] = ()):
        self._rows: Dict[str, Channel] = {}
        for channel in channels:
            self._rows[channel.id] = channel

    def add(self, url: str, name: Optional[str] = None, platform: Optional[str] = None,
            quality: str = "best", auto_record: bool = True, enabled: bool = True) -> Channel:
        parsed = normalize_stream_url(url, platform)
        channel = Channel(
            id=str(uuid.uuid4()),
            url=parsed.url,
            platform=parsed.platform,
            name=name or parsed.display_name,
            auto_record=auto_record,
            quality=quality,
            enabled=enabled,
        )
        self._rows[channel.id] = channel
        return copy.copy(channel)

    def find_all(self) -> List[Channel]:
        return [copy.copy(c) for c in self._rows.values()]

    def find_by_id(self, channel_id: str) -> Optional[Channel]:
        row = self._rows.get(channel_id)
        return copy.copy(row) if row else None

    def find_enabled_auto_record(self) -> List[Channel]:
        return [copy.copy(c) for c in self._rows.values() if c.enabled and c.auto_record]

    def update(self, channel_id: str, **fields) -> Optional[Channel]:
        row = self._rows.get(channel_id)
        if row is None:
            return None
        for name, value in fields.items():
            if not hasattr(row, name) or name in ("id", "created_at"):
                raise RepositoryError(f"unknown channel field: {name}")
            setattr(row, name, value)
        row.updated_at = now_iso()
        return copy.copy(row)

    def edit(self, channel_id: str, **fields) -> Optional[Channel]:
        """CRUD-side update; live status belongs to the detection path."""
        blocked = DETECTION_FIELDS.intersection(fields)
        if blocked:
            raise ValueError(f"fields are managed by live detection: {sorted(blocked)}")
        return self.update(channel_id, **fields)

    def delete(self, channel_id: str) -> bool:
        return self._rows.pop(channel_id, None) is not None


class InMemoryRecordingRepository:
    def __init__(self):
        self._rows: Dict[str, Recording] = {}

    def create(self, **fields) -> Recording:
        fields.setdefault("status", RecordingStatus.RECORDING)
        fields["status"] = RecordingStatus(fields["status"])
        try:
            row = Recording(id=str(uuid.uuid4()), **fields)
        except TypeError as e:
            raise RepositoryError(f"invalid recording fields: {e}") from e
        self._rows[row.id] = row
        return copy.copy(row)

    def update(self, recording_id: str, **fields) -> Optional[Recording]:
        row = self._rows.get(recording_id)
        if row is None:
            return None
        if "status" in fields:
            status = RecordingStatus(fields["status"])
            if row.status.terminal and status is not row.status:
                raise RepositoryError(
                    f"recording {recording_id} is already {row.status.value}; refusing {status.value}"
                )
            fields["status"] = status
        for name, value in fields.items():
            if not hasattr(row, name) or name in ("id", "started_at"):
                raise RepositoryError(f"unknown recording field: {name}")
            setattr(row, name, value)
        return copy.copy(row)

    def find_by_id(self, recording_id: str) -> Optional[Recording]:
        row = self._rows.get(recording_id)
        return copy.copy(row) if row else None

    def find_all(self) -> List[Recording]:
        rows = sorted(self._rows.values(), key=lambda r: r.started_at, reverse=True)
        return [copy.copy(r) for r in rows]

    def delete(self, recording_id: str) -> bool:
        return self._rows.pop(recording_id, None) is not None


def seed_channels(repo: InMemoryChannelRepository, entries: Iterable) -> List[Channel]:
    """Adds channels from the config file's CHANNELS list (strings or objects)."""
    added = []
    for entry in entries:
        if isinstance(entry, str):
            entry = {"url": entry}
        if not isinstance(entry, dict) or not entry.get("url"):
            logger.warning(f"Skipping channel entry without url: {entry!r}")
            continue
        added.append(repo.add(
            entry["url"],
            name=entry.get("name"),
            platform=entry.get("platform"),
            quality=entry.get("quality", "best"),
            auto_record=bool(entry.get("auto_record", entry.get("autoRecord", True))),
            enabled=bool(entry.get("enabled", True)),
        ))
    return added
