import datetime as _dt
import logging
import os
from typing import Callable, Optional

from .repository import RecordingRepository

logger = logging.getLogger(__name__)


def _parse_ts(value: str) -> Optional[_dt.datetime]:
    try:
        ts = _dt.datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=_dt.timezone.utc)
    return ts


def cleanup_old_recordings(recordings: RecordingRepository, days: int,
                           is_active: Callable[[str], bool],
                           now: Optional[_dt.datetime] = None) -> int:
    """
    Deletes the file and the row of every finished recording started more than
    `days` ago. A row whose file cannot be removed is kept for the next run.
    """
    now = now or _dt.datetime.now(_dt.timezone.utc)
    cutoff = now - _dt.timedelta(days=days)
    deleted = 0

    for recording in recordings.find_all():
        if is_active(recording.id) or not recording.status.terminal:
            continue
        started = _parse_ts(recording.started_at)
        if started is None or started >= cutoff:
            continue
        if recording.file_path:
            try:
                os.remove(recording.file_path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"[CLEANUP] Could not delete {recording.file_path}: {e}")
                continue
        recordings.delete(recording.id)
        deleted += 1
        logger.info(f"[CLEANUP] Removed recording {recording.id} ({recording.title})")

    logger.info(f"[CLEANUP] Cleaned up {deleted} old recordings")
    return deleted
