import json
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import requests

from .models import now_iso

logger = logging.getLogger(__name__)

RECORDING_UPDATE = "recording_update"
CHANNEL_UPDATE = "channel_update"
NOTIFICATION = "notification"


class Notifier:
    """
    Best-effort broadcast to whoever is listening.

    Subscribers are callables taking the JSON text of one message. A subscriber
    that raises is treated as disconnected and dropped. Nothing is queued or
    retried.
    """

    def __init__(self):
        self._subscribers: List[Callable[[str], Any]] = []

    def subscribe(self, callback: Callable[[str], Any]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[str], Any]) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def broadcast(self, message_type: str, data: Any) -> None:
        if hasattr(data, "to_dict"):
            data = data.to_dict()
        text = json.dumps({"type": message_type, "data": data}, ensure_ascii=False)
        for callback in list(self._subscribers):
            try:
                callback(text)
            except Exception as e:
                logger.debug(f"Dropping subscriber {callback!r}: {e}")
                self.unsubscribe(callback)

    def broadcast_recording_update(self, recording) -> None:
        self.broadcast(RECORDING_UPDATE, recording)

    def broadcast_channel_update(self, channel) -> None:
        self.broadcast(CHANNEL_UPDATE, channel)

    def broadcast_notification(self, message: str, level: str = "info") -> None:
        self.broadcast(NOTIFICATION, {"message": message, "level": level, "timestamp": now_iso()})


class WebhookSubscriber:
    """Posts every broadcast message to an HTTP endpoint from a small thread pool."""

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None, timeout: float = 10,
                 session: Optional[requests.Session] = None, max_workers: int = 2):
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self.session = session or requests.Session()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="webhook")

    def __call__(self, text: str) -> None:
        future = self._pool.submit(self._post, text)
        future.add_done_callback(self._log_failure)

    def _post(self, text: str) -> int:
        headers = {"Content-Type": "application/json"}
        headers.update(self.headers)
        response = self.session.post(self.url, data=text.encode("utf-8"), headers=headers, timeout=self.timeout)
        response.raise_for_status()
        return response.status_code

    def _log_failure(self, future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning(f"Webhook delivery to {self.url} failed: {exc}")

    def close(self) -> None:
        self._pool.shutdown(wait=True)
        self.session.close()
