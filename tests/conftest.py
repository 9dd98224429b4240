import json
from pathlib import Path

import pytest

from streamsnipe.config import Config
from streamsnipe.notifier import Notifier


def make_tool(directory: Path, name: str, body: str) -> str:
    """Writes an executable shell script standing in for streamlink/yt-dlp."""
    path = directory / name
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return str(path)


@pytest.fixture
def tools_dir(tmp_path: Path) -> Path:
    path = tmp_path / "bin"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        streamlink_path=str(tmp_path / "bin" / "streamlink"),
        yt_dlp_path=str(tmp_path / "bin" / "yt-dlp"),
        recordings_path=str(tmp_path / "recordings"),
        poll_interval_seconds=0.2,
        startup_grace_seconds=0.3,
        startup_timeout_seconds=1.0,
        stop_kill_delay_seconds=0.3,
        probe_timeout_seconds=0.5,
        quick_probe_timeout_seconds=0.5,
    )


class Collector:
    def __init__(self, notifier: Notifier):
        self.messages = []
        notifier.subscribe(self)

    def __call__(self, text: str) -> None:
        self.messages.append(json.loads(text))

    def of_type(self, message_type: str):
        return [m["data"] for m in self.messages if m["type"] == message_type]


@pytest.fixture
def notifier() -> Notifier:
    return Notifier()


@pytest.fixture
def collector(notifier: Notifier) -> Collector:
    return Collector(notifier)
