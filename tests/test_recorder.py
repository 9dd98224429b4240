import asyncio
import os

import pytest

from streamsnipe.errors import CaptureStartupTimeout, RepositoryError, SpawnError
from streamsnipe.models import RecordingStatus
from streamsnipe.recorder import ActiveCaptureRegistry, CaptureSupervisor, sanitize_filename
from streamsnipe.repository import InMemoryRecordingRepository

from conftest import make_tool

GENERIC_URL = "https://example.com/x"
TWITCH_URL = "https://twitch.tv/somebody"


def _supervisor(config, notifier):
    return CaptureSupervisor(config, InMemoryRecordingRepository(), notifier)


def _ytdlp(tools_dir, tmp_path, body):
    log = tmp_path / "ytdlp_args.log"
    make_tool(tools_dir, "yt-dlp", f'printf "%s\\n" "$@" > "{log}"\n' + body)
    return log


async def _wait_inactive(supervisor, recording_id, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while supervisor.is_active(recording_id):
        assert loop.time() < deadline, "capture process did not exit"
        await asyncio.sleep(0.05)
    # let the exit handler finish its write
    await asyncio.sleep(0.05)


def test_sanitize_filename():
    assert sanitize_filename("My Stream: Part #2!!") == "my_stream_part_2_"
    assert sanitize_filename("a" * 150) == "a" * 100
    assert sanitize_filename("") == ""


def test_registry_release_only_matching_handle():
    from streamsnipe.models import ActiveCaptureHandle
    registry = ActiveCaptureRegistry()
    first = ActiveCaptureHandle("r1", object(), None, "u", "/tmp/a")
    registry.add(first)
    stale = ActiveCaptureHandle("r1", object(), None, "u", "/tmp/a")
    assert registry.release(stale) is False
    assert "r1" in registry
    assert registry.release(first) is True
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_start_generic_url_uses_yt_dlp_format_expression(config, notifier, collector, tools_dir, tmp_path):
    log = _ytdlp(tools_dir, tmp_path, 'echo "[download] Destination: out.ts"\nexec sleep 30\n')
    supervisor = _supervisor(config, notifier)

    recording = await supervisor.start(GENERIC_URL, quality="720p")
    try:
        args = log.read_text().splitlines()
        assert args[0] == GENERIC_URL
        assert args[args.index("-f") + 1] == "bestvideo[height<=720]+bestaudio/best[height<=720]"
        assert args[args.index("-o") + 1] == recording.file_path

        assert recording.status is RecordingStatus.RECORDING
        assert recording.platform == "other"
        assert recording.quality == "720p"
        assert recording.format == "ts"
        assert os.path.dirname(recording.file_path) == config.recordings_path
        assert supervisor.is_active(recording.id)
        assert [r.id for r in supervisor.list_active()] == [recording.id]
        assert collector.of_type("recording_update")[-1]["status"] == "recording"
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_start_twitch_uses_streamlink(config, notifier, tools_dir, tmp_path):
    log = tmp_path / "streamlink_args.log"
    make_tool(tools_dir, "streamlink",
              f'printf "%s\\n" "$@" > "{log}"\necho "[cli][info] Available streams: 720p, best" >&2\nexec sleep 30\n')
    supervisor = _supervisor(config, notifier)

    recording = await supervisor.start(TWITCH_URL, quality="720p", title="Evening show", channel_id="c1")
    try:
        args = log.read_text().splitlines()
        assert args[:2] == [TWITCH_URL, "720p"]
        assert "--hls-live-restart" in args
        assert recording.channel_id == "c1"
        assert os.path.basename(recording.file_path).startswith("evening_show_")
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_optimistic_start_after_grace(config, notifier, tools_dir, tmp_path):
    _ytdlp(tools_dir, tmp_path, "exec sleep 30\n")
    supervisor = _supervisor(config, notifier)
    recording = await supervisor.start(GENERIC_URL)
    try:
        assert supervisor.is_active(recording.id)
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_fatal_marker_fails_start(config, notifier, collector, tools_dir):
    make_tool(tools_dir, "streamlink", 'echo "error: No playable streams found on this URL" >&2\nexec sleep 30\n')
    supervisor = _supervisor(config, notifier)

    with pytest.raises(SpawnError, match="No playable streams found"):
        await supervisor.start(TWITCH_URL)

    [row] = supervisor.recordings.find_all()
    assert row.status is RecordingStatus.FAILED
    assert "No playable streams found" in row.error
    assert row.completed_at
    assert supervisor.list_active() == []
    assert collector.of_type("recording_update")[-1]["status"] == "failed"
    assert collector.of_type("notification")[-1]["level"] == "error"
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_missing_binary_fails_start(config, notifier):
    supervisor = _supervisor(config, notifier)
    with pytest.raises(SpawnError):
        await supervisor.start(GENERIC_URL)
    [row] = supervisor.recordings.find_all()
    assert row.status is RecordingStatus.FAILED
    assert row.error


@pytest.mark.asyncio
async def test_exit_before_start_fails(config, notifier, tools_dir, tmp_path):
    _ytdlp(tools_dir, tmp_path, 'echo "something went wrong" >&2\nexit 2\n')
    supervisor = _supervisor(config, notifier)
    with pytest.raises(SpawnError, match="code 2"):
        await supervisor.start(GENERIC_URL)
    [row] = supervisor.recordings.find_all()
    assert row.status is RecordingStatus.FAILED
    assert "something went wrong" in row.error
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_startup_timeout_kills_capture_and_fails_row(config, notifier, tools_dir, tmp_path):
    pid_file = tmp_path / "capture.pid"
    _ytdlp(tools_dir, tmp_path, f'echo $$ > "{pid_file}"\necho "WARNING: network error, retrying" >&2\nexec sleep 30\n')
    supervisor = _supervisor(config, notifier)
    with pytest.raises(CaptureStartupTimeout):
        await supervisor.start(GENERIC_URL)
    pid = int(pid_file.read_text().strip())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    [row] = supervisor.recordings.find_all()
    assert row.status is RecordingStatus.FAILED
    assert "network error" in row.error
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_nonzero_exit_after_start_is_failed(config, notifier, collector, tools_dir, tmp_path):
    _ytdlp(tools_dir, tmp_path, 'echo "[download] Destination: out.ts"\nsleep 0.3\nexit 1\n')
    supervisor = _supervisor(config, notifier)
    recording = await supervisor.start(GENERIC_URL)

    await _wait_inactive(supervisor, recording.id)
    row = supervisor.recordings.find_by_id(recording.id)
    assert row.status is RecordingStatus.FAILED
    assert row.error == "Process exited with code 1"
    assert row.completed_at
    assert row.file_size == 0
    assert collector.of_type("recording_update")[-1]["status"] == "failed"


@pytest.mark.asyncio
async def test_clean_exit_after_start_is_completed(config, notifier, tools_dir, tmp_path):
    body = 'echo "[download] Destination: $5"\nprintf "data" > "$5"\nsleep 0.3\nexit 0\n'
    _ytdlp(tools_dir, tmp_path, body)
    supervisor = _supervisor(config, notifier)
    recording = await supervisor.start(GENERIC_URL)

    await _wait_inactive(supervisor, recording.id)
    row = supervisor.recordings.find_by_id(recording.id)
    assert row.status is RecordingStatus.COMPLETED
    assert row.error is None
    assert row.file_size == 4


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_survives_exit_handler(config, notifier, tools_dir, tmp_path):
    _ytdlp(tools_dir, tmp_path, 'echo "[download] Destination: out.ts"\nexec sleep 30\n')
    supervisor = _supervisor(config, notifier)
    recording = await supervisor.start(GENERIC_URL)

    stopped = await supervisor.stop(recording.id)
    assert stopped.status is RecordingStatus.STOPPED
    assert stopped.completed_at
    assert not supervisor.is_active(recording.id)
    assert await supervisor.stop(recording.id) is None

    # the process dies from SIGTERM (non-zero); the row must stay "stopped"
    await supervisor.shutdown()
    assert supervisor.recordings.find_by_id(recording.id).status is RecordingStatus.STOPPED


@pytest.mark.asyncio
async def test_stop_escalates_to_kill(config, notifier, tools_dir, tmp_path):
    _ytdlp(tools_dir, tmp_path, """trap '' TERM
echo "[download] Destination: out.ts"
while true; do sleep 0.1; done
""")
    supervisor = _supervisor(config, notifier)
    recording = await supervisor.start(GENERIC_URL)
    await supervisor.stop(recording.id)
    await asyncio.wait_for(supervisor.shutdown(), timeout=5)
    assert supervisor.recordings.find_by_id(recording.id).status is RecordingStatus.STOPPED


@pytest.mark.asyncio
async def test_stop_unknown_recording_is_noop(config, notifier, collector):
    supervisor = _supervisor(config, notifier)
    assert await supervisor.stop("does-not-exist") is None
    assert supervisor.recordings.find_all() == []
    assert collector.messages == []


@pytest.mark.asyncio
async def test_shutdown_stops_every_capture(config, notifier, tools_dir, tmp_path):
    _ytdlp(tools_dir, tmp_path, 'echo "[download] Destination: out.ts"\nexec sleep 30\n')
    supervisor = _supervisor(config, notifier)
    first = await supervisor.start(GENERIC_URL, title="one")
    second = await supervisor.start(GENERIC_URL, title="two")

    await supervisor.shutdown()
    assert supervisor.list_active() == []
    for recording in (first, second):
        assert supervisor.recordings.find_by_id(recording.id).status is RecordingStatus.STOPPED


class _ReadOnlyRecordings(InMemoryRecordingRepository):
    def update(self, recording_id, **fields):
        raise RepositoryError("database is read-only")


@pytest.mark.asyncio
async def test_start_error_survives_failed_status_write(config, notifier, collector, caplog):
    supervisor = CaptureSupervisor(config, _ReadOnlyRecordings(), notifier)
    with pytest.raises(SpawnError):
        await supervisor.start(GENERIC_URL)
    assert "could not be marked failed" in caplog.text
    assert collector.of_type("notification")[-1]["level"] == "error"
