#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import asyncio
import datetime as _dt
import logging
import os
import re
import time
from collections import deque
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .capture_tools import PROFILES, ToolProfile, build_capture_args, quality_arg, select_tool
from .config import Config
from .errors import CaptureStartupError, CaptureStartupTimeout, RepositoryError, SpawnError
from .models import ActiveCaptureHandle, Recording, RecordingStatus, now_iso
from .notifier import Notifier
from .repository import RecordingRepository
from .tasks import TaskQueue
from .urls import detect_platform

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"


def sanitize_filename(name: str) -> str:
    cleaned = re.sub(r"[^a-z0-9]", "_", name or "", flags=re.IGNORECASE)
    cleaned = re.sub(r"_+", "_", cleaned)
    return cleaned.lower()[:100]


def _now_ms() -> int:
    return int(time.time() * 1000)


def get_file_size(file_path: str) -> int:
    try:
        return os.path.getsize(file_path)
    except OSError:
        return 0


def _kill(process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass


class ActiveCaptureRegistry:
    """recording id -> handle of a confirmed, still-owned capture process."""

    def __init__(self):
        self._handles: Dict[str, ActiveCaptureHandle] = {}

    def add(self, handle: ActiveCaptureHandle) -> None:
        self._handles[handle.recording_id] = handle

    def pop(self, recording_id: str) -> Optional[ActiveCaptureHandle]:
        return self._handles.pop(recording_id, None)

    def release(self, handle: ActiveCaptureHandle) -> bool:
        """Removes the handle only if it is still the registered one."""
        if self._handles.get(handle.recording_id) is not handle:
            return False
        del self._handles[handle.recording_id]
        return True

    def ids(self) -> Iterator[str]:
        return iter(list(self._handles))

    def __contains__(self, recording_id: str) -> bool:
        return recording_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)


class _StartupWatch:
    """Collects what the capture tool printed while we wait for it to get going."""

    def __init__(self, profile: ToolProfile):
        self.profile = profile
        self.confirmed = False
        self.fatal: Optional[str] = None
        self.error_seen = False
        self.stderr_tail = deque(maxlen=50)
        self.changed = asyncio.Event()

    def feed(self, stream: str, text: str) -> None:
        if self.confirmed:
            return
        if stream == STDERR:
            self.stderr_tail.append(text)
        markers = self.profile.stdout_start_markers if stream == STDOUT else self.profile.stderr_start_markers
        if any(m in text for m in markers):
            self.confirmed = True
        elif stream == STDERR:
            if self.fatal is None and any(m in text for m in self.profile.fatal_markers):
                self.fatal = text
            if self.profile.error_marker in text:
                self.error_seen = True
        self.changed.set()

    def error_text(self) -> str:
        return "\n".join(self.stderr_tail)


class CaptureSupervisor:
    def __init__(self, config: Config, recordings: RecordingRepository, notifier: Notifier):
        self.config = config
        self.recordings = recordings
        self.notifier = notifier
        self._registry = ActiveCaptureRegistry()
        self._tasks = TaskQueue()

    async def start(self, url: str, quality: Optional[str] = None, format: Optional[str] = None,
                    title: Optional[str] = None, channel_id: Optional[str] = None,
                    platform: Optional[str] = None) -> Recording:
        quality = quality or self.config.default_quality
        fmt = format or self.config.default_format
        title = title or f"Recording {now_iso()}"
        platform = platform or detect_platform(url)

        tool = select_tool(platform)
        tool_quality = quality_arg(tool, quality)

        out_dir = Path(self.config.recordings_path)
        out_dir.mkdir(parents=True, exist_ok=True)
        file_path = str(out_dir / f"{sanitize_filename(title)}_{_now_ms()}.{fmt}")

        recording = self.recordings.create(
            channel_id=channel_id,
            url=url,
            platform=platform,
            title=title,
            status=RecordingStatus.RECORDING,
            quality=quality,
            format=fmt,
            file_path=file_path,
        )

        try:
            process = await self._spawn(tool, url, tool_quality, file_path)
        except CaptureStartupError as e:
            logger.error(f"Recording {recording.id} failed to start: {e}")
            self._mark_start_failed(recording, str(e))
            raise
        except asyncio.CancelledError:
            self._mark_start_failed(recording, "Cancelled before the stream started")
            raise

        handle = ActiveCaptureHandle(
            recording_id=recording.id,
            process=process,
            start_time=_dt.datetime.now(),
            url=url,
            file_path=file_path,
        )
        self._registry.add(handle)
        self._tasks.submit(self._watch_exit(handle), name=f"exit watcher {recording.id}")

        logger.info(f"Recording {recording.id} started (PID: {process.pid})")
        self.notifier.broadcast_recording_update(recording)
        return recording

    def _mark_start_failed(self, recording: Recording, error: str) -> None:
        """Records a failed start. Never raises, so the startup error reaches the caller."""
        try:
            updated = self.recordings.update(
                recording.id,
                status=RecordingStatus.FAILED,
                error=error,
                completed_at=now_iso(),
            )
        except RepositoryError:
            logger.exception(f"Recording {recording.id} failed to start and could not be marked failed")
            updated = None
        if updated:
            self.notifier.broadcast_recording_update(updated)
        self.notifier.broadcast_notification(f"Recording '{recording.title}' failed to start: {error}", "error")

    async def _spawn(self, tool: str, url: str, quality: str, file_path: str):
        binary = self.config.tool_path(tool)
        args = build_capture_args(tool, url, quality, file_path)
        logger.info(f"Starting {tool} for {url} with quality {quality}")
        logger.info(f"Output: {file_path}")
        logger.debug(f"Command: {binary} {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                binary, *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnError(f"Could not run {tool} ({binary}): {e}") from e

        watch = _StartupWatch(PROFILES[tool])
        pumps = [
            self._tasks.submit(self._pump(process.stdout, STDOUT, tool, watch), name=f"{tool} stdout"),
            self._tasks.submit(self._pump(process.stderr, STDERR, tool, watch), name=f"{tool} stderr"),
        ]
        try:
            await self._await_startup(tool, process, watch, pumps)
        except BaseException:
            if process.returncode is None:
                _kill(process)
                await process.wait()
            raise
        return process

    async def _pump(self, stream, name: str, tool: str, watch: _StartupWatch) -> None:
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # over-long line without a newline; the reader already dropped it
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug(f"{tool} {name}: {text}")
                watch.feed(name, text)

    async def _await_startup(self, tool: str, process, watch: _StartupWatch, pumps: List[asyncio.Task]) -> None:
        """
        Returns once the capture looks alive:
        - a start marker was printed, or
        - the grace window passed without anything that looks like an error.
        Raises SpawnError on a fatal marker or an early exit, and
        CaptureStartupTimeout when the hard ceiling is reached.
        """
        loop = asyncio.get_running_loop()
        begin = loop.time()
        grace_deadline = begin + self.config.startup_grace_seconds
        hard_deadline = begin + self.config.startup_timeout_seconds
        exit_wait = asyncio.ensure_future(process.wait())
        drained = False
        try:
            while True:
                watch.changed.clear()
                if watch.confirmed:
                    logger.info(f"{tool} process confirmed started")
                    return
                if watch.fatal is not None:
                    raise SpawnError(f"{tool} error: {watch.fatal}")
                if exit_wait.done():
                    if not drained:
                        # let the readers hand over whatever was printed before the exit
                        await asyncio.wait(pumps, timeout=1.0)
                        drained = True
                        continue
                    message = f"{tool} exited with code {process.returncode} before the stream started"
                    if watch.stderr_tail:
                        message += f": {watch.error_text()}"
                    raise SpawnError(message)

                now = loop.time()
                if now >= grace_deadline and not watch.error_seen:
                    logger.info(f"No errors after {self.config.startup_grace_seconds}s, assuming stream is starting")
                    return
                if now >= hard_deadline:
                    raise CaptureStartupTimeout(
                        f"{tool} process failed to start within {self.config.startup_timeout_seconds}s: "
                        f"{watch.error_text()}"
                    )

                deadline = grace_deadline if now < grace_deadline else hard_deadline
                changed = asyncio.ensure_future(watch.changed.wait())
                try:
                    await asyncio.wait([exit_wait, changed], timeout=deadline - now,
                                       return_when=asyncio.FIRST_COMPLETED)
                finally:
                    changed.cancel()
        finally:
            if not exit_wait.done():
                exit_wait.cancel()

    async def _watch_exit(self, handle: ActiveCaptureHandle) -> None:
        code = await handle.process.wait()
        logger.info(f"Recording {handle.recording_id} exited with code {code}")

        # stop() takes the handle out before signalling; nothing left to record then
        if not self._registry.release(handle):
            return

        if code == 0:
            status, error = RecordingStatus.COMPLETED, None
        else:
            status, error = RecordingStatus.FAILED, f"Process exited with code {code}"
        try:
            recording = self.recordings.update(
                handle.recording_id,
                status=status,
                completed_at=now_iso(),
                file_size=get_file_size(handle.file_path),
                error=error,
            )
        except RepositoryError:
            logger.exception(f"Recording {handle.recording_id} ended ({status.value}) but could not be saved")
            return
        if recording:
            self.notifier.broadcast_recording_update(recording)

    async def stop(self, recording_id: str) -> Optional[Recording]:
        handle = self._registry.pop(recording_id)
        if handle is None:
            return None

        logger.info(f"Stopping recording {recording_id} (PID: {handle.process.pid})")
        try:
            handle.process.terminate()
        except ProcessLookupError:
            pass
        self._tasks.submit(self._escalate(handle), name=f"stop {recording_id}")

        try:
            recording = self.recordings.update(
                recording_id,
                status=RecordingStatus.STOPPED,
                completed_at=now_iso(),
                file_size=get_file_size(handle.file_path),
            )
        except RepositoryError:
            logger.error(f"Recording {recording_id} was stopped but its row could not be updated")
            raise
        if recording:
            self.notifier.broadcast_recording_update(recording)
        return recording

    async def _escalate(self, handle: ActiveCaptureHandle) -> None:
        delay = self.config.stop_kill_delay_seconds
        try:
            await asyncio.wait_for(handle.process.wait(), timeout=delay)
        except asyncio.TimeoutError:
            logger.warning(f"Recording {handle.recording_id} still running after {delay}s, killing")
            _kill(handle.process)
            await handle.process.wait()

    def is_active(self, recording_id: str) -> bool:
        return recording_id in self._registry

    def list_active(self) -> List[Recording]:
        active = []
        for recording_id in self._registry.ids():
            recording = self.recordings.find_by_id(recording_id)
            if recording is not None:
                active.append(recording)
        return active

    async def shutdown(self) -> None:
        """Stops every active capture and waits for the processes to be reaped."""
        for recording_id in self._registry.ids():
            try:
                await self.stop(recording_id)
            except Exception:
                logger.exception(f"Failed to stop recording {recording_id} during shutdown")
        await self._tasks.drain()
