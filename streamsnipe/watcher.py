import argparse
import asyncio
import datetime
import logging
import math
import os
import signal
import sys
from typing import Any, Dict, List, Optional

from .cleanup import cleanup_old_recordings
from .config import Config, load_config
from .detector import LiveDetector
from .models import Channel, Recording, now_iso
from .notifier import Notifier, WebhookSubscriber
from .recorder import CaptureSupervisor
from .repository import (
    ChannelRepository,
    InMemoryChannelRepository,
    InMemoryRecordingRepository,
    RecordingRepository,
    seed_channels,
)
from .tasks import TaskQueue

logger = logging.getLogger(__name__)


class MonitorLoop:
    """Polls auto-record channels on a fixed schedule and starts recordings when they go live."""

    def __init__(self, config: Config, channels: ChannelRepository, detector: LiveDetector,
                 recorder: CaptureSupervisor, notifier: Notifier,
                 recordings: Optional[RecordingRepository] = None):
        self.config = config
        self.channels = channels
        self.detector = detector
        self.recorder = recorder
        self.notifier = notifier
        self.recordings = recordings
        self.clock = datetime.datetime.now
        self._task: Optional[asyncio.Task] = None
        self._last_cleanup_date = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        if self._task is not None:
            logger.info("Monitor service already running")
            return
        logger.info("Starting monitor service")
        self._task = asyncio.ensure_future(self._run())
        self._task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Monitor loop stopped unexpectedly: {exc}", exc_info=exc)
        if self._task is task:
            self._task = None

    def stop(self) -> Optional[asyncio.Task]:
        """Cancels the schedule. Returns the cancelled task so callers can wait for it."""
        task, self._task = self._task, None
        if task is None:
            return None
        logger.info("Stopping monitor service")
        task.cancel()
        return task

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.poll_interval_seconds
        next_tick = loop.time()
        while True:
            await self.tick()
            next_tick += interval
            now = loop.time()
            if now > next_tick:
                # scans never overlap; an overrun pushes the next one to the following boundary
                missed = math.ceil((now - next_tick) / interval)
                logger.warning(f"Channel scan overran the poll interval, deferring {missed} tick(s)")
                next_tick += missed * interval
            await asyncio.sleep(next_tick - now)

    async def tick(self) -> None:
        try:
            channels = self.channels.find_enabled_auto_record()
        except Exception:
            logger.exception("Could not load channels to check")
            return

        logger.info(f"Checking {len(channels)} channels for live status")
        for channel in channels:
            try:
                await self._check(channel, auto_start=True)
            except Exception:
                logger.exception(f"Error checking channel {channel.name}")

        try:
            self._maybe_cleanup()
        except Exception:
            logger.exception("[CLEANUP] Error during daily cleanup")

    async def _check(self, channel: Channel, auto_start: bool) -> bool:
        is_live = await self.detector.is_live(channel.url)
        was_live = channel.is_live

        updated = self.channels.update(channel.id, is_live=is_live, last_checked=now_iso())
        if updated:
            self.notifier.broadcast_channel_update(updated)

        if auto_start and is_live and not was_live:
            logger.info(f"Channel {channel.name} went live, starting recording")
            await self.recorder.start(
                channel.url,
                quality=channel.quality,
                title=f"{channel.name}_{now_iso()}",
                channel_id=channel.id,
                platform=channel.platform,
            )
        return is_live

    async def manual_check(self, channel_id: str) -> bool:
        channel = self.channels.find_by_id(channel_id)
        if channel is None:
            return False
        return await self._check(channel, auto_start=False)

    async def diagnose(self, channel_id: str) -> Optional[Dict[str, Any]]:
        channel = self.channels.find_by_id(channel_id)
        if channel is None:
            return None
        logger.info(f"Running diagnostic check for {channel.url}")
        return await self.detector.diagnostic(channel.url)

    def _maybe_cleanup(self) -> None:
        if not self.config.auto_cleanup_enabled or self.recordings is None:
            return
        now = self.clock()
        today = now.date()
        if self._last_cleanup_date == today or now.hour < self.config.cleanup_hour:
            return
        cleanup_old_recordings(self.recordings, self.config.auto_cleanup_days, self.recorder.is_active)
        self._last_cleanup_date = today


class Engine:
    """Wires the detector, the capture supervisor and the monitor to one set of collaborators."""

    def __init__(self, config: Config, channels: Optional[ChannelRepository] = None,
                 recordings: Optional[RecordingRepository] = None, notifier: Optional[Notifier] = None):
        self.config = config
        self.channels = channels if channels is not None else InMemoryChannelRepository()
        self.recordings = recordings if recordings is not None else InMemoryRecordingRepository()
        self.notifier = notifier if notifier is not None else Notifier()
        self._webhook = None
        if config.webhook_url:
            self._webhook = WebhookSubscriber(config.webhook_url)
            self.notifier.subscribe(self._webhook)

        self.detector = LiveDetector(config)
        self.recorder = CaptureSupervisor(config, self.recordings, self.notifier)
        self.monitor = MonitorLoop(config, self.channels, self.detector, self.recorder,
                                   self.notifier, self.recordings)
        self.tasks = TaskQueue()

    def request_recording(self, url: str, **options) -> asyncio.Task:
        """Starts a recording in the background; failures end up in the log and the notifier."""
        return self.tasks.submit(self.recorder.start(url, **options), name=f"start recording {url}")

    async def start_recording(self, url: str, **options) -> Recording:
        return await self.recorder.start(url, **options)

    async def stop_recording(self, recording_id: str) -> Optional[Recording]:
        return await self.recorder.stop(recording_id)

    async def check_channel(self, channel_id: str) -> bool:
        return await self.monitor.manual_check(channel_id)

    async def diagnose_channel(self, channel_id: str) -> Optional[Dict[str, Any]]:
        return await self.monitor.diagnose(channel_id)

    def active_recordings(self) -> List[Recording]:
        return self.recorder.list_active()

    async def shutdown(self) -> None:
        task = self.monitor.stop()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        self.tasks.cancel_all()
        await self.tasks.drain()
        await self.recorder.shutdown()
        if self._webhook is not None:
            self._webhook.close()


async def run(config: Config) -> None:
    engine = Engine(config)
    seeded = seed_channels(engine.channels, config.channels)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl-C still cancels run()
            pass

    logger.info(f"Watcher started. Monitoring {len(seeded)} channel(s)...")
    engine.monitor.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down, stopping active recordings")
        await engine.shutdown()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Watch channels and record them when they go live.")
    parser.add_argument("--config", default="config.json", help="path to config.json")
    parser.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING or ERROR")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not os.path.exists(args.config):
        logger.error(f"Config file not found at {args.config}.")
        return 1
    try:
        config = load_config(args.config)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    if not config.channels:
        logger.error("No channels specified in config.json. Watcher will exit.")
        return 1

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
