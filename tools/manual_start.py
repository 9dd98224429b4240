#!/usr/bin/env python3
"""Record one URL right now, without the monitor. Ctrl-C stops the recording."""
import argparse
import asyncio
import logging
import os
import sys

from streamsnipe.config import load_config
from streamsnipe.errors import CaptureStartupError
from streamsnipe.urls import normalize_stream_url
from streamsnipe.watcher import Engine


async def record(config, url, quality, title):
    engine = Engine(config)
    try:
        recording = await engine.start_recording(url, quality=quality, title=title)
    except CaptureStartupError as e:
        print(f"Failed to start: {e}")
        return 1
    print(f"STARTED {recording.id} -> {recording.file_path}")
    try:
        while engine.recorder.is_active(recording.id):
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        pass
    finally:
        await engine.shutdown()
    final = engine.recordings.find_by_id(recording.id)
    print(f"FINISHED {final.status.value} size={final.file_size} error={final.error}")
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument("url")
    parser.add_argument("--quality", default=None)
    parser.add_argument("--title", default=None)
    parser.add_argument("--config", default="config.json")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    cfg = load_config(args.config if os.path.exists(args.config) else None)
    parsed = normalize_stream_url(args.url)
    try:
        sys.exit(asyncio.run(record(cfg, parsed.url, args.quality, args.title or parsed.display_name)))
    except KeyboardInterrupt:
        sys.exit(0)
