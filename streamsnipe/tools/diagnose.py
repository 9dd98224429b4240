#!/usr/bin/env python3
import argparse
import asyncio
import json
import logging
import os
import sys

from streamsnipe.config import load_config
from streamsnipe.detector import LiveDetector
from streamsnipe.urls import normalize_stream_url


async def diagnose_all(detector: LiveDetector, urls):
    results = []
    for url in urls:
        results.append(await detector.diagnostic(url))
    return results


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run every live probe against each URL and print the verdicts.")
    parser.add_argument("urls", nargs="*", help="channel URLs or usernames; defaults to the CHANNELS in the config")
    parser.add_argument("--config", default="config.json")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    config = load_config(args.config if os.path.exists(args.config) else None)
    targets = args.urls or [c["url"] if isinstance(c, dict) else c for c in config.channels]
    if not targets:
        print("No URLs given and no CHANNELS in config")
        return 1

    urls = [normalize_stream_url(t).url for t in targets]
    print(f"Targets: {len(urls)}")
    results = asyncio.run(diagnose_all(LiveDetector(config), urls))
    for result in results:
        print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
