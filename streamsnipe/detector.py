"""
Live detection by probing the stream with streamlink.

Each probe is a short-lived streamlink invocation whose exit code and output
are read for a verdict: True (live), False (offline) or None (inconclusive).
Probes run in a fixed order and the first decisive verdict wins; when none is
decisive the channel is treated as offline so that nothing gets recorded by
accident.
"""

import asyncio
import json
import logging
from collections import namedtuple
from typing import Any, Dict, List, Optional

from .config import Config
from .errors import ProbeTimeout
from .models import now_iso

logger = logging.getLogger(__name__)

ProbeOutput = namedtuple("ProbeOutput", ["returncode", "stdout", "stderr"])

# Marker vocabulary, matched as case-sensitive substrings
JSON_LIVE_MARKERS = ("Available streams:", "Found matching plugin")
JSON_OFFLINE_MARKERS = ("No playable streams found", "offline", "This video is unavailable")
STREAM_URL_OFFLINE_MARKERS = ("No playable streams found", "offline", "Unable to find")
URL_PREFIXES = ("http://", "https://")


def _contains_any(text: str, markers) -> bool:
    return any(m in text for m in markers)


def _kill(process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass


class LiveDetector:
    def __init__(self, config: Config):
        self.binary = config.streamlink_path
        self.probe_timeout = config.probe_timeout_seconds
        self.quick_timeout = config.quick_probe_timeout_seconds
        # (name reported by diagnostic(), strategy) in cascade order
        self.strategies = [
            ("json", self.check_with_json),
            ("streamList", self.check_with_stream_list),
            ("canHandle", self.check_can_handle),
        ]

    async def _run(self, args: List[str], timeout: float) -> ProbeOutput:
        """Runs one probe to completion. Raises ProbeTimeout or OSError."""
        process = await asyncio.create_subprocess_exec(
            self.binary, *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            out, err = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ProbeTimeout(f"probe {args!r} exceeded {timeout}s")
        finally:
            if process.returncode is None:
                _kill(process)
                await process.wait()
        return ProbeOutput(
            process.returncode,
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
        )

    async def check_with_json(self, url: str) -> Optional[bool]:
        logger.debug(f"Trying JSON method for {url}")
        try:
            result = await self._run([url, "--json"], self.probe_timeout)
        except (ProbeTimeout, OSError) as e:
            logger.debug(f"JSON method inconclusive for {url}: {e}")
            return None
        logger.debug(f"JSON method exit code {result.returncode} for {url}")

        if result.stdout.strip():
            try:
                data = json.loads(result.stdout)
                streams = data.get("streams") if isinstance(data, dict) else None
                if streams:
                    logger.debug(f"Found {len(streams)} streams via JSON")
                    return True
            except ValueError:
                logger.debug("JSON parse failed, checking raw output")

        if _contains_any(result.stderr, JSON_LIVE_MARKERS):
            return True
        if _contains_any(result.stderr, JSON_OFFLINE_MARKERS):
            return False
        return None

    async def check_with_stream_list(self, url: str) -> Optional[bool]:
        logger.debug(f"Trying stream list method for {url}")
        try:
            result = await self._run([url, "--stream-url", "best", "--retry-open", "1"], self.probe_timeout)
        except (ProbeTimeout, OSError) as e:
            logger.debug(f"Stream list method inconclusive for {url}: {e}")
            return None
        logger.debug(f"Stream list exit code {result.returncode} for {url}")

        stdout = result.stdout.strip()
        if stdout and _contains_any(stdout, URL_PREFIXES):
            return True
        if _contains_any(result.stderr, STREAM_URL_OFFLINE_MARKERS):
            return False
        if result.returncode == 0 and stdout:
            return True
        return None

    async def check_can_handle(self, url: str) -> Optional[bool]:
        logger.debug(f"Trying can-handle method for {url}")
        try:
            result = await self._run(["--can-handle-url", url], self.quick_timeout)
        except (ProbeTimeout, OSError) as e:
            logger.debug(f"Can-handle method inconclusive for {url}: {e}")
            return None
        if result.returncode != 0:
            logger.debug(f"URL not supported by streamlink: {url}")
            return False
        # Supported URL says nothing about liveness; ask for a stream once more
        return await self.quick_stream_check(url)

    async def quick_stream_check(self, url: str) -> bool:
        args = [url, "best", "--stream-url", "--default-stream", "best", "--retry-streams", "1"]
        try:
            result = await self._run(args, self.quick_timeout)
        except (ProbeTimeout, OSError) as e:
            logger.debug(f"Quick stream check failed for {url}: {e}")
            return False
        has_output = bool(result.stdout.strip())
        logger.debug(f"Quick check result: code={result.returncode}, hasOutput={has_output}")
        return result.returncode == 0 and has_output

    async def is_live(self, url: str) -> bool:
        for name, strategy in self.strategies:
            try:
                result = await strategy(url)
            except Exception:
                logger.exception(f"Check method {name} failed for {url}")
                continue
            if result is not None:
                logger.info(f"{url} - Live: {result} (via {name})")
                return result
        logger.info(f"{url} - All methods inconclusive, assuming offline")
        return False

    async def diagnostic(self, url: str) -> Dict[str, Any]:
        """Runs every probe regardless of outcome and reports each verdict."""
        methods: Dict[str, Any] = {}
        overall = None
        for name, strategy in self.strategies:
            try:
                result = await strategy(url)
            except Exception as e:
                methods[name] = {"error": str(e)}
                continue
            methods[name] = result
            if overall is None and result is not None:
                overall = result
        return {
            "url": url,
            "timestamp": now_iso(),
            "methods": methods,
            "overallResult": bool(overall),
        }
