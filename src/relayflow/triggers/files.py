"""Polling file watcher.

Each file trigger names a connection whose ``path`` setting is a local
directory. Every ``poll_interval_ms`` the watcher lists files matching the
trigger's glob and starts one run whose seed records describe the files
that are new or modified since the last successful fire.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from relayflow.errors import FatalConfigError
from relayflow.pipeline.models import FileTrigger
from relayflow.runtime.adapters import ConnectionResolver
from relayflow.triggers.scheduler import FireCallback

logger = logging.getLogger(__name__)


@dataclass
class _Watch:
    pipeline_code: str
    trigger: FileTrigger
    seen: dict[str, float] = field(default_factory=dict)
    last_poll: float | None = None


def describe_file(path: Path, connection_ref: str) -> dict[str, Any]:
    stat = path.stat()
    return {
        "path": str(path),
        "name": path.name,
        "size": stat.st_size,
        "modifiedAt": datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat(),
        "connectionCode": connection_ref,
    }


class FileWatcher:
    """Starts runs for files appearing in watched directories.

    Args:
        fire: Callback that starts a run for ``(code, trigger, seed)``.
        connections: Resolves ``connectionRef`` to settings with a ``path``.
        clock: Wall clock in seconds.
    """

    def __init__(
        self,
        fire: FireCallback,
        connections: ConnectionResolver,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fire = fire
        self._connections = connections
        self._clock = clock
        self._watches: dict[tuple[str, str], _Watch] = {}
        self._task: asyncio.Task[None] | None = None

    def add(self, pipeline_code: str, trigger: FileTrigger) -> None:
        self._watches[(pipeline_code, trigger.key)] = _Watch(pipeline_code, trigger)
        logger.info(
            "Watching '%s' (%s) for pipeline '%s'",
            trigger.connection_ref,
            trigger.path_glob,
            pipeline_code,
        )

    def remove(self, pipeline_code: str) -> int:
        doomed = [k for k in self._watches if k[0] == pipeline_code]
        for key in doomed:
            del self._watches[key]
        return len(doomed)

    def watched(self) -> list[tuple[str, str]]:
        return list(self._watches)

    def _directory(self, trigger: FileTrigger) -> Path:
        settings = self._connections.resolve(trigger.connection_ref)
        path = settings.get("path")
        if not path:
            raise FatalConfigError(f"Connection '{trigger.connection_ref}' has no 'path'")
        return Path(path)

    def scan(self, pipeline_code: str, trigger_key: str) -> list[Path]:
        """Return files that are new or changed since they were last fired."""
        watch = self._watches[(pipeline_code, trigger_key)]
        directory = self._directory(watch.trigger)
        if not directory.is_dir():
            logger.warning("Watched directory %s does not exist", directory)
            return []
        fresh = []
        for path in sorted(directory.glob(watch.trigger.path_glob)):
            if not path.is_file():
                continue
            mtime = path.stat().st_mtime
            if watch.seen.get(str(path)) != mtime:
                fresh.append(path)
        return sorted(fresh, key=lambda p: p.stat().st_mtime)

    async def poll(self, force: bool = False) -> int:
        """Poll every watch whose interval has elapsed.

        Args:
            force: Ignore poll intervals.

        Returns:
            Number of runs started.
        """
        now = self._clock()
        started = 0
        for (code, key), watch in list(self._watches.items()):
            if not watch.trigger.enabled:
                continue
            interval = watch.trigger.poll_interval_ms / 1000.0
            if not force and watch.last_poll is not None and now - watch.last_poll < interval:
                continue
            watch.last_poll = now
            try:
                fresh = self.scan(code, key)
            except FatalConfigError as exc:
                logger.error("File trigger '%s/%s' misconfigured: %s", code, key, exc)
                continue
            if not fresh:
                continue

            logger.info("Found %d new file(s) for '%s/%s'", len(fresh), code, key)
            seed = [describe_file(p, watch.trigger.connection_ref) for p in fresh]
            run = await self._fire(code, key, seed)
            if run is None:
                continue
            for path in fresh:
                watch.seen[str(path)] = path.stat().st_mtime
            started += 1
        return started

    def start(self, tick_ms: int = 1000) -> None:
        if self._task is not None and not self._task.done():
            return

        async def _loop() -> None:
            while True:
                try:
                    await self.poll()
                except Exception:
                    logger.exception("File watcher poll failed")
                await asyncio.sleep(tick_ms / 1000.0)

        self._task = asyncio.create_task(_loop(), name="file-watcher")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
