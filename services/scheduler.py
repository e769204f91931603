from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import List, Optional, Set

from core.settings import CONNECTIVITY, SYNC, ConnectivitySettings, SyncSettings


logger = logging.getLogger("calmirror.scheduler")


class SyncTask(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    DRAIN = "drain"


class SyncScheduler:
    """Turns timers, connectivity transitions and user requests into sync passes.

    All passes go through one queue consumed by a single worker, so two passes
    never run at the same time.
    """

    def __init__(
        self,
        engine,
        monitor,
        sync_settings: SyncSettings = SYNC,
        connectivity_settings: ConnectivitySettings = CONNECTIVITY,
    ):
        self.engine = engine
        self.monitor = monitor
        self.sync_settings = sync_settings
        self.connectivity_settings = connectivity_settings
        self._queue: Optional[asyncio.Queue] = None
        self._waiting: Set[SyncTask] = set()
        self._tasks: List[asyncio.Task] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopped: Optional[asyncio.Event] = None
        self.monitor.on_online(self._on_online)

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._stopped = asyncio.Event()
        self._waiting.clear()
        self.request(SyncTask.FULL)
        self._tasks = [
            asyncio.create_task(self._worker(), name="calmirror-sync-worker"),
            asyncio.create_task(
                self._periodic(SyncTask.INCREMENTAL, self.sync_settings.incremental_interval_sec),
                name="calmirror-incremental",
            ),
            asyncio.create_task(
                self._periodic(SyncTask.FULL, self.sync_settings.full_interval_sec),
                name="calmirror-full",
            ),
            asyncio.create_task(self._connectivity_loop(), name="calmirror-connectivity"),
        ]
        logger.info("Sync scheduler started")

    async def run(self) -> None:
        """Start the loops and wait until :meth:`stop` is called."""

        self.start()
        await self._stopped.wait()

    def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        if self._stopped is not None:
            self._stopped.set()
        logger.info("Sync scheduler stopped")

    def request(self, task: SyncTask) -> bool:
        """Queue ``task`` unless the same kind is already waiting."""

        if self._queue is None:
            raise RuntimeError("Scheduler is not started")
        if task in self._waiting:
            logger.debug("%s sync already queued", task.value)
            return False
        self._waiting.add(task)
        self._queue.put_nowait(task)
        return True

    async def join(self) -> None:
        """Wait until every queued task has been processed."""

        if self._queue is not None:
            await self._queue.join()

    # ----- loops -----
    async def _worker(self) -> None:
        while True:
            task = await self._queue.get()
            self._waiting.discard(task)
            try:
                await asyncio.to_thread(self._execute, task)
            except Exception:
                logger.exception("%s sync crashed", task.value)
            finally:
                self._queue.task_done()

    def _execute(self, task: SyncTask) -> None:
        if task is SyncTask.FULL:
            self.engine.full_sync()
        elif task is SyncTask.INCREMENTAL:
            self.engine.incremental_sync()
        elif task is SyncTask.DRAIN:
            self.engine.drain_queue()

    async def _periodic(self, task: SyncTask, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self.monitor.is_online:
                self.request(task)

    async def _connectivity_loop(self) -> None:
        while True:
            await asyncio.sleep(self.connectivity_settings.tick_sec)
            try:
                # the probe blocks for up to its timeout
                await asyncio.to_thread(self.monitor.step)
            except Exception:
                logger.exception("Connectivity check failed")

    def _on_online(self) -> None:
        if self._loop is None or self._queue is None:
            return
        self._loop.call_soon_threadsafe(self._queue_reconnect)

    def _queue_reconnect(self) -> None:
        if not self._tasks:
            return
        logger.info("Back online, draining queue")
        self.request(SyncTask.DRAIN)
        self.request(SyncTask.INCREMENTAL)


__all__ = ["SyncScheduler", "SyncTask"]
