import asyncio
import logging
import os
import socket

from config.settings import Settings
from config.settings import settings as default_settings
from services.analysis.dispatcher import Dispatcher, RunResult
from services.analysis.queue import JobQueue
from services.analysis.reaper import reclaim_expired

log = logging.getLogger(__name__)


class WorkerPool:
    """Fixed-size pool of asyncio workers plus the lease reaper.

    Each worker owns at most one job at a time. Workers only wait on provider
    calls and record commits; they never wait on each other.
    """

    def __init__(self, queue: JobQueue, dispatcher: Dispatcher, settings: Settings | None = None):
        self.queue = queue
        self.dispatcher = dispatcher
        self.settings = settings or default_settings
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._prefix = f"{socket.gethostname()}:{os.getpid()}"

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def run_once(self, worker_id: str) -> RunResult | None:
        """Claim and process one job. None when nothing is eligible."""
        job = await self.queue.claim(worker_id)
        if job is None:
            return None
        return await self.dispatcher.run(job)

    async def _worker_loop(self, worker_id: str):
        log.info(f"[WORKER] {worker_id} started")
        while not self._stopping.is_set():
            try:
                result = await self.run_once(worker_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                # The lease reaper recovers whatever job was held
                log.exception(f"[WORKER] {worker_id} crashed while processing a job")
                result = None
            if result is None:
                await self._sleep(self.settings.poll_interval_seconds)
        log.info(f"[WORKER] {worker_id} stopped")

    async def _reaper_loop(self):
        while not self._stopping.is_set():
            try:
                count = await reclaim_expired(self.queue)
                if count:
                    log.info(f"[REAPER] Reclaimed {count} stuck job(s)")
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("[REAPER] Lease sweep failed")
            await self._sleep(self.settings.reaper_interval_seconds)

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def start(self):
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(f"{self._prefix}:w{i}"), name=f"analysis-worker-{i}")
            for i in range(self.settings.pool_size)
        ]
        self._tasks.append(asyncio.create_task(self._reaper_loop(), name="analysis-reaper"))
        log.info(f"Started {self.settings.pool_size} analysis worker(s) and the lease reaper")

    async def stop(self, timeout: float = 10.0):
        self._stopping.set()
        if not self._tasks:
            return
        _done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        log.info("Analysis workers stopped")

    async def run_forever(self):
        self.start()
        await asyncio.gather(*self._tasks)
