# core/supervisor.py
import asyncio
import logging
from typing import Dict, Optional, Set
from core.runner import JobRunner

logger = logging.getLogger(__name__)


class JobSupervisor:
    """
    Owns the asyncio tasks running jobs in this process.

    A retried job may be launched while its previous task is still unwinding;
    the new task waits for the old one so a job id never has two runners
    touching the stream at once.
    """

    def __init__(self, runner: JobRunner) -> None:
        self._runner = runner
        self._tasks: Dict[str, Set[asyncio.Task]] = {}
        self._closing = False

    def launch(self, job_id: str) -> asyncio.Task:
        if self._closing:
            raise RuntimeError("supervisor is shutting down")
        previous = set(self._tasks.get(job_id, ()))
        task = asyncio.create_task(self._run(job_id, previous), name=f"job:{job_id}")
        self._tasks.setdefault(job_id, set()).add(task)
        task.add_done_callback(lambda t: self._reap(job_id, t))
        logger.info("supervisor.launch job=%s", job_id)
        return task

    async def _run(self, job_id: str, previous: Set[asyncio.Task]) -> None:
        if previous:
            await asyncio.wait(previous)
        await self._runner.run(job_id)

    def _reap(self, job_id: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(job_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                self._tasks.pop(job_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("supervisor.task.failed job=%s err=%s", job_id, type(exc).__name__)

    def cancel(self, job_id: str) -> bool:
        """Destroy the local in-flight work for a job, if any."""
        tasks = [t for t in self._tasks.get(job_id, ()) if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            logger.info("supervisor.cancel job=%s tasks=%d", job_id, len(tasks))
        return bool(tasks)

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> None:
        tasks = set(self._tasks.get(job_id, ()))
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def shutdown(self, timeout: float = 10.0) -> None:
        self._closing = True
        tasks = [t for group in self._tasks.values() for t in group if not t.done()]
        if not tasks:
            return
        logger.warning("supervisor.shutdown inflight=%d", len(tasks))
        for t in tasks:
            t.cancel()
        await asyncio.wait(tasks, timeout=timeout)
