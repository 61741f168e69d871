# core/broadcaster.py
import asyncio
import json
import logging
from typing import AsyncIterator, Dict, Final, Optional
from model.api import JobSnapshot
from repository.job_repository import JobStore
from config.settings import settings

LINE_SEP: Final[str] = "\n"
logger = logging.getLogger(__name__)


def ndjson_line(obj: Dict[str, object]) -> bytes:
    return (json.dumps(obj, separators=(",", ":")) + LINE_SEP).encode("utf-8")


class ProgressBroadcaster:
    """
    Push feed of job snapshots, one NDJSON line per observed state change.

    The store is the only source of truth: each subscription re-reads the
    record every `interval` seconds and emits when its revision moved, so
    bursts of progress writes collapse into one line per tick and
    subscribers never touch the runner.
    """

    def __init__(
        self,
        store: JobStore,
        interval: float = settings.BROADCAST_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._interval = interval

    async def snapshots(self, job_id: str) -> AsyncIterator[JobSnapshot]:
        last_revision: Optional[int] = None
        while True:
            job = await self._store.get(job_id)
            if job is None:
                # Expired mid-subscription; nothing more will ever change.
                logger.info("broadcast.gone job=%s", job_id)
                return
            if job.revision != last_revision:
                last_revision = job.revision
                yield JobSnapshot.of(job)
            if job.is_terminal:
                logger.info("broadcast.closed job=%s stage=%s", job_id, job.stage)
                return
            await asyncio.sleep(self._interval)

    async def subscribe(self, job_id: str) -> AsyncIterator[bytes]:
        logger.info("broadcast.subscribe job=%s", job_id)
        async for snap in self.snapshots(job_id):
            yield ndjson_line(snap.model_dump(exclude_none=True))
