# service/job_service.py
import logging
from typing import AsyncIterator, Optional
from uuid import uuid4
from core.broadcaster import ProgressBroadcaster
from core.sources import normalize_source, sanitize_file_name
from core.supervisor import JobSupervisor
from model.api import JobSnapshot, SubmitJobResponse
from model.job import ACTIVE_STAGES, Job
from repository.job_repository import JobStore
from util.enums import ErrorMessage
from util.errors import AppError

logger = logging.getLogger(__name__)


class JobService:
    """
    Submission and lookup entry points. Every lookup is scoped to the caller:
    a job owned by someone else is reported exactly like a missing one.
    """

    def __init__(
        self,
        jobs: JobStore,
        supervisor: JobSupervisor,
        broadcaster: ProgressBroadcaster,
    ) -> None:
        self._jobs = jobs
        self._supervisor = supervisor
        self._broadcaster = broadcaster

    async def _owned(self, owner_id: str, job_id: str) -> Job:
        job = await self._jobs.get(job_id)
        if job is None or job.owner != owner_id:
            raise AppError.of(ErrorMessage.NOT_FOUND)
        return job

    async def submit(
        self, owner_id: str, source_url: str, name: Optional[str] = None
    ) -> SubmitJobResponse:
        source = normalize_source(source_url)
        if source is None:
            logger.info("jobs.submit.rejected owner=%s", owner_id)
            raise AppError.of(ErrorMessage.INVALID_SOURCE_URL)

        requested = sanitize_file_name(name) if name and name.strip() else None
        provisional = requested or source.provisional_name
        job = await self._jobs.create(
            Job(
                id=str(uuid4()),
                owner=owner_id,
                sourceUrl=source.url,
                displayName=provisional,
                requestedName=requested,
            )
        )
        self._supervisor.launch(job.id)
        logger.info("jobs.submit.ok job=%s owner=%s video=%s", job.id, owner_id, source.video_id)
        return SubmitJobResponse(jobId=job.id, provisionalName=provisional)

    async def get_status(self, owner_id: str, job_id: str) -> JobSnapshot:
        return JobSnapshot.of(await self._owned(owner_id, job_id))

    async def cancel(self, owner_id: str, job_id: str) -> JobSnapshot:
        await self._owned(owner_id, job_id)
        canceled = await self._jobs.transition(
            job_id, to="canceled", allowed_from=ACTIVE_STAGES
        )
        if canceled is None:
            # Already terminal: idempotent no-op.
            return JobSnapshot.of(await self._owned(owner_id, job_id))
        self._supervisor.cancel(job_id)
        logger.info("jobs.cancel.ok job=%s", job_id)
        return JobSnapshot.of(canceled)

    async def retry(self, owner_id: str, job_id: str) -> JobSnapshot:
        await self._owned(owner_id, job_id)
        job = await self._jobs.requeue(job_id)
        if job is None:
            raise AppError.of(ErrorMessage.RETRY_NOT_ALLOWED)
        self._supervisor.launch(job_id)
        logger.info("jobs.retry.ok job=%s count=%d", job_id, job.retryCount)
        return JobSnapshot.of(job)

    async def subscribe(self, owner_id: str, job_id: str) -> AsyncIterator[bytes]:
        """Authorize first, so a bad id fails the request instead of the stream."""
        await self._owned(owner_id, job_id)
        return self._broadcaster.subscribe(job_id)
