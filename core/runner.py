# core/runner.py
"""
Job Runner: drives one job through

    queued -> downloading -> uploading -> done
                  \\-> error / canceled (from any non-terminal stage)

The runner is the only writer of progress. Every stage change is a
compare-and-set on the store, so a cancellation racing a natural completion
ends in exactly one terminal state; the loser's write is dropped.
"""

import asyncio
import contextlib
import logging
from typing import Callable, Final, Optional
from core.extraction import MAX_EXTRACT_PERCENT, AudioStream, ExtractionChain
from core.metadata import MetadataResolver
from core.sinks import UploadSink
from core.sources import normalize_source, output_file_name, sanitize_file_name
from model.job import ACTIVE_STAGES, Job, JobStage
from repository.job_repository import JobStore
from config.settings import settings
from util.errors import JobCanceled, PipelineError
from util.functions import clamp_percent
from util.timing import timed

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE: Final[str] = "Interrupted by server shutdown; retry the job"
UNEXPECTED_MESSAGE: Final[str] = "Unexpected error while processing"


class ProgressMeter:
    """
    Collects progress from synchronous callbacks and writes it to the store
    at most once per `interval`. A write rejected because the stage moved
    under us means the job was taken away (canceled elsewhere): `on_lost` fires.
    """

    def __init__(
        self,
        store: JobStore,
        job_id: str,
        interval: float,
        on_lost: Optional[Callable[[], object]] = None,
    ) -> None:
        self._store = store
        self._job_id = job_id
        self._interval = interval
        self._on_lost = on_lost
        self._stage: Optional[JobStage] = None
        self._download_pct = 0
        self._acked = 0
        self._total: Optional[int] = None
        self._written = 0
        self._dirty = asyncio.Event()
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    def begin(self, stage: JobStage, total_bytes: Optional[int] = None) -> None:
        self._stage = stage
        self._total = total_bytes
        self._acked = 0
        self._written = 0
        if self._task is None:
            self._task = asyncio.create_task(self._pump())

    def report(self, pct: int) -> None:
        """Extraction progress, 0-99."""
        self._download_pct = max(self._download_pct, pct)
        self._dirty.set()

    def report_bytes(self, acked: int) -> None:
        """Bytes acknowledged by the sink."""
        self._acked = max(self._acked, acked)
        self._dirty.set()

    def percent(self) -> int:
        if self._stage == "uploading":
            if self._total:
                return clamp_percent(self._acked * 100 // self._total, MAX_EXTRACT_PERCENT)
            # Bytes are piped straight through, so extraction progress is a fair estimate.
            return clamp_percent(self._download_pct, MAX_EXTRACT_PERCENT)
        return clamp_percent(self._download_pct, MAX_EXTRACT_PERCENT)

    async def hold(self) -> None:
        """Stop writing until the next begin(); waits for an in-flight write."""
        async with self._lock:
            self._stage = None

    async def close(self) -> None:
        await self.hold()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _pump(self) -> None:
        while True:
            await self._dirty.wait()
            self._dirty.clear()
            async with self._lock:
                stage = self._stage
                pct = self.percent()
                if stage is not None and pct > self._written:
                    updated = await self._store.update(self._job_id, stage=stage, progress=pct)
                    if updated is None:
                        logger.info("runner.progress.rejected job=%s stage=%s", self._job_id, stage)
                        if self._on_lost is not None:
                            self._on_lost()
                        return
                    self._written = pct
            await asyncio.sleep(self._interval)


class JobRunner:
    def __init__(
        self,
        store: JobStore,
        chain: ExtractionChain,
        sink: UploadSink,
        resolver: Optional[MetadataResolver] = None,
        *,
        max_concurrent: int = settings.MAX_CONCURRENT_UPLOADS,
        progress_interval: float = settings.PROGRESS_WRITE_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._chain = chain
        self._sink = sink
        self._resolver = resolver
        self._slots = asyncio.Semaphore(max(1, max_concurrent))
        self._progress_interval = progress_interval

    async def run(self, job_id: str) -> Optional[Job]:
        """Process one job to a terminal stage. Never raises pipeline errors."""
        job = await self._store.transition(
            job_id, to="downloading", allowed_from={"queued"}, progress=0
        )
        if job is None:
            # Canceled before start, or another runner already claimed it.
            logger.info("runner.skip job=%s", job_id)
            return await self._store.get(job_id)

        logger.info("runner.start job=%s retry=%d", job_id, job.retryCount)
        task = asyncio.current_task()
        meter = ProgressMeter(
            self._store,
            job_id,
            self._progress_interval,
            on_lost=task.cancel if task is not None else None,
        )
        ref: Optional[str] = None
        final: Optional[Job] = None
        try:
            try:
                job, ref = await self._process(job, meter)
            finally:
                await meter.close()
            final = await self._complete(job, ref)
            return final
        except asyncio.CancelledError:
            final = await self._store.get(job_id)
            if final is not None and final.stage == "canceled":
                logger.info("runner.canceled job=%s", job_id)
                return final
            await self._store.transition(
                job_id, to="error", allowed_from=ACTIVE_STAGES, error=INTERRUPTED_MESSAGE
            )
            logger.warning("runner.interrupted job=%s", job_id)
            raise
        except JobCanceled:
            logger.info("runner.canceled job=%s", job_id)
            final = await self._store.get(job_id)
            return final
        except PipelineError as e:
            final = await self._fail(job_id, e.public_message, e)
            return final
        except Exception as e:
            logger.exception("runner.crashed job=%s", job_id)
            final = await self._fail(job_id, UNEXPECTED_MESSAGE, e)
            return final
        finally:
            # An uploaded object belongs to the job only if the done write recorded it.
            if ref is not None and (final is None or final.outputRef != ref):
                await self._discard_orphan(job, ref)

    async def _process(self, job: Job, meter: ProgressMeter) -> tuple[Job, str]:
        if job.requestedName is None and self._resolver is not None:
            title = await self._resolver.resolve_title(job.sourceUrl)
            if title:
                job = await self._require(
                    self._store.update(job.id, stage="downloading", displayName=title)
                )

        async with self._slots:
            meter.begin("downloading")
            with timed(logger, "runner.extract", job=job.id):
                stream = await self._chain.open(job.sourceUrl, meter.report)
            async with stream:
                job = await self._enter_upload(job, stream, meter)
                with timed(logger, "runner.upload", job=job.id, strategy=stream.strategy):
                    ref = await self._sink.upload(
                        job.owner,
                        job.outputName or output_file_name(job.id, stream.extension),
                        stream,
                        stream.mime_type,
                        on_progress=meter.report_bytes,
                    )
        return job, ref

    async def _enter_upload(self, job: Job, stream: AudioStream, meter: ProgressMeter) -> Job:
        display = job.displayName
        source = normalize_source(job.sourceUrl)
        provisional = source.provisional_name if source is not None else None
        if job.requestedName is None and stream.title and display in (None, provisional):
            display = sanitize_file_name(stream.title)
        output_name = output_file_name(job.requestedName or display or job.id, stream.extension)

        await meter.hold()
        job = await self._require(
            self._store.transition(
                job.id,
                to="uploading",
                allowed_from={"downloading"},
                progress=0,
                outputName=output_name,
                displayName=display,
            )
        )
        meter.begin("uploading", total_bytes=stream.total_bytes)
        logger.info(
            "runner.uploading job=%s strategy=%s bytes=%s",
            job.id,
            stream.strategy,
            stream.total_bytes if stream.total_bytes is not None else "?",
        )
        return job

    async def _complete(self, job: Job, ref: str) -> Optional[Job]:
        done = await self._store.transition(
            job.id, to="done", allowed_from={"uploading"}, outputRef=ref, progress=100
        )
        if done is not None:
            logger.info("runner.done job=%s ref=%s", job.id, ref)
            return done
        logger.info("runner.done.discarded job=%s ref=%s", job.id, ref)
        return await self._store.get(job.id)

    async def _discard_orphan(self, job: Job, ref: str) -> None:
        """Remove an object whose job never reached done; runs to completion even if canceled."""
        try:
            await asyncio.shield(self._sink.delete(job.owner, ref))
        except asyncio.CancelledError:
            logger.info("runner.orphan.delete_detached job=%s ref=%s", job.id, ref)
            raise
        except Exception as e:
            logger.warning("runner.orphan.delete_failed job=%s err=%s", job.id, type(e).__name__)
            return
        logger.info("runner.orphan.deleted job=%s ref=%s", job.id, ref)

    async def _fail(self, job_id: str, message: str, exc: BaseException) -> Optional[Job]:
        logger.warning(
            "runner.failed job=%s kind=%s err=%s",
            job_id,
            type(exc).__name__,
            str(exc).split("\n", 1)[0],
        )
        failed = await self._store.transition(
            job_id, to="error", allowed_from=ACTIVE_STAGES, error=message
        )
        return failed if failed is not None else await self._store.get(job_id)

    @staticmethod
    async def _require(write) -> Job:
        job = await write
        if job is None:
            raise JobCanceled()
        return job
