# repository/job_repository.py
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Collection, Dict, Final, Optional
from redis.asyncio import Redis
from redis.exceptions import WatchError
from config.cache import get_redis
from config.settings import settings
from model.job import TERMINAL_STAGES, Job, JobStage
from repository.namespaces import JOBS, JOBS_BY_REF
from util.functions import now_ts

KEY_PREFIX: Final[str] = JOBS
logger = logging.getLogger(__name__)

Mutation = Callable[[Job], Optional[Job]]


class JobStore(ABC):
    """
    Keyed-by-id job records.

    All writes go through `_mutate`, which applies a pure function to the
    current record atomically per id. Readers always get a whole record.
      - transition(): stage compare-and-set; loser gets None, nothing written.
      - update(): field update guarded by the expected current stage.
    """

    @abstractmethod
    async def create(self, job: Job) -> Job: ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    async def find_by_output_ref(self, ref: str) -> Optional[Job]: ...

    @abstractmethod
    async def _mutate(self, job_id: str, fn: Mutation) -> Optional[Job]: ...

    async def transition(
        self,
        job_id: str,
        *,
        to: JobStage,
        allowed_from: Collection[str],
        **changes: Any,
    ) -> Optional[Job]:
        def _fn(current: Job) -> Optional[Job]:
            if current.stage not in allowed_from:
                return None
            return _advance(current, stage=to, **changes)

        return await self._mutate(job_id, _fn)

    async def update(self, job_id: str, *, stage: JobStage, **changes: Any) -> Optional[Job]:
        def _fn(current: Job) -> Optional[Job]:
            if current.stage != stage:
                return None
            return _advance(current, **changes)

        return await self._mutate(job_id, _fn)

    async def requeue(self, job_id: str) -> Optional[Job]:
        """error -> queued, counting the retry against the record as stored."""

        def _fn(current: Job) -> Optional[Job]:
            if current.stage != "error":
                return None
            return _advance(
                current,
                stage="queued",
                progress=0,
                active=True,
                retryCount=current.retryCount + 1,
            )

        return await self._mutate(job_id, _fn)


def _advance(current: Job, *, stage: Optional[JobStage] = None, **changes: Any) -> Job:
    """
    Next version of `current`. Within a stage, progress never decreases;
    on a stage change the caller's progress (or the current one) is taken as-is.
    """
    data = current.model_dump()
    data.update(changes)
    if stage is None or stage == current.stage:
        data["progress"] = max(current.progress, int(data.get("progress") or 0))
    else:
        data["stage"] = stage
    final = data["stage"]
    if final != "done":
        data["outputRef"] = None
    if final != "error":
        data["error"] = None
    if final in TERMINAL_STAGES:
        data["active"] = False
    data["updatedAt"] = now_ts()
    data["revision"] = current.revision + 1
    return Job.model_validate(data)


class InMemoryJobStore(JobStore):
    """Process-local store for tests and single-process dev runs."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._by_ref: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create(self, job: Job) -> Job:
        ts = now_ts()
        stored = job.model_copy(update={"createdAt": ts, "updatedAt": ts, "revision": 1})
        self._jobs[stored.id] = stored
        return stored.model_copy()

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy() if job is not None else None

    async def find_by_output_ref(self, ref: str) -> Optional[Job]:
        job_id = self._by_ref.get(ref)
        return await self.get(job_id) if job_id else None

    async def _mutate(self, job_id: str, fn: Mutation) -> Optional[Job]:
        async with self._locks[job_id]:
            current = self._jobs.get(job_id)
            if current is None:
                return None
            updated = fn(current)
            if updated is None:
                return None
            self._jobs[job_id] = updated
            if updated.outputRef:
                self._by_ref[updated.outputRef] = job_id
            return updated.model_copy()


class JobRepository(JobStore):
    """Redis hash per job; writes are WATCH/MULTI transactions on the job key."""

    def __init__(
        self,
        client: Optional[Redis] = None,
        ttl_seconds: int = settings.JOB_RETENTION_SECONDS,
    ) -> None:
        self._redis = client
        self._ttl = int(ttl_seconds)

    async def _client(self) -> Redis:
        return self._redis if self._redis is not None else await get_redis()

    @staticmethod
    def _key(job_id: str) -> str:
        return f"{KEY_PREFIX}:{job_id}"

    @staticmethod
    def _ref_key(ref: str) -> str:
        return f"{JOBS_BY_REF}:{ref}"

    @staticmethod
    def _encode(job: Job) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for k, v in job.model_dump().items():
            if v is None:
                out[k] = ""
            elif isinstance(v, bool):
                out[k] = "1" if v else "0"
            else:
                out[k] = str(v)
        return out

    @staticmethod
    def _decode(h: Dict[Any, Any]) -> Optional[Job]:
        if not h:
            return None

        def _s(key: str, default: str = "") -> str:
            v = h.get(key.encode("utf-8"), h.get(key))
            if v is None:
                return default
            return v.decode("utf-8") if isinstance(v, (bytes, bytearray)) else str(v)

        try:
            return Job(
                id=_s("id"),
                owner=_s("owner"),
                sourceUrl=_s("sourceUrl"),
                displayName=_s("displayName") or None,
                requestedName=_s("requestedName") or None,
                outputName=_s("outputName") or None,
                stage=_s("stage") or "queued",
                progress=int(_s("progress", "0") or 0),
                error=_s("error") or None,
                outputRef=_s("outputRef") or None,
                active=_s("active", "1") == "1",
                retryCount=int(_s("retryCount", "0") or 0),
                createdAt=int(_s("createdAt", "0") or 0),
                updatedAt=int(_s("updatedAt", "0") or 0),
                revision=int(_s("revision", "0") or 0),
            )
        except Exception:
            logger.error("jobs.decode.error")
            return None

    # ---------------- Core CRUD ----------------

    async def create(self, job: Job) -> Job:
        ts = now_ts()
        stored = job.model_copy(update={"createdAt": ts, "updatedAt": ts, "revision": 1})
        r = await self._client()
        await r.hset(self._key(stored.id), mapping=self._encode(stored))
        await r.expire(self._key(stored.id), self._ttl)
        return stored

    async def get(self, job_id: str) -> Optional[Job]:
        if not job_id:
            return None
        r = await self._client()
        return self._decode(await r.hgetall(self._key(job_id)))

    async def find_by_output_ref(self, ref: str) -> Optional[Job]:
        r = await self._client()
        raw = await r.get(self._ref_key(ref))
        if raw is None:
            return None
        job_id = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
        return await self.get(job_id)

    # ---------------- Atomic per-id mutation ----------------

    async def _mutate(self, job_id: str, fn: Mutation) -> Optional[Job]:
        r = await self._client()
        key = self._key(job_id)
        async with r.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = self._decode(await pipe.hgetall(key))
                    if current is None:
                        return None
                    updated = fn(current)
                    if updated is None:
                        return None
                    pipe.multi()
                    pipe.hset(key, mapping=self._encode(updated))
                    pipe.expire(key, self._ttl)
                    if updated.outputRef:
                        pipe.set(self._ref_key(updated.outputRef), job_id, ex=self._ttl)
                    await pipe.execute()
                    return updated
                except WatchError:
                    # Another writer got in between; re-read and re-apply.
                    logger.debug("jobs.mutate.retry job=%s", job_id)
                    continue
