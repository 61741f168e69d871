"""
Test configuration and shared fixtures.

Settings are read at import time, so the environment is pinned here before
any application module is imported.
"""

import os

os.environ.setdefault("APP_ENV", "prod")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("ALLOWED_ORIGIN", "http://localhost:3000")
os.environ.setdefault("RATE_LIMIT_TIMES", "0")
os.environ.setdefault("EXTRACT_FALLBACK_DELAY_SECONDS", "0")
os.environ.setdefault("PROGRESS_WRITE_INTERVAL_SECONDS", "0")
os.environ.setdefault("BROADCAST_INTERVAL_SECONDS", "0.01")
os.environ.setdefault("STORAGE_BACKEND", "local")

import asyncio
from typing import AsyncIterator, List, Optional, Sequence

import pytest

from core.extraction import AudioStream, ExtractionChain, ExtractionStrategy, ProgressCallback
from core.runner import JobRunner
from core.sinks import FilesystemSink
from core.supervisor import JobSupervisor
from model.job import Job
from repository.job_repository import InMemoryJobStore
from repository.owner_repository import InMemoryOwnerRepository

SOURCE_URL = "https://www.youtube.com/watch?v=abc12345678"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class ScriptedStrategy(ExtractionStrategy):
    """Extraction backend that replays a fixed script instead of hitting YouTube."""

    def __init__(
        self,
        name: str,
        chunks: Sequence[bytes] = (b"audio-",),
        *,
        error: Optional[Exception] = None,
        progress: Sequence[int] = (40, 80),
        extension: str = "webm",
        title: Optional[str] = None,
        total_bytes: Optional[int] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.name = name
        self._chunks = list(chunks)
        self._error = error
        self._progress = list(progress)
        self._extension = extension
        self._title = title
        self._total_bytes = total_bytes
        self.gate = gate
        self.calls = 0
        self.closed = False

    async def attempt(self, url: str, on_progress: ProgressCallback) -> AudioStream:
        self.calls += 1
        if self._error is not None:
            raise self._error
        for pct in self._progress:
            on_progress(pct)

        async def _chunks() -> AsyncIterator[bytes]:
            for i, chunk in enumerate(self._chunks):
                if i > 0 and self.gate is not None:
                    await self.gate.wait()
                yield chunk

        async def _close() -> None:
            self.closed = True

        return AudioStream(
            _chunks(),
            strategy=self.name,
            extension=self._extension,
            title=self._title,
            total_bytes=self._total_bytes,
            on_close=_close,
        )


class StaticResolver:
    def __init__(self, title: Optional[str]) -> None:
        self.title = title
        self.calls = 0

    async def resolve_title(self, url: str) -> Optional[str]:
        self.calls += 1
        return self.title


class RecordingJobStore(InMemoryJobStore):
    """In-memory store that remembers every committed (stage, progress) pair."""

    def __init__(self) -> None:
        super().__init__()
        self.history: List[tuple] = []

    async def _mutate(self, job_id, fn):
        updated = await super()._mutate(job_id, fn)
        if updated is not None:
            self.history.append((updated.stage, updated.progress))
        return updated

    def stages(self) -> List[str]:
        out: List[str] = []
        for stage, _ in self.history:
            if not out or out[-1] != stage:
                out.append(stage)
        return out


class SlowCommitStore(RecordingJobStore):
    """The done write takes a round trip, leaving a window for cancel or shutdown."""

    def __init__(self, delay: float = 0.05) -> None:
        super().__init__()
        self.delay = delay
        self.committing = asyncio.Event()

    async def transition(self, job_id, *, to, allowed_from, **changes):
        if to == "done":
            self.committing.set()
            await asyncio.sleep(self.delay)
        return await super().transition(job_id, to=to, allowed_from=allowed_from, **changes)


async def wait_until_empty(sink, owner_id: str, timeout: float = 2.0) -> list:
    """The orphan delete may finish after the runner task has ended."""

    async def _poll() -> list:
        while True:
            items = await sink.list(owner_id)
            if not items:
                return items
            await asyncio.sleep(0.01)

    return await asyncio.wait_for(_poll(), timeout)


def make_chain(*strategies: ExtractionStrategy, **kw) -> ExtractionChain:
    kw.setdefault("attempt_timeout", 5.0)
    kw.setdefault("stall_timeout", 5.0)
    kw.setdefault("fallback_delay", 0.0)
    return ExtractionChain(list(strategies), **kw)


async def wait_for_stage(store, job_id: str, stage: str, timeout: float = 2.0) -> Job:
    async def _poll() -> Job:
        while True:
            job = await store.get(job_id)
            if job is not None and job.stage == stage:
                return job
            await asyncio.sleep(0.005)

    return await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def store() -> RecordingJobStore:
    return RecordingJobStore()


@pytest.fixture
def owners() -> InMemoryOwnerRepository:
    return InMemoryOwnerRepository()


@pytest.fixture
def sink(tmp_path, owners) -> FilesystemSink:
    return FilesystemSink(owners, root=str(tmp_path / "storage"), chunk_size=4)


@pytest.fixture
def new_job(store):
    async def _create(job_id: str = "job-1", owner: str = "owner-1", **fields) -> Job:
        fields.setdefault("displayName", "youtube-abc12345678")
        return await store.create(Job(id=job_id, owner=owner, sourceUrl=SOURCE_URL, **fields))

    return _create


def make_runner(store, sink, *strategies, resolver=None, **kw) -> JobRunner:
    kw.setdefault("progress_interval", 0)
    return JobRunner(store, make_chain(*strategies), sink, resolver, **kw)


def make_supervisor(store, sink, *strategies, **kw) -> JobSupervisor:
    return JobSupervisor(make_runner(store, sink, *strategies, **kw))
