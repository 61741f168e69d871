"""Tests for core.runner: the job state machine end to end against fakes."""

import asyncio

import pytest

from conftest import (
    SOURCE_URL,
    ScriptedStrategy,
    SlowCommitStore,
    StaticResolver,
    make_runner,
    make_supervisor,
    wait_for_stage,
    wait_until_empty,
)
from core.extraction import AudioStream
from core.runner import INTERRUPTED_MESSAGE
from model.job import Job
from util.errors import ExtractionExhausted, SourceUnavailable, StrategyFailed

pytestmark = pytest.mark.anyio


class TestHappyPath:
    async def test_runs_to_done(self, store, sink, new_job) -> None:
        await new_job()
        runner = make_runner(store, sink, ScriptedStrategy("ytdlp", [b"abc", b"def"]))

        job = await runner.run("job-1")

        assert job.stage == "done"
        assert job.progress == 100
        assert job.outputRef is not None
        assert job.active is False
        assert job.error is None
        assert store.stages() == ["downloading", "uploading", "done"]

        stored = await sink.list("owner-1")
        assert [o.ref for o in stored] == [job.outputRef]
        fetched = await sink.fetch("owner-1", job.outputRef)
        assert b"".join([c async for c in fetched.chunks]) == b"abcdef"

    async def test_stream_is_closed_after_upload(self, store, sink, new_job) -> None:
        await new_job()
        strategy = ScriptedStrategy("ytdlp", [b"abc"])

        await make_runner(store, sink, strategy).run("job-1")

        assert strategy.closed is True

    async def test_output_name_uses_resolved_title(self, store, sink, new_job) -> None:
        await new_job()
        resolver = StaticResolver("My Song")
        runner = make_runner(
            store, sink, ScriptedStrategy("ytdlp", extension="m4a"), resolver=resolver
        )

        job = await runner.run("job-1")

        assert job.displayName == "My Song"
        assert job.outputName == "My Song.m4a"
        assert (await sink.list("owner-1"))[0].name == "My Song.m4a"

    async def test_requested_name_skips_resolver(self, store, sink, new_job) -> None:
        await new_job(displayName="mix", requestedName="mix")
        resolver = StaticResolver("Ignored")
        runner = make_runner(store, sink, ScriptedStrategy("ytdlp"), resolver=resolver)

        job = await runner.run("job-1")

        assert resolver.calls == 0
        assert job.outputName == "mix.webm"

    async def test_strategy_title_fills_unresolved_name(self, store, sink, new_job) -> None:
        await new_job()
        runner = make_runner(
            store,
            sink,
            ScriptedStrategy("ytdlp", title="From Stream"),
            resolver=StaticResolver(None),
        )

        job = await runner.run("job-1")

        assert job.displayName == "From Stream"
        assert job.outputName == "From Stream.webm"


class TestFailures:
    async def test_falls_back_to_next_strategy(self, store, sink, new_job) -> None:
        await new_job()
        first = ScriptedStrategy("ytdlp", error=StrategyFailed("HTTP Error 403"))
        second = ScriptedStrategy("direct", [b"xyz"], extension="m4a")

        job = await make_runner(store, sink, first, second).run("job-1")

        assert job.stage == "done"
        assert first.calls == 1 and second.calls == 1
        assert job.outputName.endswith(".m4a")
        # Strategy failures never surface as a stage change.
        assert store.stages() == ["downloading", "uploading", "done"]

    async def test_zero_byte_strategy_is_skipped(self, store, sink, new_job) -> None:
        await new_job()
        empty = ScriptedStrategy("ytdlp", [b""])
        good = ScriptedStrategy("direct", [b"ok"])

        job = await make_runner(store, sink, empty, good).run("job-1")

        assert job.stage == "done"
        assert empty.closed is True

    async def test_source_unavailable_stops_chain(self, store, sink, new_job) -> None:
        await new_job()
        bad = ScriptedStrategy(
            "ytdlp",
            error=SourceUnavailable("ERROR: Private video", public_message="Video is private"),
        )
        never = ScriptedStrategy("direct")

        job = await make_runner(store, sink, bad, never).run("job-1")

        assert job.stage == "error"
        assert job.error == "Video is private"
        assert never.calls == 0
        assert job.outputRef is None

    async def test_exhaustion_then_retry(self, store, sink, new_job) -> None:
        await new_job()
        runner = make_runner(
            store,
            sink,
            ScriptedStrategy("ytdlp", error=StrategyFailed("boom")),
            ScriptedStrategy("direct", error=RuntimeError("crash")),
        )

        job = await runner.run("job-1")

        assert job.stage == "error"
        assert job.error == ExtractionExhausted.public_message
        assert job.active is False

        requeued = await store.requeue("job-1")
        assert requeued.stage == "queued"
        assert requeued.retryCount == 1
        assert requeued.error is None
        assert requeued.active is True

    async def test_mid_stream_failure_is_job_error(self, store, sink, new_job) -> None:
        await new_job()

        class Broken(ScriptedStrategy):
            async def attempt(self, url, on_progress):
                async def _chunks():
                    yield b"first"
                    raise StrategyFailed("connection reset", public_message="Download interrupted")

                return AudioStream(_chunks(), strategy=self.name)

        job = await make_runner(store, sink, Broken("ytdlp")).run("job-1")

        assert job.stage == "error"
        assert job.error == "Download interrupted"
        assert await sink.list("owner-1") == []

    async def test_not_queued_job_is_skipped(self, store, sink, new_job) -> None:
        await new_job()
        await store.transition("job-1", to="canceled", allowed_from={"queued"})
        strategy = ScriptedStrategy("ytdlp")

        job = await make_runner(store, sink, strategy).run("job-1")

        assert job.stage == "canceled"
        assert strategy.calls == 0


class TestProgress:
    async def test_progress_is_monotonic_per_stage(self, store, sink, new_job) -> None:
        await new_job()
        chunks = [b"x" * 10] * 10
        strategy = ScriptedStrategy("ytdlp", chunks, progress=(10, 50, 30, 90), total_bytes=100)

        await make_runner(store, sink, strategy).run("job-1")

        last = {}
        for stage, progress in store.history:
            assert progress >= last.get(stage, 0), store.history
            last[stage] = progress

        upload_entry = next(p for s, p in store.history if s == "uploading")
        assert upload_entry == 0
        assert all(p < 100 for s, p in store.history if s != "done")


class TestCancellation:
    async def test_cancel_mid_upload(self, store, sink, new_job) -> None:
        await new_job()
        gate = asyncio.Event()
        strategy = ScriptedStrategy("ytdlp", [b"a", b"b"], gate=gate)
        supervisor = make_supervisor(store, sink, strategy)

        supervisor.launch("job-1")
        await wait_for_stage(store, "job-1", "uploading")
        assert await store.transition(
            "job-1", to="canceled", allowed_from={"queued", "downloading", "uploading"}
        )
        assert supervisor.cancel("job-1") is True
        await supervisor.wait("job-1", timeout=2)

        job = await store.get("job-1")
        assert job.stage == "canceled"
        assert job.outputRef is None
        assert job.active is False
        assert strategy.closed is True
        assert await sink.list("owner-1") == []

    async def test_cancel_races_completion(self, store, sink, new_job) -> None:
        """Store-level cancel with no task cancel: the runner must still lose cleanly."""
        await new_job()
        gate = asyncio.Event()
        strategy = ScriptedStrategy("ytdlp", [b"a", b"b", b"c"], gate=gate)
        supervisor = make_supervisor(store, sink, strategy)

        supervisor.launch("job-1")
        await wait_for_stage(store, "job-1", "uploading")
        await store.transition(
            "job-1", to="canceled", allowed_from={"queued", "downloading", "uploading"}
        )
        gate.set()
        await supervisor.wait("job-1", timeout=2)

        job = await store.get("job-1")
        assert job.stage == "canceled"
        assert job.outputRef is None
        assert await sink.list("owner-1") == []
        assert "done" not in store.stages()

    async def test_shutdown_records_retryable_error(self, store, sink, new_job) -> None:
        await new_job()
        gate = asyncio.Event()
        supervisor = make_supervisor(store, sink, ScriptedStrategy("ytdlp", [b"a", b"b"], gate=gate))

        supervisor.launch("job-1")
        await wait_for_stage(store, "job-1", "uploading")
        await supervisor.shutdown(timeout=2)

        job = await store.get("job-1")
        assert job.stage == "error"
        assert job.error == INTERRUPTED_MESSAGE
        assert (await store.requeue("job-1")).stage == "queued"

    async def test_shutdown_during_done_write_discards_upload(self, sink) -> None:
        store = SlowCommitStore()
        await store.create(Job(id="job-1", owner="owner-1", sourceUrl=SOURCE_URL))
        supervisor = make_supervisor(store, sink, ScriptedStrategy("ytdlp", [b"abc"]))

        supervisor.launch("job-1")
        await asyncio.wait_for(store.committing.wait(), 2)
        await supervisor.shutdown(timeout=2)

        job = await store.get("job-1")
        assert job.stage == "error"
        assert job.error == INTERRUPTED_MESSAGE
        assert job.outputRef is None
        assert await wait_until_empty(sink, "owner-1") == []
