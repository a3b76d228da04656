"""Tests for job polling, concurrency, outcome reporting and shutdown of the orchestrator."""

import asyncio
import datetime as dt
import uuid

import pytest

from mindscript.worker.events import Idle, JobCompleted, JobFailed, JobStarted, Started, Stopped
from mindscript.worker.exceptions import StoreUnavailableError
from mindscript.worker.orchestrator import JobOrchestrator
from mindscript.worker.processor import JobOutcome, RenderResult
from mindscript.worker.progress import ProgressStage


class ScriptedRunners:
    """Processor factory whose runners behave according to the job's owner id.

    "ok" completes, "fail" fails, "crash" raises. Every runner waits for `gate` first, or
    returns a cancelled outcome if its token is tripped while waiting.
    """

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.gate.set()
        self.active = 0
        self.peak = 0
        self.cleanups = 0
        self.cleanup_error: Exception | None = None

    def __call__(self, tracker, token):
        return ScriptedRunner(self, tracker, token)


class ScriptedRunner:
    def __init__(self, runners: ScriptedRunners, tracker, token) -> None:
        self.runners = runners
        self.tracker = tracker
        self.token = token

    async def run(self, job) -> JobOutcome:
        runners = self.runners
        runners.active += 1
        runners.peak = max(runners.peak, runners.active)
        try:
            await self.tracker.start_stage(ProgressStage.INITIALIZING)
            while not runners.gate.is_set() and not self.token.cancelled:
                await asyncio.sleep(0.005)
            if self.token.cancelled:
                return JobOutcome(
                    job_id=job.id, error_message=self.token.reason, error_details={"kind": "cancelled"}, cancelled=True
                )
            if job.owner_id == "crash":
                raise RuntimeError("runner exploded")
            if job.owner_id == "fail":
                return JobOutcome(job_id=job.id, error_message="TTS failed", error_details={"kind": "provider"})
            await self.tracker.complete_stage()
            return JobOutcome(
                job_id=job.id,
                result=RenderResult(output_url=f"https://cdn.example/{job.id}.mp3", metadata={"job_id": str(job.id)}),
            )
        finally:
            runners.active -= 1

    async def cleanup(self) -> None:
        self.runners.cleanups += 1
        if self.runners.cleanup_error is not None:
            raise self.runners.cleanup_error


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


def drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture
def runners():
    return ScriptedRunners()


@pytest.fixture
async def make_orchestrator(job_store, runners):
    created: list[JobOrchestrator] = []

    def build(**kwargs) -> JobOrchestrator:
        options = {
            "worker_id": "worker-test",
            "max_concurrent_jobs": 2,
            "poll_interval": 0.01,
            "idle_timeout": 0,
            "stats_interval": 0,
            "progress_throttle": 0,
        } | kwargs
        orchestrator = JobOrchestrator(job_store, runners, **options)
        created.append(orchestrator)
        return orchestrator

    yield build
    for orchestrator in created:
        await orchestrator.stop()


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_never_exceeds_concurrency_cap(self, make_orchestrator, job_store, runners):
        for _ in range(6):
            job_store.add()
        runners.gate.clear()
        orchestrator = make_orchestrator()

        await orchestrator.start()
        await wait_until(lambda: runners.active == 2)
        await asyncio.sleep(0.05)
        assert orchestrator.in_flight == 2
        assert len(job_store.pending) == 4

        runners.gate.set()
        await wait_until(lambda: orchestrator.statistics().processed == 6)
        assert runners.peak == 2
        assert len(job_store.completed) == 6

    @pytest.mark.asyncio
    async def test_burst_drains_without_waiting_for_poll_interval(self, make_orchestrator, job_store):
        for _ in range(4):
            job_store.add()
        orchestrator = make_orchestrator(poll_interval=30, max_concurrent_jobs=4)

        await orchestrator.start()
        await wait_until(lambda: len(job_store.completed) == 4, timeout=1)


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_outcomes_are_forwarded_to_the_store(self, make_orchestrator, job_store):
        ok = job_store.add("ok")
        failed = job_store.add("fail")
        crashed = job_store.add("crash")
        orchestrator = make_orchestrator()

        await orchestrator.start()
        await wait_until(lambda: orchestrator.statistics().processed == 3)

        assert job_store.completed[ok.id] == {"job_id": str(ok.id)}
        assert job_store.failed[failed.id] == ("TTS failed", {"kind": "provider"})
        message, details = job_store.failed[crashed.id]
        assert "runner exploded" in message
        assert details["kind"] == "internal"

        stats = orchestrator.statistics()
        assert (stats.succeeded, stats.failed, stats.cancelled) == (1, 2, 0)
        assert stats.in_flight == 0

    @pytest.mark.asyncio
    async def test_events_describe_job_lifecycle(self, make_orchestrator, job_store):
        ok = job_store.add("ok")
        failed = job_store.add("fail")
        orchestrator = make_orchestrator()
        events = orchestrator.subscribe()

        await orchestrator.start()
        await wait_until(lambda: orchestrator.statistics().processed == 2)
        await orchestrator.stop()

        received = drain(events)
        assert isinstance(received[0], Started)
        assert isinstance(received[-1], Stopped)
        assert received[-1].stats.processed == 2
        assert {e.job_id for e in received if isinstance(e, JobStarted)} == {ok.id, failed.id}
        completed = [e for e in received if isinstance(e, JobCompleted)]
        assert [e.job_id for e in completed] == [ok.id]
        assert completed[0].output_url.endswith(f"{ok.id}.mp3")
        failures = [e for e in received if isinstance(e, JobFailed)]
        assert [(e.job_id, e.error) for e in failures] == [(failed.id, "TTS failed")]

    @pytest.mark.asyncio
    async def test_progress_is_reported_to_the_store(self, make_orchestrator, job_store):
        job = job_store.add()
        orchestrator = make_orchestrator()

        await orchestrator.start()
        await wait_until(lambda: job.id in job_store.completed)

        assert (job.id, 0, "Initializing job") in job_store.progress
        assert (job.id, 5, "Processing") in job_store.progress

    @pytest.mark.asyncio
    async def test_progress_failures_do_not_fail_the_job(self, make_orchestrator, job_store):
        job_store.progress_error = RuntimeError("write conflict")
        job = job_store.add()
        orchestrator = make_orchestrator()

        await orchestrator.start()
        await wait_until(lambda: job.id in job_store.completed)
        assert orchestrator.statistics().failed == 0

    @pytest.mark.asyncio
    async def test_running_mean_of_processing_time(self, make_orchestrator):
        orchestrator = make_orchestrator()
        job_id = uuid.uuid4()
        orchestrator._record(JobOutcome(job_id=job_id, result=RenderResult(output_url="u", metadata={})), 100)
        orchestrator._record(JobOutcome(job_id=job_id, error_message="boom"), 300)
        orchestrator._record(JobOutcome(job_id=job_id, cancelled=True), 200)

        stats = orchestrator.statistics()
        assert stats.average_processing_ms == 200
        assert (stats.processed, stats.succeeded, stats.failed, stats.cancelled) == (3, 1, 1, 1)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_running_job(self, make_orchestrator, job_store, runners):
        runners.gate.clear()
        job = job_store.add()
        orchestrator = make_orchestrator()

        await orchestrator.start()
        await wait_until(lambda: runners.active == 1)
        assert not orchestrator.cancel_job(uuid.uuid4())
        assert orchestrator.cancel_job(job.id, "user requested")

        await wait_until(lambda: orchestrator.statistics().processed == 1)
        assert job_store.cancelled == {job.id: "user requested"}
        assert orchestrator.statistics().cancelled == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_jobs(self, make_orchestrator, job_store, runners):
        runners.gate.clear()
        first = job_store.add()
        orchestrator = make_orchestrator(poll_interval=30)
        events = orchestrator.subscribe()

        await orchestrator.start()
        await wait_until(lambda: runners.active == 1)
        late = job_store.add()

        stopping = asyncio.create_task(orchestrator.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()

        runners.gate.set()
        await asyncio.wait_for(stopping, timeout=2)

        assert first.id in job_store.completed
        assert [j.id for j in job_store.pending] == [late.id]
        assert runners.cleanups >= 1
        stopped = [e for e in drain(events) if isinstance(e, Stopped)]
        assert len(stopped) == 1
        assert stopped[0].stats.processed == 1
        assert not orchestrator.running

    @pytest.mark.asyncio
    async def test_stop_completes_when_cleanup_raises(self, make_orchestrator, job_store, runners):
        runners.gate.clear()
        runners.cleanup_error = OSError("workspace busy")
        job = job_store.add()
        orchestrator = make_orchestrator(poll_interval=30)
        events = orchestrator.subscribe()

        await orchestrator.start()
        await wait_until(lambda: runners.active == 1)
        stopping = asyncio.create_task(orchestrator.stop())
        runners.gate.set()
        await asyncio.wait_for(stopping, timeout=2)

        assert job.id in job_store.completed
        assert runners.cleanups == 1
        assert sum(isinstance(e, Stopped) for e in drain(events)) == 1
        await asyncio.wait_for(orchestrator.wait_stopped(), timeout=1)

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, make_orchestrator):
        orchestrator = make_orchestrator()
        events = orchestrator.subscribe()
        await orchestrator.start()

        await asyncio.gather(orchestrator.stop(), orchestrator.stop())
        await orchestrator.stop()

        assert sum(isinstance(e, Stopped) for e in drain(events)) == 1

    @pytest.mark.asyncio
    async def test_idle_worker_stops_itself(self, make_orchestrator):
        orchestrator = make_orchestrator(idle_timeout=0.05)
        events = orchestrator.subscribe()

        await orchestrator.start()
        await asyncio.wait_for(orchestrator.wait_stopped(), timeout=2)

        received = drain(events)
        assert [type(e) for e in received] == [Started, Idle, Stopped]
        assert received[1].idle_seconds >= 0.05

    @pytest.mark.asyncio
    async def test_stale_jobs_are_cleaned_up_on_start(self, make_orchestrator, job_store):
        orchestrator = make_orchestrator(stale_job_timeout=600)
        await orchestrator.start()
        assert job_store.stale_cleanups == [dt.timedelta(seconds=600)]

    @pytest.mark.asyncio
    async def test_rejects_invalid_concurrency(self, job_store, runners):
        with pytest.raises(ValueError):
            JobOrchestrator(job_store, runners, worker_id="w", max_concurrent_jobs=0)


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy_worker(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.start()

        report = await orchestrator.health()
        assert report.status == "healthy"
        assert report.store_reachable
        assert report.worker_id == "worker-test"
        assert report.last_error is None

    @pytest.mark.asyncio
    async def test_unreachable_store_is_unhealthy(self, make_orchestrator, job_store):
        job_store.ping_error = StoreUnavailableError("connection refused")
        report = await make_orchestrator().health()

        assert report.status == "unhealthy"
        assert not report.store_reachable
        assert report.last_error == "connection refused"

    @pytest.mark.asyncio
    async def test_claim_errors_mark_unhealthy_until_next_success(self, make_orchestrator, job_store):
        job_store.claim_error = StoreUnavailableError("database is locked")
        orchestrator = make_orchestrator()

        await orchestrator.start()
        await wait_until(lambda: orchestrator.last_error is not None)
        assert (await orchestrator.health()).status == "unhealthy"

        job_store.claim_error = None
        await wait_until(lambda: orchestrator.last_error is None)
        assert (await orchestrator.health()).status == "healthy"
