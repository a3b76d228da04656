"""Polls the job store and runs render jobs under a concurrency cap."""

import asyncio
import datetime as dt
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from loguru import logger

from mindscript.contracts import Job, ProgressUpdate
from mindscript.worker.cancellation import CancellationToken
from mindscript.worker.events import (
    HealthReport,
    Idle,
    JobCompleted,
    JobFailed,
    JobStarted,
    OrchestratorEvent,
    Started,
    StatsTick,
    Stopped,
    WorkerStatistics,
)
from mindscript.worker.exceptions import StoreUnavailableError
from mindscript.worker.processor import JobOutcome
from mindscript.worker.progress import ProgressTracker
from mindscript.worker.store import JobStore

HEALTH_PING_TIMEOUT_SECONDS = 5.0


class JobRunner(Protocol):
    async def run(self, job: Job) -> JobOutcome: ...

    async def cleanup(self) -> None: ...


ProcessorFactory = Callable[[ProgressTracker, CancellationToken], JobRunner]


@dataclass
class _Execution:
    job: Job
    token: CancellationToken
    started: float
    runner: JobRunner | None = None
    task: asyncio.Task | None = None


class JobOrchestrator:
    """Claims jobs and runs each in its own task, never more than `max_concurrent_jobs` at once.

    In-flight executions and statistics are only touched from the event loop, so they need no
    locking. Stopping drains: no new claims, in-flight jobs run to completion, then cleanup.
    """

    def __init__(
        self,
        store: JobStore,
        processor_factory: ProcessorFactory,
        *,
        worker_id: str,
        max_concurrent_jobs: int = 2,
        poll_interval: float = 5.0,
        idle_timeout: float = 60.0,
        stats_interval: float = 30.0,
        stale_job_timeout: float | None = None,
        progress_throttle: float = 0.5,
    ) -> None:
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        self.store = store
        self.worker_id = worker_id
        self.max_concurrent_jobs = max_concurrent_jobs
        self.poll_interval = poll_interval
        self.idle_timeout = idle_timeout
        self.stats_interval = stats_interval
        self.stale_job_timeout = stale_job_timeout
        self.progress_throttle = progress_throttle
        self._processor_factory = processor_factory

        self._slots = asyncio.Semaphore(max_concurrent_jobs)
        self._executions: dict[uuid.UUID, _Execution] = {}
        self._subscribers: list[asyncio.Queue[OrchestratorEvent]] = []
        self._wakeup = asyncio.Event()
        self._stopped = asyncio.Event()
        self._running = False
        self._poll_task: asyncio.Task | None = None
        self._timers: list[asyncio.Task] = []
        self._shutdown_task: asyncio.Task | None = None
        self._idle_stop_task: asyncio.Task | None = None

        self._started_at: float | None = None
        self._last_activity = time.monotonic()
        self._last_error: str | None = None
        self._processed = 0
        self._succeeded = 0
        self._failed = 0
        self._cancelled = 0
        self._average_ms = 0.0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._executions)

    @property
    def last_error(self) -> str | None:
        return self._last_error

    async def start(self) -> None:
        if self._running:
            return
        if self._shutdown_task is not None:
            raise RuntimeError("A stopped orchestrator cannot be restarted")

        self._running = True
        self._started_at = self._last_activity = time.monotonic()
        if self.stale_job_timeout:
            try:
                await self.store.cleanup_stale_jobs(dt.timedelta(seconds=self.stale_job_timeout))
            except StoreUnavailableError as e:
                self._last_error = str(e)
                logger.warning(f"Stale job cleanup skipped: {e}")

        self._emit(Started(worker_id=self.worker_id))
        self._poll_task = asyncio.create_task(self._poll_loop(), name="orchestrator-poll")
        if self.idle_timeout > 0:
            self._timers.append(asyncio.create_task(self._idle_loop(), name="orchestrator-idle"))
        if self.stats_interval > 0:
            self._timers.append(asyncio.create_task(self._stats_loop(), name="orchestrator-stats"))
        logger.info(
            f"Worker {self.worker_id} started: max {self.max_concurrent_jobs} concurrent job(s), "
            f"polling every {self.poll_interval}s"
        )

    async def stop(self) -> None:
        """Drain and stop. Idempotent; concurrent callers all wait for the same shutdown."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._shutdown(), name="orchestrator-shutdown")
        await asyncio.shield(self._shutdown_task)

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def cancel_job(self, job_id: uuid.UUID, reason: str = "Cancelled by request") -> bool:
        """Ask a running job to stop at its next stage boundary."""
        execution = self._executions.get(job_id)
        if execution is None:
            return False
        execution.token.cancel(reason)
        logger.bind(job_id=str(job_id)).info(f"Cancellation requested: {reason}")
        return True

    async def update_job_progress(self, update: ProgressUpdate) -> None:
        """Progress callback for trackers. A failed write never fails the job."""
        try:
            await self.store.report_progress(update.job_id, update.progress, update.message)
        except Exception as e:
            logger.bind(job_id=str(update.job_id)).warning(f"Progress update failed: {e}")

    def statistics(self) -> WorkerStatistics:
        return WorkerStatistics(
            processed=self._processed,
            succeeded=self._succeeded,
            failed=self._failed,
            cancelled=self._cancelled,
            average_processing_ms=round(self._average_ms, 1),
            in_flight=self.in_flight,
            uptime_seconds=self._uptime(),
        )

    async def health(self) -> HealthReport:
        reachable = True
        ping_error = None
        try:
            await asyncio.wait_for(self.store.ping(), timeout=HEALTH_PING_TIMEOUT_SECONDS)
        except (StoreUnavailableError, TimeoutError) as e:
            reachable = False
            ping_error = str(e) or "Job store ping timed out"
        return HealthReport(
            status="healthy" if reachable and self._last_error is None else "unhealthy",
            worker_id=self.worker_id,
            uptime_seconds=self._uptime(),
            active_jobs=self.in_flight,
            store_reachable=reachable,
            last_error=self._last_error or ping_error,
        )

    def subscribe(self) -> asyncio.Queue[OrchestratorEvent]:
        queue: asyncio.Queue[OrchestratorEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[OrchestratorEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _emit(self, event: OrchestratorEvent) -> None:
        for queue in self._subscribers:
            queue.put_nowait(event)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self._drain()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._last_error = str(e)
                logger.exception("Poll tick failed")

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass
            self._wakeup.clear()

    async def _drain(self) -> None:
        """Claim jobs back to back until the queue is empty or every slot is taken."""
        while self._running and not self._slots.locked():
            await self._slots.acquire()
            try:
                job = await self.store.claim_next(self.worker_id)
            except StoreUnavailableError as e:
                self._slots.release()
                self._last_error = str(e)
                logger.warning(f"Claiming failed, retrying next tick: {e}")
                return
            except BaseException:
                self._slots.release()
                raise

            self._last_error = None
            if job is None:
                self._slots.release()
                return
            self._spawn(job)

    def _spawn(self, job: Job) -> None:
        execution = _Execution(job=job, token=CancellationToken(), started=time.monotonic())
        self._executions[job.id] = execution
        self._last_activity = execution.started
        execution.task = asyncio.create_task(self._execute(execution), name=f"job-{job.id}")
        self._emit(JobStarted(job_id=job.id, worker_id=self.worker_id))
        logger.bind(job_id=str(job.id)).info(f"Job started ({self.in_flight}/{self.max_concurrent_jobs} in flight)")

    async def _execute(self, execution: _Execution) -> None:
        job = execution.job
        job_log = logger.bind(job_id=str(job.id), worker_id=self.worker_id)
        outcome: JobOutcome | None = None
        try:
            try:
                tracker = ProgressTracker(
                    job.id, on_update=self.update_job_progress, throttle_seconds=self.progress_throttle
                )
                execution.runner = self._processor_factory(tracker, execution.token)
                outcome = await execution.runner.run(job)
            except Exception as e:
                job_log.exception("Job execution crashed")
                outcome = JobOutcome(
                    job_id=job.id,
                    error_message=f"Internal error: {type(e).__name__}: {e}",
                    error_details={"kind": "internal", "message": str(e)},
                )
            await self._report_outcome(outcome, job_log)
        finally:
            duration_ms = int((time.monotonic() - execution.started) * 1000)
            self._executions.pop(job.id, None)
            self._slots.release()
            self._last_activity = time.monotonic()
            if execution.runner is not None:
                try:
                    await execution.runner.cleanup()
                except Exception:
                    job_log.exception("Job cleanup failed")
            self._record(outcome, duration_ms)
            self._wakeup.set()
            self._emit(_finished_event(job, outcome, duration_ms))

    async def _report_outcome(self, outcome: JobOutcome, job_log) -> None:
        try:
            if outcome.result is not None:
                await self.store.complete(outcome.job_id, outcome.result.metadata)
                job_log.info(f"Job completed: {outcome.result.output_url}")
            elif outcome.cancelled:
                await self.store.mark_cancelled(outcome.job_id, outcome.error_message or "Job cancelled")
            else:
                await self.store.fail(outcome.job_id, outcome.error_message or "Unknown error", outcome.error_details)
                job_log.warning(f"Job failed: {outcome.error_message}")
        except Exception as e:
            self._last_error = f"Could not record outcome of job {outcome.job_id}: {e}"
            job_log.exception("Recording job outcome failed")

    def _record(self, outcome: JobOutcome | None, duration_ms: int) -> None:
        self._processed += 1
        if outcome is not None and outcome.succeeded:
            self._succeeded += 1
        elif outcome is not None and outcome.cancelled:
            self._cancelled += 1
        else:
            self._failed += 1
        n = self._processed
        self._average_ms = (self._average_ms * (n - 1) + duration_ms) / n

    async def _idle_loop(self) -> None:
        while self._running:
            idle_for = time.monotonic() - self._last_activity
            if idle_for >= self.idle_timeout and not self._executions:
                logger.info(f"No jobs for {idle_for:.0f}s, stopping")
                self._emit(Idle(idle_seconds=idle_for))
                self._idle_stop_task = asyncio.create_task(self.stop(), name="orchestrator-idle-stop")
                return
            remaining = self.idle_timeout - idle_for
            await asyncio.sleep(remaining if remaining > 0 else self.idle_timeout)

    async def _stats_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.stats_interval)
            stats = self.statistics()
            logger.info(
                f"Stats: {stats.processed} processed ({stats.succeeded} ok, {stats.failed} failed), "
                f"avg {stats.average_processing_ms:.0f}ms, {stats.in_flight} in flight"
            )
            self._emit(StatsTick(stats=stats))

    async def _shutdown(self) -> None:
        logger.info(f"Worker {self.worker_id} stopping")
        self._running = False
        self._wakeup.set()

        current = asyncio.current_task()
        for timer in self._timers:
            if timer is not current:
                timer.cancel()
        await asyncio.gather(*(t for t in self._timers if t is not current), return_exceptions=True)
        # the poll task is not cancelled so a claim in progress is never abandoned mid-transaction
        if self._poll_task is not None:
            await asyncio.gather(self._poll_task, return_exceptions=True)

        # each execution runs its processor cleanup before its task finishes
        executions = list(self._executions.values())
        if executions:
            logger.info(f"Waiting for {len(executions)} in-flight job(s) to finish")
            await asyncio.gather(*(e.task for e in executions if e.task is not None), return_exceptions=True)

        stats = self.statistics()
        self._emit(Stopped(worker_id=self.worker_id, stats=stats))
        self._stopped.set()
        logger.info(f"Worker {self.worker_id} stopped after {stats.processed} job(s)")

    def _uptime(self) -> float:
        return round(time.monotonic() - self._started_at, 3) if self._started_at is not None else 0.0


def _finished_event(job: Job, outcome: JobOutcome | None, duration_ms: int) -> OrchestratorEvent:
    if outcome is not None and outcome.result is not None:
        return JobCompleted(job_id=job.id, duration_ms=duration_ms, output_url=outcome.result.output_url)
    if outcome is None:
        return JobFailed(job_id=job.id, duration_ms=duration_ms, error="Execution interrupted")
    return JobFailed(
        job_id=job.id,
        duration_ms=duration_ms,
        error=outcome.error_message or "Unknown error",
        details=outcome.error_details or {},
    )
