"""Durable job queue over a relational database."""

import asyncio
import datetime as dt
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from pydantic import ValidationError
from sqlalchemy import exc as sa_exc
from sqlalchemy import func, text
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import col, select, update
from sqlmodel.ext.asyncio.session import AsyncSession

from mindscript.contracts import Job, JobFilter, JobPage, JobSpec, JobStatus
from mindscript.worker.db import create_engine, create_session_factory, prepare_database
from mindscript.worker.domain_models import AudioJob
from mindscript.worker.exceptions import StoreUnavailableError

log = logging.getLogger(__name__)

MAX_CLAIM_ATTEMPTS = 5
STALE_LOCK_MESSAGE = "Worker lock expired before the job finished"
INVALID_PAYLOAD_MESSAGE = "Job payload is invalid and cannot be rendered"

JobCallback = Callable[[Job], Awaitable[None]]
Unsubscribe = Callable[[], None]

_UNREACHABLE = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
    OSError,
)


class JobStore(ABC):
    """Job queue contract.

    Connectivity failures raise StoreUnavailableError and are not retried here; the caller's
    poll loop owns retry timing.
    """

    @abstractmethod
    async def submit(self, spec: JobSpec) -> Job: ...

    @abstractmethod
    async def get(self, job_id: uuid.UUID) -> Job | None: ...

    @abstractmethod
    async def claim_next(self, worker_id: str) -> Job | None:
        """Atomically move the next pending job to processing and lock it to `worker_id`."""

    @abstractmethod
    async def report_progress(self, job_id: uuid.UUID, progress: int, message: str | None) -> bool: ...

    @abstractmethod
    async def complete(self, job_id: uuid.UUID, metadata: dict[str, Any]) -> bool: ...

    @abstractmethod
    async def fail(self, job_id: uuid.UUID, message: str, details: dict[str, Any] | None = None) -> bool: ...

    @abstractmethod
    async def mark_cancelled(self, job_id: uuid.UUID, message: str) -> bool:
        """End a processing job that stopped on its cancellation token."""

    @abstractmethod
    async def cancel(self, job_id: uuid.UUID, owner_id: str) -> bool:
        """Cancel a job that has not been claimed yet. Only its owner may do so."""

    @abstractmethod
    async def list(self, owner_id: str, job_filter: JobFilter | None = None) -> JobPage: ...

    @abstractmethod
    def subscribe(self, job_id: uuid.UUID, on_change: JobCallback) -> Unsubscribe: ...

    @abstractmethod
    async def cleanup_stale_jobs(self, stale_after: dt.timedelta) -> int:
        """Fail processing jobs whose lock is older than `stale_after`. Returns how many."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise StoreUnavailableError if the store cannot be reached."""

    async def close(self) -> None:
        return None


class SqlJobStore(JobStore):
    def __init__(self, engine: AsyncEngine, *, watch_interval: float = 1.0) -> None:
        self._engine = engine
        self._sessions = create_session_factory(engine)
        self._watch_interval = watch_interval
        self._watchers: set[asyncio.Task] = set()

    @classmethod
    def from_url(cls, database_url: str, *, echo: bool = False, watch_interval: float = 1.0) -> "SqlJobStore":
        return cls(create_engine(database_url, echo=echo), watch_interval=watch_interval)

    async def prepare(self, *, drop_and_recreate: bool = False) -> None:
        async with self._guard("prepare"):
            await prepare_database(self._engine, drop_and_recreate=drop_and_recreate)

    async def submit(self, spec: JobSpec) -> Job:
        record = AudioJob(
            owner_id=spec.owner_id,
            project_id=spec.project_id,
            priority=spec.priority,
            payload=spec.payload.model_dump(mode="json"),
            output_options=spec.output_options.model_dump(mode="json"),
            max_retries=spec.max_retries,
        )
        async with self._session("submit") as db:
            db.add(record)
            await db.commit()
        log.info(f"Job {record.id} submitted by {spec.owner_id}")
        return record.to_contract()

    async def get(self, job_id: uuid.UUID) -> Job | None:
        async with self._session("get") as db:
            record = await db.get(AudioJob, job_id)
        return record.to_contract() if record else None

    async def claim_next(self, worker_id: str) -> Job | None:
        for _ in range(MAX_CLAIM_ATTEMPTS):
            async with self._session("claim") as db:
                candidate = (
                    await db.exec(
                        select(AudioJob.id)
                        .where(AudioJob.status == JobStatus.PENDING)
                        .order_by(col(AudioJob.priority).desc(), col(AudioJob.created_at))
                        .limit(1)
                        .with_for_update(skip_locked=True)
                    )
                ).first()
                if candidate is None:
                    return None

                now = _now()
                result = await db.exec(
                    update(AudioJob)
                    .where(col(AudioJob.id) == candidate, col(AudioJob.status) == JobStatus.PENDING)
                    .values(
                        status=JobStatus.PROCESSING,
                        locked_by=worker_id,
                        locked_at=now,
                        started_at=now,
                        progress=0,
                        progress_message=None,
                    )
                )
                if result.rowcount != 1:
                    await db.commit()
                    log.debug(f"Lost claim race for job {candidate}, trying the next one")
                    continue

                record = await db.get(AudioJob, candidate, populate_existing=True)
                assert record is not None
                try:
                    job = record.to_contract()
                except ValidationError as e:
                    # unreadable payloads can never run; fail them in the claiming transaction
                    await db.exec(
                        update(AudioJob)
                        .where(col(AudioJob.id) == candidate)
                        .values(
                            status=JobStatus.FAILED,
                            completed_at=now,
                            error_message=INVALID_PAYLOAD_MESSAGE,
                            error_details=_validation_details(e),
                        )
                    )
                    await db.commit()
                    log.warning(f"Job {candidate} failed at claim: stored payload is invalid ({e.error_count()} errors)")
                    continue

                await db.commit()
                log.info(f"Job {candidate} claimed by {worker_id}")
                return job
        return None

    async def report_progress(self, job_id: uuid.UUID, progress: int, message: str | None) -> bool:
        progress = max(0, min(100, int(progress)))
        return await self._transition(
            "progress",
            job_id,
            col(AudioJob.progress) <= progress,
            progress=progress,
            progress_message=message,
        )

    async def complete(self, job_id: uuid.UUID, metadata: dict[str, Any]) -> bool:
        return await self._transition(
            "complete",
            job_id,
            status=JobStatus.COMPLETED,
            progress=100,
            progress_message="Completed",
            completed_at=_now(),
            metadata_=metadata,
        )

    async def fail(self, job_id: uuid.UUID, message: str, details: dict[str, Any] | None = None) -> bool:
        return await self._transition(
            "fail",
            job_id,
            status=JobStatus.FAILED,
            completed_at=_now(),
            error_message=message,
            error_details=details,
        )

    async def mark_cancelled(self, job_id: uuid.UUID, message: str) -> bool:
        return await self._transition(
            "mark_cancelled",
            job_id,
            status=JobStatus.CANCELLED,
            completed_at=_now(),
            error_message=message,
        )

    async def cancel(self, job_id: uuid.UUID, owner_id: str) -> bool:
        async with self._session("cancel") as db:
            result = await db.exec(
                update(AudioJob)
                .where(
                    col(AudioJob.id) == job_id,
                    col(AudioJob.owner_id) == owner_id,
                    col(AudioJob.status) == JobStatus.PENDING,
                )
                .values(status=JobStatus.CANCELLED, completed_at=_now())
            )
            await db.commit()
        return result.rowcount == 1

    async def list(self, owner_id: str, job_filter: JobFilter | None = None) -> JobPage:
        job_filter = job_filter or JobFilter()
        conditions = [col(AudioJob.owner_id) == owner_id]
        if job_filter.status is not None:
            conditions.append(col(AudioJob.status) == job_filter.status)

        async with self._session("list") as db:
            total = (await db.exec(select(func.count()).select_from(AudioJob).where(*conditions))).one()
            records = (
                await db.exec(
                    select(AudioJob)
                    .where(*conditions)
                    .order_by(col(AudioJob.created_at).desc())
                    .offset(job_filter.offset)
                    .limit(job_filter.limit)
                )
            ).all()
        return JobPage(jobs=[r.to_contract() for r in records], total=total)

    def subscribe(self, job_id: uuid.UUID, on_change: JobCallback) -> Unsubscribe:
        task = asyncio.create_task(self._watch(job_id, on_change), name=f"watch-job-{job_id}")
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    async def cleanup_stale_jobs(self, stale_after: dt.timedelta) -> int:
        now = _now()
        cutoff = now - stale_after
        failed = 0
        async with self._session("cleanup_stale_jobs") as db:
            stale = (
                await db.exec(
                    select(AudioJob.id, AudioJob.locked_by).where(
                        col(AudioJob.status) == JobStatus.PROCESSING, col(AudioJob.locked_at) < cutoff
                    )
                )
            ).all()
            for job_id, locked_by in stale:
                result = await db.exec(
                    update(AudioJob)
                    .where(
                        col(AudioJob.id) == job_id,
                        col(AudioJob.status) == JobStatus.PROCESSING,
                        col(AudioJob.locked_at) < cutoff,
                    )
                    .values(
                        status=JobStatus.FAILED,
                        completed_at=now,
                        error_message=STALE_LOCK_MESSAGE,
                        error_details={"reason": "stale_lock", "locked_by": locked_by},
                    )
                )
                if result.rowcount:
                    failed += 1
                    log.warning(f"Job {job_id} failed: lock held by {locked_by} is older than {stale_after}")
            await db.commit()
        return failed

    async def ping(self) -> None:
        async with self._session("ping") as db:
            await db.exec(text("SELECT 1"))

    async def close(self) -> None:
        for task in list(self._watchers):
            task.cancel()
        if self._watchers:
            await asyncio.gather(*self._watchers, return_exceptions=True)
        await self._engine.dispose()

    async def _transition(self, operation: str, job_id: uuid.UUID, *conditions: Any, **values: Any) -> bool:
        """Apply `values` only while the job is processing, so terminal records stay immutable."""
        async with self._session(operation) as db:
            result = await db.exec(
                update(AudioJob)
                .where(col(AudioJob.id) == job_id, col(AudioJob.status) == JobStatus.PROCESSING, *conditions)
                .values({getattr(AudioJob, name): value for name, value in values.items()})
            )
            await db.commit()
        if result.rowcount != 1 and operation != "progress":
            log.warning(f"{operation} ignored for job {job_id}: not processing")
        return result.rowcount == 1

    async def _watch(self, job_id: uuid.UUID, on_change: JobCallback) -> None:
        last_seen: tuple | None = None
        while True:
            try:
                job = await self.get(job_id)
            except StoreUnavailableError as e:
                log.warning(f"Watching job {job_id}: {e}")
                await asyncio.sleep(self._watch_interval)
                continue
            if job is None:
                return

            snapshot = (job.status, job.progress, job.progress_message)
            if snapshot != last_seen:
                last_seen = snapshot
                try:
                    await on_change(job)
                except Exception:
                    log.exception(f"Subscriber callback for job {job_id} failed")
            if job.status.is_terminal:
                return
            await asyncio.sleep(self._watch_interval)

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._guard(operation):
            async with self._sessions() as session:
                yield session

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except _UNREACHABLE as e:
            raise StoreUnavailableError(f"Job store unreachable during {operation}: {e}") from e


def _now() -> dt.datetime:
    return dt.datetime.now(tz=dt.UTC)


def _validation_details(error: ValidationError) -> dict[str, Any]:
    return {
        "kind": "validation",
        "stage": "claim",
        "errors": [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
            for err in error.errors(include_url=False)
        ],
    }
