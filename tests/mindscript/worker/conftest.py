import asyncio
import datetime as dt
import uuid
from typing import Any

import pytest

from mindscript.contracts import AudioLayers, Job, JobFilter, JobPage, JobPayload, JobSpec, JobStatus, VoiceLayer
from mindscript.worker.store import JobCallback, JobStore, Unsubscribe


class InMemoryJobStore(JobStore):
    """Just enough of a job store for driving the orchestrator."""

    def __init__(self) -> None:
        self.pending: list[Job] = []
        self.completed: dict[uuid.UUID, dict[str, Any]] = {}
        self.failed: dict[uuid.UUID, tuple[str, dict[str, Any] | None]] = {}
        self.cancelled: dict[uuid.UUID, str] = {}
        self.progress: list[tuple[uuid.UUID, int, str | None]] = []
        self.stale_cleanups: list[dt.timedelta] = []
        self.claims = 0
        self.claim_error: Exception | None = None
        self.progress_error: Exception | None = None
        self.ping_error: Exception | None = None

    def add(self, owner_id: str = "ok") -> Job:
        job = Job(
            id=uuid.uuid4(),
            owner_id=owner_id,
            status=JobStatus.PENDING,
            payload=JobPayload(
                script_text="Relax.", layers=AudioLayers(voice=VoiceLayer(enabled=True, voice_code="alloy"))
            ),
            created_at=dt.datetime.now(tz=dt.UTC),
        )
        self.pending.append(job)
        return job

    async def submit(self, spec: JobSpec) -> Job:
        raise NotImplementedError

    async def get(self, job_id: uuid.UUID) -> Job | None:
        raise NotImplementedError

    async def claim_next(self, worker_id: str) -> Job | None:
        await asyncio.sleep(0)
        if self.claim_error is not None:
            raise self.claim_error
        if not self.pending:
            return None
        self.claims += 1
        job = self.pending.pop(0)
        return job.model_copy(update={"status": JobStatus.PROCESSING, "locked_by": worker_id})

    async def report_progress(self, job_id: uuid.UUID, progress: int, message: str | None) -> bool:
        if self.progress_error is not None:
            raise self.progress_error
        self.progress.append((job_id, progress, message))
        return True

    async def complete(self, job_id: uuid.UUID, metadata: dict[str, Any]) -> bool:
        self.completed[job_id] = metadata
        return True

    async def fail(self, job_id: uuid.UUID, message: str, details: dict[str, Any] | None = None) -> bool:
        self.failed[job_id] = (message, details)
        return True

    async def mark_cancelled(self, job_id: uuid.UUID, message: str) -> bool:
        self.cancelled[job_id] = message
        return True

    async def cancel(self, job_id: uuid.UUID, owner_id: str) -> bool:
        raise NotImplementedError

    async def list(self, owner_id: str, job_filter: JobFilter | None = None) -> JobPage:
        raise NotImplementedError

    def subscribe(self, job_id: uuid.UUID, on_change: JobCallback) -> Unsubscribe:
        raise NotImplementedError

    async def cleanup_stale_jobs(self, stale_after: dt.timedelta) -> int:
        self.stale_cleanups.append(stale_after)
        return 0

    async def ping(self) -> None:
        if self.ping_error is not None:
            raise self.ping_error


@pytest.fixture
def job_store():
    return InMemoryJobStore()
