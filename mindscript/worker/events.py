"""Lifecycle events published by the orchestrator to its subscribers."""

import uuid
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel


class WorkerStatistics(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    average_processing_ms: float = 0.0
    in_flight: int = 0
    uptime_seconds: float = 0.0


class HealthReport(BaseModel):
    status: str  # "healthy" | "unhealthy"
    worker_id: str
    uptime_seconds: float
    active_jobs: int
    store_reachable: bool
    last_error: str | None = None


@dataclass(frozen=True)
class Started:
    worker_id: str


@dataclass(frozen=True)
class JobStarted:
    job_id: uuid.UUID
    worker_id: str


@dataclass(frozen=True)
class JobCompleted:
    job_id: uuid.UUID
    duration_ms: int
    output_url: str


@dataclass(frozen=True)
class JobFailed:
    job_id: uuid.UUID
    duration_ms: int
    error: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Idle:
    idle_seconds: float


@dataclass(frozen=True)
class StatsTick:
    stats: WorkerStatistics


@dataclass(frozen=True)
class Stopped:
    worker_id: str
    stats: WorkerStatistics


OrchestratorEvent = Started | JobStarted | JobCompleted | JobFailed | Idle | StatsTick | Stopped
