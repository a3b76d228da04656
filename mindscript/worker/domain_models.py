import datetime as dt
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Index
from sqlalchemy.dialects import postgresql
from sqlmodel import JSON, TEXT, Column, DateTime, Field, SQLModel

from mindscript.contracts import Job, JobStatus


def _json_column(name: str | None = None, *, nullable: bool = True) -> Column:
    json_type = JSON().with_variant(postgresql.JSONB(), "postgresql")
    return Column(name, json_type, nullable=nullable) if name else Column(json_type, nullable=nullable)


def _timestamp(nullable: bool = True) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class AudioJob(SQLModel, table=True):
    """A render job. Claimed by exactly one worker; never moves back to an earlier status."""

    __tablename__ = "audio_job"
    __table_args__ = (Index("ix_audio_job_claim", "status", "priority", "created_at"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    owner_id: str = Field(index=True)
    project_id: uuid.UUID | None = Field(default=None)
    status: str = Field(default=JobStatus.PENDING)
    priority: int = Field(default=0)  # higher runs first

    payload: dict[str, Any] = Field(sa_column=_json_column(nullable=False))
    output_options: dict[str, Any] = Field(sa_column=_json_column(nullable=False))

    progress: int = Field(default=0)
    progress_message: str | None = Field(default=None)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(tz=dt.UTC),
        sa_column=_timestamp(nullable=False),
    )
    started_at: datetime | None = Field(default=None, sa_column=_timestamp())
    completed_at: datetime | None = Field(default=None, sa_column=_timestamp())
    locked_at: datetime | None = Field(default=None, sa_column=_timestamp())
    locked_by: str | None = Field(default=None)

    error_message: str | None = Field(default=None, sa_column=Column(TEXT, nullable=True))
    error_details: dict[str, Any] | None = Field(default=None, sa_column=_json_column())
    metadata_: dict[str, Any] | None = Field(  # name `metadata` reserved by SQLModel
        default=None,
        sa_column=_json_column("metadata"),
    )

    def to_contract(self) -> Job:
        return Job(
            id=self.id,
            owner_id=self.owner_id,
            project_id=self.project_id,
            status=JobStatus(self.status),
            priority=self.priority,
            payload=self.payload,
            output_options=self.output_options,
            progress=self.progress,
            progress_message=self.progress_message,
            retry_count=self.retry_count,
            max_retries=self.max_retries,
            created_at=_aware(self.created_at),
            started_at=_aware(self.started_at),
            completed_at=_aware(self.completed_at),
            locked_at=_aware(self.locked_at),
            locked_by=self.locked_by,
            error_message=self.error_message,
            error_details=self.error_details,
            metadata=self.metadata_,
        )


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=dt.UTC)
    return value
