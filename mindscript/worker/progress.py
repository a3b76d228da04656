"""Weighted multi-stage progress for a single render job."""

import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum, auto
from typing import Final

from loguru import logger

from mindscript.contracts import ProgressUpdate

DEFAULT_MESSAGE = "Processing"


class ProgressStage(StrEnum):
    INITIALIZING = auto()
    DOWNLOADING_ASSETS = auto()
    GENERATING_VOICE = auto()
    GENERATING_TONES = auto()
    MIXING_AUDIO = auto()
    NORMALIZING = auto()
    UPLOADING = auto()


@dataclass(frozen=True)
class StageDefinition:
    weight: int
    message: str


# Order matters: progress counts every stage before the current one as done.
STAGES: Final[dict[ProgressStage, StageDefinition]] = {
    ProgressStage.INITIALIZING: StageDefinition(5, "Initializing job"),
    ProgressStage.DOWNLOADING_ASSETS: StageDefinition(10, "Downloading assets"),
    ProgressStage.GENERATING_VOICE: StageDefinition(30, "Generating voice"),
    ProgressStage.GENERATING_TONES: StageDefinition(10, "Creating tones"),
    ProgressStage.MIXING_AUDIO: StageDefinition(25, "Mixing audio layers"),
    ProgressStage.NORMALIZING: StageDefinition(10, "Normalizing audio"),
    ProgressStage.UPLOADING: StageDefinition(10, "Uploading to storage"),
}
STAGE_ORDER: Final[list[ProgressStage]] = list(STAGES)

assert sum(s.weight for s in STAGES.values()) == 100

ProgressCallback = Callable[[ProgressUpdate], Awaitable[None]]


@dataclass(frozen=True)
class StageError:
    stage: ProgressStage | None
    message: str
    timestamp: float  # tracker clock, same timeline as stage durations


@dataclass(frozen=True)
class ProgressSummary:
    completed_stages: list[ProgressStage]
    stage_durations: dict[ProgressStage, float]
    total_duration: float
    has_errors: bool
    errors: list[StageError]


class ProgressTracker:
    """Tracks stage progress and reports a 0-100 total through `on_update`.

    Fraction updates are throttled to one report per `throttle_seconds`; stage transitions and
    message changes always report immediately. The reported total never decreases.
    """

    def __init__(
        self,
        job_id: uuid.UUID,
        on_update: ProgressCallback | None = None,
        *,
        auto_advance: bool = False,
        throttle_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job_id = job_id
        self.auto_advance = auto_advance
        self._on_update = on_update
        self._throttle = throttle_seconds
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        self._current: ProgressStage | None = None
        self._fractions: dict[ProgressStage, float] = {stage: 0.0 for stage in STAGE_ORDER}
        self._completed: set[ProgressStage] = set()
        self._started_at: dict[ProgressStage, float] = {}
        self._durations: dict[ProgressStage, float] = {}
        self._errors: list[StageError] = []
        self._custom_message: str | None = None
        self._created_at = self._clock()
        self._last_flush: float | None = None
        self._last_reported = 0

    @property
    def current_stage(self) -> ProgressStage | None:
        return self._current

    @property
    def errors(self) -> list[StageError]:
        return list(self._errors)

    @property
    def has_errors(self) -> bool:
        return bool(self._errors)

    @property
    def message(self) -> str:
        if self._custom_message:
            return self._custom_message
        return STAGES[self._current].message if self._current else DEFAULT_MESSAGE

    @property
    def total_progress(self) -> int:
        total = 0.0
        current_idx = STAGE_ORDER.index(self._current) if self._current else -1
        for idx, stage in enumerate(STAGE_ORDER):
            weight = STAGES[stage].weight
            if stage in self._completed or idx < current_idx:
                total += weight
            elif stage == self._current:
                total += weight * self._fractions[stage]
        return max(self._last_reported, min(100, round(total)))

    def is_stage_complete(self, stage: ProgressStage) -> bool:
        return stage in self._completed

    def elapsed(self, stage: ProgressStage | None = None) -> float:
        """Seconds spent in `stage` (so far, if running), or since the tracker was created."""
        if stage is None:
            return self._clock() - self._created_at
        if stage in self._durations:
            return self._durations[stage]
        if stage in self._started_at:
            return self._clock() - self._started_at[stage]
        return 0.0

    async def start_stage(self, stage: ProgressStage) -> None:
        if stage == self._current:
            return
        if self._current is not None and self.auto_advance:
            self._finish_current()
        self._current = stage
        self._fractions[stage] = 0.0
        self._started_at[stage] = self._clock()
        logger.bind(job_id=self.job_id).debug(f"Stage started: {stage}")
        await self._flush(force=True)

    async def update_fraction(self, fraction: float) -> None:
        if self._current is None:
            return
        self._fractions[self._current] = min(1.0, max(0.0, fraction))
        await self._flush()

    async def complete_stage(self) -> None:
        if self._current is None:
            return
        finished = self._finish_current()
        self._current = None
        if self.auto_advance:
            idx = STAGE_ORDER.index(finished)
            if idx + 1 < len(STAGE_ORDER):
                await self.start_stage(STAGE_ORDER[idx + 1])
                return
        await self._flush(force=True)

    async def set_custom_message(self, message: str | None) -> None:
        if message == self._custom_message:
            return
        self._custom_message = message
        await self._flush(force=True)

    def record_error(self, error: BaseException | str) -> None:
        self._errors.append(StageError(stage=self._current, message=str(error), timestamp=self._clock()))

    def summary(self) -> ProgressSummary:
        return ProgressSummary(
            completed_stages=[s for s in STAGE_ORDER if s in self._completed],
            stage_durations=dict(self._durations),
            total_duration=self.elapsed(),
            has_errors=self.has_errors,
            errors=self.errors,
        )

    def _finish_current(self) -> ProgressStage:
        stage = self._current
        assert stage is not None
        self._fractions[stage] = 1.0
        self._completed.add(stage)
        self._durations[stage] = self._clock() - self._started_at.get(stage, self._clock())
        return stage

    async def _flush(self, *, force: bool = False) -> None:
        now = self._clock()
        if not force and self._last_flush is not None and now - self._last_flush < self._throttle:
            return
        self._last_flush = now
        progress = self.total_progress
        self._last_reported = progress
        if self._on_update is None:
            return
        await self._on_update(
            ProgressUpdate(job_id=self.job_id, progress=progress, message=self.message, stage=self._current)
        )
