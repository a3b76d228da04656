"""Contracts for render jobs: persisted job records, payload layers, and progress updates."""

import datetime as dt
import uuid
from enum import StrEnum, auto
from typing import Annotated, Any, Final, Literal

import annotated_types
from pydantic import BaseModel, ConfigDict, Field

Gain = Annotated[float, annotated_types.Ge(-30), annotated_types.Le(10)]

MAX_SCRIPT_CHARS: Final[int] = 50_000

SOLFEGGIO_FREQUENCIES: Final[dict[int, str]] = {
    174: "Foundation",
    285: "Restoration",
    396: "Liberation",
    417: "Change",
    528: "Transformation",
    639: "Connection",
    741: "Expression",
    852: "Intuition",
    963: "Awakening",
}


class JobStatus(StrEnum):
    PENDING = auto()
    PROCESSING = auto()
    COMPLETED = auto()
    FAILED = auto()
    CANCELLED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class VoiceProvider(StrEnum):
    OPENAI = auto()
    ELEVENLABS = auto()
    UPLOADED = auto()


class LoopMode(StrEnum):
    REPEAT = auto()
    INTERVAL = auto()


class OutputFormat(StrEnum):
    MP3 = auto()
    WAV = auto()


class OutputQuality(StrEnum):
    STANDARD = auto()
    HIGH = auto()
    PREMIUM = auto()


class StorageLocation(StrEnum):
    PUBLIC = auto()
    PRIVATE = auto()


class BinauralBand(StrEnum):
    DELTA = auto()
    THETA = auto()
    ALPHA = auto()
    BETA = auto()
    GAMMA = auto()


BINAURAL_BANDS: Final[dict[BinauralBand, tuple[float, float]]] = {
    BinauralBand.DELTA: (0.5, 4.0),  # deep sleep
    BinauralBand.THETA: (4.0, 8.0),  # meditation
    BinauralBand.ALPHA: (8.0, 13.0),  # relaxed focus
    BinauralBand.BETA: (13.0, 30.0),  # active thinking
    BinauralBand.GAMMA: (30.0, 100.0),  # peak awareness
}

QUALITY_BITRATES: Final[dict[OutputQuality, str]] = {
    OutputQuality.STANDARD: "128k",
    OutputQuality.HIGH: "192k",
    OutputQuality.PREMIUM: "320k",
}


class VoiceLayer(BaseModel):
    enabled: bool = False
    provider: VoiceProvider = VoiceProvider.OPENAI
    voice_code: str | None = None  # provider-specific voice id
    voice_url: str | None = None  # only for uploaded voices
    model: str | None = None  # provider default when unset
    speed: float = 1.0

    model_config = ConfigDict(frozen=True)


class BackgroundLayer(BaseModel):
    enabled: bool = False
    track_url: str | None = None

    model_config = ConfigDict(frozen=True)


class SolfeggioLayer(BaseModel):
    enabled: bool = False
    hz: float = 528
    wave: Literal["sine", "triangle", "square"] = "sine"

    model_config = ConfigDict(frozen=True)


class BinauralLayer(BaseModel):
    enabled: bool = False
    band: BinauralBand = BinauralBand.ALPHA
    beat_hz: float | None = None  # band midpoint when unset
    carrier_hz: float = 220

    model_config = ConfigDict(frozen=True)


class LayerGains(BaseModel):
    voice_db: Gain = -1
    bg_db: Gain = -10
    solfeggio_db: Gain = -16
    binaural_db: Gain = -18

    model_config = ConfigDict(frozen=True)


class AudioLayers(BaseModel):
    voice: VoiceLayer = Field(default_factory=VoiceLayer)
    background: BackgroundLayer = Field(default_factory=BackgroundLayer)
    solfeggio: SolfeggioLayer = Field(default_factory=SolfeggioLayer)
    binaural: BinauralLayer = Field(default_factory=BinauralLayer)
    gains: LayerGains = Field(default_factory=LayerGains)

    model_config = ConfigDict(frozen=True)


class JobPayload(BaseModel):
    """What to render. Stored as JSON on the job record."""

    script_text: str = ""
    voice_ref: str | None = None  # "provider:code", overrides layers.voice when set
    duration_min: float = 10
    pause_sec: float = 0
    loop_mode: LoopMode = LoopMode.REPEAT
    interval_sec: float | None = None
    layers: AudioLayers = Field(default_factory=AudioLayers)

    model_config = ConfigDict(frozen=True)


class OutputOptions(BaseModel):
    format: OutputFormat = OutputFormat.MP3
    quality: OutputQuality = OutputQuality.HIGH
    storage_location: StorageLocation = StorageLocation.PRIVATE

    model_config = ConfigDict(frozen=True)


class JobSpec(BaseModel):
    """Submission contract; the store assigns id, status and timestamps."""

    owner_id: str
    project_id: uuid.UUID | None = None
    priority: int = 0
    payload: JobPayload
    output_options: OutputOptions = Field(default_factory=OutputOptions)
    max_retries: int = 3

    model_config = ConfigDict(frozen=True)


class Job(BaseModel):
    """Persisted job record as seen by the worker."""

    id: uuid.UUID
    owner_id: str
    project_id: uuid.UUID | None = None
    status: JobStatus
    priority: int = 0
    payload: JobPayload
    output_options: OutputOptions = Field(default_factory=OutputOptions)
    progress: Annotated[int, annotated_types.Ge(0), annotated_types.Le(100)] = 0
    progress_message: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: dt.datetime
    started_at: dt.datetime | None = None
    completed_at: dt.datetime | None = None
    locked_at: dt.datetime | None = None
    locked_by: str | None = None
    error_message: str | None = None
    error_details: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None

    model_config = ConfigDict(frozen=True)


class JobFilter(BaseModel):
    status: JobStatus | None = None
    limit: Annotated[int, annotated_types.Ge(1), annotated_types.Le(100)] = 20
    offset: Annotated[int, annotated_types.Ge(0)] = 0


class JobPage(BaseModel):
    jobs: list[Job]
    total: int


class ProgressUpdate(BaseModel):
    job_id: uuid.UUID
    progress: int
    message: str
    stage: str | None = None

    model_config = ConfigDict(frozen=True)
