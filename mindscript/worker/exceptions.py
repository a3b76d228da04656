from typing import Any


class WorkerError(Exception):
    """Base exception for everything that can end a render job."""

    kind: str = "internal"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to the structured `error_details` stored on the job."""
        return {"kind": self.kind, "message": str(self), **self.details}


class JobValidationError(WorkerError):
    """Raised for jobs that can never succeed as submitted. Never retried."""

    kind = "validation"


class ToneValidationError(JobValidationError):
    """Raised for solfeggio or binaural parameters outside their allowed ranges."""


class SynthesisValidationError(JobValidationError):
    """Raised for synthesis parameters a provider rejects before any request is sent."""


class ProviderError(WorkerError):
    """Raised when a TTS provider call fails for good (non-retryable or retries exhausted)."""

    kind = "provider"

    def __init__(self, provider: str, message: str, *, status_code: int | None = None, attempts: int = 1):
        super().__init__(message, details={"provider": provider, "status_code": status_code, "attempts": attempts})
        self.provider = provider
        self.status_code = status_code
        self.attempts = attempts


class ProviderUnavailableError(ProviderError):
    """Raised when a provider is unknown or not configured on this worker."""

    def __init__(self, provider: str, *, message: str | None = None):
        super().__init__(provider, message or f"TTS provider {provider!r} is not available")


class AssetDownloadError(WorkerError):
    """Raised when a remote audio asset cannot be fetched."""

    kind = "asset"

    def __init__(self, url: str, message: str):
        super().__init__(message, details={"url": url})
        self.url = url


class AudioEngineError(WorkerError):
    """Raised when an ffmpeg/ffprobe invocation fails."""

    kind = "engine"

    def __init__(self, operation: str, message: str, *, stderr: str | None = None):
        tail = stderr[-2000:] if stderr else None
        super().__init__(message, details={"operation": operation, "stderr": tail})
        self.operation = operation
        self.stderr = tail


class PipelineStageError(WorkerError):
    """Raised when a pipeline stage fails; carries the stage for the job's error details."""

    kind = "stage"

    def __init__(self, stage: str, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message, details={"stage": stage, **(details or {})})
        self.stage = stage


class StereoComplianceError(WorkerError):
    """Raised when the audio engine hands back anything other than two channels."""

    kind = "stereo_compliance"

    def __init__(self, layer: str, channels: int):
        super().__init__(
            f"{layer} audio has {channels} channel(s), expected stereo",
            details={"layer": layer, "channels": channels},
        )
        self.layer = layer
        self.channels = channels


class StorageError(WorkerError):
    """Raised when the rendered file cannot be uploaded."""

    kind = "storage"


class JobCancelledError(WorkerError):
    """Raised between stages once a job's cancellation token has been tripped."""

    kind = "cancelled"


class StoreUnavailableError(WorkerError):
    """Raised when the job store cannot be reached. The poll loop decides whether to try again."""

    kind = "store"
