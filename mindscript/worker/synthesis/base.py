import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict

from mindscript.worker.exceptions import ProviderError, SynthesisValidationError
from mindscript.worker.retry import RetriesExhausted, RetryPolicy, retry_async

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
MIN_SPEED = 0.25
MAX_SPEED = 4.0


class ProviderConfig(BaseModel):
    """Per-provider connection and throttling settings."""

    api_key: str | None = None  # provider is unavailable without one
    base_url: str | None = None
    model: str | None = None
    requests_per_minute: int | None = None  # provider default when unset
    concurrent_requests: int | None = None
    request_timeout_seconds: float = 60.0
    retry: RetryPolicy = RetryPolicy()


class SynthesisOptions(BaseModel):
    model: str | None = None
    speed: float = 1.0
    pitch: float = 1.0
    format: str = "mp3"

    model_config = ConfigDict(frozen=True)


class VoiceInfo(BaseModel):
    id: str
    name: str
    provider: str
    labels: dict[str, str] = {}
    preview_url: str | None = None

    model_config = ConfigDict(frozen=True)


class RateLimiter:
    """Caps in-flight calls and spaces call starts by at least `60 / requests_per_minute` seconds.

    Callers over either limit wait cooperatively. Slot reservation happens under a lock, the
    sleep happens outside it, so waiters queue in arrival order without blocking each other.
    """

    def __init__(
        self,
        requests_per_minute: int,
        concurrent_requests: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if concurrent_requests < 1:
            raise ValueError("concurrent_requests must be at least 1")
        self.requests_per_minute = requests_per_minute
        self.concurrent_requests = concurrent_requests
        self._min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0.0
        self._semaphore = asyncio.Semaphore(concurrent_requests)
        self._lock = asyncio.Lock()
        self._next_start = 0.0
        self._clock = clock
        self._sleep = sleep
        self.in_flight = 0

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._semaphore:
            async with self._lock:
                now = self._clock()
                start = max(now, self._next_start)
                self._next_start = start + self._min_interval
            if start > now:
                await self._sleep(start - now)
            self.in_flight += 1
            try:
                yield
            finally:
                self.in_flight -= 1


class Synthesizer(ABC):
    """Common capability surface of every TTS provider."""

    name: str
    max_chars: int
    model: str | None = None  # default model, part of the cache key

    @abstractmethod
    async def synthesize(self, text: str, voice: str, options: SynthesisOptions | None = None) -> bytes:
        """Return encoded audio for `text` spoken by `voice`."""

    @abstractmethod
    async def list_voices(self) -> list[VoiceInfo]: ...

    @abstractmethod
    def is_available(self) -> bool: ...

    def validate(self, text: str, voice: str, options: SynthesisOptions) -> None:
        """Raise SynthesisValidationError for requests that must never reach the provider."""
        if not text.strip():
            raise SynthesisValidationError("Cannot synthesize empty text", details={"provider": self.name})
        if len(text) > self.max_chars:
            raise SynthesisValidationError(
                f"Text of {len(text)} chars exceeds {self.name} limit of {self.max_chars}",
                details={"provider": self.name},
            )
        if not MIN_SPEED <= options.speed <= MAX_SPEED:
            raise SynthesisValidationError(
                f"Speed {options.speed} outside {MIN_SPEED}-{MAX_SPEED}", details={"provider": self.name}
            )
        if not voice:
            raise SynthesisValidationError("No voice given", details={"provider": self.name})

    async def initialize(self) -> None:
        return None

    async def aclose(self) -> None:
        return None


class HttpSynthesizer(Synthesizer):
    """Base for HTTP providers: rate limiting and transient-error retries around `_request`."""

    default_base_url: str
    default_model: str
    default_requests_per_minute: int
    default_concurrent_requests: int

    def __init__(self, config: ProviderConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self.model = config.model or self.default_model
        self.limiter = RateLimiter(
            config.requests_per_minute or self.default_requests_per_minute,
            config.concurrent_requests or self.default_concurrent_requests,
        )
        self._client = client
        self._owns_client = client is None

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.request_timeout_seconds)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def is_available(self) -> bool:
        return bool(self.config.api_key)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(f"{self.name} synthesizer not initialized")
        return self._client

    async def synthesize(self, text: str, voice: str, options: SynthesisOptions | None = None) -> bytes:
        options = options or SynthesisOptions()
        self.validate(text, voice, options)
        if not self.is_available():
            raise ProviderError(self.name, f"{self.name} has no API key configured")

        async def attempt() -> bytes:
            async with self.limiter.slot():
                response = await self._request(text, voice, options)
            response.raise_for_status()
            return response.content

        try:
            audio = await retry_async(
                attempt, self.config.retry, is_transient=is_transient, description=f"{self.name} synthesis"
            )
        except RetriesExhausted as e:
            raise ProviderError(
                self.name,
                f"{self.name} synthesis failed after {e.attempts} attempts: {e.last_error}",
                status_code=_status_of(e.last_error),
                attempts=e.attempts,
            ) from e.last_error
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                self.name,
                f"{self.name} rejected synthesis request: HTTP {e.response.status_code} {_error_text(e.response)}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"{self.name} synthesis failed: {e}") from e

        if not audio:
            raise ProviderError(self.name, f"{self.name} returned empty audio")
        logger.bind(provider=self.name, voice=voice).debug(f"Synthesized {len(text)} chars -> {len(audio)} bytes")
        return audio

    @abstractmethod
    async def _request(self, text: str, voice: str, options: SynthesisOptions) -> httpx.Response:
        """Send one synthesis request; the caller handles status codes and retries."""


def is_transient(error: BaseException) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(error, (httpx.TimeoutException, httpx.NetworkError))


def _status_of(error: BaseException) -> int | None:
    return error.response.status_code if isinstance(error, httpx.HTTPStatusError) else None


def _error_text(response: httpx.Response) -> str:
    try:
        return response.text[:200]
    except httpx.ResponseNotRead:
        return ""
