"""End-to-end rendering of one job: layers -> mix -> loudness -> encode -> upload."""

import datetime as dt
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel

from mindscript.contracts import (
    MAX_SCRIPT_CHARS,
    QUALITY_BITRATES,
    Job,
    JobPayload,
    LayerGains,
    LoopMode,
    StorageLocation,
    VoiceProvider,
)
from mindscript.worker.cache import VoiceCache
from mindscript.worker.cancellation import CancellationToken
from mindscript.worker.engine import AudioEngine, AudioInfo, MixInput
from mindscript.worker.exceptions import (
    AssetDownloadError,
    AudioEngineError,
    JobCancelledError,
    JobValidationError,
    PipelineStageError,
    StereoComplianceError,
    WorkerError,
)
from mindscript.worker.gain import mix_gain_reduction
from mindscript.worker.progress import STAGES, ProgressStage, ProgressTracker
from mindscript.worker.storage import CONTENT_TYPES, AudioStorage, object_key
from mindscript.worker.synthesis import SynthesisOptions, Synthesizer, SynthesizerRegistry
from mindscript.worker.text_splitter import chunk_text
from mindscript.worker.tones import BinauralFrequencies, binaural_frequencies, solfeggio_frequency
from mindscript.worker.workspace import JobWorkspace

CHUNK_FORMAT = "mp3"


class PipelineConfig(BaseModel):
    max_duration_minutes: float = 15
    max_script_chars: int = MAX_SCRIPT_CHARS
    tts_chunk_size: int = 4500
    target_lufs: float = -16.0
    true_peak_db: float = -1.5
    limiter_enabled: bool = True
    limiter_threshold_db: float = -1.0
    auto_gain_staging: bool = True
    sample_rate: int = 44100
    fade_in_ms: int = 1000
    fade_out_ms: int = 1500
    download_timeout_seconds: float = 60.0
    max_download_bytes: int = 200 * 1024 * 1024
    progress_throttle_seconds: float = 0.5


@dataclass(frozen=True)
class VoicePlan:
    provider: VoiceProvider
    voice: str | None  # provider voice id; None for uploaded audio
    url: str | None  # uploaded audio only
    options: SynthesisOptions
    chunks: list[str] = field(default_factory=list)
    synthesizer: Synthesizer | None = None


@dataclass(frozen=True)
class RenderPlan:
    """Everything validated up front, so nothing is allocated for jobs that cannot succeed."""

    duration_sec: float
    voice: VoicePlan | None
    background_url: str | None
    solfeggio_hz: float | None
    solfeggio_wave: str
    binaural: BinauralFrequencies | None
    gains: LayerGains
    pause_sec: float
    loop_mode: LoopMode
    interval_sec: float | None


@dataclass(frozen=True)
class RenderResult:
    output_url: str
    metadata: dict[str, Any]


@dataclass(frozen=True)
class JobOutcome:
    job_id: uuid.UUID
    result: RenderResult | None = None
    error_message: str | None = None
    error_details: dict[str, Any] | None = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result is not None


@dataclass
class _Layer:
    path: Path
    gain_db: float
    label: str


@dataclass
class _RenderContext:
    job: Job
    plan: RenderPlan
    workspace: JobWorkspace
    started: float
    layers: list[_Layer] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cache_hits: int = 0
    render_sec: float = 0.0


def cycle_length(voice_sec: float, *, pause_sec: float, loop_mode: LoopMode, interval_sec: float | None) -> float:
    """Length of one narration repeat: the voice, its trailing pause, stretched to the interval if set."""
    cycle = voice_sec + max(0.0, pause_sec)
    if loop_mode == LoopMode.INTERVAL and interval_sec:
        cycle = max(cycle, interval_sec)
    return cycle


def plan_job(job: Job, config: PipelineConfig, synthesizers: SynthesizerRegistry) -> RenderPlan:
    """Validate a job and resolve it into a render plan. Raises JobValidationError (or ProviderError)."""
    payload = job.payload
    layers = payload.layers

    if payload.duration_min <= 0:
        raise JobValidationError(f"Duration must be positive, got {payload.duration_min} min")
    if payload.duration_min > config.max_duration_minutes:
        raise JobValidationError(
            f"Requested duration {payload.duration_min:g} min exceeds maximum of {config.max_duration_minutes:g} min",
            details={"duration_min": payload.duration_min, "max_duration_min": config.max_duration_minutes},
        )
    if len(payload.script_text) > config.max_script_chars:
        raise JobValidationError(
            f"Script of {len(payload.script_text)} chars exceeds maximum of {config.max_script_chars}",
            details={"script_chars": len(payload.script_text), "max_script_chars": config.max_script_chars},
        )

    has_voice = layers.voice.enabled
    has_background = layers.background.enabled
    has_solfeggio = layers.solfeggio.enabled
    has_binaural = layers.binaural.enabled
    if not (has_voice or has_background or has_solfeggio or has_binaural):
        raise JobValidationError("At least one audio layer must be enabled")
    if has_background and not has_voice:
        raise JobValidationError("Background audio requires voice to be enabled")
    if has_solfeggio and not (has_voice or has_background or has_binaural):
        raise JobValidationError("Solfeggio tone cannot be used alone")
    if has_binaural and not (has_voice or has_background or has_solfeggio):
        raise JobValidationError("Binaural beat cannot be used alone")
    if has_background and not layers.background.track_url:
        raise JobValidationError("Background layer is enabled without a track URL")

    return RenderPlan(
        duration_sec=payload.duration_min * 60,
        voice=_plan_voice(payload, config, synthesizers) if has_voice else None,
        background_url=layers.background.track_url if has_background else None,
        solfeggio_hz=solfeggio_frequency(layers.solfeggio) if has_solfeggio else None,
        solfeggio_wave=layers.solfeggio.wave,
        binaural=binaural_frequencies(layers.binaural) if has_binaural else None,
        gains=layers.gains,
        pause_sec=payload.pause_sec,
        loop_mode=payload.loop_mode,
        interval_sec=payload.interval_sec,
    )


def _plan_voice(payload: JobPayload, config: PipelineConfig, synthesizers: SynthesizerRegistry) -> VoicePlan:
    layer = payload.layers.voice
    provider_name, code = layer.provider.value, layer.voice_code
    if payload.voice_ref:
        provider_name, sep, code = payload.voice_ref.partition(":")
        if not sep or not provider_name or not code:
            raise JobValidationError(f"Voice reference {payload.voice_ref!r} is not of the form 'provider:voice'")
    try:
        provider = VoiceProvider(provider_name)
    except ValueError:
        raise JobValidationError(f"Unknown voice provider {provider_name!r}") from None

    options = SynthesisOptions(model=layer.model, speed=layer.speed, format=CHUNK_FORMAT)
    if provider == VoiceProvider.UPLOADED:
        if not layer.voice_url:
            raise JobValidationError("Uploaded voice layer has no voice URL")
        return VoicePlan(provider=provider, voice=None, url=layer.voice_url, options=options)

    if not payload.script_text.strip():
        raise JobValidationError("Voice layer is enabled but the script is empty")
    if not code:
        raise JobValidationError(f"No voice selected for provider {provider}")

    synthesizer = synthesizers.get(provider.value)
    chunks = chunk_text(payload.script_text, min(synthesizer.max_chars, config.tts_chunk_size))
    for chunk in chunks:
        synthesizer.validate(chunk, code, options)
    return VoicePlan(
        provider=provider, voice=code, url=None, options=options, chunks=chunks, synthesizer=synthesizer
    )


class AudioJobProcessor:
    """Renders one job. Holds no state between jobs; the orchestrator builds one per execution."""

    def __init__(
        self,
        config: PipelineConfig,
        *,
        synthesizers: SynthesizerRegistry,
        cache: VoiceCache,
        engine: AudioEngine,
        storage: AudioStorage,
        http: httpx.AsyncClient,
        progress: ProgressTracker,
        token: CancellationToken,
        workspace_root: Path | None = None,
    ) -> None:
        self.config = config
        self.synthesizers = synthesizers
        self.cache = cache
        self.engine = engine
        self.storage = storage
        self.http = http
        self.progress = progress
        self.token = token
        self.workspace_root = workspace_root
        self._workspace: JobWorkspace | None = None

    async def run(self, job: Job) -> JobOutcome:
        """Render `job` and report a single outcome. Only asyncio.CancelledError escapes."""
        job_log = logger.bind(job_id=str(job.id))
        self.progress.reset()
        try:
            result = await self._render(job)
        except JobCancelledError as e:
            job_log.info(f"Job cancelled: {e}")
            return JobOutcome(job_id=job.id, error_message=str(e), error_details=e.to_dict(), cancelled=True)
        except WorkerError as e:
            self.progress.record_error(e)
            job_log.warning(f"Job failed ({e.kind}): {e}")
            return JobOutcome(job_id=job.id, error_message=str(e), error_details=e.to_dict())
        except Exception as e:
            stage = str(self.progress.current_stage or "unknown")
            error = PipelineStageError(stage, f"Unexpected error: {type(e).__name__}: {e}")
            self.progress.record_error(error)
            job_log.exception(f"Unexpected error in stage {stage}")
            return JobOutcome(job_id=job.id, error_message=str(error), error_details=error.to_dict())
        finally:
            await self.cleanup()

        job_log.info(f"Job rendered in {result.metadata['processing_time_ms']}ms: {result.output_url}")
        return JobOutcome(job_id=job.id, result=result)

    async def cleanup(self) -> None:
        if self._workspace is not None:
            self._workspace.release()
            self._workspace = None

    async def _render(self, job: Job) -> RenderResult:
        started = time.monotonic()
        async with self._stage(ProgressStage.INITIALIZING):
            plan = plan_job(job, self.config, self.synthesizers)

        self._workspace = JobWorkspace(str(job.id), root=self.workspace_root)
        async with self._workspace as workspace:
            ctx = _RenderContext(job=job, plan=plan, workspace=workspace, started=started)
            async with self._stage(ProgressStage.DOWNLOADING_ASSETS):
                background = await self._fetch_background(ctx)
            async with self._stage(ProgressStage.GENERATING_VOICE):
                await self._generate_voice(ctx)
            if background is not None:
                ctx.layers.append(background)
            async with self._stage(ProgressStage.GENERATING_TONES):
                await self._generate_tones(ctx)
            async with self._stage(ProgressStage.MIXING_AUDIO):
                mixed = await self._mix(ctx)
            async with self._stage(ProgressStage.NORMALIZING):
                normalized = await self.engine.normalize(
                    mixed,
                    workspace.file("normalized.wav"),
                    target_lufs=self.config.target_lufs,
                    true_peak_db=self.config.true_peak_db,
                )
                levels = await self.engine.measure(normalized)
            async with self._stage(ProgressStage.UPLOADING):
                return await self._encode_and_upload(ctx, normalized, levels.integrated_lufs)

    @asynccontextmanager
    async def _stage(self, stage: ProgressStage) -> AsyncIterator[None]:
        self.token.raise_if_cancelled()
        await self.progress.start_stage(stage)
        try:
            yield
        except WorkerError as e:
            e.details.setdefault("stage", str(stage))
            raise
        except Exception as e:
            raise PipelineStageError(str(stage), f"{STAGES[stage].message} failed: {e}") from e
        await self.progress.complete_stage()

    async def _fetch_background(self, ctx: _RenderContext) -> _Layer | None:
        url = ctx.plan.background_url
        if url is None:
            return None
        try:
            raw = await self._download(url, ctx.workspace.file("background.src"))
            await self.progress.update_fraction(0.7)
            path = await self.engine.ensure_stereo(raw, ctx.workspace.file("background.wav"))
        except (AssetDownloadError, AudioEngineError, OSError) as e:
            logger.bind(job_id=str(ctx.job.id)).warning(f"Continuing without background track: {e}")
            ctx.warnings.append(f"background omitted: {e}")
            self.progress.record_error(e)
            return None
        await self._verify_stereo(path, "background")
        return _Layer(path=path, gain_db=ctx.plan.gains.bg_db, label="background")

    async def _generate_voice(self, ctx: _RenderContext) -> None:
        plan = ctx.plan.voice
        if plan is None:
            ctx.render_sec = ctx.plan.duration_sec
            return

        if plan.provider == VoiceProvider.UPLOADED:
            assert plan.url is not None
            raw = await self._download(plan.url, ctx.workspace.file("voice.src"))
        else:
            raw = await self._synthesize_script(ctx, plan)

        voice = await self.engine.ensure_stereo(raw, ctx.workspace.file("voice.wav"))
        info = await self._verify_stereo(voice, "voice")
        ctx.render_sec = max(ctx.plan.duration_sec, info.duration_sec)
        if info.duration_sec < ctx.plan.duration_sec:
            cycle = cycle_length(
                info.duration_sec,
                pause_sec=ctx.plan.pause_sec,
                loop_mode=ctx.plan.loop_mode,
                interval_sec=ctx.plan.interval_sec,
            )
            voice = await self.engine.loop_to_duration(
                voice, ctx.workspace.file("voice-looped.wav"), cycle_sec=cycle, total_sec=ctx.plan.duration_sec
            )
        ctx.layers.append(_Layer(path=voice, gain_db=ctx.plan.gains.voice_db, label="voice"))

    async def _synthesize_script(self, ctx: _RenderContext, plan: VoicePlan) -> Path:
        assert plan.synthesizer is not None and plan.voice is not None
        total = len(plan.chunks)
        paths: list[Path] = []
        for idx, chunk in enumerate(plan.chunks, start=1):
            self.token.raise_if_cancelled()
            await self.progress.set_custom_message(f"Processing TTS chunk {idx} of {total}")
            audio = await self._synthesize_chunk(ctx, plan, chunk)
            path = ctx.workspace.file(f"voice-{idx:04d}.{CHUNK_FORMAT}")
            path.write_bytes(audio)
            paths.append(path)
            await self.progress.update_fraction(0.9 * idx / total)

        await self.progress.set_custom_message("Stitching TTS chunks")
        if len(paths) == 1:
            joined = paths[0]
        else:
            joined = await self.engine.concatenate(paths, ctx.workspace.file("voice-joined.wav"))
        await self.progress.set_custom_message(None)
        return joined

    async def _synthesize_chunk(self, ctx: _RenderContext, plan: VoicePlan, text: str) -> bytes:
        synthesizer = plan.synthesizer
        assert synthesizer is not None and plan.voice is not None
        key = self.cache.generate_key(
            text=text,
            voice=plan.voice,
            model=plan.options.model or synthesizer.model,
            provider=synthesizer.name,
            speed=plan.options.speed,
            pitch=plan.options.pitch,
            fmt=plan.options.format,
        )
        cached = await self.cache.get(key)
        if cached is not None:
            ctx.cache_hits += 1
            return cached.data

        audio = await synthesizer.synthesize(text, plan.voice, plan.options)
        await self.cache.set(
            key,
            audio,
            {"text": text, "voice": plan.voice, "provider": synthesizer.name, "model": plan.options.model},
        )
        return audio

    async def _generate_tones(self, ctx: _RenderContext) -> None:
        plan = ctx.plan
        fades = {"fade_in_ms": self.config.fade_in_ms, "fade_out_ms": self.config.fade_out_ms}
        if plan.solfeggio_hz is not None:
            path = await self.engine.generate_tone(
                plan.solfeggio_hz, ctx.render_sec, ctx.workspace.file("solfeggio.wav"), wave=plan.solfeggio_wave, **fades
            )
            await self._verify_stereo(path, "solfeggio")
            ctx.layers.append(_Layer(path=path, gain_db=plan.gains.solfeggio_db, label="solfeggio"))
            await self.progress.update_fraction(0.5)
        if plan.binaural is not None:
            path = await self.engine.generate_binaural(
                plan.binaural.left_hz,
                plan.binaural.right_hz,
                ctx.render_sec,
                ctx.workspace.file("binaural.wav"),
                **fades,
            )
            await self._verify_stereo(path, "binaural")
            ctx.layers.append(_Layer(path=path, gain_db=plan.gains.binaural_db, label="binaural"))

    async def _mix(self, ctx: _RenderContext) -> Path:
        if not ctx.layers:
            raise PipelineStageError(str(ProgressStage.MIXING_AUDIO), "No audio layers to mix")

        for layer in ctx.layers:
            if layer.label == "background":
                info = await self.engine.probe(layer.path)
                if info.duration_sec < ctx.render_sec:
                    layer.path = await self.engine.loop_to_duration(
                        layer.path,
                        ctx.workspace.file("background-looped.wav"),
                        cycle_sec=info.duration_sec,
                        total_sec=ctx.render_sec,
                    )

        reduction = mix_gain_reduction(len(ctx.layers)) if self.config.auto_gain_staging else 0.0
        inputs = [MixInput(path=l.path, gain_db=l.gain_db + reduction, label=l.label) for l in ctx.layers]
        mixed = await self.engine.mix(
            inputs,
            ctx.workspace.file("mix.wav"),
            duration_sec=ctx.render_sec,
            fade_in_ms=self.config.fade_in_ms,
            fade_out_ms=self.config.fade_out_ms,
        )
        await self.progress.update_fraction(0.7)

        if self.config.limiter_enabled:
            levels = await self.engine.measure(mixed)
            if levels.true_peak_db > self.config.limiter_threshold_db:
                logger.bind(job_id=str(ctx.job.id)).debug(
                    f"Peak {levels.true_peak_db:.2f} dBTP above {self.config.limiter_threshold_db} dB, limiting"
                )
                mixed = await self.engine.limit(
                    mixed, ctx.workspace.file("mix-limited.wav"), threshold_db=self.config.limiter_threshold_db
                )
        return mixed

    async def _encode_and_upload(self, ctx: _RenderContext, source: Path, lufs: float) -> RenderResult:
        job = ctx.job
        fmt = job.output_options.format.value
        output = await self.engine.convert(
            source,
            ctx.workspace.file(f"{job.id}.{fmt}"),
            fmt=fmt,
            bitrate=QUALITY_BITRATES[job.output_options.quality],
        )
        info = await self._verify_stereo(output, "output")
        await self.progress.update_fraction(0.3)

        data = output.read_bytes()
        self.token.raise_if_cancelled()
        stored = await self.storage.store(
            object_key(job.owner_id, str(job.id), fmt),
            data,
            content_type=CONTENT_TYPES[fmt],
            public=job.output_options.storage_location == StorageLocation.PUBLIC,
        )

        metadata = {
            "job_id": str(job.id),
            "output_url": stored.url,
            "storage_key": stored.key,
            "duration": round(info.duration_sec, 3),
            "format": fmt,
            "sample_rate": info.sample_rate,
            "bitrate": info.bitrate,
            "channels": info.channels,
            "stereo_verified": info.channels == 2,
            "lufs": round(lufs, 2),
            "file_size": len(data),
            "layers_used": [layer.label for layer in ctx.layers],
            "processing_time_ms": int((time.monotonic() - ctx.started) * 1000),
            "fade_in_ms": self.config.fade_in_ms,
            "fade_out_ms": self.config.fade_out_ms,
            "cache_hits": ctx.cache_hits,
            "warnings": ctx.warnings,
            "completed_at": dt.datetime.now(tz=dt.UTC).isoformat(),
        }
        return RenderResult(output_url=stored.url, metadata=metadata)

    async def _download(self, url: str, dest: Path) -> Path:
        size = 0
        try:
            async with self.http.stream(
                "GET", url, timeout=self.config.download_timeout_seconds, follow_redirects=True
            ) as response:
                response.raise_for_status()
                with dest.open("wb") as f:
                    async for chunk in response.aiter_bytes():
                        size += len(chunk)
                        if size > self.config.max_download_bytes:
                            raise AssetDownloadError(url, f"Asset exceeds {self.config.max_download_bytes} bytes")
                        f.write(chunk)
        except httpx.HTTPError as e:
            raise AssetDownloadError(url, f"Could not download {url}: {e}") from e
        if size == 0:
            raise AssetDownloadError(url, f"Downloaded asset {url} is empty")
        return dest

    async def _verify_stereo(self, path: Path, layer: str) -> AudioInfo:
        info = await self.engine.probe(path)
        if info.channels != 2:
            raise StereoComplianceError(layer, info.channels)
        return info
