"""Run a render worker: `python -m mindscript.worker`. Configuration comes from the environment."""

import asyncio
import contextlib
import signal

import httpx
import uvicorn
from loguru import logger

from mindscript.worker.api import create_app
from mindscript.worker.cache import VoiceCache
from mindscript.worker.cancellation import CancellationToken
from mindscript.worker.config import Settings
from mindscript.worker.engine import FFmpegEngine
from mindscript.worker.logging_config import configure_logging
from mindscript.worker.orchestrator import JobOrchestrator
from mindscript.worker.processor import AudioJobProcessor
from mindscript.worker.progress import ProgressTracker
from mindscript.worker.storage import AudioStorage, LocalAudioStorage, S3AudioStorage
from mindscript.worker.store import SqlJobStore
from mindscript.worker.synthesis import ElevenLabsSynthesizer, OpenAISynthesizer, SynthesizerRegistry


class HealthServer(uvicorn.Server):
    """uvicorn server that leaves SIGINT/SIGTERM to the worker, which drains before exiting."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def build_storage(settings: Settings) -> AudioStorage:
    if settings.storage_backend == "local":
        return LocalAudioStorage(settings.local_storage_path, public_url=settings.local_public_url)

    missing = [
        name
        for name in ("s3_access_key_id", "s3_secret_access_key", "s3_public_bucket", "s3_private_bucket")
        if not getattr(settings, name)
    ]
    if missing:
        raise ValueError(f"S3 storage needs {', '.join(missing)}")
    return S3AudioStorage(
        endpoint_url=settings.s3_endpoint_url,
        access_key_id=settings.s3_access_key_id,
        secret_access_key=settings.s3_secret_access_key,
        public_bucket=settings.s3_public_bucket,
        private_bucket=settings.s3_private_bucket,
        public_url=settings.s3_public_url,
        region=settings.s3_region,
    )


async def run(settings: Settings) -> None:
    store = SqlJobStore.from_url(settings.database_url, echo=settings.database_echo)
    await store.prepare()

    cache = VoiceCache(settings.voice_cache)
    await cache.initialize()
    synthesizers = SynthesizerRegistry(
        [OpenAISynthesizer(settings.openai), ElevenLabsSynthesizer(settings.elevenlabs)]
    )
    await synthesizers.start()
    engine = FFmpegEngine(
        ffmpeg=settings.ffmpeg_path, ffprobe=settings.ffprobe_path, sample_rate=settings.pipeline.sample_rate
    )
    storage = build_storage(settings)
    http = httpx.AsyncClient()

    def processor_factory(tracker: ProgressTracker, token: CancellationToken) -> AudioJobProcessor:
        return AudioJobProcessor(
            settings.pipeline,
            synthesizers=synthesizers,
            cache=cache,
            engine=engine,
            storage=storage,
            http=http,
            progress=tracker,
            token=token,
            workspace_root=settings.workspace_root,
        )

    orchestrator = JobOrchestrator(
        store,
        processor_factory,
        worker_id=settings.worker_id,
        max_concurrent_jobs=settings.max_concurrent_jobs,
        poll_interval=settings.poll_interval_seconds,
        idle_timeout=settings.idle_timeout_seconds,
        stats_interval=settings.stats_interval_seconds,
        stale_job_timeout=settings.stale_job_timeout_seconds,
        progress_throttle=settings.pipeline.progress_throttle_seconds,
    )

    stop_requests: set[asyncio.Task] = set()

    def request_stop(sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, draining in-flight jobs")
        task = asyncio.create_task(orchestrator.stop())
        stop_requests.add(task)
        task.add_done_callback(stop_requests.discard)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop, sig)

    server: HealthServer | None = None
    server_task: asyncio.Task | None = None
    try:
        await orchestrator.start()
        if settings.health_port is not None:
            server = HealthServer(
                uvicorn.Config(
                    create_app(orchestrator), host=settings.health_host, port=settings.health_port, log_config=None
                )
            )
            server_task = asyncio.create_task(server.serve())
        await orchestrator.wait_stopped()
    finally:
        await orchestrator.stop()
        if server is not None and server_task is not None:
            server.should_exit = True
            await server_task
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await synthesizers.stop()
        await http.aclose()
        await store.close()
    logger.info("Worker exited")


def main() -> None:
    settings = Settings()
    configure_logging(settings.log_dir, settings.log_level)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
