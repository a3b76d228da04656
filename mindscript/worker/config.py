import os
import socket
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mindscript.worker.cache import CacheConfig
from mindscript.worker.processor import PipelineConfig
from mindscript.worker.synthesis import ProviderConfig


class Settings(BaseSettings):
    worker_id: str = Field(default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}")

    database_url: str = "sqlite+aiosqlite:///./mindscript-jobs.db"
    database_echo: bool = False

    max_concurrent_jobs: int = 2
    poll_interval_seconds: float = 5.0
    idle_timeout_seconds: float = 60.0  # 0 keeps the worker running forever
    stats_interval_seconds: float = 30.0
    stale_job_timeout_seconds: float | None = 30 * 60

    health_host: str = "0.0.0.0"
    health_port: int | None = 8080  # None disables the HTTP surface

    log_dir: Path | None = Path("logs")
    log_level: str = "INFO"
    workspace_root: Path | None = None  # system temp dir when unset

    pipeline: PipelineConfig = PipelineConfig()
    voice_cache: CacheConfig = CacheConfig()
    openai: ProviderConfig = ProviderConfig()
    elevenlabs: ProviderConfig = ProviderConfig()

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path("renders")
    local_public_url: str = "/audio"

    s3_endpoint_url: str | None = None
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    s3_region: str = "auto"
    s3_public_bucket: str | None = None
    s3_private_bucket: str | None = None
    s3_public_url: str | None = None  # CDN in front of the public bucket

    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=[os.getenv("ENV_FILE", ""), ".env"],
        extra="ignore",
        env_nested_delimiter="__",
    )
