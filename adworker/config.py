"""
Worker configuration.

Read once from the environment (after `.env` is loaded) and passed
explicitly into every collaborator. The sentinel value "mock" switches a
capability into deterministic mock mode.
"""

import os
import logging
import tempfile
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

MOCK = "mock"

DEFAULT_SCENE_PROMPT = (
    "professional product photography, on a wooden podium, "
    "cinematic lighting, high quality, 4k"
)
DEFAULT_ANIMATION_PROMPT = (
    "slow cinematic camera zoom in, floating dust particles, high quality, 4k"
)


def is_mock(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == MOCK


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    return int(raw) if raw.strip() else default


class Settings(BaseModel):
    # Persistence (Supabase / PostgREST)
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Queue
    redis_url: str = ""
    job_max_attempts: int = 3
    job_backoff_seconds: int = 5
    stale_job_timeout_seconds: int = 600
    job_heartbeat_seconds: int = 60
    worker_concurrency: int = 4

    # Blob storage (S3-compatible)
    s3_endpoint: str = ""
    s3_region: str = "auto"
    s3_bucket: str = "assets"
    s3_access_key: str = ""
    s3_secret_key: str = ""
    s3_public_url: str = ""

    # Capability keys
    photoroom_api_key: str = ""
    stability_ai_api_key: str = ""
    yandex_api_key: str = ""
    yandex_folder_id: str = ""
    piapi_api_key: str = ""
    render_mode: str = "moviepy"

    # Pipeline tuning
    default_scene_prompt: str = DEFAULT_SCENE_PROMPT
    default_animation_prompt: str = DEFAULT_ANIMATION_PROMPT
    default_tts_voice: str = "alena"
    video_poll_delay_ms: int = 10000
    video_max_poll_attempts: int = 30
    image_download_timeout_ms: int = 30000
    video_download_timeout_ms: int = 120000
    provider_timeout_seconds: int = 60
    source_image_max_bytes: int = 10 * 1024 * 1024
    render_output_dir: str = Field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "adworker-renders")
    )
    music_urls: dict[str, str] = Field(default_factory=dict)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        music_urls = {
            key[len("MUSIC_URL_"):].lower(): value
            for key, value in os.environ.items()
            if key.startswith("MUSIC_URL_") and value
        }

        defaults = cls()
        return cls(
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
            redis_url=os.getenv("REDIS_URL", ""),
            job_max_attempts=_int("JOB_MAX_ATTEMPTS", defaults.job_max_attempts),
            job_backoff_seconds=_int("JOB_BACKOFF_SECONDS", defaults.job_backoff_seconds),
            stale_job_timeout_seconds=_int(
                "STALE_JOB_TIMEOUT_SECONDS", defaults.stale_job_timeout_seconds
            ),
            job_heartbeat_seconds=_int("JOB_HEARTBEAT_SECONDS", defaults.job_heartbeat_seconds),
            worker_concurrency=_int("WORKER_CONCURRENCY", defaults.worker_concurrency),
            s3_endpoint=os.getenv("S3_ENDPOINT", ""),
            s3_region=os.getenv("S3_REGION", defaults.s3_region),
            s3_bucket=os.getenv("S3_BUCKET", defaults.s3_bucket),
            s3_access_key=os.getenv("S3_ACCESS_KEY", ""),
            s3_secret_key=os.getenv("S3_SECRET_KEY", ""),
            s3_public_url=os.getenv("S3_PUBLIC_URL", ""),
            photoroom_api_key=os.getenv("PHOTOROOM_API_KEY", ""),
            stability_ai_api_key=os.getenv("STABILITY_AI_API_KEY", ""),
            yandex_api_key=os.getenv("YANDEX_API_KEY", ""),
            yandex_folder_id=os.getenv("YANDEX_FOLDER_ID", ""),
            piapi_api_key=os.getenv("PIAPI_API_KEY", ""),
            render_mode=os.getenv("RENDER_MODE", defaults.render_mode),
            default_scene_prompt=os.getenv("DEFAULT_SCENE_PROMPT") or DEFAULT_SCENE_PROMPT,
            default_animation_prompt=(
                os.getenv("DEFAULT_ANIMATION_PROMPT") or DEFAULT_ANIMATION_PROMPT
            ),
            default_tts_voice=os.getenv("DEFAULT_TTS_VOICE") or defaults.default_tts_voice,
            video_poll_delay_ms=_int("VIDEO_POLL_DELAY_MS", defaults.video_poll_delay_ms),
            video_max_poll_attempts=_int(
                "VIDEO_MAX_POLL_ATTEMPTS", defaults.video_max_poll_attempts
            ),
            image_download_timeout_ms=_int(
                "IMAGE_DOWNLOAD_TIMEOUT_MS", defaults.image_download_timeout_ms
            ),
            video_download_timeout_ms=_int(
                "VIDEO_DOWNLOAD_TIMEOUT_MS", defaults.video_download_timeout_ms
            ),
            provider_timeout_seconds=_int(
                "PROVIDER_TIMEOUT_SECONDS", defaults.provider_timeout_seconds
            ),
            source_image_max_bytes=_int(
                "SOURCE_IMAGE_MAX_BYTES", defaults.source_image_max_bytes
            ),
            render_output_dir=os.getenv("RENDER_OUTPUT_DIR") or defaults.render_output_dir,
            music_urls=music_urls,
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
