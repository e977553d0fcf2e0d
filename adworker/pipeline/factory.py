"""
Wiring: build every pipeline collaborator from one Settings object.

`mock` values in the configuration select in-process stand-ins, so the
whole pipeline can run without any external account.
"""

import logging

from pydantic import BaseModel, ConfigDict

from ..config import Settings, is_mock
from .animate import Animator
from .orchestrator import AnimationStage, BackgroundStage, VideoGenerationService
from .project_service import (
    InMemoryProjectStore,
    ProjectService,
    ProjectStore,
    SupabaseProjectStore,
)
from .render import VideoCompositor
from .scene_gen import SceneGenerator
from .storage import BlobStorage, build_storage
from .tts import MusicLibrary, SpeechSynthesizer
from .upscale import Upscaler

logger = logging.getLogger(__name__)


class Pipeline(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    projects: ProjectService
    storage: BlobStorage
    service: VideoGenerationService


def build_store(settings: Settings) -> ProjectStore:
    if is_mock(settings.supabase_url):
        logger.warning("SUPABASE_URL is mock: projects are kept in memory")
        return InMemoryProjectStore()
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
    return SupabaseProjectStore(settings.supabase_url, settings.supabase_service_role_key)


def build_pipeline(settings: Settings) -> Pipeline:
    projects = ProjectService(build_store(settings))
    storage = build_storage(settings)

    background = BackgroundStage(
        projects,
        storage,
        scene_generator=SceneGenerator(settings),
        upscaler=Upscaler(settings),
        synthesizer=SpeechSynthesizer(settings),
        settings=settings,
    )
    animation = AnimationStage(
        projects,
        storage,
        animator=Animator(settings),
        compositor=VideoCompositor(settings),
        music=MusicLibrary(settings),
        settings=settings,
    )

    return Pipeline(
        projects=projects,
        storage=storage,
        service=VideoGenerationService(background, animation),
    )
