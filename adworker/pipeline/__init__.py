"""
Ad Generation Pipeline

Two-stage, human-gated orchestration:
  Stage 1 — Background: Photoroom scene → Stability upscale → speech preview → IMAGE_READY
  Stage 2 — Animation:  Kling motion → music → moviepy render → COMPLETED
  Projects — State machine with atomic, versioned settings and asset history
"""

from .factory import Pipeline, build_pipeline
from .models import ProjectStatus
from .orchestrator import VideoGenerationService
from .routes import project_router

__all__ = [
    "Pipeline",
    "build_pipeline",
    "VideoGenerationService",
    "project_router",
    "ProjectStatus",
]
