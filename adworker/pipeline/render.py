"""
Final composition — moviepy.

Background is the animated fragment (looped) or, when animation was
skipped, the still scene. Title and selling points are drawn with Pillow
and laid over it; speech plays over ducked background music. Rendering is
CPU-bound and runs in a worker thread.
"""

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional
from uuid import uuid4

import numpy as np
from PIL import Image, ImageColor, ImageDraw, ImageFont
from pydantic import BaseModel, Field

from ..config import Settings, is_mock
from .errors import ProviderError
from .http import download_bytes

logger = logging.getLogger(__name__)

FPS = 30
DEFAULT_DURATION = 8.0
MIN_DURATION = 5.0
MAX_DURATION = 30.0
SPEECH_OFFSET = 0.5
TAIL_SECONDS = 1.0
MUSIC_VOLUME = 0.2
PRIMARY_COLOR = "#4f46e5"

MOCK_RENDER_BYTES = b"\x00\x00\x00\x18ftypmp42mock-render"


class CompositionInput(BaseModel):
    title: str
    main_image: str
    bg_video_url: Optional[str] = None
    usps: list[str] = Field(default_factory=list)
    primary_color: str = PRIMARY_COLOR
    audio_url: Optional[str] = None
    background_music_url: Optional[str] = None
    width: int
    height: int


def _font(size: int) -> ImageFont.ImageFont:
    return ImageFont.load_default(size=size)


def caption_image(text: str, width: int, height: int, color: str, font_size: int) -> np.ndarray:
    """Text centred on a translucent band, as an RGBA array."""
    r, g, b = ImageColor.getrgb(color)[:3]
    band = Image.new("RGBA", (width, height), (r, g, b, 200))
    draw = ImageDraw.Draw(band)
    font = _font(font_size)
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    x = max(0, (width - (right - left)) // 2)
    y = max(0, (height - (bottom - top)) // 2)
    draw.text((x, y), text, font=font, fill=(255, 255, 255, 255))
    return np.array(band)


class VideoCompositor:
    provider = "moviepy"

    def __init__(self, settings: Settings):
        self.mock = is_mock(settings.render_mode)
        self.output_dir = Path(settings.render_output_dir)
        self.download_timeout = settings.video_download_timeout_ms / 1000

    async def render(self, data: CompositionInput) -> Path:
        """Render the final MP4 and return its local path."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        output = self.output_dir / f"video-{uuid4()}.mp4"

        if self.mock:
            logger.warning("Render mock: writing placeholder video")
            output.write_bytes(MOCK_RENDER_BYTES)
            return output

        workdir = Path(tempfile.mkdtemp(prefix="inputs-", dir=self.output_dir))
        try:
            image_path = await self._fetch(data.main_image, workdir / "scene.png")
            video_path = (
                await self._fetch(data.bg_video_url, workdir / "fragment.mp4")
                if data.bg_video_url else None
            )
            speech_path = (
                await self._fetch(data.audio_url, workdir / "speech.audio")
                if data.audio_url else None
            )

            music_path = None
            if data.background_music_url:
                try:
                    music_path = await self._fetch(data.background_music_url, workdir / "music.mp3")
                except ProviderError as e:
                    logger.warning(f"Background music unavailable, rendering without it: {e}")

            logger.info(f"Rendering {data.width}x{data.height} video → {output}")
            await asyncio.to_thread(
                self._render_sync, data, image_path, video_path, speech_path, music_path, output
            )
        except ProviderError:
            raise
        except Exception as e:
            output.unlink(missing_ok=True)
            raise ProviderError(f"Render failed: {e}", self.provider) from e
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        logger.info(f"Render done: {output}")
        return output

    async def _fetch(self, url: str, target: Path) -> Path:
        target.write_bytes(await download_bytes(url, self.download_timeout, self.provider))
        return target

    def _render_sync(
        self,
        data: CompositionInput,
        image_path: Path,
        video_path: Optional[Path],
        speech_path: Optional[Path],
        music_path: Optional[Path],
        output: Path,
    ) -> None:
        from moviepy import (
            AudioFileClip,
            CompositeAudioClip,
            CompositeVideoClip,
            ImageClip,
            VideoFileClip,
            afx,
            vfx,
        )

        size = (data.width, data.height)
        clips = []

        speech = AudioFileClip(str(speech_path)) if speech_path else None
        if speech is not None:
            clips.append(speech)
            duration = speech.duration + SPEECH_OFFSET + TAIL_SECONDS
        else:
            duration = DEFAULT_DURATION
        duration = min(MAX_DURATION, max(MIN_DURATION, duration))

        if video_path:
            source = VideoFileClip(str(video_path), audio=False)
            clips.append(source)
            background = source.resized(new_size=size).with_effects([vfx.Loop(duration=duration)])
        else:
            background = ImageClip(str(image_path)).resized(new_size=size).with_duration(duration)

        band_height = max(80, data.height // 10)
        layers = [
            background,
            ImageClip(caption_image(data.title, data.width, band_height, data.primary_color, band_height // 2))
            .with_duration(duration)
            .with_position(("center", band_height // 2)),
        ]

        if data.usps:
            segment = duration / len(data.usps)
            for i, usp in enumerate(data.usps):
                layers.append(
                    ImageClip(caption_image(usp, data.width, band_height, data.primary_color, band_height // 3))
                    .with_start(i * segment)
                    .with_duration(segment)
                    .with_position(("center", data.height - 2 * band_height))
                )

        video = CompositeVideoClip(layers, size=size).with_duration(duration)

        audio_layers = []
        if music_path:
            music = AudioFileClip(str(music_path))
            clips.append(music)
            audio_layers.append(
                music.with_effects([afx.AudioLoop(duration=duration), afx.MultiplyVolume(MUSIC_VOLUME)])
            )
        if speech is not None:
            audio_layers.append(speech.with_start(SPEECH_OFFSET))
        if audio_layers:
            video = video.with_audio(CompositeAudioClip(audio_layers).with_duration(duration))

        try:
            video.write_videofile(
                str(output), fps=FPS, codec="libx264", audio_codec="aac", logger=None
            )
        finally:
            video.close()
            for clip in clips:
                clip.close()
