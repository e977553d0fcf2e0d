"""
Optional upscaling — Stability AI Fast Upscaler.

The provider caps output at ~4.2 megapixels, so input is first fitted
inside 1024x1024. The response may come back as WebP; it is normalised
to PNG. The step is disabled entirely when no API key is configured.
"""

import logging
from io import BytesIO
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError

from ..config import Settings, is_mock
from .errors import ProviderError, ValidationError
from .http import request_with_backoff

logger = logging.getLogger(__name__)

STABILITY_UPSCALE_URL = "https://api.stability.ai/v2beta/stable-image/upscale/fast"

MAX_INPUT_SIDE = 1024
SCALE_FACTOR = 2


def _open(image_bytes: bytes) -> Image.Image:
    try:
        image = Image.open(BytesIO(image_bytes))
        image.load()
        return image
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Not a readable image: {e}") from e


def _to_png(image: Image.Image) -> bytes:
    out = BytesIO()
    image.save(out, format="PNG")
    return out.getvalue()


def fit_within(image_bytes: bytes, max_side: int = MAX_INPUT_SIDE) -> bytes:
    """Downscale (never upscale) so both sides fit inside `max_side`, as PNG."""
    image = _open(image_bytes)
    image.thumbnail((max_side, max_side))
    return _to_png(image)


class Upscaler:
    provider = "stability"

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = settings.stability_ai_api_key
        self.mock = is_mock(self.api_key)
        self.timeout = settings.provider_timeout_seconds
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def upscale(self, image_bytes: bytes) -> bytes:
        """Return PNG bytes of the upscaled image."""
        if not self.enabled:
            raise ProviderError("STABILITY_AI_API_KEY not configured", self.provider)

        resized = fit_within(image_bytes)

        if self.mock:
            logger.warning("Stability mock: resizing locally")
            image = _open(resized)
            return _to_png(image.resize((image.width * SCALE_FACTOR, image.height * SCALE_FACTOR)))

        logger.info("Stability AI Fast Upscaler...")
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await request_with_backoff(
                client,
                "POST",
                STABILITY_UPSCALE_URL,
                provider=self.provider,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Accept": "image/*",
                },
                files={"image": ("scene.png", resized, "image/png")},
                data={"output_format": "png"},
            )

        logger.info(f"Stability returned {len(response.content)} bytes")
        try:
            return _to_png(_open(response.content))
        except ValidationError as e:
            raise ProviderError(f"Stability returned an unreadable image: {e}", self.provider) from e
