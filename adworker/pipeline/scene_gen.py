"""
Step 1: Scene Generation — Photoroom v2/edit.

Places the product photo into an AI-generated background at the target
size. The source image is fetched by us first so that it can be checked
(HTTPS only, image content types, byte ceiling, bounded timeout) before any
provider credits are spent.
"""

import hashlib
import logging
from io import BytesIO
from typing import Optional
from urllib.parse import urlparse

import httpx
from PIL import Image

from ..config import Settings, is_mock
from .errors import ProviderError, ValidationError
from .http import request_with_backoff

logger = logging.getLogger(__name__)

PHOTOROOM_API_URL = "https://image-api.photoroom.com/v2/edit"

ALLOWED_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})
MAX_SOURCE_REDIRECTS = 5


class SceneGenerator:
    provider = "photoroom"

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = settings.photoroom_api_key
        self.mock = is_mock(self.api_key)
        self.max_source_bytes = settings.source_image_max_bytes
        self.fetch_timeout = settings.image_download_timeout_ms / 1000
        self.provider_timeout = settings.provider_timeout_seconds
        self._transport = transport

    @staticmethod
    def validate_source_url(url: str) -> None:
        parsed = urlparse(url or "")
        if parsed.scheme != "https" or not parsed.netloc:
            raise ValidationError(f"Source image must be an https:// URL, got {url!r}")

    async def fetch_source(self, url: str) -> tuple[bytes, str]:
        """
        Download the product photo, enforcing type and size limits.

        Redirects are followed by hand so that every hop is held to the
        same https-only rule as the original URL.
        """
        self.validate_source_url(url)

        try:
            async with httpx.AsyncClient(
                timeout=self.fetch_timeout, transport=self._transport, follow_redirects=False
            ) as client:
                for _ in range(MAX_SOURCE_REDIRECTS + 1):
                    async with client.stream("GET", url) as resp:
                        if resp.is_redirect:
                            url = str(resp.url.join(resp.headers["location"]))
                            logger.info(f"Source image redirected to {url}")
                            self.validate_source_url(url)
                            continue
                        return await self._read_source(resp)
        except httpx.HTTPError as e:
            raise ProviderError(f"Source image fetch failed: {e}", self.provider) from e

        raise ValidationError(f"Source image exceeded {MAX_SOURCE_REDIRECTS} redirects")

    async def _read_source(self, resp: httpx.Response) -> tuple[bytes, str]:
        if resp.is_error:
            raise ProviderError(
                f"Source image fetch failed: HTTP {resp.status_code}", self.provider
            )

        content_type = resp.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise ValidationError(
                f"Source image content type {content_type or 'unknown'!r} is not allowed"
            )

        declared = resp.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_source_bytes:
            raise ValidationError(
                f"Source image is {declared} bytes, limit is {self.max_source_bytes}"
            )

        buffer = bytearray()
        async for chunk in resp.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) > self.max_source_bytes:
                raise ValidationError(
                    f"Source image exceeds {self.max_source_bytes} bytes"
                )

        if not buffer:
            raise ValidationError("Source image is empty")
        return bytes(buffer), content_type

    async def generate(self, source_url: str, prompt: str, width: int, height: int) -> bytes:
        """Return PNG bytes of the product placed in a generated scene."""
        if not prompt or not prompt.strip():
            raise ValidationError("Scene prompt must not be empty")
        if width <= 0 or height <= 0:
            raise ValidationError(f"Invalid target size {width}x{height}")

        if self.mock:
            self.validate_source_url(source_url)
            logger.warning("Photoroom mock: rendering placeholder scene")
            return _mock_scene(prompt, width, height)

        if not self.api_key:
            raise ProviderError("PHOTOROOM_API_KEY not configured", self.provider)

        source, content_type = await self.fetch_source(source_url)
        logger.info(
            f"Photoroom request: {source_url[:50]}... | {width}x{height} | "
            f"prompt=\"{prompt[:50]}\""
        )

        async with httpx.AsyncClient(timeout=self.provider_timeout, transport=self._transport) as client:
            response = await request_with_backoff(
                client,
                "POST",
                PHOTOROOM_API_URL,
                provider=self.provider,
                headers={"x-api-key": self.api_key},
                files={"imageFile": ("product", source, content_type)},
                data={
                    "background.prompt": prompt,
                    "outputSize": f"{width}x{height}",
                },
            )

        logger.info(f"Photoroom returned {len(response.content)} bytes")
        return response.content


def _mock_scene(prompt: str, width: int, height: int) -> bytes:
    digest = hashlib.sha256(prompt.encode("utf-8")).digest()
    image = Image.new("RGB", (width, height), (digest[0], digest[1], digest[2]))
    out = BytesIO()
    image.save(out, format="PNG")
    return out.getvalue()
