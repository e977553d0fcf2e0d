"""
Step 4 of animation: The Motion — Kling image-to-video via PiAPI.

Submitting returns a task id; completion is observed through the polling
coordinator with `check`, and the finished clip is pulled with `download`.
"""

import logging
import time
from typing import Optional

import httpx

from ..config import Settings, is_mock
from .errors import ProviderError, ValidationError
from .http import download_bytes, request_with_backoff
from .polling import PollResult

logger = logging.getLogger(__name__)

PIAPI_TASK_URL = "https://api.piapi.ai/api/v1/task"

NEGATIVE_PROMPT = "blur, distortion, low quality"
CFG_SCALE = 0.5

MOCK_VIDEO_URL = "https://mock-storage.local/mock/kling.mp4"
MOCK_VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42mock-kling-fragment"

PENDING_STATUSES = {"pending", "processing", "staged", "queued", "running"}


def _json_object(response: httpx.Response, provider: str) -> dict:
    """Decode a PiAPI response body, rejecting anything that is not a JSON object."""
    try:
        body = response.json()
    except ValueError as e:
        raise ProviderError(
            f"PiAPI returned a non-JSON response (HTTP {response.status_code})", provider
        ) from e
    if not isinstance(body, dict):
        raise ProviderError(f"PiAPI returned an unexpected body: {str(body)[:200]}", provider)
    return body


def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


class Animator:
    provider = "kling"

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = settings.piapi_api_key
        self.mock = not self.api_key or is_mock(self.api_key)
        self.timeout = settings.provider_timeout_seconds
        self.download_timeout = settings.video_download_timeout_ms / 1000
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def submit(self, image_url: str, prompt: str) -> str:
        """Start an image-to-video task and return its task id."""
        if not image_url:
            raise ValidationError("Animator needs an image URL")

        if self.mock:
            logger.warning("Kling mock: returning fake task id")
            return f"mock-task-id-{int(time.time() * 1000)}"

        payload = {
            "model": "kling",
            "task_type": "image_to_video",
            "input": {
                "image_url": image_url,
                "prompt": prompt,
                "negative_prompt": NEGATIVE_PROMPT,
                "cfg_scale": CFG_SCALE,
            },
            "config": {
                "service_mode": "public",
                "webhook_config": {"endpoint": ""},
            },
        }

        logger.info("Submitting Kling task to PiAPI...")
        async with self._client(self.timeout) as client:
            response = await request_with_backoff(
                client, "POST", PIAPI_TASK_URL,
                provider=self.provider,
                headers={"x-api-key": self.api_key},
                json=payload,
            )
        body = _json_object(response, self.provider)

        task_id = _dict(body.get("data")).get("task_id")
        if body.get("code") != 200 or not task_id:
            raise ProviderError(f"PiAPI error: {body.get('message') or body}", self.provider)

        logger.info(f"Kling task submitted: task_id={task_id}")
        return task_id

    async def check(self, task_id: str) -> PollResult:
        """One status check: pending, completed(video_url) or failed(reason)."""
        if self.mock:
            return PollResult.completed(MOCK_VIDEO_URL)

        async with self._client(self.timeout) as client:
            response = await request_with_backoff(
                client, "GET", f"{PIAPI_TASK_URL}/{task_id}",
                provider=self.provider,
                headers={"x-api-key": self.api_key},
            )
        data = _dict(_json_object(response, self.provider).get("data"))
        status = str(data.get("status") or "").lower()

        if status == "completed":
            video_url = _dict(data.get("output")).get("video_url")
            if not video_url:
                return PollResult.failed("Kling completed but no video_url provided")
            return PollResult.completed(video_url)

        if status == "failed":
            error = data.get("error") or {}
            reason = error.get("message") if isinstance(error, dict) else str(error)
            return PollResult.failed(reason or "Kling generation failed")

        if status and status not in PENDING_STATUSES:
            logger.warning(f"Kling task {task_id}: unrecognised status {status!r}, treating as pending")
        return PollResult.pending()

    async def download(self, video_url: str) -> bytes:
        if self.mock:
            return MOCK_VIDEO_BYTES
        return await download_bytes(
            video_url, self.download_timeout, self.provider, transport=self._transport
        )
