"""
Shared async HTTP helpers for provider adapters.

Every call carries an explicit timeout. Provider calls retry 429 / 5xx
with exponential backoff and jitter; anything still failing surfaces as a
ProviderError so the job-level retry budget takes over.
"""

import asyncio
import logging
import random
from typing import Optional

import httpx

from .errors import ProviderError

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 1.0       # seconds, doubles each retry: 1, 2, 4
JITTER_MAX = 0.5
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


def _delay_for(attempt: int, response: Optional[httpx.Response] = None) -> float:
    if response is not None:
        retry_after = response.headers.get("Retry-After", "")
        if retry_after.isdigit():
            return float(retry_after)
    return BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)


async def request_with_backoff(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    provider: str,
    max_retries: int = MAX_RETRIES,
    **kwargs,
) -> httpx.Response:
    """
    Make a provider request, retrying transient failures.

    Returns the successful response; raises ProviderError otherwise.
    """
    for attempt in range(max_retries + 1):
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            if attempt >= max_retries:
                raise ProviderError(f"{provider} request failed: {e}", provider) from e
            delay = _delay_for(attempt)
            logger.warning(
                f"{provider} transport error on attempt {attempt + 1}/{max_retries + 1}: {e} "
                f"— retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            continue

        if response.status_code in RETRYABLE_STATUS_CODES and attempt < max_retries:
            delay = _delay_for(attempt, response)
            logger.warning(
                f"{provider} {response.status_code} on attempt {attempt + 1}/{max_retries + 1} "
                f"— retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            continue

        if response.is_error:
            raise ProviderError(
                f"{provider} error: HTTP {response.status_code} {response.text[:300]}",
                provider,
            )
        return response

    raise ProviderError(f"{provider} request failed after {max_retries + 1} attempts", provider)


async def download_bytes(
    url: str,
    timeout: float,
    provider: str = "download",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bytes:
    """Download a public URL and return raw bytes."""
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.content
    except httpx.HTTPError as e:
        raise ProviderError(f"Download failed for {url}: {e}", provider) from e
