import asyncio
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (429, 502, 503, 504)


class TransientIOError(Exception):
    """Raised when a request keeps failing at the network level after all retries"""
    pass


@dataclass
class HttpResult:
    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    def json(self) -> Any:
        return json.loads(self.body or b"null")


def _retry_after_seconds(headers) -> float:
    """Server supplied delay from Retry-After or RateLimit-Reset (seconds)."""
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in ('retry-after', 'ratelimit-reset', 'x-ratelimit-reset'):
        value = lowered.get(name)
        if value:
            try:
                return max(float(value), 0.0)
            except ValueError:
                continue
    return 0.0


async def request_with_retry(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    json_body: Optional[Any] = None,
    data: Optional[bytes] = None,
    max_retries: int = 5,
    base_delay: float = 1.0,
) -> HttpResult:
    """
    Make an HTTP request with retry logic for transient failures and throttling.

    - Retries on aiohttp.ClientError and timeouts (connection reset etc.)
    - Retries on HTTP 429 (respecting Retry-After / RateLimit-Reset) and
      502/503/504 with exponential backoff + jitter
    - Returns the final response for the caller to interpret; raises
      TransientIOError only when every attempt failed at the network level
    """
    last_error: Optional[BaseException] = None

    for attempt in range(max_retries):
        try:
            async with session.request(method, url, headers=headers, json=json_body, data=data) as response:
                result = HttpResult(
                    status=response.status,
                    body=await response.read(),
                    headers=dict(response.headers),
                )

            if result.status in RETRYABLE_STATUSES and attempt < max_retries - 1:
                delay = max(_retry_after_seconds(result.headers), base_delay * (2 ** attempt) + random.uniform(0, 0.5))
                logger.warning(f"{method} {url} returned {result.status}, retrying in {delay:.1f}s (attempt {attempt + 1}/{max_retries})")
                await asyncio.sleep(delay)
                continue

            return result
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            last_error = e
            if attempt < max_retries - 1:
                delay = base_delay * (2 ** attempt) + random.uniform(0, 0.5)
                logger.warning(f"{method} {url} failed ({type(e).__name__}: {e}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

    raise TransientIOError(f"{method} {url} failed after {max_retries} attempts: {last_error}")
