from __future__ import annotations
import asyncio
import aiohttp
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import HttpConfig

LOGGER = logging.getLogger(__name__)

@dataclass
class HttpResponse:
    """Status, headers and body of a finished request. ``status == 0`` means no response."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        try:
            return json.loads(self.text) if self.text else {}
        except ValueError:
            return {}

def should_retry_status(status_code: int) -> bool:
    """Determine if a status code should be retried."""
    # 0 = connection/timeout errors
    if status_code == 0:
        return True
    if status_code == 429:
        return True
    return 500 <= status_code < 600

def retry_after_seconds(headers: Dict[str, str]) -> Optional[float]:
    value = None
    for key, val in headers.items():
        if key.lower() == "retry-after":
            value = val
            break
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not worth honoring here
        return None

async def request_with_retry(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    *,
    cfg: Optional[HttpConfig] = None,
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs,
) -> HttpResponse:
    """Issue one HTTP request, retrying 429/5xx and transport errors with exponential backoff.

    Never raises for network failures: when retries are exhausted the last
    response (or a ``status=0`` response carrying the error text) is returned.
    """
    cfg = cfg or HttpConfig()
    retries = cfg.max_retries if max_retries is None else max_retries
    delay0 = cfg.retry_base_delay if base_delay is None else base_delay
    kwargs.setdefault("timeout", aiohttp.ClientTimeout(total=cfg.timeout))

    last = HttpResponse(status=0, error="no attempt made")
    for attempt in range(retries + 1):
        try:
            async with session.request(method, url, **kwargs) as resp:
                text = await resp.text(errors="ignore")
                last = HttpResponse(status=resp.status, headers=dict(resp.headers), text=text)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            last = HttpResponse(status=0, error=f"{type(e).__name__}: {e}")

        if not should_retry_status(last.status) or attempt >= retries:
            return last

        delay = delay0 * (2 ** attempt)
        hinted = retry_after_seconds(last.headers)
        if hinted is not None:
            delay = hinted
        delay = min(delay, cfg.max_retry_delay)
        LOGGER.warning("%s %s -> %s, retry %d/%d in %.1fs",
                       method, url, last.status or last.error, attempt + 1, retries, delay)
        await sleep(delay)
    return last
