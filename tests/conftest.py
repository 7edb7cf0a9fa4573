"""Shared fixtures: temporary tracking store, fixed clock, fake content sources, channels and HTTP session."""
from __future__ import annotations

import json
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from indextracker.config import RetryPolicy, SiteConfig
from indextracker.content import ContentItem
from indextracker.db import TrackingStore
from indextracker.discovery import UrlDiscovery
from indextracker.models import ChannelResult, InspectionResult

NOW = 1_700_000_000
HOUR = 3600
DAY = 86400

class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

class SteppingMonotonic:
    """Monotonic clock that advances ``step`` seconds on every read."""

    def __init__(self, step: float = 0.0):
        self.t = 0.0
        self.step = step

    def __call__(self) -> float:
        value = self.t
        self.t += self.step
        return value

class FakeSource:
    def __init__(self, paths=(), name: str = "fake", word_counts: Optional[Dict[str, int]] = None,
                 error: Optional[Exception] = None):
        self.name = name
        self.paths = list(paths)
        self.word_counts = word_counts or {}
        self.error = error

    async def list_published(self, site, now=None) -> List[ContentItem]:
        if self.error is not None:
            raise self.error
        return [
            ContentItem(slug=p.rsplit("/", 1)[-1], path=p, word_count=self.word_counts.get(p))
            for p in self.paths
        ]

# ------------------ fake channels ------------------

class FakeIndexNow:
    name = "indexnow"

    def __init__(self, configured: bool = True, success: bool = True, message: str = ""):
        self.configured = configured
        self.success = success
        self.message = message or ("ok" if success else "IndexNow submission failed (500): boom")
        self.calls: List[Tuple[List[str], str]] = []

    async def submit_batch(self, urls, site_url):
        self.calls.append((list(urls), site_url))
        if not self.configured:
            return ChannelResult("indexnow", False, "INDEXNOW_KEY not configured", configured=False)
        return ChannelResult("indexnow", self.success, self.message, status=200 if self.success else 500)

class FakeGoogleChannel:
    def __init__(self, name: str, configured: bool = True, success: bool = True):
        self.name = name
        self.configured = configured
        self.success = success
        self.calls: List[tuple] = []

    async def submit_one(self, *args):
        self.calls.append(args)
        return ChannelResult(self.name, self.success, "ok" if self.success else f"{self.name} failed (500)",
                             status=200 if self.success else 500)

class FakeInspection:
    name = "inspection"

    def __init__(self, results: Optional[Dict[str, InspectionResult]] = None, configured: bool = True,
                 rate_limited: bool = False):
        self.results = results or {}
        self.configured = configured
        self.rate_limited = rate_limited
        self.calls: List[str] = []

    async def inspect(self, url, property_url=None):
        self.calls.append(url)
        if self.rate_limited:
            return None, ChannelResult("inspection", False, "URL inspection failed (429)", status=429,
                                       rate_limited=True)
        if url not in self.results:
            return None, ChannelResult("inspection", False, "URL inspection returned no data", status=200)
        return self.results[url], ChannelResult("inspection", True, status=200)

# ------------------ fake aiohttp session ------------------

class FakeResponse:
    def __init__(self, status: int = 200, body="", headers: Optional[Dict[str, str]] = None):
        self.status = status
        self.headers = headers or {}
        self._body = body if isinstance(body, str) else json.dumps(body)

    async def text(self, errors: str = "strict") -> str:
        return self._body

class _RequestContext:
    def __init__(self, item):
        self.item = item

    async def __aenter__(self):
        if isinstance(self.item, Exception):
            raise self.item
        return self.item

    async def __aexit__(self, *exc):
        return False

class FakeSession:
    """Replays queued responses (or raises queued exceptions) and records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: List[dict] = []

    def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return _RequestContext(item)

# ------------------ fixtures ------------------

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def policy():
    return RetryPolicy(max_attempts=5, default_max_urls=50, default_budget_ms=53_000)

@pytest.fixture
def sites():
    return {
        "demo": SiteConfig(site_id="demo", domain="https://example.com", static_pages=("/", "/blog")),
        "bi": SiteConfig(site_id="bi", domain="https://bilingual.example", bilingual=True, static_pages=("/",)),
    }

@pytest_asyncio.fixture
async def store(tmp_path):
    s = TrackingStore(str(tmp_path / "tracking.db"))
    await s.init()
    return s

@pytest.fixture
def source():
    return FakeSource(["/blog/a", "/blog/b"], word_counts={"/blog/a": 500, "/blog/b": 1500})

@pytest.fixture
def discovery(sites, source, store, clock):
    return UrlDiscovery(sites, [source], store, clock=clock)
