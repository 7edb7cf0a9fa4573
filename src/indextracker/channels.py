"""
Channel adapters for the external discovery services.

Each adapter turns every expected failure (missing configuration, non-success
status, exhausted retries) into a ``ChannelResult``; nothing here raises for a
remote problem.
"""
from __future__ import annotations
import aiohttp
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote, urlparse

from .auth import SCOPE_INDEXING, SCOPE_WEBMASTERS, ServiceAccountTokenProvider
from .config import HttpConfig, IndexNowConfig, SearchConsoleConfig
from .fetch import HttpResponse, request_with_retry
from .models import ChannelResult, InspectionResult, RichResultItem

LOGGER = logging.getLogger(__name__)

INDEXNOW = "indexnow"
SITEMAP = "sitemap"
INSPECTION = "inspection"
GOOGLE_API = "google_api"

def _failure(channel: str, resp: HttpResponse, what: str) -> ChannelResult:
    detail = resp.error or resp.text[:200]
    return ChannelResult(
        channel=channel,
        success=False,
        message=f"{what} failed ({resp.status}): {detail}".strip(),
        status=resp.status,
        rate_limited=resp.status == 429,
    )

def _origin(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Malformed URL: {url!r}")
    return f"{parsed.scheme}://{parsed.netloc}"

# ------------------ IndexNow ------------------

class IndexNowChannel:
    name = INDEXNOW

    def __init__(self, cfg: IndexNowConfig, session: aiohttp.ClientSession, http: Optional[HttpConfig] = None):
        self.cfg = cfg
        self.session = session
        self.http = http or HttpConfig()

    @property
    def configured(self) -> bool:
        return self.cfg.configured

    async def submit_batch(self, urls: Sequence[str], site_url: str) -> ChannelResult:
        """POST ``urls`` in batches of at most ``max_batch``; success only if every batch is accepted."""
        if not self.configured:
            return ChannelResult(INDEXNOW, False, "INDEXNOW_KEY not configured", configured=False)
        urls = list(urls)
        if not urls:
            return ChannelResult(INDEXNOW, True, "nothing to submit")
        base = _origin(site_url)
        host = urlparse(base).netloc
        for start in range(0, len(urls), self.cfg.max_batch):
            chunk = urls[start:start + self.cfg.max_batch]
            resp = await request_with_retry(
                self.session, "POST", self.cfg.endpoint, cfg=self.http,
                json={
                    "host": host,
                    "key": self.cfg.key,
                    "keyLocation": f"{base}/{self.cfg.key}.txt",
                    "urlList": chunk,
                },
                headers={"Content-Type": "application/json; charset=utf-8"},
            )
            if resp.status not in (200, 202):
                LOGGER.warning("IndexNow rejected %d URL(s) for %s: %s", len(chunk), host, resp.status)
                return _failure(INDEXNOW, resp, "IndexNow submission")
        LOGGER.info("IndexNow accepted %d URL(s) for %s", len(urls), host)
        return ChannelResult(INDEXNOW, True, f"submitted {len(urls)} URL(s)", status=resp.status)

# ------------------ Search Console ------------------

class _GoogleChannel:
    name = ""
    scope = SCOPE_WEBMASTERS

    def __init__(self, cfg: SearchConsoleConfig, session: aiohttp.ClientSession,
                 tokens: ServiceAccountTokenProvider, http: Optional[HttpConfig] = None):
        self.cfg = cfg
        self.session = session
        self.tokens = tokens
        self.http = http or HttpConfig()

    @property
    def configured(self) -> bool:
        return self.tokens.configured

    async def _auth_headers(self) -> Tuple[Optional[Dict[str, str]], Optional[ChannelResult]]:
        if not self.configured:
            return None, ChannelResult(self.name, False, "Search Console credentials not configured", configured=False)
        token = await self.tokens.get_token(self.scope)
        if not token:
            return None, ChannelResult(self.name, False, self.tokens.last_error or "no access token")
        return {"Authorization": f"Bearer {token}"}, None

class SitemapChannel(_GoogleChannel):
    name = SITEMAP

    async def submit_one(self, sitemap_url: str, property_url: Optional[str] = None) -> ChannelResult:
        """Register (or re-register) a sitemap with the Search Console property."""
        headers, err = await self._auth_headers()
        if err:
            return err
        prop = property_url or self.cfg.property_url or _origin(sitemap_url) + "/"
        endpoint = f"{self.cfg.api_base}/sites/{quote(prop, safe='')}/sitemaps/{quote(sitemap_url, safe='')}"
        resp = await request_with_retry(self.session, "PUT", endpoint, cfg=self.http, headers=headers)
        if resp.status in (200, 204):
            LOGGER.info("Sitemap %s registered with %s", sitemap_url, prop)
            return ChannelResult(SITEMAP, True, f"sitemap submitted: {sitemap_url}", status=resp.status)
        return _failure(SITEMAP, resp, "Sitemap submission")

class IndexingApiChannel(_GoogleChannel):
    """URL_UPDATED notifications; quota-limited per day."""
    name = GOOGLE_API
    scope = SCOPE_INDEXING

    async def submit_one(self, url: str) -> ChannelResult:
        headers, err = await self._auth_headers()
        if err:
            return err
        resp = await request_with_retry(
            self.session, "POST", self.cfg.publish_url, cfg=self.http,
            headers=headers, json={"url": url, "type": "URL_UPDATED"},
        )
        if resp.ok:
            return ChannelResult(GOOGLE_API, True, "URL_UPDATED published", status=resp.status)
        return _failure(GOOGLE_API, resp, "Indexing API publish")

def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    return [str(v) for v in value] if isinstance(value, list) else [str(value)]

def parse_inspection(url: str, data: Dict[str, Any]) -> InspectionResult:
    inspection = data.get("inspectionResult") or {}
    status = inspection.get("indexStatusResult") or {}
    mobile = inspection.get("mobileUsabilityResult") or {}
    rich = inspection.get("richResultsResult") or {}

    mobile_issues = [
        issue.get("issueMessage") or issue.get("severity") or str(issue) if isinstance(issue, dict) else str(issue)
        for issue in mobile.get("issues") or []
    ]
    rich_items = []
    for item in rich.get("detectedItems") or []:
        issues = []
        for sub in item.get("items") or []:
            for issue in sub.get("issues") or []:
                issues.append(issue.get("issueMessage") or str(issue) if isinstance(issue, dict) else str(issue))
        rich_items.append(RichResultItem(type=item.get("richResultType") or "unknown", issues=issues))

    return InspectionResult(
        url=url,
        coverage_state=status.get("coverageState"),
        indexing_state=status.get("indexingState"),
        verdict=status.get("verdict"),
        last_crawl_time=status.get("lastCrawlTime"),
        page_fetch_state=status.get("pageFetchState"),
        robots_txt_state=status.get("robotsTxtState"),
        crawled_as=status.get("crawledAs"),
        user_canonical=status.get("userCanonical"),
        google_canonical=status.get("googleCanonical"),
        sitemaps=_as_list(status.get("sitemap")),
        referring_urls=_as_list(status.get("referringUrls")),
        mobile_usability_verdict=mobile.get("verdict"),
        mobile_usability_issues=mobile_issues,
        rich_results_verdict=rich.get("verdict"),
        rich_results_items=rich_items,
        raw=inspection,
    )

class InspectionChannel(_GoogleChannel):
    name = INSPECTION

    async def inspect(self, url: str, property_url: Optional[str] = None) -> Tuple[Optional[InspectionResult], ChannelResult]:
        """Inspect one URL. The result is ``None`` whenever the call produced no data."""
        headers, err = await self._auth_headers()
        if err:
            return None, err
        prop = property_url or self.cfg.property_url or _origin(url) + "/"
        resp = await request_with_retry(
            self.session, "POST", self.cfg.inspection_url, cfg=self.http,
            headers=headers, json={"inspectionUrl": url, "siteUrl": prop},
        )
        if not resp.ok:
            return None, _failure(INSPECTION, resp, "URL inspection")
        data = resp.json()
        if not isinstance(data, dict) or not data.get("inspectionResult"):
            return None, ChannelResult(INSPECTION, False, "URL inspection returned no data", status=resp.status)
        return parse_inspection(url, data), ChannelResult(INSPECTION, True, status=resp.status)
