from __future__ import annotations
import aiohttp
import logging
import time
from typing import Callable, Dict, Optional, Sequence

from .auth import ServiceAccountTokenProvider
from .channels import IndexingApiChannel, IndexNowChannel, InspectionChannel, SitemapChannel
from .config import (
    HttpConfig, IndexNowConfig, RetryPolicy, SearchConsoleConfig, SiteConfig, get_db_paths, load_site_configs,
)
from .content import ContentSource, default_sources, init_content_db
from .db import TrackingStore
from .discovery import UrlDiscovery
from .models import ImmediateSubmitResult, IndexingSummary, RetryResult, SyncResult, VerifyResult
from .orchestrator import SubmissionOrchestrator
from .summary import SummaryAggregator

LOGGER = logging.getLogger(__name__)

class IndexingEngine:
    """Wires store, discovery, channels and aggregator together and owns the HTTP session.

    Use as ``async with IndexingEngine(...) as engine:``; the session is closed on exit.
    """

    def __init__(
        self,
        sites: Dict[str, SiteConfig],
        tracking_db: str,
        content_db: str,
        sources: Optional[Sequence[ContentSource]] = None,
        http: Optional[HttpConfig] = None,
        indexnow: Optional[IndexNowConfig] = None,
        search_console: Optional[SearchConsoleConfig] = None,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.sites = sites
        self.content_db = content_db
        self.http = http or HttpConfig()
        self.indexnow_cfg = indexnow or IndexNowConfig()
        self.search_console_cfg = search_console or SearchConsoleConfig()
        self.policy = policy or RetryPolicy()
        self.clock = clock
        self.store = TrackingStore(tracking_db)
        self.discovery = UrlDiscovery(sites, sources if sources is not None else default_sources(content_db),
                                      self.store, clock=clock)
        self.session: Optional[aiohttp.ClientSession] = None
        self.orchestrator: Optional[SubmissionOrchestrator] = None
        self.aggregator = SummaryAggregator(self.store, self.discovery, self.indexnow_cfg,
                                            self.search_console_cfg, self.policy, clock=clock)

    @classmethod
    def from_env(cls, sites_path: Optional[str] = None, tracking_db: Optional[str] = None,
                 content_db: Optional[str] = None) -> "IndexingEngine":
        default_tracking, default_content = get_db_paths()
        return cls(
            sites=load_site_configs(sites_path),
            tracking_db=tracking_db or default_tracking,
            content_db=content_db or default_content,
        )

    async def __aenter__(self) -> "IndexingEngine":
        await self.open()
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def open(self):
        await self.store.init()
        self.session = aiohttp.ClientSession(headers={"User-Agent": self.http.user_agent})
        tokens = ServiceAccountTokenProvider(self.search_console_cfg, self.session, self.http, clock=self.clock)
        self.orchestrator = SubmissionOrchestrator(
            store=self.store,
            discovery=self.discovery,
            indexnow=IndexNowChannel(self.indexnow_cfg, self.session, self.http),
            sitemap=SitemapChannel(self.search_console_cfg, self.session, tokens, self.http),
            inspection=InspectionChannel(self.search_console_cfg, self.session, tokens, self.http),
            indexing_api=IndexingApiChannel(self.search_console_cfg, self.session, tokens, self.http),
            policy=self.policy,
            search_console=self.search_console_cfg,
            clock=self.clock,
        )
        LOGGER.debug("engine open: %d site(s), indexnow=%s, search console=%s", len(self.sites),
                     self.indexnow_cfg.configured, self.search_console_cfg.configured)

    async def close(self):
        if self.session is not None:
            await self.session.close()
            self.session = None

    async def init_databases(self):
        await self.store.init()
        await init_content_db(self.content_db)

    def _require_open(self) -> SubmissionOrchestrator:
        if self.orchestrator is None:
            raise RuntimeError("IndexingEngine is not open; use 'async with'")
        return self.orchestrator

    # ------------------ operational surface ------------------

    async def compute_summary(self, site_id: str) -> IndexingSummary:
        return await self.aggregator.compute_summary(site_id)

    async def sync_to_tracking(self, site_id: str, site_url: Optional[str] = None) -> SyncResult:
        return await self.discovery.sync_to_tracking(site_id, site_url)

    async def retry_stale_and_failed(self, site_id: str, max_urls: Optional[int] = None,
                                     budget_ms: Optional[int] = None) -> RetryResult:
        return await self._require_open().retry_stale_and_failed(site_id, max_urls, budget_ms)

    async def submit_url_immediately(self, url: str, site_id: str,
                                     site_url: Optional[str] = None) -> ImmediateSubmitResult:
        return await self._require_open().submit_url_immediately(url, site_id, site_url)

    async def verify_indexing(self, site_id: str, max_urls: Optional[int] = None,
                              budget_ms: Optional[int] = None) -> VerifyResult:
        return await self._require_open().verify_indexing(site_id, max_urls, budget_ms)
