from __future__ import annotations
import aiosqlite
import asyncio
import dataclasses
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional, Set

from .channels import IndexingApiChannel, IndexNowChannel, InspectionChannel, SitemapChannel
from .config import JOB_SUBMIT, JOB_VERIFY, RetryPolicy, SearchConsoleConfig
from .db import TrackingStore
from .discovery import UrlDiscovery, counterpart_url
from .models import ImmediateSubmitResult, RetryResult, VerifyResult
from .status import CHRONIC_FAILURE, DEINDEXED, DISCOVERED, INDEXED, SUBMITTED, resolve_status
from .summary import daily_quota_remaining

LOGGER = logging.getLogger(__name__)

def _parse_crawl_time(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp())
    except ValueError:
        return None

class _Budget:
    """Wall-clock budget in milliseconds; a zero budget is exhausted from the start."""

    def __init__(self, budget_ms: int, monotonic: Callable[[], float]):
        self.budget_ms = budget_ms
        self.monotonic = monotonic
        self.started = monotonic()

    @property
    def exhausted(self) -> bool:
        return (self.monotonic() - self.started) * 1000 >= self.budget_ms

class SubmissionOrchestrator:
    def __init__(
        self,
        store: TrackingStore,
        discovery: UrlDiscovery,
        indexnow: IndexNowChannel,
        sitemap: SitemapChannel,
        inspection: InspectionChannel,
        indexing_api: IndexingApiChannel,
        policy: Optional[RetryPolicy] = None,
        search_console: Optional[SearchConsoleConfig] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.store = store
        self.discovery = discovery
        self.indexnow = indexnow
        self.sitemap = sitemap
        self.inspection = inspection
        self.indexing_api = indexing_api
        self.policy = policy or RetryPolicy()
        self.search_console = search_console or SearchConsoleConfig()
        self.clock = clock
        self.monotonic = monotonic
        self.sleep = sleep

    def _now(self) -> int:
        return int(self.clock())

    def _limits(self, max_urls: Optional[int], budget_ms: Optional[int], default_max: int):
        max_urls = default_max if max_urls is None else max_urls
        budget_ms = self.policy.default_budget_ms if budget_ms is None else budget_ms
        if max_urls < 0:
            raise ValueError(f"max_urls must be >= 0, got {max_urls}")
        if budget_ms < 0:
            raise ValueError(f"budget_ms must be >= 0, got {budget_ms}")
        return max_urls, _Budget(budget_ms, self.monotonic)

    async def _job(self, job_name: str, site_id: str, started: int, result, failed: bool):
        await self.store.record_job_run(job_name, site_id, "failed" if failed else "completed",
                                        started, self._now(), dataclasses.asdict(result))

    # ------------------ retry ------------------

    async def retry_stale_and_failed(self, site_id: str, max_urls: Optional[int] = None,
                                     budget_ms: Optional[int] = None) -> RetryResult:
        """Resubmit stuck, failed and stale records through the push channel within a time budget."""
        site = self.discovery.site(site_id)
        max_urls, budget = self._limits(max_urls, budget_ms, self.policy.default_max_urls)
        started = self._now()
        result = RetryResult(site_id=site_id)

        if not self.indexnow.configured:
            result.errors.append("INDEXNOW_KEY not configured: no retry possible")
            LOGGER.error("[%s] retry skipped, push channel not configured", site_id)
            await self._job(JOB_SUBMIT, site_id, started, result, failed=True)
            return result

        candidates = await self.store.select_retry_candidates(site_id, max_urls, self._now(), self.policy)
        result.selected = len(candidates)
        if not candidates:
            LOGGER.info("[%s] retry: nothing to resubmit", site_id)
            await self._job(JOB_SUBMIT, site_id, started, result, failed=False)
            return result

        if budget.exhausted:
            result.budget_exhausted = True
            LOGGER.warning("[%s] retry: budget exhausted before submission", site_id)
            await self._job(JOB_SUBMIT, site_id, started, result, failed=False)
            return result

        urls = [r.url for r in candidates]
        outcome = await self.indexnow.submit_batch(urls, site.domain)
        result.retried = len(urls)
        if not outcome.success:
            result.errors.append(outcome.message)

        for record in candidates:
            if budget.exhausted:
                result.budget_exhausted = True
                LOGGER.warning("[%s] retry: budget exhausted after %d update(s)", site_id, result.succeeded)
                break
            if outcome.success:
                await self.store.record_submission(site_id, [record.url], indexnow=True, now=self._now())
                result.succeeded += 1
            else:
                await self.store.record_failure(site_id, [record.url], outcome.message,
                                                max_attempts=self.policy.max_attempts, now=self._now())
                if record.submission_attempts + 1 >= self.policy.max_attempts:
                    LOGGER.warning("[%s] %s reached %d attempts, marked chronic failure",
                                   site_id, record.url, self.policy.max_attempts)

        LOGGER.info("[%s] retry: selected=%d retried=%d succeeded=%d",
                    site_id, result.selected, result.retried, result.succeeded)
        await self._job(JOB_SUBMIT, site_id, started, result, failed=not outcome.success)
        return result

    # ------------------ publish hook ------------------

    async def submit_url_immediately(self, url: str, site_id: str,
                                     site_url: Optional[str] = None) -> ImmediateSubmitResult:
        """Push a freshly published URL through every configured channel."""
        site = self.discovery.site(site_id, site_url)
        counterpart_url(url, site.alternate_locale)  # validates the URL
        result = ImmediateSubmitResult(url=url, success=False)

        result.indexnow = await self.indexnow.submit_batch([url], site.domain)
        if not result.indexnow.success:
            result.errors.append(result.indexnow.message)

        if self.indexing_api.configured:
            remaining = await daily_quota_remaining(self.store, site_id, self.search_console.daily_publish_quota,
                                                    self._now())
            if remaining > 0:
                result.google_api = await self.indexing_api.submit_one(url)
                if not result.google_api.success:
                    result.errors.append(result.google_api.message)
            else:
                result.errors.append("Indexing API daily quota exhausted")

        indexnow_ok = result.indexnow.success
        google_ok = bool(result.google_api and result.google_api.success)
        result.success = indexnow_ok or google_ok
        attempted = result.indexnow.configured or result.google_api is not None
        if result.success:
            await self.store.record_submission(site_id, [url], indexnow=indexnow_ok, google_api=google_ok,
                                               now=self._now())
        elif attempted:
            await self.store.record_failure(site_id, [url], "; ".join(result.errors) or "no channel accepted",
                                            max_attempts=self.policy.max_attempts, now=self._now())
        else:
            # nothing was pushed: track it without spending an attempt
            await self.store.insert_discovered(site_id, [url], now=self._now())
            LOGGER.error("[%s] %s not submitted, no channel available: %s", site_id, url,
                         "; ".join(result.errors))

        # best effort, never fails the publish flow
        result.sitemap = await self.sitemap.submit_one(site.sitemap_url, site.gsc_property)
        if result.sitemap.success:
            try:
                await self.store.mark_sitemap_submitted(site_id, [url])
            except aiosqlite.Error as e:
                LOGGER.warning("[%s] could not record sitemap ping for %s: %s", site_id, url, e)
        else:
            LOGGER.warning("[%s] sitemap ping failed for %s: %s", site_id, url, result.sitemap.message)

        LOGGER.info("[%s] immediate submit %s: %s", site_id, url, "ok" if result.success else "failed")
        return result

    # ------------------ verification ------------------

    async def verify_indexing(self, site_id: str, max_urls: Optional[int] = None,
                              budget_ms: Optional[int] = None) -> VerifyResult:
        """Inspect queued URLs and reconcile their tracking records with what the index reports."""
        site = self.discovery.site(site_id)
        max_urls, budget = self._limits(max_urls, budget_ms, self.policy.verify_max_urls)
        started = self._now()
        result = VerifyResult(site_id=site_id)

        if not self.inspection.configured:
            result.messages.append("Search Console credentials not configured: verification skipped")
            await self._job(JOB_VERIFY, site_id, started, result, failed=True)
            return result

        queue = await self.store.select_verification_candidates(site_id, max_urls, self._now(), self.policy)
        mismatched: Set[frozenset] = set()

        for i, record in enumerate(queue):
            if budget.exhausted:
                result.stopped_early = True
                result.messages.append(f"budget exhausted after {result.checked} inspection(s)")
                break
            if i > 0:
                await self.sleep(self.search_console.inspection_delay)

            inspected, outcome = await self.inspection.inspect(record.url, site.gsc_property)
            result.checked += 1
            if inspected is None:
                result.errors += 1
                await self.store.record_inspection_error(site_id, record.url, outcome.message, now=self._now())
                if outcome.rate_limited:
                    result.stopped_early = True
                    result.messages.append("inspection rate limited, stopping")
                    LOGGER.warning("[%s] inspection rate limited after %d URL(s)", site_id, result.checked)
                    break
                continue

            if inspected.is_indexed:
                status = INDEXED
                result.indexed += 1
            else:
                result.not_indexed += 1
                coverage = (inspected.coverage_state or "").lower()
                if resolve_status(record) == INDEXED:
                    status = DEINDEXED
                    result.deindexed += 1
                    LOGGER.warning("[%s] %s dropped out of the index (%s)", site_id, record.url, inspected.coverage_state)
                elif record.submission_attempts >= self.policy.max_attempts:
                    status = CHRONIC_FAILURE
                    result.chronic_failures += 1
                    LOGGER.warning("[%s] %s still not indexed after %d attempts", site_id, record.url,
                                   record.submission_attempts)
                elif record.last_submitted_at is None or "crawled" in coverage or "discovered" in coverage:
                    # unsubmitted URLs keep their retry tier
                    status = DISCOVERED
                else:
                    status = SUBMITTED

            if budget.exhausted:
                result.stopped_early = True
                result.messages.append(f"budget exhausted after {result.checked} inspection(s)")
                break
            await self.store.apply_inspection(
                site_id, record.url,
                status=status,
                indexing_state=inspected.indexing_state,
                coverage_state=inspected.coverage_state,
                last_crawled_at=_parse_crawl_time(inspected.last_crawl_time),
                raw=inspected.raw,
                now=self._now(),
            )

            if status == INDEXED and site.bilingual:
                other = counterpart_url(record.url, site.alternate_locale)
                pair = frozenset((record.url, other))
                other_record = await self.store.get(site_id, other)
                if other_record and resolve_status(other_record) != INDEXED and pair not in mismatched:
                    mismatched.add(pair)
                    LOGGER.warning("[%s] hreflang mismatch: %s indexed, %s is %s",
                                   site_id, record.url, other, resolve_status(other_record))
        result.hreflang_mismatches = len(mismatched)

        LOGGER.info("[%s] verify: checked=%d indexed=%d not_indexed=%d errors=%d",
                    site_id, result.checked, result.indexed, result.not_indexed, result.errors)
        await self._job(JOB_VERIFY, site_id, started, result, failed=False)
        return result
