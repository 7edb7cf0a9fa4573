from __future__ import annotations
import aiosqlite, logging, time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .blockers import build_blockers
from .config import JOB_SUBMIT, JOB_SYNC, IndexNowConfig, RetryPolicy, SearchConsoleConfig
from .db import TrackingStore
from .discovery import UrlDiscovery, counterpart_url
from .models import ChannelBreakdown, IndexingSummary
from .status import (
    CHRONIC_FAILURE, DEINDEXED, ERROR, INDEXED, SUBMITTED, resolve_status,
)

LOGGER = logging.getLogger(__name__)

DAY = 86400

# ------------------ helpers ------------------

def age_str(seconds: Optional[float]) -> Optional[str]:
    if seconds is None:
        return None
    seconds = max(0, int(seconds))
    if seconds < 3600:
        return "< 1h ago"
    if seconds < DAY:
        return f"{seconds // 3600}h ago"
    return f"{seconds // DAY}d ago"

def local_midnight(now: float) -> int:
    return int(datetime.fromtimestamp(now).replace(hour=0, minute=0, second=0, microsecond=0).timestamp())

async def daily_quota_remaining(store: TrackingStore, site_id: str, quota: int, now: float) -> int:
    used = await store.count_google_api_since(site_id, local_midnight(now))
    return max(0, quota - used)

# ------------------ aggregator ------------------

class SummaryAggregator:
    """Builds an ``IndexingSummary`` for one site; each metric degrades on its own."""

    def __init__(self, store: TrackingStore, discovery: UrlDiscovery,
                 indexnow: Optional[IndexNowConfig] = None,
                 search_console: Optional[SearchConsoleConfig] = None,
                 policy: Optional[RetryPolicy] = None,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.discovery = discovery
        self.indexnow = indexnow or IndexNowConfig()
        self.search_console = search_console or SearchConsoleConfig()
        self.policy = policy or RetryPolicy()
        self.clock = clock

    async def _safe(self, what: str, coro: Awaitable[Any], default: Any) -> Any:
        try:
            return await coro
        except (aiosqlite.Error, OSError) as e:
            LOGGER.warning("summary: %s unavailable (%s), using %r", what, e, default)
            return default

    async def compute_summary(self, site_id: str) -> IndexingSummary:
        site = self.discovery.site(site_id)
        now = int(self.clock())
        summary = IndexingSummary(site_id=site_id)

        summary.published_count = await self._safe("published count", self.discovery.count_published(site_id), 0)
        records = await self._safe("tracking records", self.store.list_records(site_id), [])
        summary.tracked_count = len(records)

        resolved: Dict[str, str] = {}
        for record in records:
            status = resolve_status(record)
            resolved[record.url] = status
            if status == INDEXED:
                summary.indexed += 1
            elif status == SUBMITTED:
                summary.submitted += 1
            elif status == ERROR:
                summary.errors += 1
            elif status == DEINDEXED:
                summary.deindexed += 1
            elif status == CHRONIC_FAILURE:
                summary.chronic_failures += 1
            else:
                summary.discovered += 1
        summary.never_submitted = max(0, summary.published_count - summary.tracked_count)

        summary.stale_count = await self._safe(
            "stale count", self.store.count_stale(site_id, now - self.policy.stale_after_days * DAY), 0)
        summary.velocity_7d = await self._safe(
            "velocity", self.store.count_indexed_between(site_id, now - 7 * DAY), 0)
        summary.velocity_prev_7d = await self._safe(
            "previous velocity", self.store.count_indexed_between(site_id, now - 14 * DAY, now - 7 * DAY), 0)
        summary.channel_breakdown = await self._safe(
            "channel breakdown", self.store.channel_counts(site_id), ChannelBreakdown())

        samples = await self._safe("time to index", self.store.indexed_samples(site_id, 30), [])
        deltas = [indexed_at - submitted_at for submitted_at, indexed_at in samples if indexed_at - submitted_at > 0]
        if len(deltas) >= 3:
            summary.avg_days_to_index = round(sum(deltas) / len(deltas) / DAY)

        summary.daily_quota_remaining = await self._safe(
            "daily quota",
            daily_quota_remaining(self.store, site_id, self.search_console.daily_publish_quota, now),
            None,
        )

        if site.bilingual:
            summary.hreflang_mismatch_count = self.count_hreflang_mismatches(resolved, site.alternate_locale)

        summary.thin_content_count = await self._safe(
            "thin content", self.discovery.count_thin_content(site_id, self.policy.thin_content_words), 0)

        last_submitted, last_inspected = await self._safe(
            "last activity", self.store.latest_timestamps(site_id), (None, None))
        summary.last_submission_age = age_str(now - last_submitted) if last_submitted else None
        summary.last_verification_age = age_str(now - last_inspected) if last_inspected else None

        job_runs = await self._safe("job history", self._job_runs(now), None)
        summary.blockers = build_blockers(
            summary,
            indexnow_configured=self.indexnow.configured,
            search_console_configured=self.search_console.configured,
            job_runs=job_runs,
            policy=self.policy,
        )
        return summary

    async def _job_runs(self, now: int) -> Dict[str, int]:
        since = now - self.policy.job_absence_days * DAY
        return {job: await self.store.count_job_runs_since(job, since) for job in (JOB_SYNC, JOB_SUBMIT)}

    @staticmethod
    def count_hreflang_mismatches(resolved: Dict[str, str], locale: str) -> int:
        """Pairs where one side is indexed and its tracked counterpart is not; each pair counted once."""
        pairs: Set[frozenset] = set()
        for url, status in resolved.items():
            if status != INDEXED:
                continue
            try:
                other = counterpart_url(url, locale)
            except ValueError:
                continue
            if other in resolved and resolved[other] != INDEXED:
                pairs.add(frozenset((url, other)))
        return len(pairs)
