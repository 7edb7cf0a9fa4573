from __future__ import annotations
from typing import Dict, List, Optional

from .config import JOB_SUBMIT, JOB_SYNC, RetryPolicy
from .models import SEVERITY_ORDER, Blocker, IndexingSummary

def _articles(n: int) -> str:
    return f"{n} article{'' if n == 1 else 's'}"

def sort_blockers(blockers: List[Blocker]) -> List[Blocker]:
    # sorted() is stable, so rule order survives within a severity
    return sorted(blockers, key=lambda b: SEVERITY_ORDER.get(b.severity, 2))

def build_blockers(
    summary: IndexingSummary,
    *,
    indexnow_configured: bool,
    search_console_configured: bool,
    job_runs: Optional[Dict[str, int]] = None,
    policy: Optional[RetryPolicy] = None,
) -> List[Blocker]:
    """Evaluate every diagnostic rule against a summary and return the hits, most severe first.

    ``job_runs`` maps job name to its run count inside the absence window; pass
    ``None`` when the job history could not be read and the job checks are skipped.
    """
    policy = policy or RetryPolicy()
    out: List[Blocker] = []

    if not indexnow_configured:
        out.append(Blocker("IndexNow key not set: search engines can't be notified of new content",
                           summary.published_count, "critical"))
    if not search_console_configured:
        out.append(Blocker("Search Console credentials not set: sitemaps and inspections are disabled",
                           summary.published_count, "critical"))
    if summary.never_submitted > 0:
        out.append(Blocker(f"{_articles(summary.never_submitted)} not tracked: discovery never picked them up",
                           summary.never_submitted, "critical"))
    if summary.stale_count > 0:
        out.append(Blocker(f"{_articles(summary.stale_count)} submitted {policy.stale_after_days}+ days ago "
                           f"but still not indexed", summary.stale_count, "critical"))
    if summary.errors > 0:
        out.append(Blocker(f"{_articles(summary.errors)} had submission errors", summary.errors, "critical"))
    if summary.discovered > 0:
        out.append(Blocker(f"{_articles(summary.discovered)} discovered but never submitted to search engines",
                           summary.discovered, "warning"))
    if summary.deindexed > 0:
        out.append(Blocker(f"{_articles(summary.deindexed)} were removed from Google's index",
                           summary.deindexed, "critical"))
    if summary.chronic_failures > 0:
        out.append(Blocker(f"{_articles(summary.chronic_failures)} failed to index after "
                           f"{policy.max_attempts} attempts", summary.chronic_failures, "critical"))

    if job_runs is not None:
        days = policy.job_absence_days
        if job_runs.get(JOB_SYNC, 0) == 0:
            out.append(Blocker(f"URL sync hasn't run in {days} days: new URLs are not being discovered",
                               0, "warning"))
        if indexnow_configured and job_runs.get(JOB_SUBMIT, 0) == 0:
            out.append(Blocker(f"Submission job hasn't run in {days} days: URLs are not being resubmitted",
                               0, "warning"))

    if summary.thin_content_count > 0:
        out.append(Blocker(f"{_articles(summary.thin_content_count)} under {policy.thin_content_words} words: "
                           f"thin content may be rejected", summary.thin_content_count, "warning"))
    if summary.hreflang_mismatch_count > 0:
        out.append(Blocker(f"{summary.hreflang_mismatch_count} bilingual pair(s) indexed in only one language",
                           summary.hreflang_mismatch_count, "warning"))
    if summary.daily_quota_remaining == 0:
        out.append(Blocker("Indexing API daily quota used up: next submissions wait until midnight", 0, "info"))

    return sort_blockers(out)
