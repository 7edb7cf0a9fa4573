from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

# ------------------ tracking records ------------------

@dataclass
class IndexingTrackingRecord:
    """Durable per-(site, URL) state owned by the tracking store."""
    site_id: str
    url: str
    status: str = "discovered"
    indexing_state: Optional[str] = None
    coverage_state: Optional[str] = None
    submitted_indexnow: bool = False
    submitted_sitemap: bool = False
    submitted_google_api: bool = False
    submission_attempts: int = 0
    last_submitted_at: Optional[int] = None
    last_inspected_at: Optional[int] = None
    last_crawled_at: Optional[int] = None
    last_error: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "IndexingTrackingRecord":
        return cls(
            site_id=row["site_id"],
            url=row["url"],
            status=row["status"],
            indexing_state=row["indexing_state"],
            coverage_state=row["coverage_state"],
            submitted_indexnow=bool(row["submitted_indexnow"]),
            submitted_sitemap=bool(row["submitted_sitemap"]),
            submitted_google_api=bool(row["submitted_google_api"]),
            submission_attempts=row["submission_attempts"] or 0,
            last_submitted_at=row["last_submitted_at"],
            last_inspected_at=row["last_inspected_at"],
            last_crawled_at=row["last_crawled_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

# ------------------ diagnostics ------------------

SEVERITY_ORDER = {"critical": 0, "warning": 1, "info": 2}

@dataclass
class Blocker:
    reason: str
    count: int
    severity: str

    def __post_init__(self):
        if self.severity not in SEVERITY_ORDER:
            raise ValueError(f"Unknown blocker severity: {self.severity!r}")

@dataclass
class ChannelBreakdown:
    indexnow: int = 0
    sitemap: int = 0
    google_api: int = 0

@dataclass
class IndexingSummary:
    """Point-in-time aggregate for one site. ``total`` is always the sum of the buckets."""
    site_id: str
    indexed: int = 0
    submitted: int = 0
    discovered: int = 0
    never_submitted: int = 0
    errors: int = 0
    deindexed: int = 0
    chronic_failures: int = 0
    published_count: int = 0
    tracked_count: int = 0
    stale_count: int = 0
    velocity_7d: int = 0
    velocity_prev_7d: int = 0
    avg_days_to_index: Optional[float] = None
    last_submission_age: Optional[str] = None
    last_verification_age: Optional[str] = None
    channel_breakdown: ChannelBreakdown = field(default_factory=ChannelBreakdown)
    daily_quota_remaining: Optional[int] = None
    hreflang_mismatch_count: int = 0
    thin_content_count: int = 0
    blockers: List[Blocker] = field(default_factory=list)

    @property
    def total(self) -> int:
        return (
            self.indexed
            + self.submitted
            + self.discovered
            + self.never_submitted
            + self.errors
            + self.deindexed
            + self.chronic_failures
        )

    @property
    def rate(self) -> int:
        total = self.total
        return round(self.indexed / total * 100) if total > 0 else 0

    @property
    def orphaned_count(self) -> int:
        return self.never_submitted

    @property
    def velocity_trend(self) -> str:
        if self.velocity_7d > self.velocity_prev_7d:
            return "up"
        if self.velocity_7d < self.velocity_prev_7d:
            return "down"
        return "flat"

    @property
    def top_blocker(self) -> Optional[str]:
        return self.blockers[0].reason if self.blockers else None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.update(
            total=self.total,
            rate=self.rate,
            orphaned_count=self.orphaned_count,
            velocity_trend=self.velocity_trend,
            top_blocker=self.top_blocker,
        )
        return data

# ------------------ channel results ------------------

@dataclass
class ChannelResult:
    """Outcome of one call to an external channel. Expected failures never raise."""
    channel: str
    success: bool
    message: str = ""
    status: Optional[int] = None
    configured: bool = True
    rate_limited: bool = False

@dataclass
class RichResultItem:
    type: str
    issues: List[str] = field(default_factory=list)

@dataclass
class InspectionResult:
    url: str
    coverage_state: Optional[str] = None
    indexing_state: Optional[str] = None
    verdict: Optional[str] = None
    last_crawl_time: Optional[str] = None
    page_fetch_state: Optional[str] = None
    robots_txt_state: Optional[str] = None
    crawled_as: Optional[str] = None
    user_canonical: Optional[str] = None
    google_canonical: Optional[str] = None
    sitemaps: List[str] = field(default_factory=list)
    referring_urls: List[str] = field(default_factory=list)
    mobile_usability_verdict: Optional[str] = None
    mobile_usability_issues: List[str] = field(default_factory=list)
    rich_results_verdict: Optional[str] = None
    rich_results_items: List[RichResultItem] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_indexed(self) -> bool:
        if self.indexing_state in ("INDEXED", "PARTIALLY_INDEXED"):
            return True
        coverage = (self.coverage_state or "").lower()
        return "indexed" in coverage and "not indexed" not in coverage

# ------------------ operation results ------------------

@dataclass
class SyncResult:
    site_id: str
    discovered: int = 0
    created: int = 0

@dataclass
class RetryResult:
    site_id: str
    selected: int = 0
    retried: int = 0
    succeeded: int = 0
    errors: List[str] = field(default_factory=list)
    budget_exhausted: bool = False

@dataclass
class ImmediateSubmitResult:
    url: str
    success: bool
    indexnow: Optional[ChannelResult] = None
    google_api: Optional[ChannelResult] = None
    sitemap: Optional[ChannelResult] = None
    errors: List[str] = field(default_factory=list)

@dataclass
class VerifyResult:
    site_id: str
    checked: int = 0
    indexed: int = 0
    not_indexed: int = 0
    errors: int = 0
    deindexed: int = 0
    chronic_failures: int = 0
    hreflang_mismatches: int = 0
    stopped_early: bool = False
    messages: List[str] = field(default_factory=list)
