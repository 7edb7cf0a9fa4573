from __future__ import annotations
import json
import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

DATA_DIR = os.getenv("INDEXTRACKER_DATA", os.path.abspath("./data"))

def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}

def _private_key_from_env() -> str:
    raw = os.getenv("GOOGLE_SEARCH_CONSOLE_PRIVATE_KEY") or os.getenv("GSC_PRIVATE_KEY") or ""
    # keys pasted into env files usually carry literal "\n" sequences
    return raw.replace("\\n", "\n")

@dataclass
class HttpConfig:
    user_agent: str = os.getenv("INDEXTRACKER_UA", "IndexTracker/0.3 (+https://github.com/user256/IndexTracker)")
    timeout: int = int(os.getenv("INDEXTRACKER_TIMEOUT", "20"))
    max_retries: int = int(os.getenv("INDEXTRACKER_MAX_RETRIES", "2"))
    retry_base_delay: float = float(os.getenv("INDEXTRACKER_RETRY_DELAY", "1.0"))
    max_retry_delay: float = float(os.getenv("INDEXTRACKER_MAX_RETRY_DELAY", "60"))

@dataclass
class IndexNowConfig:
    key: str = os.getenv("INDEXNOW_KEY", "")
    endpoint: str = os.getenv("INDEXNOW_ENDPOINT", "https://api.indexnow.org/indexnow")
    max_batch: int = 10_000

    @property
    def configured(self) -> bool:
        return bool(self.key)

@dataclass
class SearchConsoleConfig:
    client_email: str = os.getenv("GOOGLE_SEARCH_CONSOLE_CLIENT_EMAIL") or os.getenv("GSC_CLIENT_EMAIL") or ""
    private_key: str = field(default_factory=_private_key_from_env)
    property_url: str = os.getenv("GSC_SITE_URL", "")
    token_url: str = "https://oauth2.googleapis.com/token"
    api_base: str = "https://www.googleapis.com/webmasters/v3"
    inspection_url: str = "https://searchconsole.googleapis.com/v1/urlInspection/index:inspect"
    publish_url: str = "https://indexing.googleapis.com/v3/urlNotifications:publish"
    daily_publish_quota: int = int(os.getenv("GSC_DAILY_PUBLISH_QUOTA", "200"))
    inspection_delay: float = float(os.getenv("GSC_INSPECTION_DELAY", "0.6"))

    @property
    def configured(self) -> bool:
        return bool(self.client_email and self.private_key)

@dataclass
class RetryPolicy:
    discovered_grace_hours: int = 6
    resubmit_after_days: int = 7
    max_attempts: int = int(os.getenv("INDEXTRACKER_MAX_ATTEMPTS", "5"))
    stale_after_days: int = 14
    default_max_urls: int = int(os.getenv("INDEXTRACKER_MAX_URLS", "50"))
    default_budget_ms: int = int(os.getenv("INDEXTRACKER_BUDGET_MS", "53000"))
    verify_max_urls: int = 35
    verify_recheck_hours: int = 4
    indexed_recheck_days: int = 14
    thin_content_words: int = 800
    job_absence_days: int = 3

DEFAULT_STATIC_PAGES: Tuple[str, ...] = (
    "/",
    "/blog",
    "/recommendations",
    "/events",
    "/about",
    "/contact",
    "/information",
    "/information/articles",
)

@dataclass
class SiteConfig:
    site_id: str
    domain: str
    bilingual: bool = False
    primary_locale: str = "en"
    alternate_locale: str = "ar"
    alternate_taxonomy: bool = False
    gsc_property: Optional[str] = None
    legacy_corpus: Optional[str] = None
    static_pages: Tuple[str, ...] = DEFAULT_STATIC_PAGES

    def __post_init__(self):
        if not self.site_id:
            raise ValueError("site_id must be a non-empty string")
        parsed = urlparse(self.domain)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid site domain for {self.site_id}: {self.domain!r}")
        # canonical form: scheme://host with no trailing slash
        self.domain = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"
        self.static_pages = tuple(self.static_pages)

    @property
    def hostname(self) -> str:
        return urlparse(self.domain).netloc

    @property
    def sitemap_url(self) -> str:
        return f"{self.domain}/sitemap.xml"

def load_site_configs(path: Optional[str] = None) -> Dict[str, SiteConfig]:
    """Load site definitions from a JSON list (``INDEXTRACKER_SITES`` or ``DATA_DIR/sites.json``)."""
    path = path or os.getenv("INDEXTRACKER_SITES", os.path.join(DATA_DIR, "sites.json"))
    if not os.path.exists(path):
        return {}
    with open(path, encoding="utf-8") as fh:
        entries = json.load(fh)
    sites = {}
    for entry in entries:
        site = SiteConfig(**entry)
        sites[site.site_id] = site
    return sites

def get_db_paths(data_dir: Optional[str] = None) -> tuple[str, str]:
    """Return (tracking_db, content_db) paths inside the data directory."""
    data_dir = data_dir or DATA_DIR
    os.makedirs(data_dir, exist_ok=True)
    tracking_db = os.getenv("INDEXTRACKER_DB", os.path.join(data_dir, "tracking.db"))
    content_db = os.getenv("INDEXTRACKER_CONTENT_DB", os.path.join(data_dir, "content.db"))
    return tracking_db, content_db

# Scheduled jobs whose absence is reported by the diagnostics
JOB_SYNC = "indexing-sync"
JOB_SUBMIT = "indexing-retry"
JOB_VERIFY = "indexing-verify"

# ``verbose`` flag on the CLI mirrors this default
VERBOSE_DEFAULT = _env_bool("INDEXTRACKER_VERBOSE")
