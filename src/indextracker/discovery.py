from __future__ import annotations
import aiosqlite, dataclasses, logging, time
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple
from urllib.parse import urlparse

from .config import JOB_SYNC, SiteConfig
from .content import ContentItem, ContentSource
from .db import TrackingStore
from .models import SyncResult

LOGGER = logging.getLogger(__name__)

# ------------------ bilingual URL pairs ------------------

def _split(url: str) -> Tuple[str, str, str]:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Malformed URL: {url!r}")
    base = f"{parsed.scheme}://{parsed.netloc}"
    path = parsed.path or "/"
    suffix = f"?{parsed.query}" if parsed.query else ""
    return base, path, suffix

def _join(base: str, path: str, suffix: str = "") -> str:
    # the home page is the bare origin, never "origin/"
    if path in ("", "/"):
        return base + suffix
    return base + path.rstrip("/") + suffix

def is_alternate(url: str, locale: str) -> bool:
    _, path, _ = _split(url)
    prefix = f"/{locale}"
    return path == prefix or path.startswith(prefix + "/")

def alternate_url(url: str, locale: str) -> str:
    """``/blog/x`` -> ``/{locale}/blog/x``; the home page maps to bare ``/{locale}``."""
    base, path, suffix = _split(url)
    if path in ("", "/"):
        return f"{base}/{locale}{suffix}"
    return _join(base, f"/{locale}{path}", suffix)

def counterpart_url(url: str, locale: str) -> str:
    """Return the other half of a bilingual pair (works in both directions)."""
    base, path, suffix = _split(url)
    prefix = f"/{locale}"
    if path == prefix or path == prefix + "/":
        return _join(base, "/", suffix)
    if path.startswith(prefix + "/"):
        return _join(base, path[len(prefix):], suffix)
    return alternate_url(url, locale)

# ------------------ discovery ------------------

class UrlDiscovery:
    """Enumerates the URLs a site should have indexed and seeds the tracking store."""

    def __init__(self, sites: Dict[str, SiteConfig], sources: Sequence[ContentSource],
                 store: TrackingStore, clock: Callable[[], float] = time.time):
        self.sites = sites
        self.sources = list(sources)
        self.store = store
        self.clock = clock

    def site(self, site_id: str, site_url: Optional[str] = None) -> SiteConfig:
        if not site_id:
            raise ValueError("site_id must be a non-empty string")
        if site_id not in self.sites:
            raise ValueError(f"Unknown site: {site_id!r}")
        site = self.sites[site_id]
        if site_url:
            # re-validates the domain
            site = dataclasses.replace(site, domain=site_url)
        return site

    def build_url(self, site: SiteConfig, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return _join(site.domain, path)

    async def _items(self, site: SiteConfig) -> List[ContentItem]:
        now = int(self.clock())
        items: List[ContentItem] = []
        for source in self.sources:
            try:
                found = await source.list_published(site, now)
            except (aiosqlite.Error, OSError, ValueError) as e:
                LOGGER.warning("[%s] content source %s failed, skipping: %s",
                               site.site_id, getattr(source, "name", source), e)
                continue
            LOGGER.debug("[%s] %s: %d published item(s)", site.site_id, getattr(source, "name", source), len(found))
            items.extend(found)
        return [i for i in items if i.locale in (None, site.primary_locale)]

    async def _canonical(self, site: SiteConfig) -> Set[str]:
        urls = {self.build_url(site, page) for page in site.static_pages}
        urls.update(self.build_url(site, item.path) for item in await self._items(site))
        return urls

    async def list_canonical_urls(self, site_id: str, site_url: Optional[str] = None) -> Set[str]:
        return await self._canonical(self.site(site_id, site_url))

    async def list_indexable_urls(self, site_id: str, site_url: Optional[str] = None) -> Set[str]:
        """Canonical URLs plus exactly one alternate-locale URL each on bilingual sites."""
        site = self.site(site_id, site_url)
        urls = await self._canonical(site)
        if site.bilingual:
            urls |= {alternate_url(u, site.alternate_locale) for u in urls}
        return urls

    async def count_published(self, site_id: str) -> int:
        return len(await self.list_canonical_urls(site_id))

    async def count_thin_content(self, site_id: str, min_words: int = 800) -> int:
        site = self.site(site_id)
        items = await self._items(site)
        # one item per URL; the legacy corpus and the CMS can both carry a slug
        thin = {item.path for item in items if item.word_count is not None and item.word_count < min_words}
        return len(thin)

    async def sync_to_tracking(self, site_id: str, site_url: Optional[str] = None) -> SyncResult:
        started = int(self.clock())
        urls = await self.list_indexable_urls(site_id, site_url)
        created = await self.store.insert_discovered(site_id, sorted(urls), now=int(self.clock()))
        result = SyncResult(site_id=site_id, discovered=len(urls), created=created)
        LOGGER.info("[%s] sync: %d indexable URL(s), %d new tracking record(s)", site_id, len(urls), created)
        await self.store.record_job_run(JOB_SYNC, site_id, "completed", started, int(self.clock()),
                                        dataclasses.asdict(result))
        return result
