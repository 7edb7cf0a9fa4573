"""
Content sources: the published items of a site, one implementation per content type.

The CMS owns the content model; we only read it. Live content comes from the
CMS ``content_items`` table, older blog posts from a legacy JSON corpus that some
sites still ship alongside the database.
"""
from __future__ import annotations
import aiosqlite, json, logging, os, time
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, runtime_checkable

from .config import SiteConfig

LOGGER = logging.getLogger(__name__)

CONTENT_SCHEMA = """
CREATE TABLE IF NOT EXISTS content_items (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  site_id TEXT NOT NULL,
  content_type TEXT NOT NULL,  -- post, news, event, product, yacht, destination, itinerary
  slug TEXT NOT NULL,
  locale TEXT,  -- NULL means the site's primary locale
  published INTEGER NOT NULL DEFAULT 0,
  published_at INTEGER,
  updated_at INTEGER,
  expires_at INTEGER,  -- news only
  word_count INTEGER,
  UNIQUE(site_id, content_type, slug)
);
CREATE INDEX IF NOT EXISTS idx_content_site_type ON content_items(site_id, content_type, published);
"""

@dataclass
class ContentItem:
    slug: str
    path: str
    locale: Optional[str] = None
    published_at: Optional[int] = None
    updated_at: Optional[int] = None
    expires_at: Optional[int] = None
    word_count: Optional[int] = None
    content_type: str = "post"

@runtime_checkable
class ContentSource(Protocol):
    name: str

    async def list_published(self, site: SiteConfig, now: Optional[int] = None) -> List[ContentItem]:
        ...

async def init_content_db(db_path: str):
    async with aiosqlite.connect(db_path) as db:
        for stmt in CONTENT_SCHEMA.split(";\n"):
            if stmt.strip():
                await db.execute(stmt)
        await db.commit()

# ------------------ CMS-backed sources ------------------

class SQLiteContentSource:
    """Published rows of one content type, mapped under ``path_prefix``."""
    content_type = "post"
    path_prefix = "/blog"
    # only consulted for sites that use the alternate taxonomy
    alternate_taxonomy = False

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.name = self.content_type

    def applies_to(self, site: SiteConfig) -> bool:
        return site.alternate_taxonomy if self.alternate_taxonomy else True

    def keep(self, row, now: int) -> bool:
        return True

    async def list_published(self, site: SiteConfig, now: Optional[int] = None) -> List[ContentItem]:
        if not self.applies_to(site):
            return []
        now = int(now if now is not None else time.time())
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute(
                """
                SELECT slug, locale, published_at, updated_at, expires_at, word_count
                FROM content_items
                WHERE site_id = ? AND content_type = ? AND published = 1
                ORDER BY published_at, id
                """,
                (site.site_id, self.content_type),
            )
            rows = await cur.fetchall()
        return [
            ContentItem(
                slug=r["slug"],
                path=f"{self.path_prefix}/{r['slug']}",
                locale=r["locale"],
                published_at=r["published_at"],
                updated_at=r["updated_at"],
                expires_at=r["expires_at"],
                word_count=r["word_count"],
                content_type=self.content_type,
            )
            for r in rows
            if self.keep(r, now)
        ]

class PostSource(SQLiteContentSource):
    content_type = "post"
    path_prefix = "/blog"

class NewsSource(SQLiteContentSource):
    content_type = "news"
    path_prefix = "/news"

    def keep(self, row, now: int) -> bool:
        expires_at = row["expires_at"]
        return expires_at is None or expires_at > now

class EventSource(SQLiteContentSource):
    content_type = "event"
    path_prefix = "/events"

class ProductSource(SQLiteContentSource):
    content_type = "product"
    path_prefix = "/shop"

class YachtSource(SQLiteContentSource):
    content_type = "yacht"
    path_prefix = "/yachts"
    alternate_taxonomy = True

class DestinationSource(SQLiteContentSource):
    content_type = "destination"
    path_prefix = "/destinations"
    alternate_taxonomy = True

class ItinerarySource(SQLiteContentSource):
    content_type = "itinerary"
    path_prefix = "/itineraries"
    alternate_taxonomy = True

# ------------------ legacy corpus ------------------

class StaticPostSource:
    """Blog posts bundled as a JSON list (``site.legacy_corpus``).

    Entries look like ``{"slug": ..., "published": true, "word_count": 1200,
    "created_at": 1700000000}``; unpublished entries are ignored.
    """
    name = "legacy-posts"

    async def list_published(self, site: SiteConfig, now: Optional[int] = None) -> List[ContentItem]:
        if not site.legacy_corpus or not os.path.exists(site.legacy_corpus):
            return []
        with open(site.legacy_corpus, encoding="utf-8") as fh:
            entries = json.load(fh)
        if not isinstance(entries, list):
            raise ValueError(f"{site.legacy_corpus}: expected a JSON list of posts")
        items = []
        for entry in entries:
            if not isinstance(entry, dict):
                LOGGER.debug("%s: skipping non-object entry %r", site.legacy_corpus, entry)
                continue
            if not entry.get("published") or not entry.get("slug"):
                continue
            items.append(ContentItem(
                slug=entry["slug"],
                path=f"/blog/{entry['slug']}",
                locale=entry.get("locale"),
                published_at=entry.get("created_at"),
                updated_at=entry.get("updated_at"),
                word_count=entry.get("word_count"),
                content_type="post",
            ))
        return items

def default_sources(content_db: str) -> Sequence[ContentSource]:
    return [
        StaticPostSource(),
        PostSource(content_db),
        NewsSource(content_db),
        EventSource(content_db),
        ProductSource(content_db),
        YachtSource(content_db),
        DestinationSource(content_db),
        ItinerarySource(content_db),
    ]
