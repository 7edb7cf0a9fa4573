from __future__ import annotations
import aiosqlite, json, time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import RetryPolicy
from .models import ChannelBreakdown, IndexingTrackingRecord

# ------------------ schema ------------------

TRACKING_SCHEMA = """
-- One row per (site, URL); the only durable state of the engine
CREATE TABLE IF NOT EXISTS url_indexing_status (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  site_id TEXT NOT NULL,
  url TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'discovered',  -- legacy values are tolerated, see status.resolve_status
  indexing_state TEXT,  -- e.g. INDEXED, PARTIALLY_INDEXED (from URL inspection)
  coverage_state TEXT,
  submitted_indexnow INTEGER NOT NULL DEFAULT 0,
  submitted_sitemap INTEGER NOT NULL DEFAULT 0,
  submitted_google_api INTEGER NOT NULL DEFAULT 0,
  submission_attempts INTEGER NOT NULL DEFAULT 0,
  last_submitted_at INTEGER,
  last_inspected_at INTEGER,
  last_crawled_at INTEGER,
  last_error TEXT,
  inspection_json TEXT,  -- last raw inspection payload
  created_at INTEGER NOT NULL,
  updated_at INTEGER NOT NULL,
  UNIQUE(site_id, url)
);
CREATE INDEX IF NOT EXISTS idx_uis_site_status ON url_indexing_status(site_id, status);
CREATE INDEX IF NOT EXISTS idx_uis_site_submitted ON url_indexing_status(site_id, last_submitted_at);
CREATE INDEX IF NOT EXISTS idx_uis_site_inspected ON url_indexing_status(site_id, last_inspected_at);

-- Scheduled job history used by the job-absence diagnostic
CREATE TABLE IF NOT EXISTS job_runs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  job_name TEXT NOT NULL,
  site_id TEXT,
  status TEXT NOT NULL CHECK (status IN ('completed','failed')),
  started_at INTEGER NOT NULL,
  finished_at INTEGER,
  detail TEXT  -- JSON summary of the run
);
CREATE INDEX IF NOT EXISTS idx_job_runs_name_started ON job_runs(job_name, started_at);
"""

_TERMINAL_SQL = "('indexed','deindexed','chronic_failure')"
_INDEXED_STATES_SQL = "('INDEXED','PARTIALLY_INDEXED')"

_RECORD_COLUMNS = """
site_id, url, status, indexing_state, coverage_state,
submitted_indexnow, submitted_sitemap, submitted_google_api, submission_attempts,
last_submitted_at, last_inspected_at, last_crawled_at, last_error, created_at, updated_at
"""

class TrackingStore:
    """Keyed (site_id, url) store of indexing tracking records.

    Every mutation is an upsert or update keyed on the composite identity, so
    concurrent writers on distinct URLs never lose updates and writers on the same
    URL resolve to last-write-wins.
    """

    def __init__(self, db_path: str, busy_timeout: float = 30.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    def _connect(self):
        return aiosqlite.connect(self.db_path, timeout=self.busy_timeout)

    async def init(self):
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")
            for stmt in TRACKING_SCHEMA.split(";\n"):
                if stmt.strip():
                    await db.execute(stmt)
            await db.commit()

    # ------------------ readers ------------------

    async def get(self, site_id: str, url: str) -> Optional[IndexingTrackingRecord]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute(
                f"SELECT {_RECORD_COLUMNS} FROM url_indexing_status WHERE site_id = ? AND url = ?",
                (site_id, url),
            )
            row = await cur.fetchone()
            return IndexingTrackingRecord.from_row(row) if row else None

    async def list_records(self, site_id: str) -> List[IndexingTrackingRecord]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute(
                f"SELECT {_RECORD_COLUMNS} FROM url_indexing_status WHERE site_id = ? ORDER BY id",
                (site_id,),
            )
            return [IndexingTrackingRecord.from_row(r) for r in await cur.fetchall()]

    async def list_urls(self, site_id: str) -> set[str]:
        async with self._connect() as db:
            cur = await db.execute("SELECT url FROM url_indexing_status WHERE site_id = ?", (site_id,))
            return {r[0] for r in await cur.fetchall()}

    async def count_records(self, site_id: str) -> int:
        async with self._connect() as db:
            cur = await db.execute("SELECT COUNT(*) FROM url_indexing_status WHERE site_id = ?", (site_id,))
            return (await cur.fetchone())[0]

    # ------------------ writers ------------------

    async def insert_discovered(self, site_id: str, urls: Iterable[str], now: Optional[int] = None) -> int:
        """Create ``discovered`` records for URLs not tracked yet. Returns how many were created.

        Existing rows are left untouched (``DO NOTHING``), so repeated or concurrent
        syncs never clobber submission state.
        """
        now = int(now if now is not None else time.time())
        rows = [(site_id, url, now, now) for url in urls]
        if not rows:
            return 0
        async with self._connect() as db:
            before = db.total_changes
            await db.executemany(
                """
                INSERT INTO url_indexing_status(site_id, url, status, created_at, updated_at)
                VALUES (?, ?, 'discovered', ?, ?)
                ON CONFLICT(site_id, url) DO NOTHING
                """,
                rows,
            )
            await db.commit()
            return db.total_changes - before

    async def record_submission(self, site_id: str, urls: Iterable[str], *, indexnow: bool = False,
                                sitemap: bool = False, google_api: bool = False, now: Optional[int] = None):
        """Upsert a successful submission. Channel flags only ever go from false to true."""
        now = int(now if now is not None else time.time())
        rows = [(site_id, url, int(indexnow), int(sitemap), int(google_api), now, now, now) for url in urls]
        if not rows:
            return
        async with self._connect() as db:
            await db.executemany(
                f"""
                INSERT INTO url_indexing_status(site_id, url, status, submitted_indexnow, submitted_sitemap,
                  submitted_google_api, submission_attempts, last_submitted_at, created_at, updated_at)
                VALUES (?, ?, 'submitted', ?, ?, ?, 1, ?, ?, ?)
                ON CONFLICT(site_id, url) DO UPDATE SET
                  status=CASE WHEN url_indexing_status.status IN {_TERMINAL_SQL}
                              THEN url_indexing_status.status ELSE 'submitted' END,
                  submitted_indexnow=MAX(url_indexing_status.submitted_indexnow, excluded.submitted_indexnow),
                  submitted_sitemap=MAX(url_indexing_status.submitted_sitemap, excluded.submitted_sitemap),
                  submitted_google_api=MAX(url_indexing_status.submitted_google_api, excluded.submitted_google_api),
                  submission_attempts=url_indexing_status.submission_attempts + 1,
                  last_submitted_at=excluded.last_submitted_at,
                  last_error=NULL,
                  updated_at=excluded.updated_at
                """,
                rows,
            )
            await db.commit()

    async def record_failure(self, site_id: str, urls: Iterable[str], error: str, *,
                             max_attempts: int = 5, now: Optional[int] = None):
        """Upsert a failed submission attempt, escalating to ``chronic_failure`` at the attempt ceiling."""
        now = int(now if now is not None else time.time())
        error = (error or "")[:300]
        first_status = "chronic_failure" if max_attempts <= 1 else "error"
        rows = [(site_id, url, first_status, error, now, now, max_attempts) for url in urls]
        if not rows:
            return
        async with self._connect() as db:
            await db.executemany(
                f"""
                INSERT INTO url_indexing_status(site_id, url, status, submission_attempts, last_error, created_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?, ?)
                ON CONFLICT(site_id, url) DO UPDATE SET
                  status=CASE
                    WHEN url_indexing_status.status IN {_TERMINAL_SQL} THEN url_indexing_status.status
                    WHEN url_indexing_status.submission_attempts + 1 >= ? THEN 'chronic_failure'
                    ELSE 'error' END,
                  submission_attempts=url_indexing_status.submission_attempts + 1,
                  last_error=excluded.last_error,
                  updated_at=excluded.updated_at
                """,
                rows,
            )
            await db.commit()

    async def mark_sitemap_submitted(self, site_id: str, urls: Iterable[str]):
        rows = [(site_id, url) for url in urls]
        async with self._connect() as db:
            await db.executemany(
                "UPDATE url_indexing_status SET submitted_sitemap = 1 WHERE site_id = ? AND url = ?",
                rows,
            )
            await db.commit()

    async def apply_inspection(self, site_id: str, url: str, *, status: str, indexing_state: Optional[str],
                               coverage_state: Optional[str], last_crawled_at: Optional[int] = None,
                               last_error: Optional[str] = None, raw: Optional[Dict[str, Any]] = None,
                               now: Optional[int] = None):
        now = int(now if now is not None else time.time())
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE url_indexing_status SET
                  status=?, indexing_state=?, coverage_state=?,
                  last_crawled_at=COALESCE(?, last_crawled_at),
                  last_inspected_at=?, last_error=?, inspection_json=?, updated_at=?
                WHERE site_id = ? AND url = ?
                """,
                (status, indexing_state, coverage_state, last_crawled_at, now, last_error,
                 json.dumps(raw, ensure_ascii=False) if raw else None, now, site_id, url),
            )
            await db.commit()

    async def record_inspection_error(self, site_id: str, url: str, error: str, now: Optional[int] = None):
        now = int(now if now is not None else time.time())
        async with self._connect() as db:
            await db.execute(
                "UPDATE url_indexing_status SET last_inspected_at=?, last_error=? WHERE site_id = ? AND url = ?",
                (now, (error or "")[:300], site_id, url),
            )
            await db.commit()

    # ------------------ selection ------------------

    async def _select(self, db: aiosqlite.Connection, where: str, params: Tuple, order: str,
                      limit: int, exclude: set[str]) -> List[IndexingTrackingRecord]:
        cur = await db.execute(
            f"SELECT {_RECORD_COLUMNS} FROM url_indexing_status WHERE {where} ORDER BY {order} LIMIT ?",
            params + (limit + len(exclude),),
        )
        picked = []
        for row in await cur.fetchall():
            if row["url"] in exclude:
                continue
            picked.append(IndexingTrackingRecord.from_row(row))
            if len(picked) >= limit:
                break
        return picked

    async def select_retry_candidates(self, site_id: str, limit: int, now: int,
                                      policy: RetryPolicy) -> List[IndexingTrackingRecord]:
        """Pick records to resubmit: stuck-discovered, then errors, then stale submissions, oldest first."""
        if limit <= 0:
            return []
        grace_cutoff = now - policy.discovered_grace_hours * 3600
        stale_cutoff = now - policy.resubmit_after_days * 86400
        tiers = [
            ("site_id = ? AND status = 'discovered' AND created_at < ?",
             (site_id, grace_cutoff), "created_at ASC, id ASC"),
            ("site_id = ? AND status = 'error'",
             (site_id,), "updated_at ASC, id ASC"),
            ("site_id = ? AND status IN ('submitted','pending') AND last_submitted_at < ? AND submission_attempts < ?",
             (site_id, stale_cutoff, policy.max_attempts), "last_submitted_at ASC, id ASC"),
        ]
        picked: List[IndexingTrackingRecord] = []
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            for where, params, order in tiers:
                remaining = limit - len(picked)
                if remaining <= 0:
                    break
                picked.extend(await self._select(db, where, params, order, remaining, {r.url for r in picked}))
        return picked

    async def select_verification_candidates(self, site_id: str, limit: int, now: int,
                                             policy: RetryPolicy) -> List[IndexingTrackingRecord]:
        """Build the inspection queue, filling slots from the highest priority tier down."""
        if limit <= 0:
            return []
        recheck_cutoff = now - policy.verify_recheck_hours * 3600
        stuck_cutoff = now - policy.resubmit_after_days * 86400
        indexed_cutoff = now - policy.indexed_recheck_days * 86400
        pending = "('submitted','discovered','pending')"
        tiers = [
            # never inspected
            (f"site_id = ? AND last_inspected_at IS NULL AND status IN {pending}",
             (site_id,), "last_submitted_at DESC, id ASC"),
            # submitted a week ago and still not indexed
            (f"site_id = ? AND status IN {pending} AND last_submitted_at < ? AND last_inspected_at < ?",
             (site_id, stuck_cutoff, recheck_cutoff), "last_submitted_at ASC, id ASC"),
            # errors, to see whether they resolved
            ("site_id = ? AND status = 'error' AND (last_inspected_at IS NULL OR last_inspected_at < ?)",
             (site_id, recheck_cutoff), "last_inspected_at ASC, id ASC"),
            # routine checks
            (f"site_id = ? AND status IN {pending} AND last_inspected_at IS NOT NULL AND last_inspected_at < ?",
             (site_id, recheck_cutoff), "last_inspected_at ASC, id ASC"),
            # indexed pages, to catch deindexing
            ("site_id = ? AND status = 'indexed' AND (last_inspected_at IS NULL OR last_inspected_at < ?)",
             (site_id, indexed_cutoff), "last_inspected_at ASC, id ASC"),
        ]
        picked: List[IndexingTrackingRecord] = []
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            for where, params, order in tiers:
                remaining = limit - len(picked)
                if remaining <= 0:
                    break
                picked.extend(await self._select(db, where, params, order, remaining, {r.url for r in picked}))
        return picked

    # ------------------ aggregate queries ------------------

    async def count_stale(self, site_id: str, submitted_before: int) -> int:
        async with self._connect() as db:
            cur = await db.execute(
                f"""
                SELECT COUNT(*) FROM url_indexing_status
                WHERE site_id = ? AND status IN ('submitted','pending') AND last_submitted_at < ?
                  AND (indexing_state IS NULL OR indexing_state NOT IN {_INDEXED_STATES_SQL})
                """,
                (site_id, submitted_before),
            )
            return (await cur.fetchone())[0]

    async def count_indexed_between(self, site_id: str, start: int, end: Optional[int] = None) -> int:
        end = end if end is not None else 2**62
        async with self._connect() as db:
            cur = await db.execute(
                "SELECT COUNT(*) FROM url_indexing_status WHERE site_id = ? AND status = 'indexed' AND updated_at >= ? AND updated_at < ?",
                (site_id, start, end),
            )
            return (await cur.fetchone())[0]

    async def channel_counts(self, site_id: str) -> ChannelBreakdown:
        async with self._connect() as db:
            cur = await db.execute(
                """
                SELECT COALESCE(SUM(submitted_indexnow), 0), COALESCE(SUM(submitted_sitemap), 0),
                       COALESCE(SUM(submitted_google_api), 0)
                FROM url_indexing_status WHERE site_id = ?
                """,
                (site_id,),
            )
            row = await cur.fetchone()
            return ChannelBreakdown(indexnow=row[0], sitemap=row[1], google_api=row[2])

    async def latest_timestamps(self, site_id: str) -> Tuple[Optional[int], Optional[int]]:
        """Return (last_submitted_at, last_inspected_at) across the site."""
        async with self._connect() as db:
            cur = await db.execute(
                "SELECT MAX(last_submitted_at), MAX(last_inspected_at) FROM url_indexing_status WHERE site_id = ?",
                (site_id,),
            )
            row = await cur.fetchone()
            return row[0], row[1]

    async def indexed_samples(self, site_id: str, limit: int = 30) -> List[Tuple[int, int]]:
        """Most recent (last_submitted_at, updated_at) pairs of indexed records."""
        async with self._connect() as db:
            cur = await db.execute(
                """
                SELECT last_submitted_at, updated_at FROM url_indexing_status
                WHERE site_id = ? AND status = 'indexed' AND last_submitted_at IS NOT NULL
                ORDER BY updated_at DESC LIMIT ?
                """,
                (site_id, limit),
            )
            return [(r[0], r[1]) for r in await cur.fetchall()]

    async def count_google_api_since(self, site_id: str, since: int) -> int:
        async with self._connect() as db:
            cur = await db.execute(
                "SELECT COUNT(*) FROM url_indexing_status WHERE site_id = ? AND submitted_google_api = 1 AND last_submitted_at >= ?",
                (site_id, since),
            )
            return (await cur.fetchone())[0]

    # ------------------ job history ------------------

    async def record_job_run(self, job_name: str, site_id: Optional[str], status: str, started_at: int,
                             finished_at: Optional[int] = None, detail: Optional[Dict[str, Any]] = None):
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO job_runs(job_name, site_id, status, started_at, finished_at, detail) VALUES (?,?,?,?,?,?)",
                (job_name, site_id, status, started_at, finished_at,
                 json.dumps(detail, ensure_ascii=False, default=str) if detail is not None else None),
            )
            await db.commit()

    async def count_job_runs_since(self, job_name: str, since: int) -> int:
        async with self._connect() as db:
            cur = await db.execute(
                "SELECT COUNT(*) FROM job_runs WHERE job_name = ? AND started_at >= ?",
                (job_name, since),
            )
            return (await cur.fetchone())[0]
