"""Retry runs, the publish hook and the verification pass against a real store and fake channels."""
import aiosqlite
import pytest

from indextracker.config import JOB_SUBMIT, JOB_VERIFY, SearchConsoleConfig
from indextracker.models import InspectionResult
from indextracker.orchestrator import SubmissionOrchestrator

from conftest import DAY, HOUR, NOW, FakeGoogleChannel, FakeIndexNow, FakeInspection, SteppingMonotonic

U = "https://example.com/blog/"

async def _noop_sleep(delay):
    return None

def _orchestrator(store, discovery, policy, clock, indexnow=None, inspection=None, indexing_api=None,
                  sitemap=None, monotonic=None, sleep=_noop_sleep, quota=200):
    return SubmissionOrchestrator(
        store=store,
        discovery=discovery,
        indexnow=indexnow or FakeIndexNow(),
        sitemap=sitemap or FakeGoogleChannel("sitemap"),
        inspection=inspection or FakeInspection(),
        indexing_api=indexing_api or FakeGoogleChannel("google_api"),
        policy=policy,
        search_console=SearchConsoleConfig(client_email="svc", private_key="k", daily_publish_quota=quota,
                                           inspection_delay=0.6),
        clock=clock,
        monotonic=monotonic or SteppingMonotonic(0.0),
        sleep=sleep,
    )

async def _eligible(store, n):
    urls = [f"{U}{i:02d}" for i in range(n)]
    for i, url in enumerate(urls):
        await store.insert_discovered("demo", [url], now=NOW - 7 * HOUR - (n - i))
    return urls

class TestRetry:
    @pytest.mark.asyncio
    async def test_successful_run(self, store, discovery, policy, clock):
        urls = await _eligible(store, 3)
        indexnow = FakeIndexNow()
        result = await _orchestrator(store, discovery, policy, clock, indexnow=indexnow,
                                     monotonic=SteppingMonotonic(0.0)).retry_stale_and_failed("demo", budget_ms=1000)
        assert (result.selected, result.retried, result.succeeded) == (3, 3, 3)
        assert result.errors == []
        assert indexnow.calls == [(urls, "https://example.com")]
        for url in urls:
            rec = await store.get("demo", url)
            assert rec.status == "submitted"
            assert rec.submitted_indexnow
            assert rec.submission_attempts == 1
            assert rec.last_submitted_at == NOW
        assert await store.count_job_runs_since(JOB_SUBMIT, 0) == 1

    @pytest.mark.asyncio
    async def test_zero_budget_with_ten_eligible(self, store, discovery, policy, clock):
        await _eligible(store, 10)
        indexnow = FakeIndexNow()
        result = await _orchestrator(store, discovery, policy, clock, indexnow=indexnow).retry_stale_and_failed(
            "demo", budget_ms=0)
        assert result.succeeded <= result.retried
        assert result.budget_exhausted
        assert indexnow.calls == []
        assert all(r.status == "discovered" for r in await store.list_records("demo"))

    @pytest.mark.asyncio
    async def test_budget_runs_out_mid_update(self, store, discovery, policy, clock):
        await _eligible(store, 3)
        result = await _orchestrator(store, discovery, policy, clock,
                                     monotonic=SteppingMonotonic(1.0)).retry_stale_and_failed("demo", budget_ms=2500)
        assert result.retried == 3
        assert result.succeeded == 1
        assert result.budget_exhausted
        statuses = sorted(r.status for r in await store.list_records("demo"))
        assert statuses == ["discovered", "discovered", "submitted"]

    @pytest.mark.asyncio
    async def test_max_urls_caps_selection(self, store, discovery, policy, clock):
        await _eligible(store, 5)
        result = await _orchestrator(store, discovery, policy, clock).retry_stale_and_failed("demo", max_urls=2)
        assert result.selected == 2

    @pytest.mark.asyncio
    async def test_failure_marks_error_and_escalates(self, store, discovery, policy, clock):
        await _eligible(store, 1)
        for _ in range(4):
            await store.record_failure("demo", [U + "worn"], "boom", max_attempts=5, now=NOW - DAY)
        indexnow = FakeIndexNow(success=False)
        result = await _orchestrator(store, discovery, policy, clock, indexnow=indexnow).retry_stale_and_failed("demo")
        assert result.succeeded == 0
        assert result.retried == 2
        assert result.errors == [indexnow.message]
        fresh = await store.get("demo", U + "00")
        assert fresh.status == "error" and fresh.last_error == indexnow.message
        worn = await store.get("demo", U + "worn")
        assert worn.status == "chronic_failure"
        assert worn.submission_attempts == 5
        # chronic records are out of the retry pool
        picked = await store.select_retry_candidates("demo", 10, NOW, policy)
        assert U + "worn" not in [r.url for r in picked]

    @pytest.mark.asyncio
    async def test_unconfigured_push_channel(self, store, discovery, policy, clock):
        await _eligible(store, 2)
        indexnow = FakeIndexNow(configured=False)
        result = await _orchestrator(store, discovery, policy, clock, indexnow=indexnow).retry_stale_and_failed("demo")
        assert result.selected == 0 and result.retried == 0
        assert any("INDEXNOW_KEY" in e for e in result.errors)
        assert indexnow.calls == []
        assert all(r.submission_attempts == 0 for r in await store.list_records("demo"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "site_id,kwargs",
        [("", {}), ("unknown", {}), ("demo", {"budget_ms": -1}), ("demo", {"max_urls": -5})],
    )
    async def test_invalid_arguments(self, store, discovery, policy, clock, site_id, kwargs):
        with pytest.raises(ValueError):
            await _orchestrator(store, discovery, policy, clock).retry_stale_and_failed(site_id, **kwargs)

class TestImmediateSubmit:
    @pytest.mark.asyncio
    async def test_all_channels(self, store, discovery, policy, clock):
        sitemap = FakeGoogleChannel("sitemap")
        result = await _orchestrator(store, discovery, policy, clock, sitemap=sitemap).submit_url_immediately(
            U + "new", "demo")
        assert result.success
        assert sitemap.calls == [("https://example.com/sitemap.xml", None)]
        rec = await store.get("demo", U + "new")
        assert rec.status == "submitted"
        assert rec.submitted_indexnow and rec.submitted_google_api and rec.submitted_sitemap

    @pytest.mark.asyncio
    async def test_partial_success_reflects_real_flags(self, store, discovery, policy, clock):
        result = await _orchestrator(store, discovery, policy, clock, indexnow=FakeIndexNow(success=False),
                                     sitemap=FakeGoogleChannel("sitemap", success=False)).submit_url_immediately(
            U + "new", "demo")
        assert result.success
        rec = await store.get("demo", U + "new")
        assert rec.status == "submitted"
        assert not rec.submitted_indexnow
        assert rec.submitted_google_api
        assert not rec.submitted_sitemap

    @pytest.mark.asyncio
    async def test_total_failure_records_error(self, store, discovery, policy, clock):
        result = await _orchestrator(store, discovery, policy, clock, indexnow=FakeIndexNow(success=False),
                                     indexing_api=FakeGoogleChannel("google_api", success=False)
                                     ).submit_url_immediately(U + "new", "demo")
        assert not result.success
        assert len(result.errors) == 2
        rec = await store.get("demo", U + "new")
        assert rec.status == "error"
        assert rec.last_error

    @pytest.mark.asyncio
    async def test_quota_exhausted_skips_indexing_api(self, store, discovery, policy, clock):
        indexing_api = FakeGoogleChannel("google_api")
        result = await _orchestrator(store, discovery, policy, clock, indexing_api=indexing_api,
                                     quota=0).submit_url_immediately(U + "new", "demo")
        assert result.success
        assert indexing_api.calls == []
        assert result.google_api is None
        assert any("quota" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_no_channel_available_keeps_url_discovered(self, store, discovery, policy, clock):
        orchestrator = _orchestrator(store, discovery, policy, clock, indexnow=FakeIndexNow(configured=False),
                                     indexing_api=FakeGoogleChannel("google_api", configured=False))
        for _ in range(policy.max_attempts):
            result = await orchestrator.submit_url_immediately(U + "new", "demo")
            assert not result.success
            assert result.errors == ["INDEXNOW_KEY not configured"]
        rec = await store.get("demo", U + "new")
        assert rec.status == "discovered"
        assert rec.submission_attempts == 0
        assert rec.last_error is None

    @pytest.mark.asyncio
    async def test_sitemap_bookkeeping_error_does_not_fail_publish(self, store, discovery, policy, clock,
                                                                   monkeypatch):
        async def _locked(site_id, urls):
            raise aiosqlite.OperationalError("database is locked")

        monkeypatch.setattr(store, "mark_sitemap_submitted", _locked)
        result = await _orchestrator(store, discovery, policy, clock).submit_url_immediately(U + "new", "demo")
        assert result.success
        assert result.sitemap.success
        rec = await store.get("demo", U + "new")
        assert rec.status == "submitted"
        assert not rec.submitted_sitemap

    @pytest.mark.asyncio
    async def test_malformed_url(self, store, discovery, policy, clock):
        with pytest.raises(ValueError):
            await _orchestrator(store, discovery, policy, clock).submit_url_immediately("blog/new", "demo")

def _inspected(url, coverage, indexing_state=None):
    return InspectionResult(url=url, coverage_state=coverage, indexing_state=indexing_state,
                            last_crawl_time="2023-11-14T10:00:00Z")

class TestVerify:
    @pytest.mark.asyncio
    async def test_reconciles_statuses(self, store, discovery, policy, clock):
        await store.record_submission("demo", [U + "fresh"], indexnow=True, now=NOW - DAY)
        await store.record_submission("demo", [U + "gone"], indexnow=True, now=NOW - 40 * DAY)
        await store.apply_inspection("demo", U + "gone", status="indexed", indexing_state="INDEXED",
                                     coverage_state="Submitted and indexed", now=NOW - 20 * DAY)
        for _ in range(5):
            await store.record_submission("demo", [U + "stuck"], indexnow=True, now=NOW - 10 * DAY)
        await store.record_submission("demo", [U + "crawled"], indexnow=True, now=NOW - DAY)
        await store.record_submission("demo", [U + "nodata"], indexnow=True, now=NOW - DAY)

        inspection = FakeInspection({
            U + "fresh": _inspected(U + "fresh", "Submitted and indexed", "INDEXED"),
            U + "gone": _inspected(U + "gone", "Crawled - currently not indexed"),
            U + "stuck": _inspected(U + "stuck", "Discovered - currently not indexed"),
            U + "crawled": _inspected(U + "crawled", "Crawled - currently not indexed"),
        })
        sleeps = []

        async def _sleep(delay):
            sleeps.append(delay)

        result = await _orchestrator(store, discovery, policy, clock, inspection=inspection,
                                     sleep=_sleep).verify_indexing("demo")
        assert result.checked == 5
        assert (result.indexed, result.not_indexed, result.errors) == (1, 3, 1)
        assert result.deindexed == 1 and result.chronic_failures == 1
        assert sleeps == [0.6] * 4

        assert (await store.get("demo", U + "fresh")).status == "indexed"
        assert (await store.get("demo", U + "gone")).status == "deindexed"
        assert (await store.get("demo", U + "stuck")).status == "chronic_failure"
        crawled = await store.get("demo", U + "crawled")
        assert crawled.status == "discovered"
        assert crawled.last_inspected_at == NOW
        assert crawled.last_crawled_at is not None
        nodata = await store.get("demo", U + "nodata")
        assert nodata.status == "submitted"
        assert nodata.last_error == "URL inspection returned no data"
        assert await store.count_job_runs_since(JOB_VERIFY, 0) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_stops_run(self, store, discovery, policy, clock):
        await store.record_submission("demo", [U + "a", U + "b", U + "c"], indexnow=True, now=NOW - DAY)
        inspection = FakeInspection(rate_limited=True)
        result = await _orchestrator(store, discovery, policy, clock, inspection=inspection).verify_indexing("demo")
        assert result.stopped_early
        assert result.checked == 1
        assert len(inspection.calls) == 1

    @pytest.mark.asyncio
    async def test_max_urls(self, store, discovery, policy, clock):
        await store.record_submission("demo", [U + "a", U + "b", U + "c"], indexnow=True, now=NOW - DAY)
        inspection = FakeInspection()
        await _orchestrator(store, discovery, policy, clock, inspection=inspection).verify_indexing("demo", max_urls=2)
        assert len(inspection.calls) == 2

    @pytest.mark.asyncio
    async def test_hreflang_mismatch_counted_once(self, store, discovery, policy, clock):
        en, ar = "https://bilingual.example/blog/a", "https://bilingual.example/ar/blog/a"
        await store.record_submission("bi", [en, ar], indexnow=True, now=NOW - DAY)
        inspection = FakeInspection({
            en: _inspected(en, "Submitted and indexed", "INDEXED"),
            ar: _inspected(ar, "Discovered - currently not indexed"),
        })
        result = await _orchestrator(store, discovery, policy, clock, inspection=inspection).verify_indexing("bi")
        assert result.hreflang_mismatches == 1

    @pytest.mark.asyncio
    async def test_unconfigured_inspection(self, store, discovery, policy, clock):
        await store.record_submission("demo", [U + "a"], indexnow=True, now=NOW - DAY)
        result = await _orchestrator(store, discovery, policy, clock,
                                     inspection=FakeInspection(configured=False)).verify_indexing("demo")
        assert result.checked == 0
        assert result.messages

    @pytest.mark.asyncio
    async def test_never_submitted_url_stays_in_retry_tier(self, store, discovery, policy, clock):
        await store.insert_discovered("demo", [U + "unseen"], now=NOW - 7 * HOUR)
        inspection = FakeInspection({U + "unseen": _inspected(U + "unseen", "URL is unknown to Google")})
        result = await _orchestrator(store, discovery, policy, clock, inspection=inspection).verify_indexing("demo")
        assert result.not_indexed == 1
        rec = await store.get("demo", U + "unseen")
        assert rec.status == "discovered"
        assert rec.last_submitted_at is None
        assert rec.last_inspected_at == NOW
        for later in (NOW + 8 * DAY, NOW + 30 * DAY):
            candidates = await store.select_retry_candidates("demo", 10, later, policy)
            assert [c.url for c in candidates] == [U + "unseen"]
