import argparse, asyncio, dataclasses, json, logging, sys
from indextracker.config import VERBOSE_DEFAULT
from indextracker.engine import IndexingEngine
from indextracker.models import ImmediateSubmitResult

def configure_logging(verbose: bool, quiet: bool):
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

def print_summary(summary, as_json: bool):
    if as_json:
        print(json.dumps(summary.to_dict(), indent=2, ensure_ascii=False))
        return
    print(f"Site: {summary.site_id}")
    print(f"  Indexed: {summary.indexed}/{summary.total} ({summary.rate}%)")
    print(f"  Submitted: {summary.submitted}  Discovered: {summary.discovered}  Never submitted: {summary.never_submitted}")
    print(f"  Errors: {summary.errors}  Deindexed: {summary.deindexed}  Chronic failures: {summary.chronic_failures}")
    print(f"  Published: {summary.published_count}  Tracked: {summary.tracked_count}  Stale: {summary.stale_count}")
    print(f"  Velocity (7d): {summary.velocity_7d} ({summary.velocity_trend}, previous {summary.velocity_prev_7d})")
    if summary.avg_days_to_index is not None:
        print(f"  Avg time to index: {summary.avg_days_to_index}d")
    print(f"  Last submission: {summary.last_submission_age or 'never'}  Last verification: {summary.last_verification_age or 'never'}")
    ch = summary.channel_breakdown
    print(f"  Channels: indexnow={ch.indexnow} sitemap={ch.sitemap} google_api={ch.google_api}")
    if summary.daily_quota_remaining is not None:
        print(f"  Indexing API quota left today: {summary.daily_quota_remaining}")
    if summary.blockers:
        print("  Blockers:")
        for b in summary.blockers:
            print(f"    [{b.severity}] {b.reason}")

def exit_code(result) -> int:
    """A publish succeeds when any channel accepted the URL; other runs fail on any reported error."""
    if isinstance(result, ImmediateSubmitResult):
        return 0 if result.success else 1
    return 1 if getattr(result, "errors", None) else 0

async def run(args) -> int:
    engine = IndexingEngine.from_env(args.sites, args.db, args.content_db)
    if args.command == "init":
        await engine.init_databases()
        print(f"Initialized {engine.store.db_path} and {engine.content_db}")
        return 0

    async with engine:
        if args.command == "sync":
            result = await engine.sync_to_tracking(args.site, args.site_url)
        elif args.command == "retry":
            result = await engine.retry_stale_and_failed(args.site, args.max_urls, args.budget_ms)
        elif args.command == "submit":
            result = await engine.submit_url_immediately(args.url, args.site, args.site_url)
        elif args.command == "verify":
            result = await engine.verify_indexing(args.site, args.max_urls, args.budget_ms)
        else:
            print_summary(await engine.compute_summary(args.site), args.json)
            return 0

    print(json.dumps(dataclasses.asdict(result), indent=2, ensure_ascii=False))
    return exit_code(result)

if __name__ == "__main__":
    p = argparse.ArgumentParser(
        description="Track and reconcile search-engine indexing of published content",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s init
  %(prog)s sync yalla-london
  %(prog)s retry yalla-london --max-urls 20 --budget-ms 30000
  %(prog)s submit yalla-london https://www.example.com/blog/new-post
  %(prog)s summary yalla-london --json
        """
    )
    p.add_argument("--sites", help="Path to the sites JSON file (default: $INDEXTRACKER_SITES or DATA_DIR/sites.json)")
    p.add_argument("--db", help="Tracking database path (default: DATA_DIR/tracking.db)")
    p.add_argument("--content-db", help="CMS content database path (default: DATA_DIR/content.db)")
    p.add_argument("--verbose", "-v", action="store_true", default=VERBOSE_DEFAULT, help="Enable debug output")
    p.add_argument("--quiet", "-q", action="store_true", help="Only show warnings and errors")

    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser("init", help="Create the tracking and content tables")

    s = sub.add_parser("sync", help="Seed tracking records for every indexable URL")
    s.add_argument("site")
    s.add_argument("--site-url", help="Override the site's configured domain")

    s = sub.add_parser("retry", help="Resubmit stuck, failed and stale URLs")
    s.add_argument("site")
    s.add_argument("--max-urls", type=int, default=None, help="Maximum URLs to resubmit (default: 50)")
    s.add_argument("--budget-ms", type=int, default=None, help="Wall-clock budget in ms (default: 53000)")

    s = sub.add_parser("submit", help="Submit one freshly published URL through every channel")
    s.add_argument("site")
    s.add_argument("url")
    s.add_argument("--site-url", help="Override the site's configured domain")

    s = sub.add_parser("verify", help="Inspect queued URLs and reconcile their status")
    s.add_argument("site")
    s.add_argument("--max-urls", type=int, default=None, help="Maximum URLs to inspect (default: 35)")
    s.add_argument("--budget-ms", type=int, default=None, help="Wall-clock budget in ms (default: 53000)")

    s = sub.add_parser("summary", help="Print the indexing summary and blockers")
    s.add_argument("site")
    s.add_argument("--json", action="store_true", help="Machine-readable output")

    args = p.parse_args()
    configure_logging(args.verbose, args.quiet)
    sys.exit(asyncio.run(run(args)))
