"""Process exit codes of the command-line runs."""
from indextracker.models import ImmediateSubmitResult, RetryResult, SyncResult, VerifyResult

from main import exit_code

U = "https://example.com/blog/new"

class TestExitCode:
    def test_submit_with_quota_note_succeeds(self):
        result = ImmediateSubmitResult(url=U, success=True, errors=["Indexing API daily quota exhausted"])
        assert exit_code(result) == 0

    def test_failed_submit(self):
        result = ImmediateSubmitResult(url=U, success=False, errors=["INDEXNOW_KEY not configured"])
        assert exit_code(result) == 1

    def test_retry_errors_fail(self):
        assert exit_code(RetryResult(site_id="demo", errors=["INDEXNOW_KEY not configured: no retry possible"])) == 1
        assert exit_code(RetryResult(site_id="demo", selected=2, retried=2, succeeded=2)) == 0

    def test_other_runs(self):
        assert exit_code(SyncResult(site_id="demo", discovered=3, created=3)) == 0
        assert exit_code(VerifyResult(site_id="demo", checked=4)) == 0
        assert exit_code(VerifyResult(site_id="demo", checked=4, errors=1)) == 1
