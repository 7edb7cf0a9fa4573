"""Status resolution precedence."""
import pytest

from indextracker.models import IndexingTrackingRecord
from indextracker.status import resolve_status

def _record(status, indexing_state=None):
    return IndexingTrackingRecord(site_id="demo", url="https://example.com/a", status=status,
                                  indexing_state=indexing_state)

class TestResolveStatus:
    def test_missing_record_is_never_submitted(self):
        assert resolve_status(None) == "never_submitted"

    def test_indexing_state_overrides_error(self):
        assert resolve_status(_record("error", "INDEXED")) == "indexed"

    def test_partially_indexed_counts_as_indexed(self):
        assert resolve_status(_record("submitted", "PARTIALLY_INDEXED")) == "indexed"

    @pytest.mark.parametrize(
        "status,expected",
        [
            ("indexed", "indexed"),
            ("chronic_failure", "chronic_failure"),
            ("error", "error"),
            ("deindexed", "deindexed"),
            ("submitted", "submitted"),
            ("pending", "submitted"),
            ("discovered", "discovered"),
        ],
    )
    def test_stored_status(self, status, expected):
        assert resolve_status(_record(status)) == expected

    def test_unknown_status_fails_open_to_discovered(self):
        assert resolve_status(_record("queued_v1")) == "discovered"

    def test_unrecognised_indexing_state_does_not_promote(self):
        assert resolve_status(_record("submitted", "NEUTRAL")) == "submitted"
