"""
Status resolution for tracking records.

A tracking record carries two redundant signals: the ``status`` column we write
ourselves and the ``indexing_state`` reported by the inspection channel. They can
disagree (an old ``error`` row that Google has since indexed, for example), so this
module is the one place that decides which signal wins.
"""
from __future__ import annotations
from typing import Optional

from .models import IndexingTrackingRecord

# Stored status values
DISCOVERED = "discovered"
SUBMITTED = "submitted"
INDEXED = "indexed"
ERROR = "error"
DEINDEXED = "deindexed"
CHRONIC_FAILURE = "chronic_failure"
# legacy alias of submitted still present in older rows
PENDING = "pending"

# Resolved-only value: the URL is published but has no tracking record
NEVER_SUBMITTED = "never_submitted"

STORED_STATUSES = (DISCOVERED, SUBMITTED, INDEXED, ERROR, DEINDEXED, CHRONIC_FAILURE)
TERMINAL_STATUSES = frozenset({INDEXED, DEINDEXED, CHRONIC_FAILURE})
INDEXED_STATES = frozenset({"INDEXED", "PARTIALLY_INDEXED"})

def is_indexed_state(indexing_state: Optional[str]) -> bool:
    return indexing_state in INDEXED_STATES

def resolve_status(record: Optional[IndexingTrackingRecord]) -> str:
    """Map a tracking record (or its absence) to exactly one canonical status."""
    if record is None:
        return NEVER_SUBMITTED
    status = record.status
    if status == INDEXED or is_indexed_state(record.indexing_state):
        return INDEXED
    if status == CHRONIC_FAILURE:
        return CHRONIC_FAILURE
    if status == ERROR:
        return ERROR
    if status == DEINDEXED:
        return DEINDEXED
    if status in (SUBMITTED, PENDING):
        return SUBMITTED
    # discovered, and any unknown/legacy value: never drop a URL from the counts
    return DISCOVERED
