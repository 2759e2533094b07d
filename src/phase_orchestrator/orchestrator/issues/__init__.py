"""Durable, deduplicated defect records discovered during validation."""

from phase_orchestrator.orchestrator.issues.store import (
    IssueRecord,
    IssueStatus,
    IssueStore,
    SourceRef,
    compute_fingerprint,
)

__all__ = [
    "IssueRecord",
    "IssueStatus",
    "IssueStore",
    "SourceRef",
    "compute_fingerprint",
]
