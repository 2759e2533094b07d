"""Unit tests for the deduplicating issue store."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from phase_orchestrator.orchestrator.issues.store import (
    IssueStatus,
    IssueStore,
    SourceRef,
    compute_fingerprint,
)

SOURCE = SourceRef(run_id="run-1", phase="validate", task_id="t1")


def test_compute_fingerprint_ignores_case_and_whitespace() -> None:
    a = compute_fingerprint("Login button  does nothing")
    b = compute_fingerprint("  login BUTTON does\nnothing ")

    assert a == b
    assert len(a) == 12
    assert compute_fingerprint("Logout button does nothing") != a


def test_first_report_opens_issue_with_padded_key() -> None:
    store = IssueStore()

    record = store.report("login-broken", {"screenshot": "a.png"}, SOURCE)

    assert record.key == "ISSUE-001"
    assert record.sequence_number == 1
    assert record.status == IssueStatus.OPEN
    assert record.evidence == [{"screenshot": "a.png"}]
    assert record.source_ref == SOURCE


def test_repeat_report_appends_evidence_to_the_open_issue() -> None:
    store = IssueStore()
    first = store.report("login-broken", {"attempt": 1}, SOURCE)
    again = store.report(
        "login-broken", {"attempt": 2}, SourceRef(run_id="run-2", phase="qa", task_id="t9")
    )

    assert again.key == first.key
    assert again.evidence == [{"attempt": 1}, {"attempt": 2}]
    assert [s.run_id for s in again.sightings] == ["run-1", "run-2"]
    # The first observation stays the source of record.
    assert again.source_ref == SOURCE
    assert len(store.list_open()) == 1


def test_fingerprint_whitespace_is_ignored_consistently() -> None:
    store = IssueStore()
    store.report(" bug-A ", {}, SOURCE)

    assert store.find_open(" bug-A ") is not None
    assert store.resolve(" bug-A ") is True
    assert store.list_open() == []


def test_distinct_fingerprints_get_increasing_sequence_numbers() -> None:
    store = IssueStore()

    keys = [store.report(fp, {}, SOURCE).key for fp in ["a", "b", "c"]]

    assert keys == ["ISSUE-001", "ISSUE-002", "ISSUE-003"]


def test_key_prefix_and_width_are_configurable() -> None:
    store = IssueStore(key_prefix="BUG", number_width=5)

    assert store.report("a", {}, SOURCE).key == "BUG-00001"


def test_empty_fingerprint_is_rejected() -> None:
    store = IssueStore()
    with pytest.raises(ValueError):
        store.report("   ", {}, SOURCE)


def test_resolve_is_idempotent() -> None:
    store = IssueStore()
    store.report("login-broken", {}, SOURCE)

    assert store.resolve("login-broken") is True
    assert store.resolve("login-broken") is False
    assert store.resolve("never-seen") is False

    assert store.list_open() == []
    resolved = store.list_resolved()
    assert len(resolved) == 1
    assert resolved[0].status == IssueStatus.RESOLVED
    assert resolved[0].resolved_at is not None


def test_regression_after_resolve_opens_a_new_issue() -> None:
    store = IssueStore()
    first = store.report("login-broken", {}, SOURCE)
    store.resolve("login-broken")

    regression = store.report("login-broken", {"again": True}, SOURCE)

    assert regression.key != first.key
    assert regression.sequence_number == first.sequence_number + 1
    assert regression.evidence == [{"again": True}]
    assert store.find_open("login-broken") == regression


def test_sequence_numbers_are_never_reused(tmp_path: Path) -> None:
    store = IssueStore(tmp_path / "issues.json")
    store.report("a", {}, SOURCE)
    store.resolve("a")

    assert store.report("b", {}, SOURCE).sequence_number == 2


def test_store_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "agent_state" / "issues.json"
    store = IssueStore(path)
    store.report("a", {"n": 1}, SOURCE)
    store.report("b", {"n": 2}, SOURCE)
    store.resolve("b")

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["next_sequence"] == 3
    assert [i["fingerprint"] for i in raw["open"]] == ["a"]
    assert [i["fingerprint"] for i in raw["resolved"]] == ["b"]

    reloaded = IssueStore(path)
    assert [i.key for i in reloaded.list_open()] == ["ISSUE-001"]
    assert reloaded.report("c", {}, SOURCE).key == "ISSUE-003"


def test_invalid_state_file_fails_loudly(tmp_path: Path) -> None:
    path = tmp_path / "issues.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(json.JSONDecodeError):
        IssueStore(path).list_open()


def test_find_by_key_covers_open_and_resolved() -> None:
    store = IssueStore()
    store.report("a", {}, SOURCE)
    store.report("b", {}, SOURCE)
    store.resolve("a")

    assert store.find_by_key("issue-001").fingerprint == "a"
    assert store.find_by_key("ISSUE-002").status == IssueStatus.OPEN
    assert store.find_by_key("ISSUE-404") is None


def test_concurrent_reports_of_one_fingerprint_create_one_issue(tmp_path: Path) -> None:
    store = IssueStore(tmp_path / "issues.json")
    barrier = threading.Barrier(12)

    def report(idx: int) -> None:
        barrier.wait(timeout=5)
        store.report("flaky-checkout", {"worker": idx}, SOURCE)

    threads = [threading.Thread(target=report, args=(i,)) for i in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    open_issues = store.list_open()
    assert len(open_issues) == 1
    assert open_issues[0].key == "ISSUE-001"
    assert sorted(e["worker"] for e in open_issues[0].evidence) == list(range(12))
