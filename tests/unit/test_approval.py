"""Unit tests for human-approval workers."""

from __future__ import annotations

import io
import threading

import pytest

from phase_orchestrator.orchestrator.workers.approval import (
    auto_approval_handler,
    console_approval_handler,
)
from phase_orchestrator.orchestrator.workflow.models import Task


def _approval_task(**payload: object) -> Task:
    return Task(
        worker_kind="human-approval",
        description="Approve the plan",
        payload=dict(payload),
        run_id="run-1",
        phase="approve",
    )


@pytest.mark.parametrize(
    ("answer", "outcome"),
    [
        ("y\n", "pass"),
        ("Yes\n", "pass"),
        ("n\n", "fail"),
        ("reject\n", "fail"),
        ("later\n", "unclear"),
        ("", "unclear"),
    ],
)
def test_console_answers_map_to_outcomes(answer: str, outcome: str) -> None:
    out = io.StringIO()
    handler = console_approval_handler(read=lambda: answer, out=out)

    reply = handler(_approval_task(), threading.Event())

    assert reply.outcome == outcome
    assert "Approve the plan" in out.getvalue()


def test_rejection_carries_a_stable_fingerprint() -> None:
    handler = console_approval_handler(read=lambda: "no", out=io.StringIO())

    reply = handler(_approval_task(), threading.Event())

    assert reply.fingerprints == ["rejected:approve"]
    assert reply.evidence == {"answer": "no"}


def test_console_prints_question_and_options() -> None:
    out = io.StringIO()
    handler = console_approval_handler(read=lambda: "y", out=out)

    handler(
        _approval_task(question="Which option?", options=["REST", "GraphQL"]),
        threading.Event(),
    )

    printed = out.getvalue()
    assert "Which option?" in printed
    assert "1. REST" in printed
    assert "2. GraphQL" in printed


def test_auto_approval_always_passes() -> None:
    reply = auto_approval_handler(_approval_task(), threading.Event())

    assert reply.outcome == "pass"
    assert reply.evidence["phase"] == "approve"
