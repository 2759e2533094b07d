"""Human-in-the-loop approval worker.

From the orchestrator's point of view a decision by a person is just another
task (worker kind `human-approval`) whose call blocks until an answer arrives.
"""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable
from typing import TextIO

from phase_orchestrator.orchestrator.workflow.models import Task

from .gateway import WorkerReply

HUMAN_APPROVAL = "human-approval"

_YES = {"y", "yes", "approve", "approved"}
_NO = {"n", "no", "reject", "rejected"}


def console_approval_handler(
    *,
    read: Callable[[], str] | None = None,
    out: TextIO | None = None,
) -> Callable[[Task, threading.Event], WorkerReply]:
    """Build a handler that asks on the console and maps y/n to pass/fail.

    Anything else (including end of input) is an unclear answer.
    """

    read = read or sys.stdin.readline
    out = out or sys.stderr

    def handler(task: Task, _cancel: threading.Event) -> WorkerReply:
        question = str(task.payload.get("question") or task.description)
        options = task.payload.get("options")
        print(f"\n[approval] {question}", file=out)
        if isinstance(options, list):
            for idx, option in enumerate(options, start=1):
                print(f"  {idx}. {option}", file=out)
        print("Approve? [y/n]: ", end="", file=out, flush=True)

        answer = read().strip()
        normalized = answer.lower()
        if normalized in _YES:
            return WorkerReply(outcome="pass", evidence={"answer": answer})
        if normalized in _NO:
            return WorkerReply(
                outcome="fail",
                fingerprints=[f"rejected:{task.phase or task.description}"],
                evidence={"answer": answer},
            )
        return WorkerReply(outcome="unclear", evidence={"answer": answer})

    return handler


def auto_approval_handler(task: Task, _cancel: threading.Event) -> WorkerReply:
    """Approve everything (non-interactive runs)."""

    return WorkerReply(outcome="pass", evidence={"answer": "auto-approved", "phase": task.phase})
