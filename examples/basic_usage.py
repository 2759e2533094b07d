#!/usr/bin/env python3
"""Programmatic workflow example.

This demonstrates using the orchestrator components directly:

* load settings from `.env`
* answer tasks with in-process workers instead of an agent CLI
* run the built-in `qa` workflow
* persist the issues it finds to `agent_state/issues.json`

The failing check is scripted so that the issue store has something to record.
"""

from __future__ import annotations

import argparse
import threading
from typing import Sequence

from phase_orchestrator.orchestrator.config import OrchestratorSettings
from phase_orchestrator.orchestrator.logging import configure_logging
from phase_orchestrator.orchestrator.workers.gateway import RegistryWorkerGateway, WorkerReply
from phase_orchestrator.orchestrator.workflow.definitions import load_workflow
from phase_orchestrator.orchestrator.workflow.factory import create_issue_store, create_runner
from phase_orchestrator.orchestrator.workflow.models import Task


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the qa workflow with scripted workers.")
    parser.add_argument("--url", default="http://localhost:3000", help="Application under test")
    parser.add_argument(
        "--broken",
        default="forms",
        help="Substring of the check description that should report a defect",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = OrchestratorSettings()
    configure_logging(settings.log_level)

    def validate(task: Task, _cancel: threading.Event) -> WorkerReply:
        if args.broken in task.description:
            return WorkerReply(
                outcome="fail",
                fingerprints=[f"{args.broken}-broken"],
                evidence={"url": args.url, "check": task.description},
            )
        return WorkerReply(outcome="pass", evidence={"url": args.url})

    def review(task: Task, _cancel: threading.Event) -> WorkerReply:
        return WorkerReply(outcome="pass", evidence={"summary": f"{task.description}: ok"})

    def debug(_task: Task, _cancel: threading.Event) -> WorkerReply:
        return WorkerReply(evidence={"notes": "nothing suspicious"})

    gateway = RegistryWorkerGateway({"validate": validate, "review": review, "debug": debug})
    runner = create_runner(settings, gateway=gateway)

    outcome = runner.run(load_workflow("qa"), {"url": args.url})
    print(f"Run {outcome.run_id}: {outcome.final_state.value} ({outcome.reason})")

    for issue in create_issue_store(settings).list_open():
        print(f"{issue.key}  {issue.fingerprint}  evidence={len(issue.evidence)}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
