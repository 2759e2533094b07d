"""CLI entrypoint for the orchestrator."""

from __future__ import annotations

import argparse
import json
import logging
import sys

from pydantic import ValidationError

from phase_orchestrator import __version__
from phase_orchestrator.orchestrator.config import OrchestratorSettings
from phase_orchestrator.orchestrator.logging import configure_logging
from phase_orchestrator.orchestrator.workers.approval import (
    auto_approval_handler,
    console_approval_handler,
)
from phase_orchestrator.orchestrator.workflow.definitions import (
    UnknownWorkflowError,
    list_workflows,
    load_workflow,
)
from phase_orchestrator.orchestrator.workflow.factory import create_issue_store, create_runner
from phase_orchestrator.orchestrator.workflow.models import RunState
from phase_orchestrator.orchestrator.workflow.state_machine import WorkflowRunStore

logger = logging.getLogger(__name__)

# Exit codes are designed to be CI-friendly.
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_FAILED = 4
EXIT_ABORTED = 5

_EXIT_BY_STATE = {
    RunState.SUCCEEDED: EXIT_OK,
    RunState.FAILED: EXIT_FAILED,
    RunState.ABORTED: EXIT_ABORTED,
}


def _parse_inputs(values: list[str] | None) -> dict[str, object]:
    inputs: dict[str, object] = {}
    for value in values or []:
        key, sep, raw = value.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Inputs must look like KEY=VALUE, got {value!r}")
        inputs[key.strip()] = raw
    return inputs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phase-orchestrator",
        description="Run multi-phase agent workflows with validation gates",
    )
    parser.add_argument(
        "--version", action="version", version=f"phase-orchestrator {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run a workflow to completion")
    run.add_argument("workflow", help="Workflow name (built-in or <workflows_path>/<name>.json)")
    run.add_argument(
        "--input",
        dest="inputs",
        action="append",
        metavar="KEY=VALUE",
        help="Run input passed to every task (repeatable)",
    )
    approval = run.add_mutually_exclusive_group()
    approval.add_argument(
        "--interactive",
        action="store_true",
        help="Answer human-approval tasks on this console",
    )
    approval.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve every human-approval task without asking",
    )

    workflows = subparsers.add_parser("workflows", help="Inspect workflow definitions")
    workflows_sub = workflows.add_subparsers(dest="workflows_command", required=True)
    workflows_sub.add_parser("list", help="List available workflows")
    show_workflow = workflows_sub.add_parser("show", help="Print a workflow definition as JSON")
    show_workflow.add_argument("name")

    issues = subparsers.add_parser("issues", help="Inspect and resolve recorded issues")
    issues_sub = issues.add_subparsers(dest="issues_command", required=True)
    list_issues = issues_sub.add_parser("list", help="List open issues")
    list_issues.add_argument(
        "--resolved", action="store_true", help="List resolved issues instead"
    )
    list_issues.add_argument("--json", action="store_true", help="Print JSON")
    resolve = issues_sub.add_parser("resolve", help="Resolve an open issue by fingerprint")
    resolve.add_argument("fingerprint")

    runs = subparsers.add_parser("runs", help="Inspect workflow runs")
    runs_sub = runs.add_subparsers(dest="runs_command", required=True)
    runs_sub.add_parser("list", help="List recorded runs")
    show_run = runs_sub.add_parser("show", help="Print a run as JSON")
    show_run.add_argument("run_id")

    return parser


def _run(args: argparse.Namespace, settings: OrchestratorSettings) -> int:
    inputs = _parse_inputs(args.inputs)
    definition = load_workflow(args.workflow, workflows_path=settings.workflows_path)

    approval_handler = None
    if args.interactive:
        approval_handler = console_approval_handler()
    elif args.auto_approve:
        approval_handler = auto_approval_handler

    runner = create_runner(settings, approval_handler=approval_handler)
    try:
        outcome = runner.run(definition, inputs)
    finally:
        runner.gateway.close()

    print(f"Run {outcome.run_id}: {outcome.final_state.value} ({outcome.reason})")
    if outcome.issues_raised:
        print(f"Issues raised: {', '.join(outcome.issues_raised)}")
    if outcome.issues_resolved:
        print(f"Issues resolved: {', '.join(outcome.issues_resolved)}")
    return _EXIT_BY_STATE.get(outcome.final_state, EXIT_ERROR)


def _workflows(args: argparse.Namespace, settings: OrchestratorSettings) -> int:
    if args.workflows_command == "list":
        for name in list_workflows(workflows_path=settings.workflows_path):
            print(name)
        return EXIT_OK

    definition = load_workflow(args.name, workflows_path=settings.workflows_path)
    print(json.dumps(definition.model_dump(mode="json"), indent=2, ensure_ascii=False))
    return EXIT_OK


def _issues(args: argparse.Namespace, settings: OrchestratorSettings) -> int:
    store = create_issue_store(settings)

    if args.issues_command == "resolve":
        if store.resolve(args.fingerprint):
            print(f"Resolved {args.fingerprint}")
        else:
            print(f"No open issue with fingerprint {args.fingerprint}")
        return EXIT_OK

    issues = store.list_resolved() if args.resolved else store.list_open()
    if args.json:
        print(json.dumps([i.model_dump(mode="json") for i in issues], indent=2, ensure_ascii=False))
        return EXIT_OK
    if not issues:
        print("No issues")
    for issue in issues:
        print(
            f"{issue.key}  {issue.fingerprint}  {issue.status.value}  "
            f"evidence={len(issue.evidence)}  first seen in {issue.source_ref.run_id}"
            f"/{issue.source_ref.phase}"
        )
    return EXIT_OK


def _runs(args: argparse.Namespace, settings: OrchestratorSettings) -> int:
    store = WorkflowRunStore(settings.runs_state_dir)

    if args.runs_command == "list":
        for run in store.list():
            print(f"{run.id}  {run.definition}  {run.state.value}  {run.created_at}")
        return EXIT_OK

    record = store.load(args.run_id)
    if record is None:
        print(f"Run not found: {args.run_id}", file=sys.stderr)
        return EXIT_USAGE
    print(json.dumps(record.model_dump(mode="json"), indent=2, ensure_ascii=False))
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = OrchestratorSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_USAGE

    configure_logging(settings.log_level)

    try:
        if args.command == "run":
            return _run(args, settings)
        if args.command == "workflows":
            return _workflows(args, settings)
        if args.command == "issues":
            return _issues(args, settings)
        if args.command == "runs":
            return _runs(args, settings)

        logger.error("Unknown command", extra={"command": args.command})
        return EXIT_USAGE

    except UnknownWorkflowError as e:
        print(f"Unknown workflow: {e.args[0]}", file=sys.stderr)
        return EXIT_USAGE

    except ValueError as e:
        # Malformed inputs and invalid workflow definitions.
        logger.warning(str(e))
        print(str(e), file=sys.stderr)
        return EXIT_USAGE

    except Exception:
        logger.exception("Command failed")
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
