"""Background execution of workflow runs started over HTTP."""

from __future__ import annotations

import logging
import threading

from phase_orchestrator.orchestrator.workflow.models import WorkflowDefinition, WorkflowRun
from phase_orchestrator.orchestrator.workflow.runner import WorkflowRunner

logger = logging.getLogger(__name__)


def start_run_job(
    *,
    runner: WorkflowRunner,
    definition: WorkflowDefinition,
    inputs: dict[str, object],
) -> WorkflowRun:
    """Register a run and execute it on a daemon thread. Returns the PENDING run."""

    run = runner.start(definition, inputs)

    thread = threading.Thread(
        target=_run_job,
        name=f"workflow-{definition.name}-{run.id[:8]}",
        daemon=True,
        kwargs={"runner": runner, "definition": definition, "run": run},
    )
    thread.start()
    return run


def _run_job(*, runner: WorkflowRunner, definition: WorkflowDefinition, run: WorkflowRun) -> None:
    try:
        outcome = runner.run(definition, run=run)
        logger.info(
            "Background run finished",
            extra={"run_id": outcome.run_id, "state": outcome.final_state.value},
        )
    except Exception:
        logger.exception("Background run failed", extra={"run_id": run.id})
