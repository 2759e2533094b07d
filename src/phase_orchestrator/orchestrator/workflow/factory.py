"""Wire a `WorkflowRunner` from settings."""

from __future__ import annotations

from phase_orchestrator.orchestrator.config import OrchestratorSettings
from phase_orchestrator.orchestrator.issues.store import IssueStore
from phase_orchestrator.orchestrator.locks import ResourceLock
from phase_orchestrator.orchestrator.workers.approval import HUMAN_APPROVAL
from phase_orchestrator.orchestrator.workers.factory import WorkerGatewayFactory
from phase_orchestrator.orchestrator.workers.gateway import (
    CompositeWorkerGateway,
    RegistryWorkerGateway,
    WorkerGateway,
    WorkerHandler,
)

from .runner import WorkflowRunner
from .state_machine import WorkflowRunStore


def create_issue_store(settings: OrchestratorSettings) -> IssueStore:
    return IssueStore(
        settings.issues_state_file,
        key_prefix=settings.issue_key_prefix,
        number_width=settings.issue_number_width,
    )


def create_runner(
    settings: OrchestratorSettings,
    *,
    gateway: WorkerGateway | None = None,
    approval_handler: WorkerHandler | None = None,
    locks: ResourceLock | None = None,
) -> WorkflowRunner:
    """Build a runner with file-backed issue and run stores.

    Args:
        settings: Loaded settings.
        gateway: Worker gateway; defaults to the configured provider.
        approval_handler: If given, `human-approval` tasks are answered in-process.
        locks: Shared lock table (pass one in when several runners share resources).
    """

    base = gateway or WorkerGatewayFactory.create(settings.worker)
    if approval_handler is not None:
        base = CompositeWorkerGateway(
            base, {HUMAN_APPROVAL: RegistryWorkerGateway({HUMAN_APPROVAL: approval_handler})}
        )

    return WorkflowRunner(
        gateway=base,
        issue_store=create_issue_store(settings),
        locks=locks,
        run_store=WorkflowRunStore(settings.runs_state_dir),
        settings=settings,
    )
