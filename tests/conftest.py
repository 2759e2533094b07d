"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path

import pytest

from phase_orchestrator.orchestrator.config import OrchestratorSettings
from phase_orchestrator.orchestrator.issues.store import IssueStore
from phase_orchestrator.orchestrator.locks import ResourceLock
from phase_orchestrator.orchestrator.workers.gateway import RegistryWorkerGateway, WorkerHandler
from phase_orchestrator.orchestrator.workflow.runner import WorkflowRunner
from phase_orchestrator.orchestrator.workflow.state_machine import WorkflowRunStore

_SETTINGS_ENV = (
    "LOG_LEVEL",
    "AGENT_STATE_PATH",
    "ORCHESTRATOR_MAX_RETRIES",
    "ORCHESTRATOR_LOCK_TIMEOUT_SECONDS",
    "ORCHESTRATOR_DISPATCH_TIMEOUT_SECONDS",
    "ORCHESTRATOR_STOP_GRACE_SECONDS",
    "ORCHESTRATOR_RETRY_BACKOFF_SECONDS",
    "ORCHESTRATOR_MAX_PARALLEL_TASKS",
    "ORCHESTRATOR_ISSUE_KEY_PREFIX",
    "ORCHESTRATOR_ISSUE_NUMBER_WIDTH",
    "ORCHESTRATOR_WORKFLOWS_PATH",
    "ORCHESTRATOR_CORS_ORIGINS",
    "ORCHESTRATOR_WORKER_PROVIDER",
    "ORCHESTRATOR_WORKER_COMMAND",
    "ORCHESTRATOR_WORKER_OPENAI_API_KEY",
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's environment and `.env` out of every test."""
    for name in _SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Provide a temporary agent state directory."""
    return tmp_path / "agent_state"


@pytest.fixture
def settings(state_dir: Path, tmp_path: Path) -> OrchestratorSettings:
    """Provide settings with short bounds suitable for tests."""
    return OrchestratorSettings(
        _env_file=None,
        agent_state_path=state_dir,
        workflows_path=tmp_path / "workflows",
        lock_timeout_seconds=5.0,
        dispatch_timeout_seconds=5.0,
        retry_backoff_seconds=0.0,
    )


@pytest.fixture
def issue_store() -> IssueStore:
    """Provide an in-memory issue store."""
    return IssueStore()


RunnerFactory = Callable[..., WorkflowRunner]


@pytest.fixture
def make_runner(settings: OrchestratorSettings, issue_store: IssueStore) -> RunnerFactory:
    """Build a runner whose workers are in-process handlers keyed by worker kind."""

    def factory(
        handlers: Mapping[str, WorkerHandler],
        *,
        locks: ResourceLock | None = None,
        run_store: WorkflowRunStore | None = None,
        store: IssueStore | None = None,
        **overrides: object,
    ) -> WorkflowRunner:
        return WorkflowRunner(
            gateway=RegistryWorkerGateway(handlers),
            issue_store=store or issue_store,
            locks=locks,
            run_store=run_store,
            settings=settings.model_copy(update=overrides),
        )

    return factory
