"""FastAPI app factory.

Endpoints are intentionally thin wrappers over the orchestrator services.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from phase_orchestrator import __version__
from phase_orchestrator.orchestrator.config import OrchestratorSettings
from phase_orchestrator.orchestrator.workers.gateway import WorkerGateway
from phase_orchestrator.orchestrator.workflow.definitions import (
    UnknownWorkflowError,
    list_workflows,
    load_workflow,
)
from phase_orchestrator.orchestrator.workflow.factory import create_runner
from phase_orchestrator.orchestrator.workflow.models import WorkflowRun
from phase_orchestrator.server.models import (
    ApiIssue,
    ApiPhaseRecord,
    ApiRun,
    ResolveResponse,
    RunRequest,
)
from phase_orchestrator.server.run_jobs import start_run_job

logger = logging.getLogger(__name__)


def _to_api_run(run: WorkflowRun) -> ApiRun:
    return ApiRun(
        run_id=run.id,
        workflow=run.definition,
        state=run.state.value,
        current_phase=run.current_phase,
        reason=run.reason,
        inputs=run.inputs,
        history=[ApiPhaseRecord.model_validate(r.model_dump(mode="json")) for r in run.history],
        issues_raised=run.issues_raised,
        issues_resolved=run.issues_resolved,
        created_at=run.created_at,
        updated_at=run.updated_at,
        finished_at=run.finished_at,
    )


def create_app(
    settings: OrchestratorSettings | None = None,
    *,
    gateway: WorkerGateway | None = None,
) -> FastAPI:
    settings = settings or OrchestratorSettings()

    # Human approvals cannot be answered over this API; approval phases must be
    # handled by the configured worker.
    runner = create_runner(settings, gateway=gateway)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        runner.gateway.close()

    app = FastAPI(
        lifespan=lifespan,
        title="Phase Orchestrator",
        version=__version__,
        description="REST API over the phase-orchestrator workflow runner and issue store.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.state.settings = settings
    app.state.runner = runner

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/v1/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/api/v1/workflows", response_model=list[str])
    def workflows() -> list[str]:
        return list_workflows(workflows_path=settings.workflows_path)

    @app.get("/api/v1/issues", response_model=list[ApiIssue])
    def list_issues() -> list[ApiIssue]:
        return [ApiIssue.from_record(issue) for issue in runner.issue_store.list_open()]

    @app.get("/api/v1/issues/{key}", response_model=ApiIssue)
    def get_issue(key: str) -> ApiIssue:
        record = runner.issue_store.find_by_key(key)
        if record is None:
            raise HTTPException(status_code=404, detail="Issue not found")
        return ApiIssue.from_record(record)

    @app.post("/api/v1/issues/{fingerprint}/resolve", response_model=ResolveResponse)
    def resolve_issue(fingerprint: str) -> ResolveResponse:
        return ResolveResponse(
            fingerprint=fingerprint, resolved=runner.issue_store.resolve(fingerprint)
        )

    @app.post("/api/v1/runs", response_model=ApiRun, status_code=202)
    def start_run(req: RunRequest) -> ApiRun:
        try:
            definition = load_workflow(req.workflow, workflows_path=settings.workflows_path)
        except UnknownWorkflowError:
            raise HTTPException(status_code=404, detail="Workflow not found") from None
        run = start_run_job(runner=runner, definition=definition, inputs=req.inputs)
        return _to_api_run(run)

    @app.get("/api/v1/runs", response_model=list[ApiRun])
    def list_runs() -> list[ApiRun]:
        return [_to_api_run(run) for run in runner.run_store.list()]

    @app.get("/api/v1/runs/{run_id}", response_model=ApiRun)
    def get_run(run_id: str) -> ApiRun:
        run = runner.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return _to_api_run(run)

    @app.post("/api/v1/runs/{run_id}/cancel", response_model=ApiRun)
    def cancel_run(run_id: str) -> ApiRun:
        run = runner.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        if run.terminal or not runner.cancel(run_id):
            raise HTTPException(status_code=409, detail="Run already finished")
        logger.info("Run cancelled via API", extra={"run_id": run_id})
        current = runner.get_run(run_id)
        return _to_api_run(current if current is not None else run)

    return app
