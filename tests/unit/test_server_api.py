from __future__ import annotations

import threading
import time

from fastapi.testclient import TestClient

from phase_orchestrator.orchestrator.config import OrchestratorSettings
from phase_orchestrator.orchestrator.issues.store import IssueStore, SourceRef
from phase_orchestrator.orchestrator.workers.gateway import RegistryWorkerGateway, WorkerReply
from phase_orchestrator.orchestrator.workflow.models import Task
from phase_orchestrator.server.app import create_app


def _gateway(**overrides) -> RegistryWorkerGateway:
    def passes(_task: Task, _cancel: threading.Event) -> WorkerReply:
        return WorkerReply(outcome="pass")

    handlers = {"validate": passes, "review": passes, "debug": passes}
    handlers.update(overrides)
    return RegistryWorkerGateway(handlers)


def _wait_for_state(client: TestClient, run_id: str, states: set[str]) -> dict:
    deadline = time.monotonic() + 10
    while True:
        body = client.get(f"/api/v1/runs/{run_id}").json()
        if body["state"] in states or time.monotonic() > deadline:
            return body
        time.sleep(0.05)


def test_health_and_workflows(settings: OrchestratorSettings) -> None:
    client = TestClient(create_app(settings, gateway=_gateway()))

    health = client.get("/api/v1/health").json()
    assert health["status"] == "ok"
    assert "version" in health

    assert client.get("/api/v1/workflows").json() == ["fix-issue", "implement", "qa"]


def test_issue_endpoints(settings: OrchestratorSettings) -> None:
    store = IssueStore(settings.issues_state_file)
    store.report("login-broken", {"n": 1}, SourceRef(run_id="run-1", phase="validate"))
    client = TestClient(create_app(settings, gateway=_gateway()))

    issues = client.get("/api/v1/issues").json()
    assert [i["key"] for i in issues] == ["ISSUE-001"]
    assert issues[0]["source_ref"]["phase"] == "validate"

    assert client.get("/api/v1/issues/ISSUE-001").json()["fingerprint"] == "login-broken"
    assert client.get("/api/v1/issues/ISSUE-999").status_code == 404

    first = client.post("/api/v1/issues/login-broken/resolve").json()
    second = client.post("/api/v1/issues/login-broken/resolve").json()
    assert first == {"fingerprint": "login-broken", "resolved": True}
    assert second["resolved"] is False
    assert client.get("/api/v1/issues").json() == []
    assert client.get("/api/v1/issues/ISSUE-001").json()["status"] == "resolved"


def test_start_run_and_poll_until_done(settings: OrchestratorSettings) -> None:
    client = TestClient(create_app(settings, gateway=_gateway()))

    resp = client.post("/api/v1/runs", json={"workflow": "qa", "inputs": {"url": "http://app"}})
    assert resp.status_code == 202
    started = resp.json()
    assert started["workflow"] == "qa"
    assert started["inputs"] == {"url": "http://app"}

    final = _wait_for_state(client, started["run_id"], {"succeeded", "failed", "aborted"})
    assert final["state"] == "succeeded"
    assert [h["phase"] for h in final["history"]] == ["explore", "report"]

    listed = client.get("/api/v1/runs").json()
    assert [r["run_id"] for r in listed] == [started["run_id"]]


def test_unknown_workflow_and_run(settings: OrchestratorSettings) -> None:
    client = TestClient(create_app(settings, gateway=_gateway()))

    assert client.post("/api/v1/runs", json={"workflow": "nope"}).status_code == 404
    assert client.get("/api/v1/runs/nope").status_code == 404
    assert client.post("/api/v1/runs/nope/cancel").status_code == 404


def test_cancel_running_workflow(settings: OrchestratorSettings) -> None:
    started = threading.Event()

    def hang(_task: Task, cancel: threading.Event) -> WorkerReply:
        started.set()
        cancel.wait(10)
        return WorkerReply(outcome="pass")

    client = TestClient(create_app(settings, gateway=_gateway(validate=hang)))
    run_id = client.post("/api/v1/runs", json={"workflow": "qa"}).json()["run_id"]
    assert started.wait(5)

    assert client.post(f"/api/v1/runs/{run_id}/cancel").status_code == 200

    final = _wait_for_state(client, run_id, {"aborted"})
    assert final["state"] == "aborted"
    # Finished runs cannot be cancelled again.
    assert client.post(f"/api/v1/runs/{run_id}/cancel").status_code == 409
