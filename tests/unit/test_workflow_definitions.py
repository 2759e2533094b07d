"""Unit tests for workflow definition validation, ordering and loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from phase_orchestrator.orchestrator.workflow.definitions import (
    BUILTIN_WORKFLOWS,
    UnknownWorkflowError,
    WorkflowDefinitionError,
    execution_order,
    list_workflows,
    load_workflow,
    validate_definition,
)
from phase_orchestrator.orchestrator.workflow.models import (
    GatePolicy,
    Phase,
    TaskTemplate,
    WorkflowDefinition,
)


def _task(kind: str = "implement") -> TaskTemplate:
    return TaskTemplate(worker_kind=kind, description=f"{kind} something")


def _definition(*phases: Phase) -> WorkflowDefinition:
    return WorkflowDefinition(name="custom", phases=list(phases))


@pytest.mark.parametrize("name", sorted(BUILTIN_WORKFLOWS))
def test_builtin_workflows_are_valid(name: str) -> None:
    validate_definition(load_workflow(name))


def test_implement_runs_main_line_phases_only() -> None:
    order = [p.name for p in execution_order(load_workflow("implement"))]

    assert order == ["analyze", "approve", "implement", "review", "validate"]


def test_qa_records_failures_and_reports_afterwards() -> None:
    qa = load_workflow("qa")

    assert [p.name for p in execution_order(qa)] == ["explore", "report"]
    assert qa.phase("explore").gate.on_fail == "record"


def test_execution_order_is_stable_for_independent_phases() -> None:
    definition = _definition(
        Phase(name="c", depends_on=["a"], tasks=[_task()]),
        Phase(name="a", tasks=[_task()]),
        Phase(name="b", tasks=[_task()]),
    )

    assert [p.name for p in execution_order(definition)] == ["a", "c", "b"]


def test_declaration_order_is_kept_without_dependencies() -> None:
    definition = _definition(*(Phase(name=n, tasks=[_task()]) for n in ["x", "y", "z"]))

    assert [p.name for p in execution_order(definition)] == ["x", "y", "z"]


@pytest.mark.parametrize(
    ("phases", "message"),
    [
        (
            [Phase(name="a", tasks=[]), Phase(name="a", tasks=[])],
            "Duplicate",
        ),
        (
            [Phase(name="a", depends_on=["ghost"], tasks=[])],
            "unknown phase",
        ),
        (
            [
                Phase(name="a", depends_on=["b"], tasks=[]),
                Phase(name="b", depends_on=["a"], tasks=[]),
            ],
            "cycle",
        ),
        (
            [
                Phase(
                    name="check",
                    validation=True,
                    gate=GatePolicy(on_fail="remediate", remediation_phase="fix"),
                    tasks=[],
                ),
                Phase(name="fix", tasks=[]),
            ],
            "must be on_demand",
        ),
        (
            [
                Phase(name="build", gate=GatePolicy(investigation_phase="debug"), tasks=[]),
                Phase(name="debug", on_demand=True, tasks=[]),
            ],
            "not a validation phase",
        ),
        (
            [
                Phase(name="fix", on_demand=True, tasks=[]),
                Phase(name="ship", depends_on=["fix"], tasks=[]),
            ],
            "branch-only",
        ),
        (
            [
                Phase(
                    name="check",
                    validation=True,
                    gate=GatePolicy(investigation_phase="nowhere"),
                    tasks=[],
                ),
            ],
            "unknown phase",
        ),
    ],
)
def test_invalid_definitions_are_rejected(phases: list[Phase], message: str) -> None:
    with pytest.raises(WorkflowDefinitionError, match=message):
        validate_definition(_definition(*phases))


def test_remediate_policy_requires_a_target() -> None:
    with pytest.raises(ValidationError):
        GatePolicy(on_fail="remediate")


def test_unknown_workflow() -> None:
    with pytest.raises(UnknownWorkflowError):
        load_workflow("does-not-exist")


def test_custom_json_workflow_takes_precedence(tmp_path: Path) -> None:
    workflows = tmp_path / "workflows"
    workflows.mkdir()
    (workflows / "qa.json").write_text(
        json.dumps(
            {
                "name": "qa",
                "phases": [
                    {
                        "name": "smoke",
                        "validation": True,
                        "tasks": [
                            {
                                "worker_kind": "validate",
                                "description": "Open the home page",
                                "resource_affinity": "browser",
                            }
                        ],
                    }
                ],
            }
        ),
        encoding="utf-8",
    )
    (workflows / "nightly.json").write_text(
        json.dumps({"name": "nightly", "phases": [{"name": "noop"}]}), encoding="utf-8"
    )

    qa = load_workflow("qa", workflows_path=workflows)

    assert [p.name for p in qa.phases] == ["smoke"]
    assert qa.phases[0].tasks[0].resource_affinity == "browser"
    assert list_workflows(workflows_path=workflows) == ["fix-issue", "implement", "nightly", "qa"]


def test_malformed_json_workflow(tmp_path: Path) -> None:
    workflows = tmp_path / "workflows"
    workflows.mkdir()
    (workflows / "broken.json").write_text("{", encoding="utf-8")
    (workflows / "shapeless.json").write_text(json.dumps({"phases": "nope"}), encoding="utf-8")

    with pytest.raises(WorkflowDefinitionError):
        load_workflow("broken", workflows_path=workflows)
    with pytest.raises(WorkflowDefinitionError):
        load_workflow("shapeless", workflows_path=workflows)


def test_list_workflows_without_custom_directory(tmp_path: Path) -> None:
    assert list_workflows(workflows_path=tmp_path / "missing") == sorted(BUILTIN_WORKFLOWS)
