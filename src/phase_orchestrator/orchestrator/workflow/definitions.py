"""Workflow definitions: validation, ordering, built-ins and JSON loading.

Built-in workflows:
- implement: analyze, approve, implement, review (remediated), validate in the browser
- fix-issue: investigate, fix, verify in the browser (remediated)
- qa: browser checks recorded as issues, then a report

Custom workflows live in `<workflows_path>/<name>.json` and take precedence
over built-ins of the same name.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from .models import GatePolicy, Phase, TaskTemplate, WorkflowDefinition

logger = logging.getLogger(__name__)

BROWSER = "browser"


class WorkflowDefinitionError(ValueError):
    pass


class UnknownWorkflowError(KeyError):
    pass


def validate_definition(definition: WorkflowDefinition) -> None:
    """Fail loudly on definitions the runner could not execute deterministically."""

    names = [p.name for p in definition.phases]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise WorkflowDefinitionError(f"Duplicate phase names: {', '.join(duplicates)}")

    by_name = {p.name: p for p in definition.phases}
    for phase in definition.phases:
        for dep in phase.depends_on:
            if dep not in by_name:
                raise WorkflowDefinitionError(
                    f"Phase {phase.name!r} depends on unknown phase {dep!r}"
                )
            if by_name[dep].on_demand and not phase.on_demand:
                raise WorkflowDefinitionError(
                    f"Phase {phase.name!r} depends on branch-only phase {dep!r}"
                )

        for target in (phase.gate.remediation_phase, phase.gate.investigation_phase):
            if target is None:
                continue
            if not phase.validation:
                raise WorkflowDefinitionError(
                    f"Phase {phase.name!r} routes to {target!r} but is not a validation phase"
                )
            if target not in by_name:
                raise WorkflowDefinitionError(
                    f"Phase {phase.name!r} routes to unknown phase {target!r}"
                )
            if not by_name[target].on_demand:
                raise WorkflowDefinitionError(
                    f"Branch target {target!r} of phase {phase.name!r} must be on_demand"
                )

        if phase.on_demand and (phase.gate.remediation_phase or phase.gate.investigation_phase):
            raise WorkflowDefinitionError(
                f"Branch-only phase {phase.name!r} cannot route to further branches"
            )

    execution_order(definition)


def execution_order(definition: WorkflowDefinition) -> list[Phase]:
    """Main-line phases in dependency order.

    Stable: among phases whose dependencies are satisfied, declaration order wins.
    Branch-only (`on_demand`) phases are excluded.
    """

    pending = [p for p in definition.phases if not p.on_demand]
    done: set[str] = set()
    ordered: list[Phase] = []

    while pending:
        ready = next((p for p in pending if set(p.depends_on) <= done), None)
        if ready is None:
            cycle = ", ".join(p.name for p in pending)
            raise WorkflowDefinitionError(f"Dependency cycle among phases: {cycle}")
        pending.remove(ready)
        done.add(ready.name)
        ordered.append(ready)
    return ordered


def _implement() -> WorkflowDefinition:
    return WorkflowDefinition(
        name="implement",
        description="Plan, approve, implement, review and validate a feature.",
        phases=[
            Phase(
                name="analyze",
                tasks=[
                    TaskTemplate(
                        worker_kind="analyze",
                        description="Analyze the request and propose implementation options",
                    )
                ],
            ),
            Phase(
                name="approve",
                depends_on=["analyze"],
                validation=True,
                max_retries=0,
                gate=GatePolicy(on_fail="abort"),
                tasks=[
                    TaskTemplate(
                        worker_kind="human-approval",
                        description="Approve the proposed implementation plan",
                        payload={"question": "Proceed with the proposed plan?"},
                    )
                ],
            ),
            Phase(
                name="implement",
                depends_on=["approve"],
                tasks=[
                    TaskTemplate(worker_kind="implement", description="Write the code and tests")
                ],
            ),
            Phase(
                name="review",
                depends_on=["implement"],
                validation=True,
                gate=GatePolicy(on_fail="remediate", remediation_phase="address-review"),
                tasks=[
                    TaskTemplate(worker_kind="review", description="Review the change"),
                ],
            ),
            Phase(
                name="address-review",
                on_demand=True,
                tasks=[
                    TaskTemplate(worker_kind="implement", description="Address review findings")
                ],
            ),
            Phase(
                name="validate",
                depends_on=["review"],
                validation=True,
                gate=GatePolicy(
                    on_fail="remediate",
                    remediation_phase="fix",
                    investigation_phase="debug",
                ),
                tasks=[
                    TaskTemplate(
                        worker_kind="validate",
                        description="Exercise the feature in the browser",
                        resource_affinity=BROWSER,
                    )
                ],
            ),
            Phase(
                name="fix",
                on_demand=True,
                tasks=[
                    TaskTemplate(worker_kind="implement", description="Fix validation failures")
                ],
            ),
            Phase(
                name="debug",
                on_demand=True,
                tasks=[
                    TaskTemplate(
                        worker_kind="debug",
                        description="Investigate why validation was inconclusive",
                        resource_affinity=BROWSER,
                    )
                ],
            ),
        ],
    )


def _fix_issue() -> WorkflowDefinition:
    return WorkflowDefinition(
        name="fix-issue",
        description="Investigate, fix and verify one reported issue.",
        phases=[
            Phase(
                name="investigate",
                tasks=[
                    TaskTemplate(
                        worker_kind="debug",
                        description="Reproduce the issue and find the root cause",
                        resource_affinity=BROWSER,
                    )
                ],
            ),
            Phase(
                name="fix",
                depends_on=["investigate"],
                tasks=[
                    TaskTemplate(
                        worker_kind="implement", description="Fix the root cause with a test"
                    )
                ],
            ),
            Phase(
                name="verify",
                depends_on=["fix"],
                validation=True,
                gate=GatePolicy(
                    on_fail="remediate",
                    remediation_phase="refix",
                    investigation_phase="investigate-deeper",
                ),
                tasks=[
                    TaskTemplate(
                        worker_kind="validate",
                        description="Verify the issue no longer reproduces",
                        resource_affinity=BROWSER,
                    ),
                    TaskTemplate(worker_kind="review", description="Review the fix"),
                ],
            ),
            Phase(
                name="refix",
                on_demand=True,
                tasks=[
                    TaskTemplate(
                        worker_kind="implement",
                        description="Rework the fix after failed verification",
                    )
                ],
            ),
            Phase(
                name="investigate-deeper",
                on_demand=True,
                tasks=[
                    TaskTemplate(
                        worker_kind="debug",
                        description="Dig into the inconclusive verification",
                        resource_affinity=BROWSER,
                    )
                ],
            ),
        ],
    )


def _qa() -> WorkflowDefinition:
    return WorkflowDefinition(
        name="qa",
        description="Explore the application and record every defect found.",
        phases=[
            Phase(
                name="explore",
                validation=True,
                gate=GatePolicy(on_fail="record", investigation_phase="debug"),
                tasks=[
                    TaskTemplate(
                        worker_kind="validate",
                        description="Check navigation and page rendering",
                        resource_affinity=BROWSER,
                    ),
                    TaskTemplate(
                        worker_kind="validate",
                        description="Check forms and input validation",
                        resource_affinity=BROWSER,
                    ),
                    TaskTemplate(
                        worker_kind="validate",
                        description="Check error states and empty states",
                        resource_affinity=BROWSER,
                    ),
                    TaskTemplate(
                        worker_kind="review",
                        description="Review server logs for errors raised during exploration",
                    ),
                ],
            ),
            Phase(
                name="debug",
                on_demand=True,
                tasks=[
                    TaskTemplate(
                        worker_kind="debug",
                        description="Investigate checks that could not complete",
                        resource_affinity=BROWSER,
                    )
                ],
            ),
            Phase(
                name="report",
                depends_on=["explore"],
                tasks=[
                    TaskTemplate(worker_kind="review", description="Summarize the QA findings")
                ],
            ),
        ],
    )


BUILTIN_WORKFLOWS = {
    "implement": _implement,
    "fix-issue": _fix_issue,
    "qa": _qa,
}


def load_definition_file(path: Path) -> WorkflowDefinition:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        definition = WorkflowDefinition.model_validate(raw)
    except (json.JSONDecodeError, ValidationError) as e:
        raise WorkflowDefinitionError(f"Invalid workflow definition {path}: {e}") from e
    validate_definition(definition)
    return definition


def load_workflow(name: str, *, workflows_path: Path | None = None) -> WorkflowDefinition:
    """Resolve a workflow by name: custom JSON first, then built-ins."""

    if workflows_path is not None:
        candidate = workflows_path / f"{name}.json"
        if candidate.exists():
            logger.debug("Loading custom workflow", extra={"path": str(candidate)})
            return load_definition_file(candidate)

    factory = BUILTIN_WORKFLOWS.get(name)
    if factory is None:
        raise UnknownWorkflowError(name)
    definition = factory()
    validate_definition(definition)
    return definition


def list_workflows(*, workflows_path: Path | None = None) -> list[str]:
    names = set(BUILTIN_WORKFLOWS)
    if workflows_path is not None and workflows_path.exists():
        names.update(p.stem for p in workflows_path.glob("*.json") if p.is_file())
    return sorted(names)
