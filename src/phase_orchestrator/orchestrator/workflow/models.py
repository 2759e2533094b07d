"""Workflow domain types.

Definitions (what to run) are pydantic models so they can be loaded from JSON.
Tasks and results are small frozen dataclasses: they are created and consumed
inside one process and never mutated.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class TaskStatus(str, Enum):
    """Transport-level status of a dispatched task."""

    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class Verdict(str, Enum):
    """Validation outcome. Three-valued on purpose: UNCLEAR is neither pass nor fail."""

    PASS = "pass"
    FAIL = "fail"
    UNCLEAR = "unclear"


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


class NextAction(str, Enum):
    ADVANCE = "advance"
    RETRY = "retry"
    REMEDIATE = "remediate"
    INVESTIGATE = "investigate"
    ABORT = "abort"
    FAIL = "fail"
    ESCALATE = "escalate"


@dataclass(frozen=True, slots=True)
class Task:
    """A unit of work for one external worker."""

    worker_kind: str
    description: str
    payload: dict[str, object] = field(default_factory=dict)
    resource_affinity: str | None = None
    run_id: str | None = None
    phase: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True, slots=True)
class TaskResult:
    """What a worker reported for a task.

    `outcome` is only set by validation-capable workers. `fingerprints` are the
    failure signatures a failing check observed, or, on a passing check, the
    signatures it confirms are fixed.
    """

    task_id: str
    status: TaskStatus
    outcome: Verdict | None = None
    evidence: dict[str, object] = field(default_factory=dict)
    fingerprints: tuple[str, ...] = ()
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def ok(self) -> bool:
        return self.status is TaskStatus.COMPLETED

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "task_id": self.task_id,
            "status": self.status.value,
            "evidence": self.evidence,
        }
        if self.outcome is not None:
            out["outcome"] = self.outcome.value
        if self.fingerprints:
            out["fingerprints"] = list(self.fingerprints)
        if self.started_at is not None:
            out["started_at"] = self.started_at
        if self.finished_at is not None:
            out["finished_at"] = self.finished_at
        return out

    @staticmethod
    def from_json(obj: dict[str, object]) -> TaskResult:
        outcome_raw = obj.get("outcome")
        evidence_raw = obj.get("evidence")
        fingerprints_raw = obj.get("fingerprints")
        started_raw = obj.get("started_at")
        finished_raw = obj.get("finished_at")
        return TaskResult(
            task_id=str(obj.get("task_id", "")),
            status=TaskStatus(str(obj.get("status"))),
            outcome=Verdict(outcome_raw) if isinstance(outcome_raw, str) else None,
            evidence=evidence_raw if isinstance(evidence_raw, dict) else {},
            fingerprints=(
                tuple(str(f) for f in fingerprints_raw)
                if isinstance(fingerprints_raw, list)
                else ()
            ),
            started_at=float(started_raw) if isinstance(started_raw, int | float) else None,
            finished_at=float(finished_raw) if isinstance(finished_raw, int | float) else None,
        )


class TaskTemplate(BaseModel):
    worker_kind: str
    description: str
    payload: dict[str, object] = Field(default_factory=dict)
    resource_affinity: str | None = None


class GatePolicy(BaseModel):
    """How a validation phase reacts to its verdict.

    on_fail:
      - abort: the run fails immediately
      - remediate: run `remediation_phase`, then re-run this phase
      - record: report the issues and advance anyway
    """

    on_fail: Literal["abort", "remediate", "record"] = "abort"
    remediation_phase: str | None = None
    investigation_phase: str | None = None

    @model_validator(mode="after")
    def _remediation_target_required(self) -> GatePolicy:
        if self.on_fail == "remediate" and not self.remediation_phase:
            raise ValueError("on_fail='remediate' requires remediation_phase")
        return self


class Phase(BaseModel):
    name: str
    tasks: list[TaskTemplate] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    validation: bool = False
    gate: GatePolicy = Field(default_factory=GatePolicy)
    # None means "use the configured default".
    max_retries: int | None = Field(default=None, ge=0)
    lock_timeout_seconds: float | None = Field(default=None, gt=0)
    dispatch_timeout_seconds: float | None = Field(default=None, ge=0)
    # Branch-only phases are entered from a gate decision, never by the linear walk.
    on_demand: bool = False


class WorkflowDefinition(BaseModel):
    name: str
    description: str = ""
    phases: list[Phase]

    def phase(self, name: str) -> Phase:
        for phase in self.phases:
            if phase.name == name:
                return phase
        raise KeyError(name)


@dataclass(frozen=True, slots=True)
class GateDecision:
    verdict: Verdict
    next_action: NextAction
    target_phase: str | None = None
    reason: str = ""


class PhaseRecord(BaseModel):
    """One executed phase attempt, as kept in the run history."""

    phase: str
    attempt: int
    dispatched: int
    results: list[dict[str, object]] = Field(default_factory=list)
    verdict: Verdict | None = None
    next_action: NextAction | None = None
    reason: str = ""


class WorkflowRun(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    definition: str
    inputs: dict[str, object] = Field(default_factory=dict)
    state: RunState = RunState.PENDING
    current_phase_index: int = 0
    current_phase: str | None = None
    history: list[PhaseRecord] = Field(default_factory=list)
    issues_raised: list[str] = Field(default_factory=list)
    issues_resolved: list[str] = Field(default_factory=list)
    reason: str = ""
    # Evidence of the last phase when the run ends abnormally.
    final_evidence: list[dict[str, object]] = Field(default_factory=list)
    created_at: str
    updated_at: str
    finished_at: str | None = None

    @property
    def terminal(self) -> bool:
        return self.state in {RunState.SUCCEEDED, RunState.FAILED, RunState.ABORTED}


@dataclass(frozen=True, slots=True)
class WorkflowOutcome:
    run_id: str
    final_state: RunState
    issues_raised: list[str]
    issues_resolved: list[str]
    reason: str = ""
