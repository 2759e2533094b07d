"""Pydantic models for the REST server."""

from __future__ import annotations

from pydantic import BaseModel, Field

from phase_orchestrator.orchestrator.issues.store import IssueRecord, SourceRef


class ApiIssue(BaseModel):
    key: str
    sequence_number: int
    fingerprint: str
    status: str
    created_at: str
    updated_at: str
    resolved_at: str | None = None

    evidence: list[dict[str, object]] = Field(default_factory=list)
    source_ref: SourceRef

    @classmethod
    def from_record(cls, record: IssueRecord) -> ApiIssue:
        return cls.model_validate(record.model_dump(mode="json"))


class ResolveResponse(BaseModel):
    fingerprint: str
    resolved: bool


class RunRequest(BaseModel):
    workflow: str
    inputs: dict[str, object] = Field(default_factory=dict)


class ApiPhaseRecord(BaseModel):
    phase: str
    attempt: int
    dispatched: int
    verdict: str | None = None
    next_action: str | None = None
    reason: str = ""
    results: list[dict[str, object]] = Field(default_factory=list)


class ApiRun(BaseModel):
    run_id: str
    workflow: str
    state: str
    current_phase: str | None = None
    reason: str = ""
    inputs: dict[str, object] = Field(default_factory=dict)
    history: list[ApiPhaseRecord] = Field(default_factory=list)
    issues_raised: list[str] = Field(default_factory=list)
    issues_resolved: list[str] = Field(default_factory=list)
    created_at: str
    updated_at: str
    finished_at: str | None = None
