from __future__ import annotations

import json
import logging
import threading
from datetime import UTC, datetime
from pathlib import Path

from .models import RunState, WorkflowRun

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.PENDING: {RunState.RUNNING, RunState.ABORTED},
    RunState.RUNNING: {RunState.SUCCEEDED, RunState.FAILED, RunState.ABORTED},
    RunState.SUCCEEDED: set(),
    RunState.FAILED: set(),
    RunState.ABORTED: set(),
}


class IllegalTransitionError(ValueError):
    pass


def utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


def new_run(*, definition: str, inputs: dict[str, object] | None = None) -> WorkflowRun:
    now = utc_iso_now()
    return WorkflowRun(
        definition=definition, inputs=dict(inputs or {}), created_at=now, updated_at=now
    )


def transition(*, current: WorkflowRun, to: RunState, reason: str = "") -> WorkflowRun:
    """Return a copy of `current` in state `to`. Terminal runs never change state."""

    allowed = ALLOWED_TRANSITIONS.get(current.state, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal transition: {current.state.value} -> {to.value}")
    now = utc_iso_now()
    update: dict[str, object] = {"state": to, "updated_at": now}
    if reason:
        update["reason"] = reason
    if to in {RunState.SUCCEEDED, RunState.FAILED, RunState.ABORTED}:
        update["finished_at"] = now
    return current.model_copy(update=update)


class WorkflowRunStore:
    """Persist workflow runs explicitly, one JSON file per run.

    This makes long-running execution inspectable, and keeps terminal runs for audit.
    """

    def __init__(self, directory: Path | None = None) -> None:
        self._dir = directory
        self._lock = threading.Lock()
        self._memory: dict[str, WorkflowRun] = {}

    def _path(self, run_id: str) -> Path:
        assert self._dir is not None
        return self._dir / f"{run_id}.json"

    def save(self, run: WorkflowRun) -> None:
        with self._lock:
            existing = self._load_unlocked(run.id)
            if existing is not None and existing.terminal and existing != run:
                raise IllegalTransitionError(f"Run {run.id} is terminal and cannot be modified")
            if self._dir is None:
                self._memory[run.id] = run
                return
            self._dir.mkdir(parents=True, exist_ok=True)
            self._path(run.id).write_text(
                json.dumps(run.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n",
                encoding="utf-8",
            )

    def _load_unlocked(self, run_id: str) -> WorkflowRun | None:
        if self._dir is None:
            return self._memory.get(run_id)
        path = self._path(run_id)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Run state file is not valid JSON", extra={"path": str(path)})
            return None
        return WorkflowRun.model_validate(raw)

    def load(self, run_id: str) -> WorkflowRun | None:
        with self._lock:
            return self._load_unlocked(run_id)

    def list(self) -> list[WorkflowRun]:
        with self._lock:
            if self._dir is None:
                runs = list(self._memory.values())
            elif not self._dir.exists():
                runs = []
            else:
                runs = [
                    run
                    for run in (
                        self._load_unlocked(p.stem) for p in sorted(self._dir.glob("*.json"))
                    )
                    if run is not None
                ]
        return sorted(runs, key=lambda r: r.created_at)
