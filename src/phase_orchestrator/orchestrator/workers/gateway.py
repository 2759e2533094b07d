"""Abstract worker gateway and the in-process implementation.

A gateway is the only way the orchestrator talks to workers. Whatever goes
wrong on the other side of it comes back as a failed `TaskResult`; dispatch
never raises.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from phase_orchestrator.orchestrator.workflow.models import Task, TaskResult, TaskStatus, Verdict

logger = logging.getLogger(__name__)


class WorkerCancelledError(RuntimeError):
    """Raised inside a gateway when the enclosing run was cancelled mid-call."""


class WorkerReply(BaseModel):
    """The structured reply a worker is asked to end its output with."""

    outcome: Literal["pass", "fail", "unclear"] | None = None
    fingerprints: list[str] = Field(default_factory=list)
    evidence: dict[str, object] = Field(default_factory=dict)

    @field_validator("outcome", mode="before")
    @classmethod
    def _normalize_outcome(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower() or None
        return value

    def to_result(self, task: Task) -> TaskResult:
        return TaskResult(
            task_id=task.id,
            status=TaskStatus.COMPLETED,
            outcome=Verdict(self.outcome) if self.outcome is not None else None,
            evidence=self.evidence,
            fingerprints=tuple(f.strip() for f in self.fingerprints if f.strip()),
        )


def parse_worker_reply(text: str) -> WorkerReply:
    """Extract the last JSON object in `text` as a `WorkerReply`.

    Workers tend to talk before they answer, so everything up to the final
    top-level `{...}` is ignored. Output with no JSON object at all is treated as
    a plain (non-validation) completion carrying the raw text as evidence.
    """

    decoder = json.JSONDecoder()
    candidate: object = None
    idx = text.find("{")
    while idx != -1:
        try:
            obj, end = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            idx = text.find("{", idx + 1)
            continue
        if isinstance(obj, dict):
            candidate = obj
        idx = text.find("{", end)

    if candidate is None:
        return WorkerReply(evidence={"output": text.strip()})
    try:
        return WorkerReply.model_validate(candidate)
    except ValidationError as e:
        raise ValueError(f"Worker reply has an unexpected shape: {e}") from e


def failed_result(task: Task, error: str, message: str, **details: object) -> TaskResult:
    evidence: dict[str, object] = {"error": error, "message": message}
    evidence.update(details)
    return TaskResult(task_id=task.id, status=TaskStatus.FAILED, evidence=evidence)


class WorkerGateway(ABC):
    """Dispatches tasks to external workers.

    Subclasses implement `_invoke`; `dispatch` wraps it so transport errors and
    worker misbehaviour become data.
    """

    def dispatch(self, task: Task, cancel: threading.Event | None = None) -> TaskResult:
        """Run `task` on a worker and return its result.

        Args:
            task: The task to run.
            cancel: Set by the orchestrator when the run is aborted. Implementations
                should stop waiting on the worker as soon as it is set.
        """

        cancel = cancel or threading.Event()
        if cancel.is_set():
            return failed_result(task, "cancelled", "Run was cancelled before dispatch")

        logger.debug(
            "Dispatching task",
            extra={"task_id": task.id, "worker_kind": task.worker_kind, "phase": task.phase},
        )
        try:
            result = self._invoke(task, cancel)
        except WorkerCancelledError as e:
            return failed_result(task, "cancelled", str(e) or "Run was cancelled")
        except Exception as e:
            logger.warning(
                "Worker transport failed",
                extra={
                    "task_id": task.id,
                    "worker_kind": task.worker_kind,
                    "error": type(e).__name__,
                },
            )
            return failed_result(task, type(e).__name__, str(e))

        if result.task_id != task.id:
            logger.warning(
                "Worker returned a result for another task",
                extra={"task_id": task.id, "returned_task_id": result.task_id},
            )
            return failed_result(
                task, "mismatched_result", f"Result for {result.task_id} returned for {task.id}"
            )
        return result

    @abstractmethod
    def _invoke(self, task: Task, cancel: threading.Event) -> TaskResult:
        """Perform the call. May raise; `dispatch` converts errors into results."""

    def close(self) -> None:
        """Release transport resources. Default: nothing to release."""


WorkerHandler = Callable[[Task, threading.Event], "TaskResult | WorkerReply"]


class RegistryWorkerGateway(WorkerGateway):
    """In-process workers keyed by `worker_kind`.

    Useful for embedding the orchestrator, for human-approval prompts, and for
    substituting scripted workers in tests.
    """

    def __init__(self, handlers: Mapping[str, WorkerHandler] | None = None) -> None:
        self._handlers: dict[str, WorkerHandler] = dict(handlers or {})

    def register(self, worker_kind: str, handler: WorkerHandler) -> None:
        self._handlers[worker_kind] = handler

    @property
    def worker_kinds(self) -> list[str]:
        return sorted(self._handlers)

    def _invoke(self, task: Task, cancel: threading.Event) -> TaskResult:
        handler = self._handlers.get(task.worker_kind)
        if handler is None:
            return failed_result(
                task, "unknown_worker_kind", f"No worker registered for {task.worker_kind!r}"
            )
        reply = handler(task, cancel)
        if isinstance(reply, WorkerReply):
            return reply.to_result(task)
        return reply


class CompositeWorkerGateway(WorkerGateway):
    """Route selected worker kinds to dedicated gateways, everything else to a default."""

    def __init__(self, default: WorkerGateway, routes: Mapping[str, WorkerGateway]) -> None:
        self._default = default
        self._routes = dict(routes)

    def _invoke(self, task: Task, cancel: threading.Event) -> TaskResult:
        gateway = self._routes.get(task.worker_kind, self._default)
        return gateway.dispatch(task, cancel)

    def close(self) -> None:
        for gateway in {id(g): g for g in [self._default, *self._routes.values()]}.values():
            gateway.close()
