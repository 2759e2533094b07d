"""Execute a workflow definition end to end.

Per run:
- main-line phases run strictly one after another, in dependency order
- inside a phase, tasks sharing a resource affinity run one at a time in
  submission order; all other tasks run concurrently
- a phase is only judged once every one of its tasks has produced a result
- every run ends in SUCCEEDED, FAILED or ABORTED
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace

from phase_orchestrator.orchestrator.config import OrchestratorSettings
from phase_orchestrator.orchestrator.issues.store import IssueStore, SourceRef, compute_fingerprint
from phase_orchestrator.orchestrator.locks import (
    LockCancelledError,
    LockTimeoutError,
    ResourceLock,
)
from phase_orchestrator.orchestrator.workers.gateway import WorkerGateway, failed_result

from .definitions import execution_order, validate_definition
from .gate import PhaseGate
from .models import (
    GateDecision,
    NextAction,
    Phase,
    PhaseRecord,
    RunState,
    Task,
    TaskResult,
    TaskStatus,
    Verdict,
    WorkflowDefinition,
    WorkflowOutcome,
    WorkflowRun,
)
from .state_machine import WorkflowRunStore, new_run, transition, utc_iso_now

logger = logging.getLogger(__name__)

_WAIT_SLICE_SECONDS = 0.05


@dataclass(frozen=True, slots=True)
class _Stop:
    """A terminal decision reached while running a phase."""

    state: RunState
    reason: str
    evidence: list[dict[str, object]] = field(default_factory=list)


@dataclass
class _RunContext:
    run: WorkflowRun
    cancel: threading.Event = field(default_factory=threading.Event)
    # Per-call cancellation flags of dispatches currently in flight.
    inflight: set[threading.Event] = field(default_factory=set)
    # Fingerprints raised by a gated phase during this run, resolved once it passes.
    pending: dict[str, list[str]] = field(default_factory=dict)
    guard: threading.Lock = field(default_factory=threading.Lock)


class WorkflowRunner:
    """Drives workflow runs.

    One runner may execute several runs concurrently (each `run` call blocks its
    own thread); they share the lock table and the issue store.
    """

    def __init__(
        self,
        *,
        gateway: WorkerGateway,
        issue_store: IssueStore,
        locks: ResourceLock | None = None,
        run_store: WorkflowRunStore | None = None,
        settings: OrchestratorSettings | None = None,
        gate: PhaseGate | None = None,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        self.gateway = gateway
        self.issue_store = issue_store
        self.locks = locks or ResourceLock()
        self.run_store = run_store or WorkflowRunStore()
        self.gate = gate or PhaseGate(default_max_retries=self.settings.default_max_retries)
        self._active: dict[str, _RunContext] = {}
        self._active_guard = threading.Lock()

    # -- public API ---------------------------------------------------------

    def start(
        self, definition: WorkflowDefinition, inputs: dict[str, object] | None = None
    ) -> WorkflowRun:
        """Validate `definition` and register a PENDING run for it."""

        validate_definition(definition)
        run = new_run(definition=definition.name, inputs=inputs)
        self.run_store.save(run)
        with self._active_guard:
            self._active[run.id] = _RunContext(run=run)
        logger.info("Run created", extra={"run_id": run.id, "workflow": definition.name})
        return run

    def run(
        self,
        definition: WorkflowDefinition,
        inputs: dict[str, object] | None = None,
        *,
        run: WorkflowRun | None = None,
    ) -> WorkflowOutcome:
        """Execute a workflow to completion. Blocks until the run is terminal."""

        if run is None:
            run = self.start(definition, inputs)
        with self._active_guard:
            ctx = self._active.get(run.id)
        if ctx is None:
            raise KeyError(f"Run {run.id} was not started by this runner")

        try:
            if ctx.cancel.is_set():
                self._finish(ctx, _Stop(RunState.ABORTED, "cancelled before start"))
            else:
                self._set_run(ctx, transition(current=ctx.run, to=RunState.RUNNING))
                logger.info(
                    "Run started", extra={"run_id": ctx.run.id, "workflow": definition.name}
                )
                self._finish(ctx, self._walk(ctx, definition))
        except Exception:
            # The runner itself must still hand back a terminal outcome.
            logger.exception("Run crashed", extra={"run_id": ctx.run.id})
            if not ctx.run.terminal:
                self._finish(ctx, _Stop(RunState.FAILED, "internal orchestrator error"))
        finally:
            self.locks.release_owner(ctx.run.id)
            with self._active_guard:
                self._active.pop(ctx.run.id, None)

        final = ctx.run
        return WorkflowOutcome(
            run_id=final.id,
            final_state=final.state,
            issues_raised=list(final.issues_raised),
            issues_resolved=list(final.issues_resolved),
            reason=final.reason,
        )

    def cancel(self, run_id: str) -> bool:
        """Abort an active run.

        In-flight worker calls are signalled and queued lock requests give up.
        Each resource held for the run is released once its worker call has
        returned (or its stop grace period ran out). Issues already reported are
        kept.

        Returns:
            False if the run is unknown or already finished.
        """

        with self._active_guard:
            ctx = self._active.get(run_id)
        if ctx is None or ctx.run.terminal:
            return False

        ctx.cancel.set()
        with ctx.guard:
            for flag in ctx.inflight:
                flag.set()
        logger.info("Run cancellation requested", extra={"run_id": run_id})
        return True

    def get_run(self, run_id: str) -> WorkflowRun | None:
        with self._active_guard:
            ctx = self._active.get(run_id)
        if ctx is not None:
            return ctx.run
        return self.run_store.load(run_id)

    # -- phase sequencing ---------------------------------------------------

    def _walk(self, ctx: _RunContext, definition: WorkflowDefinition) -> _Stop:
        for index, phase in enumerate(execution_order(definition)):
            self._set_run(
                ctx,
                ctx.run.model_copy(
                    update={"current_phase_index": index, "current_phase": phase.name}
                ),
            )
            stop = self._run_phase(ctx, definition, phase)
            if stop is not None:
                return stop
        return _Stop(RunState.SUCCEEDED, "all phases passed")

    def _run_phase(
        self,
        ctx: _RunContext,
        definition: WorkflowDefinition,
        phase: Phase,
        extra: dict[str, object] | None = None,
    ) -> _Stop | None:
        """Run `phase` (with its retries and branches) until it advances or stops the run."""

        retries = remediations = investigations = 0
        attempt = 0

        while True:
            if ctx.cancel.is_set():
                return _Stop(RunState.ABORTED, "cancelled")

            attempt += 1
            tasks = self._instantiate(ctx, phase, extra)
            results = self._execute(ctx, phase, tasks)

            if ctx.cancel.is_set():
                self._record(ctx, phase, attempt, tasks, results, None)
                return _Stop(RunState.ABORTED, "cancelled")

            if phase.validation:
                decision = self.gate.evaluate(
                    results, phase, remediations=remediations, investigations=investigations
                )
                if decision.verdict is Verdict.FAIL:
                    self._report_failures(ctx, phase, tasks, results)
                elif decision.verdict is Verdict.PASS:
                    self._resolve_confirmed(ctx, phase, results)
            else:
                decision = self.gate.evaluate_execution(results, phase, attempts=retries)

            self._record(ctx, phase, attempt, tasks, results, decision)
            logger.info(
                "Phase evaluated",
                extra={
                    "run_id": ctx.run.id,
                    "phase": phase.name,
                    "attempt": attempt,
                    "verdict": decision.verdict.value,
                    "next_action": decision.next_action.value,
                },
            )

            action = decision.next_action
            if action is NextAction.ADVANCE:
                return None
            if action in {NextAction.ABORT, NextAction.FAIL}:
                return _Stop(RunState.FAILED, decision.reason, self._evidence(results))
            if action is NextAction.ESCALATE:
                return _Stop(
                    RunState.ABORTED, f"escalated: {decision.reason}", self._evidence(results)
                )

            if action is NextAction.RETRY:
                retries += 1
                logger.warning(
                    "Retrying phase",
                    extra={"run_id": ctx.run.id, "phase": phase.name, "retry": retries},
                )
                self._backoff(ctx, retries)
                continue

            assert decision.target_phase is not None
            branch = definition.phase(decision.target_phase)
            branch_extra: dict[str, object] = {
                "trigger_phase": phase.name,
                "issues": list(ctx.pending.get(phase.name, [])),
                "evidence": self._evidence(results),
            }
            if action is NextAction.REMEDIATE:
                remediations += 1
            else:
                investigations += 1

            stop = self._run_phase(ctx, definition, branch, branch_extra)
            if stop is not None:
                return stop
            # Branch done: loop around and re-validate this phase.

    def _backoff(self, ctx: _RunContext, retry: int) -> None:
        base = self.settings.retry_backoff_seconds
        if base <= 0:
            return
        ctx.cancel.wait(base * (2 ** (retry - 1)))

    # -- task execution -----------------------------------------------------

    def _instantiate(
        self, ctx: _RunContext, phase: Phase, extra: dict[str, object] | None
    ) -> list[Task]:
        tasks = []
        for template in phase.tasks:
            payload: dict[str, object] = dict(template.payload)
            payload["inputs"] = dict(ctx.run.inputs)
            if extra:
                payload.update(extra)
            tasks.append(
                Task(
                    worker_kind=template.worker_kind,
                    description=template.description,
                    payload=payload,
                    resource_affinity=template.resource_affinity,
                    run_id=ctx.run.id,
                    phase=phase.name,
                )
            )
        return tasks

    def _execute(self, ctx: _RunContext, phase: Phase, tasks: Sequence[Task]) -> list[TaskResult]:
        """Run all of a phase's tasks and wait for every result (the phase barrier)."""

        if not tasks:
            return []

        # One lane per affinity (sequential inside), one lane per unbound task.
        lanes: dict[str, list[Task]] = {}
        for task in tasks:
            if task.resource_affinity:
                key = f"resource:{task.resource_affinity}"
            else:
                key = f"task:{task.id}"
            lanes.setdefault(key, []).append(task)

        results: dict[str, TaskResult] = {}
        workers = min(self.settings.max_parallel_tasks, len(lanes))
        prefix = f"phase-{phase.name}"
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=prefix) as pool:
            futures = [pool.submit(self._run_lane, ctx, phase, lane) for lane in lanes.values()]
            for future in futures:
                for result in future.result():
                    results[result.task_id] = result

        return [results[task.id] for task in tasks]

    def _run_lane(self, ctx: _RunContext, phase: Phase, lane: Sequence[Task]) -> list[TaskResult]:
        out = []
        for task in lane:
            try:
                out.append(self._execute_task(ctx, phase, task))
            except Exception as e:
                logger.exception("Task execution crashed", extra={"task_id": task.id})
                out.append(failed_result(task, "orchestrator_error", str(e)))
        return out

    def _execute_task(self, ctx: _RunContext, phase: Phase, task: Task) -> TaskResult:
        if ctx.cancel.is_set():
            return failed_result(task, "cancelled", "Run was cancelled before the task started")

        handle = None
        if task.resource_affinity:
            lock_timeout = phase.lock_timeout_seconds or self.settings.lock_timeout_seconds
            try:
                handle = self.locks.acquire(
                    task.resource_affinity,
                    task.id,
                    lock_timeout,
                    owner_id=ctx.run.id,
                    cancel=ctx.cancel,
                )
            except LockTimeoutError as e:
                return failed_result(
                    task, "lock_timeout", str(e), resource=e.resource, timeout_seconds=e.timeout
                )
            except LockCancelledError as e:
                return failed_result(task, "cancelled", str(e), resource=e.resource)

        try:
            started = time.time()
            result = self._dispatch(ctx, phase, task)
            finished = time.time()
        finally:
            if handle is not None:
                self.locks.release(handle)
        return replace(result, started_at=started, finished_at=finished)

    def _dispatch(self, ctx: _RunContext, phase: Phase, task: Task) -> TaskResult:
        """Call the gateway on a helper thread so timeouts and cancellation stay in our hands."""

        timeout = (
            phase.dispatch_timeout_seconds
            if phase.dispatch_timeout_seconds is not None
            else self.settings.dispatch_timeout_seconds
        )
        call_cancel = threading.Event()
        with ctx.guard:
            ctx.inflight.add(call_cancel)
        if ctx.cancel.is_set():
            call_cancel.set()

        box: dict[str, TaskResult] = {}
        done = threading.Event()

        def _call() -> None:
            try:
                box["result"] = self.gateway.dispatch(task, call_cancel)
            except Exception as e:
                box["result"] = failed_result(task, "worker_exception", f"{type(e).__name__}: {e}")
            finally:
                done.set()

        threading.Thread(target=_call, name=f"dispatch-{task.id[:8]}", daemon=True).start()

        deadline = time.monotonic() + timeout if timeout > 0 else None
        try:
            while not done.wait(_WAIT_SLICE_SECONDS):
                if ctx.cancel.is_set():
                    call_cancel.set()
                    self._await_stop(ctx, task, done)
                    return failed_result(task, "cancelled", "Run was cancelled during dispatch")
                if deadline is not None and time.monotonic() >= deadline:
                    call_cancel.set()
                    logger.warning(
                        "Worker call timed out",
                        extra={
                            "run_id": ctx.run.id,
                            "task_id": task.id,
                            "timeout_seconds": timeout,
                        },
                    )
                    self._await_stop(ctx, task, done)
                    return TaskResult(
                        task_id=task.id,
                        status=TaskStatus.TIMED_OUT,
                        evidence={"error": "dispatch_timeout", "timeout_seconds": timeout},
                    )
            return box["result"]
        finally:
            with ctx.guard:
                ctx.inflight.discard(call_cancel)

    def _await_stop(self, ctx: _RunContext, task: Task, done: threading.Event) -> None:
        """Wait for a signalled worker call to return before its resource lock is released."""

        grace = self.settings.stop_grace_seconds
        if done.wait(grace):
            return
        logger.warning(
            "Worker call still running after grace period; releasing its resource",
            extra={
                "run_id": ctx.run.id,
                "task_id": task.id,
                "resource": task.resource_affinity,
                "grace_seconds": grace,
            },
        )

    # -- issues -------------------------------------------------------------

    def _report_failures(
        self,
        ctx: _RunContext,
        phase: Phase,
        tasks: Sequence[Task],
        results: Sequence[TaskResult],
    ) -> None:
        pending = ctx.pending.setdefault(phase.name, [])
        for task, result in zip(tasks, results, strict=True):
            if result.status is not TaskStatus.COMPLETED or result.outcome is not Verdict.FAIL:
                continue
            fingerprints = list(dict.fromkeys(result.fingerprints)) or [
                compute_fingerprint(f"{phase.name}:{task.description}")
            ]
            for fingerprint in fingerprints:
                self.issue_store.report(
                    fingerprint,
                    dict(result.evidence),
                    SourceRef(run_id=ctx.run.id, phase=phase.name, task_id=task.id),
                )
                if fingerprint not in pending:
                    pending.append(fingerprint)
                self._note(ctx, "issues_raised", fingerprint)

    def _resolve_confirmed(
        self, ctx: _RunContext, phase: Phase, results: Sequence[TaskResult]
    ) -> None:
        """Resolve what a passing validation phase vouches for.

        That is every fingerprint a passing check explicitly confirmed fixed, plus
        whatever this phase raised earlier in the run before being remediated.
        """

        confirmed = [fp for r in results for fp in r.fingerprints]
        for fingerprint in dict.fromkeys([*confirmed, *ctx.pending.pop(phase.name, [])]):
            if self.issue_store.resolve(fingerprint):
                self._note(ctx, "issues_resolved", fingerprint)

    def _note(self, ctx: _RunContext, field_name: str, fingerprint: str) -> None:
        current: list[str] = getattr(ctx.run, field_name)
        if fingerprint not in current:
            self._set_run(ctx, ctx.run.model_copy(update={field_name: [*current, fingerprint]}))

    # -- bookkeeping --------------------------------------------------------

    @staticmethod
    def _evidence(results: Sequence[TaskResult]) -> list[dict[str, object]]:
        return [r.evidence for r in results if r.evidence]

    def _record(
        self,
        ctx: _RunContext,
        phase: Phase,
        attempt: int,
        tasks: Sequence[Task],
        results: Sequence[TaskResult],
        decision: GateDecision | None,
    ) -> None:
        record = PhaseRecord(
            phase=phase.name,
            attempt=attempt,
            dispatched=len(tasks),
            results=[r.to_json() for r in results],
            verdict=decision.verdict if decision else None,
            next_action=decision.next_action if decision else None,
            reason=decision.reason if decision else "cancelled",
        )
        self._set_run(ctx, ctx.run.model_copy(update={"history": [*ctx.run.history, record]}))
        self.run_store.save(ctx.run)

    @staticmethod
    def _set_run(ctx: _RunContext, run: WorkflowRun) -> None:
        ctx.run = run.model_copy(update={"updated_at": utc_iso_now()})

    def _finish(self, ctx: _RunContext, stop: _Stop) -> None:
        finished = transition(current=ctx.run, to=stop.state, reason=stop.reason)
        if stop.evidence:
            finished = finished.model_copy(update={"final_evidence": stop.evidence})
        ctx.run = finished
        self.run_store.save(finished)
        log = logger.info if stop.state is RunState.SUCCEEDED else logger.warning
        log(
            "Run finished",
            extra={
                "run_id": finished.id,
                "state": finished.state.value,
                "reason": stop.reason,
                "issues_raised": finished.issues_raised,
                "issues_resolved": finished.issues_resolved,
            },
        )
