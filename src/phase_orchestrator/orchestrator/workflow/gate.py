"""Classify a phase's results and pick the next step.

This module must NOT dispatch work or touch persistence: it is a pure function
of (results, policy, how often the phase has already looped).
"""

from __future__ import annotations

from collections.abc import Sequence

from .models import GateDecision, NextAction, Phase, TaskResult, TaskStatus, Verdict


def classify(results: Sequence[TaskResult]) -> Verdict:
    """Collapse a phase's results into one verdict.

    - any transport failure or timeout: UNCLEAR (the signal cannot be trusted)
    - otherwise any FAIL outcome: FAIL
    - otherwise any worker that itself answered UNCLEAR: UNCLEAR
    - otherwise (including no results at all): PASS
    """

    if any(r.status is not TaskStatus.COMPLETED for r in results):
        return Verdict.UNCLEAR
    if any(r.outcome is Verdict.FAIL for r in results):
        return Verdict.FAIL
    if any(r.outcome is Verdict.UNCLEAR for r in results):
        return Verdict.UNCLEAR
    return Verdict.PASS


class PhaseGate:
    """Turns a validation phase's results into a `GateDecision`.

    `remediations` and `investigations` count how often this phase has already
    been sent down each branch. Each count is bounded separately by the phase's
    retry limit.
    """

    def __init__(self, *, default_max_retries: int = 2) -> None:
        self._default_max_retries = default_max_retries

    def max_retries(self, phase: Phase) -> int:
        return phase.max_retries if phase.max_retries is not None else self._default_max_retries

    def evaluate(
        self,
        results: Sequence[TaskResult],
        phase: Phase,
        *,
        remediations: int = 0,
        investigations: int = 0,
    ) -> GateDecision:
        verdict = classify(results)
        policy = phase.gate
        limit = self.max_retries(phase)

        if verdict is Verdict.PASS:
            return GateDecision(verdict=verdict, next_action=NextAction.ADVANCE)

        if verdict is Verdict.FAIL:
            if policy.on_fail == "record":
                return GateDecision(
                    verdict=verdict,
                    next_action=NextAction.ADVANCE,
                    reason="failures recorded as issues",
                )
            if policy.on_fail == "abort":
                return GateDecision(
                    verdict=verdict,
                    next_action=NextAction.ABORT,
                    reason=f"phase {phase.name!r} failed validation",
                )
            if remediations >= limit:
                return GateDecision(
                    verdict=verdict,
                    next_action=NextAction.FAIL,
                    reason=(
                        f"phase {phase.name!r} still failing after {remediations} remediation(s)"
                    ),
                )
            return GateDecision(
                verdict=verdict,
                next_action=NextAction.REMEDIATE,
                target_phase=policy.remediation_phase,
            )

        # UNCLEAR is routed to a deeper look, or escalated; never treated as pass/fail.
        if policy.investigation_phase is None:
            return GateDecision(
                verdict=verdict,
                next_action=NextAction.ESCALATE,
                reason=f"phase {phase.name!r} was inconclusive and has no investigation phase",
            )
        if investigations >= limit:
            return GateDecision(
                verdict=verdict,
                next_action=NextAction.ESCALATE,
                reason=(
                    f"phase {phase.name!r} still inconclusive "
                    f"after {investigations} investigation(s)"
                ),
            )
        return GateDecision(
            verdict=verdict,
            next_action=NextAction.INVESTIGATE,
            target_phase=policy.investigation_phase,
        )

    def evaluate_execution(
        self, results: Sequence[TaskResult], phase: Phase, *, attempts: int = 0
    ) -> GateDecision:
        """Decide for a pure execution phase (no validation semantics).

        Any failed or timed out task is a phase failure, retried within the bound.
        """

        failed = [r for r in results if r.status is not TaskStatus.COMPLETED]
        if not failed:
            return GateDecision(verdict=Verdict.PASS, next_action=NextAction.ADVANCE)
        if attempts < self.max_retries(phase):
            return GateDecision(
                verdict=Verdict.FAIL,
                next_action=NextAction.RETRY,
                reason=f"{len(failed)} task(s) failed",
            )
        return GateDecision(
            verdict=Verdict.FAIL,
            next_action=NextAction.FAIL,
            reason=f"phase {phase.name!r} failed after {attempts} retries",
        )
