"""Workflow domain: definitions, gating, the run state machine and the runner.

The intent is to make multi-phase execution deterministic in its control flow:
phases run in dependency order, a phase never advances on a partial result set,
and every run ends in an explicit terminal state.
"""

__all__: list[str] = []
