"""Orchestration core.

- ResourceLock: named FIFO mutual exclusion
- IssueStore: dedup-on-write defect records
- Worker gateways: dispatch tasks to external workers
- PhaseGate + WorkflowRunner: the phase state machine
"""
