"""Phase Orchestrator.

Runs multi-phase agent workflows:
- phases of tasks dispatched to external workers
- Pass / Fail / Unclear gating of validation phases
- serialized access to shared resources (e.g. one browser session)
- deduplicated, persisted issue records
"""

__version__ = "0.1.0"

from phase_orchestrator.orchestrator.config import OrchestratorSettings

__all__ = ["__version__", "OrchestratorSettings"]
