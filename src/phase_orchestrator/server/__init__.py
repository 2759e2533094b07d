"""FastAPI server adapter for phase-orchestrator.

This module exposes a REST API over the orchestrator services.

Design intent:
- Keep orchestration logic in `phase_orchestrator.orchestrator.*`
- Keep server-specific concerns (routing, background runs) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from phase_orchestrator.server.app import create_app
