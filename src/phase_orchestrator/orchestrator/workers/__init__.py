"""Worker gateways: the orchestrator's only outward interface."""

from phase_orchestrator.orchestrator.workers.factory import WorkerGatewayFactory
from phase_orchestrator.orchestrator.workers.gateway import (
    CompositeWorkerGateway,
    RegistryWorkerGateway,
    WorkerGateway,
    WorkerReply,
)

__all__ = [
    "CompositeWorkerGateway",
    "RegistryWorkerGateway",
    "WorkerGateway",
    "WorkerGatewayFactory",
    "WorkerReply",
]
