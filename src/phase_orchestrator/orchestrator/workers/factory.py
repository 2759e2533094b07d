"""Factory for creating worker gateways."""

import logging

from phase_orchestrator.orchestrator.config import WorkerConfig

from .command_gateway import CommandWorkerGateway
from .gateway import WorkerGateway
from .openai_gateway import OpenAIWorkerGateway

logger = logging.getLogger(__name__)


class WorkerGatewayFactory:
    """Factory for creating worker gateway instances."""

    @staticmethod
    def create(config: WorkerConfig) -> WorkerGateway:
        """Create a worker gateway based on configuration.

        Args:
            config: Worker configuration specifying the provider.

        Returns:
            Configured worker gateway instance.

        Raises:
            ValueError: If provider type is not supported.
        """
        logger.info(f"Creating worker gateway: {config.provider}")

        if config.provider == "command":
            return CommandWorkerGateway(config.command, working_directory=config.working_directory)
        elif config.provider == "openai":
            return OpenAIWorkerGateway(config)
        else:
            raise ValueError(f"Unsupported worker provider: {config.provider}")
