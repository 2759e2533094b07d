"""OpenAI-backed worker gateway."""

import logging
import threading

from openai import OpenAI

from phase_orchestrator.orchestrator.config import WorkerConfig
from phase_orchestrator.orchestrator.workflow.models import Task, TaskResult

from .command_gateway import REPLY_INSTRUCTIONS, build_prompt
from .gateway import WorkerCancelledError, WorkerGateway, parse_worker_reply

logger = logging.getLogger(__name__)


class OpenAIWorkerGateway(WorkerGateway):
    """Runs each task as one chat completion and parses the JSON reply."""

    def __init__(self, config: WorkerConfig, client: OpenAI | None = None) -> None:
        """Initialize the OpenAI gateway.

        Args:
            config: Worker configuration.
            client: Pre-built client (tests inject a mock here).

        Raises:
            ValueError: If no client is given and the API key is not configured.
        """
        if client is None and not config.openai_api_key:
            raise ValueError("OpenAI API key is required")

        self.client = client or OpenAI(api_key=config.openai_api_key)
        self.model = config.openai_model
        self.temperature = config.openai_temperature

        logger.info(f"OpenAI worker gateway initialized with model: {self.model}")

    def _invoke(self, task: Task, cancel: threading.Event) -> TaskResult:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "system",
                    "content": f"You are the {task.worker_kind} worker. {REPLY_INSTRUCTIONS}",
                },
                {"role": "user", "content": build_prompt(task)},
            ],
            temperature=self.temperature,
            response_format={"type": "json_object"},
        )

        # The HTTP call itself cannot be interrupted; drop the answer of a cancelled run.
        if cancel.is_set():
            raise WorkerCancelledError(f"Run was cancelled while task {task.id} was in flight")

        content = response.choices[0].message.content or ""
        logger.debug(f"Received {len(content)} characters for task {task.id}")
        return parse_worker_reply(content).to_result(task)

    def close(self) -> None:
        self.client.close()
