"""Worker gateway that runs an agent CLI once per task."""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
import threading
from pathlib import Path

from phase_orchestrator.orchestrator.workflow.models import Task, TaskResult

from .gateway import WorkerCancelledError, WorkerGateway, parse_worker_reply

logger = logging.getLogger(__name__)

# How often the child process is checked while waiting for it (and for cancellation).
_POLL_SECONDS = 0.2

REPLY_INSTRUCTIONS = (
    "When you are done, end your answer with a single JSON object of the form "
    '{"outcome": "pass" | "fail" | "unclear" | null, '
    '"fingerprints": ["<short stable defect key>", ...], '
    '"evidence": {...}}. Use outcome null when the task is not a check.'
)


class WorkerProcessError(RuntimeError):
    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


def build_prompt(task: Task) -> str:
    """Render a task as a single prompt string for the agent CLI."""

    sections = [
        f"Role: {task.worker_kind}",
        f"Task: {task.description}",
    ]
    if task.payload:
        sections.append(
            "Task payload JSON:\n"
            + json.dumps(task.payload, ensure_ascii=False, indent=2, default=str)
        )
    sections.append(REPLY_INSTRUCTIONS)
    return "\n\n".join(sections)


class CommandWorkerGateway(WorkerGateway):
    """Invoke `command <prompt>` and parse the reply from stdout.

    Cancellation terminates the child process (then kills it if it lingers).
    """

    def __init__(self, command: str, working_directory: Path | None = None) -> None:
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("Worker command must not be empty")
        self.working_directory = working_directory

    def _invoke(self, task: Task, cancel: threading.Event) -> TaskResult:
        argv = [*self.argv, build_prompt(task)]
        try:
            process = subprocess.Popen(
                argv,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as e:
            raise WorkerProcessError(f"Worker binary not found: {self.argv[0]}") from e

        while True:
            try:
                stdout, stderr = process.communicate(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if cancel.is_set():
                    self._stop(process)
                    raise WorkerCancelledError(f"Worker process for task {task.id} was cancelled")

        if process.returncode != 0:
            raise WorkerProcessError(
                f"Worker exited with code {process.returncode}: {stderr.strip()[-2000:]}",
                exit_code=process.returncode,
            )

        reply = parse_worker_reply(stdout)
        logger.debug(
            "Worker process finished",
            extra={"task_id": task.id, "outcome": reply.outcome, "stdout_chars": len(stdout)},
        )
        return reply.to_result(task)

    @staticmethod
    def _stop(process: subprocess.Popen[str]) -> None:
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
