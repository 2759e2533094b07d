"""Configuration for the orchestrator.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

None of the bounds below are dictated by the workflows themselves; they are
defaults that every workflow definition may override per phase.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkerConfig(BaseSettings):
    """Configuration for the worker gateway."""

    provider: Literal["command", "openai"] = Field(
        default="command",
        description="Worker transport to use",
    )

    # Command (agent CLI) settings
    command: str = Field(
        default="claude -p",
        description="Agent CLI invoked per task; the task prompt is appended as the last argument",
    )
    working_directory: Path | None = Field(
        default=None,
        description="Working directory for the agent CLI (None = current directory)",
    )

    # OpenAI settings
    openai_api_key: str | None = Field(
        default=None,
        description="OpenAI API key",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model to use",
    )
    openai_temperature: float = Field(
        default=0.2,
        ge=0.0,
        le=2.0,
        description="Temperature for OpenAI model",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_WORKER_",
        env_file=".env",
        extra="ignore",
    )


class OrchestratorSettings(BaseSettings):
    """Settings for the orchestrator.

    Environment variables:
    - LOG_LEVEL                              (optional)
    - AGENT_STATE_PATH                       (optional)
    - ORCHESTRATOR_MAX_RETRIES               (optional)
    - ORCHESTRATOR_LOCK_TIMEOUT_SECONDS      (optional)
    - ORCHESTRATOR_DISPATCH_TIMEOUT_SECONDS  (optional)
    - ORCHESTRATOR_STOP_GRACE_SECONDS        (optional)
    - ORCHESTRATOR_RETRY_BACKOFF_SECONDS     (optional)
    - ORCHESTRATOR_MAX_PARALLEL_TASKS        (optional)
    - ORCHESTRATOR_ISSUE_KEY_PREFIX          (optional)
    - ORCHESTRATOR_ISSUE_NUMBER_WIDTH        (optional)
    - ORCHESTRATOR_WORKFLOWS_PATH            (optional)
    - ORCHESTRATOR_CORS_ORIGINS              (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `OrchestratorSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    agent_state_path: Path = Field(
        default=Path("agent_state"),
        validation_alias="AGENT_STATE_PATH",
        description="Directory where issues and workflow runs are persisted",
    )

    default_max_retries: int = Field(
        default=2,
        ge=0,
        le=20,
        validation_alias="ORCHESTRATOR_MAX_RETRIES",
        description="Retries allowed per phase when the definition does not set max_retries",
    )
    lock_timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        validation_alias="ORCHESTRATOR_LOCK_TIMEOUT_SECONDS",
        description="How long a task waits for a shared resource before failing",
    )
    dispatch_timeout_seconds: float = Field(
        default=1800.0,
        ge=0,
        validation_alias="ORCHESTRATOR_DISPATCH_TIMEOUT_SECONDS",
        description="Upper bound on a single worker call (0 means no timeout)",
    )
    stop_grace_seconds: float = Field(
        default=30.0,
        ge=0,
        validation_alias="ORCHESTRATOR_STOP_GRACE_SECONDS",
        description="How long a timed-out or cancelled worker call may keep its resource lock",
    )
    retry_backoff_seconds: float = Field(
        default=0.0,
        ge=0,
        validation_alias="ORCHESTRATOR_RETRY_BACKOFF_SECONDS",
        description="Base delay for exponential backoff between phase retries",
    )
    max_parallel_tasks: int = Field(
        default=8,
        ge=1,
        validation_alias="ORCHESTRATOR_MAX_PARALLEL_TASKS",
        description="Maximum number of concurrently executing task groups per phase",
    )

    issue_key_prefix: str = Field(
        default="ISSUE",
        validation_alias="ORCHESTRATOR_ISSUE_KEY_PREFIX",
        description="Prefix of externally visible issue identifiers",
    )
    issue_number_width: int = Field(
        default=3,
        ge=1,
        le=10,
        validation_alias="ORCHESTRATOR_ISSUE_NUMBER_WIDTH",
        description="Zero-padding width of issue sequence numbers",
    )

    workflows_path: Path = Field(
        default=Path("workflows"),
        validation_alias="ORCHESTRATOR_WORKFLOWS_PATH",
        description="Directory searched for custom workflow definitions (<name>.json)",
    )

    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="ORCHESTRATOR_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins for the REST server",
    )

    worker: WorkerConfig = Field(
        default_factory=WorkerConfig,
        description="Worker gateway configuration",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def issues_state_file(self) -> Path:
        """Path where issue records are persisted."""

        return self.agent_state_path / "issues.json"

    @property
    def runs_state_dir(self) -> Path:
        """Directory where workflow runs are persisted."""

        return self.agent_state_path / "runs"

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
