"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the scaffold
generation backend. All settings can be overridden via environment variables
or a .env file.
"""

import contextlib
import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        use_mock_llm: If True, agents generate files from deterministic
            templates instead of calling a model.
        default_model: LiteLLM model identifier used by every agent kind.
        agent_models: Optional per-agent-kind model overrides
            (e.g. {"frontend": "gemini/gemini-2.5-flash"}).
        llm_temperature: Sampling temperature for agent calls.
        llm_max_tokens: Maximum response tokens for one agent call.
        llm_request_timeout_seconds: Timeout passed to the LLM provider.
        llm_stream: If True, LLM agents stream completions and report progress
            while output arrives.
        llm_rate_limit_rpm: Requests per minute allowed across all agents.
        llm_rate_limit_tpm: Tokens per minute allowed across all agents.
        max_concurrent_tasks: Maximum agent tasks running at once per run.
        task_timeout_seconds: Hard wall-clock timeout for one task attempt.
        task_max_attempts: Total attempts per task for recoverable errors.
        retry_base_delay_seconds: First backoff delay between attempts.
        retry_max_delay_seconds: Upper bound for the backoff delay.
        progress_event_threshold: Minimum overall progress change (percentage
            points) that produces a run_progress event.
        cancel_grace_seconds: Time in-flight agents get to stop after a cancel.
        finished_run_retention: Finished runs kept in memory per process; older
            ones are served from the database.
        database_path: SQLite file used to persist run snapshots.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    use_mock_llm: bool = False
    # Model names must include provider prefix for LiteLLM (e.g., gemini/, xai/, anthropic/)
    default_model: str = "anthropic/claude-sonnet-4-5"
    agent_models: dict[str, str] = {}
    llm_temperature: float = 0.2
    llm_max_tokens: int = 8192
    llm_request_timeout_seconds: int = 110
    llm_stream: bool = False

    # LLM Rate Limiting
    llm_rate_limit_rpm: int = 30  # Requests per minute
    llm_rate_limit_tpm: int = 200000  # Tokens per minute

    # Orchestration
    max_concurrent_tasks: int = 3
    task_timeout_seconds: float = 120.0
    task_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 8.0
    progress_event_threshold: int = 1
    cancel_grace_seconds: float = 5.0
    finished_run_retention: int = 20

    # Database Configuration
    database_path: str = "./data/generations.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Accept a list, a JSON array string, or a comma-separated string."""
        if not isinstance(v, str):
            return list(v) if v else []
        text = v.strip()
        if text.startswith("["):
            with contextlib.suppress(json.JSONDecodeError):
                return [str(origin) for origin in json.loads(text)]
        return [origin.strip() for origin in text.split(",") if origin.strip()]

    @field_validator("max_concurrent_tasks", "task_max_attempts")
    @classmethod
    def require_positive(cls, v: int) -> int:
        """Concurrency and attempt budgets must allow at least one task run."""
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("finished_run_retention")
    @classmethod
    def require_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_for(self, agent_kind: str) -> str:
        """Return the model configured for an agent kind."""
        return self.agent_models.get(agent_kind, self.default_model)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


settings = Settings()
