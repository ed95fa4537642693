"""Pydantic schemas for project configuration, run snapshots, and the HTTP API.

This module defines all the data models shared between the orchestrator, the
HTTP API, and WebSocket handlers. All models use Pydantic v2. Models that
cross the coordinator boundary (configs, files, snapshots) are frozen so that
readers can never mutate run state through them.
"""

import time
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class ProjectTemplate(StrEnum):
    """Supported project templates."""

    SAAS = "SAAS"
    ECOMMERCE = "ECOMMERCE"
    BLOG = "BLOG"
    API = "API"


class DatabaseType(StrEnum):
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MONGODB = "mongodb"
    SQLITE = "sqlite"


class AuthProvider(StrEnum):
    EMAIL = "email"
    GOOGLE = "google"
    GITHUB = "github"
    FACEBOOK = "facebook"


class IntegrationType(StrEnum):
    STRIPE = "stripe"
    SENDGRID = "sendgrid"
    AWS_S3 = "aws_s3"
    TWILIO = "twilio"
    ANALYTICS = "analytics"


class DeploymentPlatform(StrEnum):
    VERCEL = "vercel"
    NETLIFY = "netlify"
    AWS = "aws"
    DOCKER = "docker"
    RAILWAY = "railway"


class AgentKind(StrEnum):
    """Generation responsibilities.

    ``ORCHESTRATOR`` is a virtual kind used to attribute run-level log lines;
    it is never scheduled as a task.
    """

    DATABASE = "database"
    BACKEND = "backend"
    FRONTEND = "frontend"
    AUTH = "auth"
    INTEGRATIONS = "integrations"
    DEVOPS = "devops"
    ORCHESTRATOR = "orchestrator"


SCHEDULABLE_AGENT_KINDS: frozenset[AgentKind] = frozenset(
    kind for kind in AgentKind if kind is not AgentKind.ORCHESTRATOR
)


class TaskStatus(StrEnum):
    """Task lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.SKIPPED,
            TaskStatus.CANCELLED,
        )


class RunStatus(StrEnum):
    """Generation run lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class LogSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# -----------------------------------------------------------------------------
# Project configuration
# -----------------------------------------------------------------------------


class Feature(BaseModel):
    """A template feature toggle (e.g. subscriptions, comments)."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=100)
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)


class DatabaseConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: DatabaseType
    version: str | None = None


class AuthFeatures(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    email_verification: bool = Field(default=False, alias="emailVerification")
    password_reset: bool = Field(default=False, alias="passwordReset")
    mfa: bool = False
    social_login: bool = Field(default=False, alias="socialLogin")


class AuthConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    providers: tuple[AuthProvider, ...] = ()
    features: AuthFeatures = Field(default_factory=AuthFeatures)

    @field_validator("providers")
    @classmethod
    def dedupe_providers(cls, v: tuple[AuthProvider, ...]) -> tuple[AuthProvider, ...]:
        return tuple(dict.fromkeys(v))


class Integration(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=100)
    type: IntegrationType
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)


class DeploymentConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    platform: DeploymentPlatform
    region: str | None = None
    custom_domain: str | None = Field(default=None, alias="customDomain")


class ProjectConfig(BaseModel):
    """Immutable input that drives the shape of the generation task graph."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(
        min_length=1,
        max_length=100,
        description="Project name",
        examples=["acme-saas"],
    )
    description: str | None = Field(default=None, max_length=2000)
    template: ProjectTemplate = Field(
        description="Project template",
        examples=["SAAS", "API"],
    )
    features: tuple[Feature, ...] = ()
    database: DatabaseConfig | None = None
    auth: AuthConfig | None = None
    integrations: tuple[Integration, ...] = ()
    deployment: DeploymentConfig | None = None

    @property
    def enabled_features(self) -> tuple[Feature, ...]:
        return tuple(f for f in self.features if f.enabled)

    @property
    def auth_providers(self) -> tuple[AuthProvider, ...]:
        return self.auth.providers if self.auth is not None else ()

    @property
    def enabled_integrations(self) -> tuple[Integration, ...]:
        return tuple(i for i in self.integrations if i.enabled)


# -----------------------------------------------------------------------------
# Generated artifacts
# -----------------------------------------------------------------------------


class GeneratedFile(BaseModel):
    """A file produced by one task. ``path`` is the unique key within a run."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(min_length=1, examples=["backend/src/server.ts"])
    content: str
    task_id: str = Field(examples=["task_backend"])

    @computed_field  # type: ignore[prop-decorator]
    @property
    def size(self) -> int:
        """Content size in bytes."""
        return len(self.content.encode("utf-8"))


class TokenUsage(BaseModel):
    """Token usage reported by an agent execution."""

    model_config = ConfigDict(frozen=True)

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    llm_calls: int = Field(default=0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            llm_calls=self.llm_calls + other.llm_calls,
        )


# -----------------------------------------------------------------------------
# Snapshots
# -----------------------------------------------------------------------------


class FileSummary(BaseModel):
    """File listing entry (no content) for list views."""

    model_config = ConfigDict(frozen=True)

    path: str
    task_id: str
    size: int


class GenerationLog(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: float = Field(default_factory=time.time)
    severity: LogSeverity
    agent_kind: AgentKind
    message: str
    task_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class TaskSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    agent_kind: AgentKind
    dependencies: tuple[str, ...]
    status: TaskStatus
    progress: int = Field(ge=0, le=100)
    retry_count: int = 0
    error: str | None = None
    started_at: float | None = None
    completed_at: float | None = None
    files_generated: int = 0
    usage: TokenUsage = Field(default_factory=TokenUsage)


class RunSnapshot(BaseModel):
    """Immutable view of a generation run handed to external readers."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    project_id: str
    user_id: str | None = None
    config: ProjectConfig
    status: RunStatus
    progress: int = Field(ge=0, le=100)
    tasks: tuple[TaskSnapshot, ...]
    files: tuple[FileSummary, ...]
    logs: tuple[GenerationLog, ...] = ()
    usage: TokenUsage = Field(default_factory=TokenUsage)
    created_at: float
    started_at: float | None = None
    completed_at: float | None = None
    error_summary: str | None = None

    def task_for(self, agent_kind: AgentKind | str) -> TaskSnapshot | None:
        """Return the task bound to an agent kind, if the graph contains one."""
        for task in self.tasks:
            if task.agent_kind == agent_kind:
                return task
        return None


# -----------------------------------------------------------------------------
# HTTP API models
# -----------------------------------------------------------------------------


class StartGenerationRequest(BaseModel):
    """Request body for starting a generation run."""

    config: ProjectConfig = Field(description="Project configuration to generate")
    user_id: str | None = Field(
        default=None,
        max_length=200,
        description="Identifier of the user who owns the project",
    )


class StartGenerationResponse(BaseModel):
    run_id: str = Field(examples=["run_abc123def456"])
    project_id: str
    status: RunStatus
    websocket_url: str = Field(examples=["/ws/generations/run_abc123def456"])


class RunSummaryResponse(BaseModel):
    """Summary information for listing runs."""

    run_id: str
    project_id: str
    template: str
    status: RunStatus
    progress: int
    created_at: float
    completed_at: float | None = None
    error_summary: str | None = None


class FileContentResponse(BaseModel):
    path: str = Field(examples=["backend/src/server.ts"])
    task_id: str
    content: str
    size: int


class TemplateInfo(BaseModel):
    template: ProjectTemplate
    agent_kinds: list[AgentKind]


class RunMetricsResponse(BaseModel):
    run_id: str
    total_input_tokens: int = Field(default=0, ge=0)
    total_output_tokens: int = Field(default=0, ge=0)
    total_llm_calls: int = Field(default=0, ge=0)
    retries: int = Field(default=0, ge=0)
    tokens_by_agent: dict[str, int] = Field(default_factory=dict)
    execution_time_seconds: float = Field(default=0.0, ge=0.0)


class HealthResponse(BaseModel):
    status: Literal["healthy", "unhealthy"]
    timestamp: float
    version: str = "0.1.0"
    active_runs: int = 0
    registered_agents: list[str] = Field(default_factory=list)
