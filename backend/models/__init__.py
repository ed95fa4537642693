"""Models module for Pydantic schemas and run persistence.

This module exposes the domain and request/response models used by the
orchestrator and the API.
"""

from models.schemas import (
    SCHEDULABLE_AGENT_KINDS,
    AgentKind,
    AuthConfig,
    AuthProvider,
    DatabaseConfig,
    DatabaseType,
    DeploymentConfig,
    DeploymentPlatform,
    Feature,
    FileSummary,
    GeneratedFile,
    GenerationLog,
    Integration,
    IntegrationType,
    LogSeverity,
    ProjectConfig,
    ProjectTemplate,
    RunSnapshot,
    RunStatus,
    TaskSnapshot,
    TaskStatus,
    TokenUsage,
)

__all__ = [
    "SCHEDULABLE_AGENT_KINDS",
    "AgentKind",
    "AuthConfig",
    "AuthProvider",
    "DatabaseConfig",
    "DatabaseType",
    "DeploymentConfig",
    "DeploymentPlatform",
    "Feature",
    "FileSummary",
    "GeneratedFile",
    "GenerationLog",
    "Integration",
    "IntegrationType",
    "LogSeverity",
    "ProjectConfig",
    "ProjectTemplate",
    "RunSnapshot",
    "RunStatus",
    "TaskSnapshot",
    "TaskStatus",
    "TokenUsage",
]
