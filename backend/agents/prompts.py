"""System prompts for the scaffold generation agents.

This module contains the prompt templates used by each agent kind:
- AGENT_PROFILES: Display name, description and expertise per agent kind
- OUTPUT_CONTRACT: Shared response format every agent must follow
- get_system_prompt: Specialized system prompt for one agent kind
- output_root: Directory an agent's files belong under
- build_user_prompt: Task message with the config slice and upstream files
"""

import json
from dataclasses import dataclass
from typing import Any, assert_never

from models.schemas import AgentKind, GeneratedFile


@dataclass(frozen=True)
class AgentProfile:
    name: str
    description: str
    expertise: tuple[str, ...]


AGENT_PROFILES: dict[AgentKind, AgentProfile] = {
    AgentKind.ORCHESTRATOR: AgentProfile(
        name="Chief Orchestrator Agent",
        description="Coordinates the specialized agents and assembles the project",
        expertise=("Architecture Design", "Task Coordination", "Quality Assurance"),
    ),
    AgentKind.DATABASE: AgentProfile(
        name="Database Design Agent",
        description="Designs schemas, relations and migrations with Prisma",
        expertise=("Schema Design", "Relationships", "Indexing", "Migrations"),
    ),
    AgentKind.BACKEND: AgentProfile(
        name="Backend Development Agent",
        description="Builds server-side code with Node.js, Express and TypeScript",
        expertise=("REST APIs", "Business Logic", "Data Validation", "Security"),
    ),
    AgentKind.FRONTEND: AgentProfile(
        name="Frontend Development Agent",
        description="Builds the React user interface",
        expertise=("React Components", "State Management", "Styling", "Accessibility"),
    ),
    AgentKind.AUTH: AgentProfile(
        name="Authentication & Authorization Agent",
        description="Implements user authentication and access control",
        expertise=("JWT", "OAuth", "Password Security", "Session Management", "MFA"),
    ),
    AgentKind.INTEGRATIONS: AgentProfile(
        name="Third-Party Integrations Agent",
        description="Integrates external services reliably",
        expertise=("Stripe", "SendGrid", "AWS", "Webhooks", "Error Handling"),
    ),
    AgentKind.DEVOPS: AgentProfile(
        name="DevOps & Deployment Agent",
        description="Packages the project for deployment and CI/CD",
        expertise=("Docker", "CI/CD", "Cloud Deployment", "Monitoring"),
    ),
}


OUTPUT_CONTRACT = """\
## Response Format
Respond with a single JSON object and nothing else:

{"files": [{"path": "<project-relative path>", "content": "<full file content>"}]}

Rules:
- Paths are relative to the project root and use forward slashes.
- Never use absolute paths or `..` segments.
- Every file must be complete. No placeholders such as "TODO: implement".
- Only write files under your output directory: {root}
"""


_KIND_INSTRUCTIONS: dict[AgentKind, str] = {
    AgentKind.DATABASE: """\
Design the data layer for the project.
- Produce `database/schema.prisma` with every model the enabled features need.
- Add an initial migration and a seed script with realistic sample data.
- Index foreign keys and fields used for lookups.""",
    AgentKind.BACKEND: """\
Build the REST API server (Express + TypeScript).
- Entry point `backend/src/server.ts`, routes under `backend/src/routes/`.
- Validate every request body; return consistent JSON error responses.
- Use the database schema from the upstream files when one exists.
- Include `backend/package.json` and `backend/tsconfig.json`.""",
    AgentKind.FRONTEND: """\
Build the React + TypeScript single-page application.
- Entry point `frontend/src/main.tsx` and root component `frontend/src/App.tsx`.
- One page per enabled feature; call the backend routes from the upstream files.
- Include `frontend/package.json` and `frontend/index.html`.""",
    AgentKind.AUTH: """\
Add authentication and authorization to the backend.
- Implement every configured provider (email/password, OAuth).
- Hash passwords with bcrypt; issue short-lived JWT access tokens.
- Export middleware that protects routes by role.""",
    AgentKind.INTEGRATIONS: """\
Integrate each enabled third-party service into the backend.
- One client module per integration with typed wrappers.
- Read credentials from environment variables only.
- Verify webhook signatures where the provider supports them.""",
    AgentKind.DEVOPS: """\
Package the generated project for deployment.
- A Dockerfile per deployable service and a root `docker-compose.yml`.
- A CI workflow that installs, builds and tests every service.
- A `.env.example` listing every environment variable the code reads.
- A README with setup and deployment instructions for the target platform.""",
}


def output_root(agent_kind: AgentKind) -> str:
    """Return the directory prefix an agent's files belong under ("" is the root)."""
    match agent_kind:
        case AgentKind.DATABASE:
            return "database/"
        case AgentKind.BACKEND:
            return "backend/"
        case AgentKind.FRONTEND:
            return "frontend/"
        case AgentKind.AUTH:
            return "backend/src/auth/"
        case AgentKind.INTEGRATIONS:
            return "backend/src/integrations/"
        case AgentKind.DEVOPS | AgentKind.ORCHESTRATOR:
            return ""
        case _:
            assert_never(agent_kind)


def get_system_prompt(agent_kind: AgentKind) -> str:
    """Build the specialized system prompt for an agent kind.

    Raises:
        ValueError: For the orchestrator kind, which never runs as an agent.
    """
    if agent_kind is AgentKind.ORCHESTRATOR:
        raise ValueError("The orchestrator kind has no agent prompt")

    profile = AGENT_PROFILES[agent_kind]
    root = output_root(agent_kind) or "the project root"
    return "\n\n".join(
        [
            f"You are the {profile.name}. {profile.description}.",
            "Expertise: " + ", ".join(profile.expertise) + ".",
            "## Task\n" + _KIND_INSTRUCTIONS[agent_kind],
            OUTPUT_CONTRACT.replace("{root}", root),
        ]
    )


def build_user_prompt(
    config_slice: dict[str, Any],
    upstream_files: list[GeneratedFile],
    *,
    max_upstream_chars: int = 40_000,
) -> str:
    """Build the task message for one agent call.

    Upstream file contents are included until ``max_upstream_chars`` is
    reached; the remaining files are listed by path only.
    """
    sections = [
        "## Project Configuration",
        json.dumps(config_slice, indent=2, sort_keys=True),
    ]

    if upstream_files:
        sections.append("## Files Produced Upstream")
        budget = max_upstream_chars
        listed_only: list[str] = []
        for generated in upstream_files:
            if len(generated.content) > budget:
                listed_only.append(generated.path)
                continue
            budget -= len(generated.content)
            sections.append(f"### {generated.path}\n{generated.content}")
        if listed_only:
            sections.append(
                "Also present (content omitted): " + ", ".join(listed_only)
            )

    sections.append("Generate your files now.")
    return "\n\n".join(sections)
