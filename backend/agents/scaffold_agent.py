"""Deterministic template agent.

ScaffoldAgent produces a small but coherent project skeleton from the config
slice alone, without any model call. It backs ``use_mock_llm`` mode and gives
tests a real capability whose output is stable across runs.
"""

import asyncio
import json
import re
from typing import Any, assert_never

import structlog

from agents.base import AgentRequest, AgentResult
from agents.prompts import output_root
from models.schemas import AgentKind, GeneratedFile

logger = structlog.get_logger(__name__)

_INTEGRATION_ENV: dict[str, tuple[str, ...]] = {
    "stripe": ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"),
    "sendgrid": ("SENDGRID_API_KEY",),
    "aws_s3": ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "S3_BUCKET"),
    "twilio": ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN"),
    "analytics": ("ANALYTICS_WRITE_KEY",),
}


def slugify(name: str) -> str:
    """Convert a display name to a kebab-case identifier."""
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name).strip("-").lower()
    return slug or "app"


def pascal_case(name: str) -> str:
    return "".join(part.capitalize() for part in slugify(name).split("-"))


class ScaffoldAgent:
    """Offline agent that renders fixed templates for one agent kind.

    Args:
        agent_kind: The responsibility this agent covers
        step_delay: Seconds to pause between progress steps, so that
            streaming clients can observe progress in mock mode
    """

    def __init__(self, agent_kind: AgentKind, step_delay: float = 0.0) -> None:
        if agent_kind is AgentKind.ORCHESTRATOR:
            raise ValueError("The orchestrator kind cannot be an agent")
        self.agent_kind = agent_kind
        self.step_delay = step_delay

    async def execute(self, request: AgentRequest) -> AgentResult:
        request.raise_if_cancelled()
        request.report_progress(10)
        await self._pause()

        rendered = self.render(request.config_slice, request.upstream_files)

        request.raise_if_cancelled()
        request.report_progress(60)
        await self._pause()

        files = [
            GeneratedFile(path=path, content=content, task_id=request.task_id)
            for path, content in rendered.items()
        ]
        request.report_progress(90)
        request.log(f"Rendered {len(files)} template files", files=len(files))
        logger.debug(
            "scaffold_agent_rendered",
            run_id=request.run_id,
            agent_kind=self.agent_kind.value,
            files=len(files),
        )
        return AgentResult(files=files)

    async def _pause(self) -> None:
        if self.step_delay > 0:
            await asyncio.sleep(self.step_delay)

    def render(
        self,
        config_slice: dict[str, Any],
        upstream_files: list[GeneratedFile],
    ) -> dict[str, str]:
        """Return ``{path: content}`` for this agent kind."""
        match self.agent_kind:
            case AgentKind.DATABASE:
                return _render_database(config_slice)
            case AgentKind.BACKEND:
                return _render_backend(config_slice)
            case AgentKind.FRONTEND:
                return _render_frontend(config_slice)
            case AgentKind.AUTH:
                return _render_auth(config_slice)
            case AgentKind.INTEGRATIONS:
                return _render_integrations(config_slice)
            case AgentKind.DEVOPS:
                return _render_devops(config_slice, upstream_files)
            case AgentKind.ORCHESTRATOR:
                raise ValueError("The orchestrator kind cannot render files")
            case _:
                assert_never(self.agent_kind)


# =============================================================================
# Per-kind templates
# =============================================================================


def _feature_names(config_slice: dict[str, Any]) -> list[str]:
    return [f["name"] for f in config_slice.get("features") or []]


def _render_database(config_slice: dict[str, Any]) -> dict[str, str]:
    root = output_root(AgentKind.DATABASE)
    database = config_slice.get("database") or {}
    provider = database.get("type", "postgresql")

    models = [
        "model User {\n"
        "  id        String   @id @default(cuid())\n"
        "  email     String   @unique\n"
        "  createdAt DateTime @default(now())\n"
        "}"
    ]
    for feature in _feature_names(config_slice):
        model = pascal_case(feature)
        models.append(
            f"model {model} {{\n"
            "  id        String   @id @default(cuid())\n"
            "  ownerId   String\n"
            "  createdAt DateTime @default(now())\n\n"
            "  @@index([ownerId])\n"
            "}"
        )

    schema = (
        "datasource db {\n"
        f'  provider = "{provider}"\n'
        '  url      = env("DATABASE_URL")\n'
        "}\n\n"
        "generator client {\n"
        '  provider = "prisma-client-js"\n'
        "}\n\n" + "\n\n".join(models) + "\n"
    )
    seed = (
        "import { PrismaClient } from '@prisma/client';\n\n"
        "const prisma = new PrismaClient();\n\n"
        "async function main() {\n"
        "  await prisma.user.upsert({\n"
        "    where: { email: 'demo@example.com' },\n"
        "    update: {},\n"
        "    create: { email: 'demo@example.com' },\n"
        "  });\n"
        "}\n\n"
        "main().finally(() => prisma.$disconnect());\n"
    )
    return {f"{root}schema.prisma": schema, f"{root}seed.ts": seed}


def _render_backend(config_slice: dict[str, Any]) -> dict[str, str]:
    root = output_root(AgentKind.BACKEND)
    name = slugify(config_slice["name"])
    features = _feature_names(config_slice)

    files: dict[str, str] = {}
    dependencies = {"express": "^4.19.2", "zod": "^3.23.8"}
    if config_slice.get("database"):
        dependencies["@prisma/client"] = "^5.15.0"
        files[f"{root}src/db.ts"] = (
            "import { PrismaClient } from '@prisma/client';\n\n"
            "export const db = new PrismaClient();\n"
        )

    imports = []
    mounts = []
    for feature in features:
        slug = slugify(feature)
        ident = pascal_case(feature)
        files[f"{root}src/routes/{slug}.ts"] = (
            "import { Router } from 'express';\n\n"
            "export const router = Router();\n\n"
            f"router.get('/', (_req, res) => res.json({{ items: [], resource: '{slug}' }}));\n"
        )
        imports.append(f"import {{ router as {ident}Router }} from './routes/{slug}';")
        mounts.append(f"app.use('/api/{slug}', {ident}Router);")

    files[f"{root}src/server.ts"] = (
        "import express from 'express';\n"
        + "".join(line + "\n" for line in imports)
        + "\nconst app = express();\n"
        "app.use(express.json());\n\n"
        "app.get('/health', (_req, res) => res.json({ status: 'ok' }));\n"
        + "".join(line + "\n" for line in mounts)
        + "\nconst port = Number(process.env.PORT ?? 4000);\n"
        "app.listen(port, () => console.log(`listening on ${port}`));\n\n"
        "export default app;\n"
    )
    files[f"{root}package.json"] = json.dumps(
        {
            "name": f"{name}-backend",
            "private": True,
            "scripts": {"dev": "tsx watch src/server.ts", "build": "tsc", "test": "vitest run"},
            "dependencies": dependencies,
        },
        indent=2,
    ) + "\n"
    return files


def _render_frontend(config_slice: dict[str, Any]) -> dict[str, str]:
    root = output_root(AgentKind.FRONTEND)
    title = config_slice["name"]
    features = _feature_names(config_slice)

    files: dict[str, str] = {}
    links = []
    for feature in features:
        ident = pascal_case(feature)
        files[f"{root}src/pages/{ident}.tsx"] = (
            f"export function {ident}Page() {{\n"
            f"  return <section><h2>{feature}</h2></section>;\n"
            "}\n"
        )
        links.append(f"      <{ident}Page />")

    page_imports = "".join(
        f"import {{ {pascal_case(f)}Page }} from './pages/{pascal_case(f)}';\n" for f in features
    )
    files[f"{root}src/App.tsx"] = (
        page_imports
        + "\nexport default function App() {\n"
        "  return (\n"
        "    <main>\n"
        f"      <h1>{title}</h1>\n"
        + "".join(link + "\n" for link in links)
        + "    </main>\n"
        "  );\n"
        "}\n"
    )
    files[f"{root}src/main.tsx"] = (
        "import { StrictMode } from 'react';\n"
        "import { createRoot } from 'react-dom/client';\n"
        "import App from './App';\n\n"
        "createRoot(document.getElementById('root')!).render(\n"
        "  <StrictMode>\n    <App />\n  </StrictMode>,\n"
        ");\n"
    )
    files[f"{root}index.html"] = (
        "<!doctype html>\n<html lang=\"en\">\n"
        f"  <head><meta charset=\"UTF-8\" /><title>{title}</title></head>\n"
        "  <body>\n    <div id=\"root\"></div>\n"
        "    <script type=\"module\" src=\"/src/main.tsx\"></script>\n"
        "  </body>\n</html>\n"
    )
    files[f"{root}package.json"] = json.dumps(
        {
            "name": f"{slugify(title)}-frontend",
            "private": True,
            "scripts": {"dev": "vite", "build": "tsc -b && vite build"},
            "dependencies": {"react": "^19.0.0", "react-dom": "^19.0.0"},
        },
        indent=2,
    ) + "\n"
    return files


def _render_auth(config_slice: dict[str, Any]) -> dict[str, str]:
    root = output_root(AgentKind.AUTH)
    auth = config_slice.get("auth") or {}
    providers: list[str] = list(auth.get("providers") or [])

    files: dict[str, str] = {}
    for provider in providers:
        files[f"{root}providers/{provider}.ts"] = (
            f"export const {provider}Provider = {{\n"
            f"  id: '{provider}',\n"
            f"  enabled: true,\n"
            "};\n"
        )
    files[f"{root}middleware.ts"] = (
        "import type { NextFunction, Request, Response } from 'express';\n"
        "import jwt from 'jsonwebtoken';\n\n"
        "export function requireAuth(req: Request, res: Response, next: NextFunction) {\n"
        "  const token = req.headers.authorization?.replace('Bearer ', '');\n"
        "  if (!token) return res.status(401).json({ error: 'unauthorized' });\n"
        "  try {\n"
        "    jwt.verify(token, process.env.JWT_SECRET as string);\n"
        "    return next();\n"
        "  } catch {\n"
        "    return res.status(401).json({ error: 'invalid token' });\n"
        "  }\n"
        "}\n"
    )
    files[f"{root}index.ts"] = (
        "".join(f"export {{ {p}Provider }} from './providers/{p}';\n" for p in providers)
        + "export { requireAuth } from './middleware';\n"
    )
    return files


def _render_integrations(config_slice: dict[str, Any]) -> dict[str, str]:
    root = output_root(AgentKind.INTEGRATIONS)
    integrations = config_slice.get("integrations") or []

    files: dict[str, str] = {}
    for integration in integrations:
        kind = integration["type"]
        env_lines = "".join(
            f"  {var.lower()}: process.env.{var} ?? '',\n"
            for var in _INTEGRATION_ENV.get(kind, ())
        )
        files[f"{root}{kind}.ts"] = (
            f"// {integration['name']}\n"
            f"export const {kind}Config = {{\n{env_lines}}};\n"
        )
    files[f"{root}index.ts"] = "".join(
        f"export {{ {i['type']}Config }} from './{i['type']}';\n" for i in integrations
    )
    return files


def _render_devops(
    config_slice: dict[str, Any],
    upstream_files: list[GeneratedFile],
) -> dict[str, str]:
    name = slugify(config_slice["name"])
    upstream_paths = {f.path for f in upstream_files}
    services = [
        service
        for service in ("backend", "frontend")
        if f"{service}/package.json" in upstream_paths
    ]

    env_vars = ["PORT"]
    if config_slice.get("database"):
        env_vars.append("DATABASE_URL")
    if any(path.startswith("backend/src/auth/") for path in upstream_paths):
        env_vars.append("JWT_SECRET")
    for path in sorted(upstream_paths):
        if path.startswith("backend/src/integrations/"):
            kind = path.rsplit("/", 1)[-1].removesuffix(".ts")
            env_vars.extend(_INTEGRATION_ENV.get(kind, ()))

    files: dict[str, str] = {}
    compose_services = []
    for service in services:
        files[f"{service}/Dockerfile"] = (
            "FROM node:20-alpine\n"
            "WORKDIR /app\n"
            "COPY package.json ./\n"
            "RUN npm install\n"
            "COPY . .\n"
            "RUN npm run build\n"
            'CMD ["npm", "start"]\n'
        )
        compose_services.append(
            f"  {service}:\n    build: ./{service}\n    env_file: .env\n"
        )

    files["docker-compose.yml"] = "services:\n" + "".join(compose_services)
    files[".env.example"] = "".join(f"{var}=\n" for var in dict.fromkeys(env_vars))

    deployment = config_slice.get("deployment") or {}
    platform = deployment.get("platform", "docker")
    files["README.md"] = (
        f"# {config_slice['name']}\n\n"
        f"{config_slice.get('description') or ''}\n\n"
        "## Setup\n\n"
        "1. Copy `.env.example` to `.env` and fill in the values.\n"
        "2. Run `docker compose up --build`.\n\n"
        f"## Deployment\n\nTarget platform: {platform}\n"
    )
    files[".github/workflows/ci.yml"] = (
        f"name: {name}-ci\n"
        "on: [push, pull_request]\n"
        "jobs:\n"
        "  build:\n"
        "    runs-on: ubuntu-latest\n"
        "    steps:\n"
        "      - uses: actions/checkout@v4\n"
        + "".join(
            f"      - run: npm install && npm run build\n        working-directory: {s}\n"
            for s in services
        )
    )
    return files
