"""ASGI entry point for the scaffold generation backend.

Run with:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents import AgentRegistry, LLMClient, create_agent_registry
from api import router, websocket_router
from config import Settings, configure_logging, settings
from events import EventBus
from metrics import MetricsCollector
from models.database import RunStore
from rate_limiter import RateLimiter
from run_manager import RunManager

configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


def build_registry(config: Settings) -> AgentRegistry:
    """Template agents in mock mode, otherwise LLM agents sharing one rate limiter."""
    if config.use_mock_llm:
        return create_agent_registry(use_mock=True)
    client = LLMClient(rate_limiter=RateLimiter.from_settings(config))
    return create_agent_registry(
        client, agent_models=config.agent_models, stream=config.llm_stream
    )


async def open_run_store(path: str) -> RunStore | None:
    """Open the SQLite store; on failure runs are kept in memory only."""
    store = RunStore(path)
    try:
        await store.init()
    except Exception as e:
        logger.warning("run_store_unavailable", db_path=path, error=str(e))
        return None
    return store


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        use_mock_llm=settings.use_mock_llm,
        default_model=settings.default_model,
    )

    registry = build_registry(settings)
    run_store = await open_run_store(settings.database_path)
    event_bus = EventBus()
    app.state.event_bus = event_bus
    app.state.run_store = run_store
    app.state.run_manager = RunManager(
        event_bus,
        registry,
        run_store=run_store,
        metrics_collector=MetricsCollector(),
        settings=settings,
    )
    logger.info(
        "application_started",
        agents=[kind.value for kind in registry.kinds()],
        persistence=run_store is not None,
    )

    yield

    # In-flight runs are cancelled so their final state reaches the store.
    await app.state.run_manager.cleanup_all(timeout=settings.cancel_grace_seconds * 2)
    logger.info("application_stopped")


app = FastAPI(
    title="Scaffold Generator",
    description="Generates application scaffolds from a project configuration "
    "by running specialized agents in dependency order.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(router, tags=["generations"])
app.include_router(websocket_router, tags=["websocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
