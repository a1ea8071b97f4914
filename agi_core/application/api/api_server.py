from contextlib import asynccontextmanager
from typing import Iterable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from langfuse import Langfuse
import structlog

from agi_core.application.api.route.agent import router
from agi_core.domain.context.state.state_manager import StateManager
from agi_core.domain.orchestration.core.main_agent import AgentOrchestrator
from agi_core.domain.repository.conversation_repository import (
    ConversationRepository, InMemoryConversationRepository
)
from agi_core.domain.tool.tool_registry import ToolCapability, build_registry
from agi_core.infrastructure.config.settings import Settings
from agi_core.infrastructure.llm.completion import CompletionClient
from agi_core.infrastructure.observability.langfuse_tracing import Observer, build_langfuse_client
from agi_core.infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    completion: Optional[CompletionClient] = None,
    repository: Optional[ConversationRepository] = None,
    capabilities: Optional[Iterable[ToolCapability]] = None,
    langfuse: Optional[Langfuse] = None
) -> FastAPI:
    """Build the HTTP app; collaborators default to their production versions.

    Run with ``uvicorn agi_core.application.api.api_server:create_app --factory``.
    """

    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, settings.log_format, settings.service_name)
        logger.info("Enabled services", **settings.enabled_services())

        registry = build_registry(settings, capabilities)
        client = langfuse if langfuse is not None else build_langfuse_client(settings)
        repo = repository or InMemoryConversationRepository()

        app.state.settings = settings
        app.state.registry = registry
        app.state.repository = repo
        app.state.state_manager = StateManager(settings.state_idle_timeout())
        app.state.orchestrator = AgentOrchestrator(
            completion or CompletionClient(),
            registry,
            settings,
            repo,
            observer_factory=lambda: Observer(client)
        )

        logger.info("AGI server started", model=settings.model, tools=len(registry))
        yield

        if client is not None:
            client.shutdown()
        logger.info("AGI server shutdown")

    app = FastAPI(title="AGI Core", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app
