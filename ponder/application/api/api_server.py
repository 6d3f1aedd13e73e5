from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from ponder import __version__
from ponder.application.agent_service import AgentService
from ponder.application.api.route.agent import router as session_router
from ponder.application.websocket.connection_manager import ConnectionManager
from ponder.application.websocket.ws_server import router as websocket_router
from ponder.config import AgentSettings
from ponder.domain.models.agent_state import utcnow
from ponder.infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


def create_app(
    service: AgentService,
    settings: Optional[AgentSettings] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """FastAPI app serving the session routes and the status websocket"""

    settings = settings or service.settings
    if configure_logging:
        setup_logging(settings.log_level, settings.log_format, settings.service_name)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        logger.info("API server started", service=settings.service_name)
        yield
        for session_id in list(app.state.connections.active_connections):
            await app.state.connections.disconnect(session_id)
        await service.shutdown()
        logger.info("API server shutdown")

    app = FastAPI(title="Ponder Agent API", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.service = service
    app.state.connections = ConnectionManager()

    app.include_router(session_router)
    app.include_router(websocket_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "active_runs": service.sessions.active_count(),
            "active_connections": len(app.state.connections.active_connections),
            "timestamp": utcnow().isoformat(),
        }

    return app
