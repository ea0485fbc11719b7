"""
FastAPI application factory.

Manages the lifecycle of:
- Database connection (message store)
- Session orchestrator and its transports
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from ..agent import SessionOrchestrator, SqlMessageStore, create_orchestrator, resolve_mode
from ..agent.core import message_to_dict
from ..config import Settings, get_settings
from ..errors import ConnectionUnavailable, ConversationBusy, TransportError
from ..models import init_database

logger = structlog.get_logger()

VERSION = "1.0.0"


class SendMessageRequest(BaseModel):
    """Body of a send."""
    content: str = Field(..., min_length=1)
    memory: str | None = None


def get_orchestrator(request: Request) -> SessionOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return orchestrator


def create_app(
    settings: Settings | None = None,
    orchestrator: SessionOrchestrator | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        engine = orchestrator
        if engine is None:
            session_maker = await init_database(settings.database_url)
            logger.info("Database initialized")
            engine = create_orchestrator(settings, store=SqlMessageStore(session_maker))
        app.state.orchestrator = engine

        yield

        # Shutdown
        await engine.transport.aclose()
        app.state.orchestrator = None
        logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        description="Chat session engine with streaming, context compression and tool calls",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #
    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        connections = settings.connection_descriptors
        return {
            "status": "healthy",
            "version": VERSION,
            "model": settings.default_model,
            "connections": len(connections),
            "mode": str(resolve_mode(connections, settings.offline_mode, backend_available=bool(settings.backend_url))),
        }

    # ------------------------------------------------------------------ #
    # Conversations
    # ------------------------------------------------------------------ #
    @app.post("/api/conversations/{conversation_id}/messages")
    async def send_message(
        conversation_id: str,
        body: SendMessageRequest,
        engine: SessionOrchestrator = Depends(get_orchestrator),
    ):
        """Send a user message and return the finished turn."""
        if body.memory is not None:
            engine.set_memory_context(conversation_id, body.memory)

        try:
            result = await engine.send(conversation_id, body.content)
        except ConnectionUnavailable as e:
            raise HTTPException(status_code=503, detail=e.message)
        except ConversationBusy as e:
            raise HTTPException(status_code=409, detail=e.message)
        except TransportError as e:
            raise HTTPException(status_code=502, detail=e.message)

        return result.to_dict()

    @app.post("/api/conversations/{conversation_id}/cancel")
    async def cancel_conversation(
        conversation_id: str,
        engine: SessionOrchestrator = Depends(get_orchestrator),
    ):
        """Abort the conversation's active stream."""
        return {"conversation_id": conversation_id, "cancelled": engine.cancel(conversation_id)}

    @app.get("/api/conversations/{conversation_id}/messages")
    async def list_messages(
        conversation_id: str,
        engine: SessionOrchestrator = Depends(get_orchestrator),
    ):
        """List the conversation's messages, loading them from the store if needed."""
        messages = engine.get_messages(conversation_id)
        if not messages and not engine.is_active(conversation_id):
            messages = await engine.load_history(conversation_id)
        return {
            "conversation_id": conversation_id,
            "messages": [message_to_dict(m) for m in messages],
        }

    @app.get("/api/conversations/{conversation_id}/budget")
    async def get_budget(
        conversation_id: str,
        engine: SessionOrchestrator = Depends(get_orchestrator),
    ):
        """Current context window usage."""
        return {"conversation_id": conversation_id, **engine.budget(conversation_id).to_dict()}

    return app
