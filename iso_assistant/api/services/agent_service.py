"""
Agent Service - wires the storage backends, model, relay and orchestrator
together for the API.

Initialization is lazy so the API starts quickly; the first request (or
WebSocket connection) opens the database pool and builds the agent.
"""

import asyncio
from typing import Any, Dict, Optional

import httpx
from langchain_ollama import ChatOllama, OllamaEmbeddings

from iso_assistant.agent_loop import AgentLoop
from iso_assistant.checkpoint_store import InMemoryCheckpointStore, PostgresCheckpointStore
from iso_assistant.config import (
    EMBEDDINGS_MODEL,
    LLM_MODEL,
    LLM_TEMPERATURE,
    OLLAMA_BASE_URL,
    STORAGE_BACKEND,
    VECTOR_COLLECTION_NAME,
)
from iso_assistant.conversation_log import InMemoryConversationLog, PostgresConversationLog
from iso_assistant.database import Database
from iso_assistant.logging_config import get_logger
from iso_assistant.relay import StreamingRelay
from iso_assistant.retrieval_tool import RetrievalTool
from iso_assistant.session import SessionOrchestrator
from iso_assistant.vector_store import InMemoryPassageIndex, PgVectorPassageIndex

logger = get_logger(__name__)


class AgentService:
    """
    Owns the long-lived components shared by every request.

    Attributes:
        relay: Channel fan-out for streamed events
        orchestrator: Runs turns (set once initialized)
        database: Shared pool, or None with the in-memory backend
    """

    def __init__(self, storage_backend: str = STORAGE_BACKEND) -> None:
        self.storage_backend = storage_backend
        self.relay = StreamingRelay()
        self.orchestrator: Optional[SessionOrchestrator] = None
        self.database: Optional[Database] = None
        self._initialized = False
        self._lock = asyncio.Lock()

    @classmethod
    def from_components(
        cls,
        orchestrator: SessionOrchestrator,
        relay: StreamingRelay,
        database: Optional[Database] = None,
    ) -> "AgentService":
        """Build an already-initialized service around existing components."""
        service = cls(storage_backend="postgres" if database else "memory")
        service.orchestrator = orchestrator
        service.relay = relay
        service.database = database
        service._initialized = True
        return service

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def ensure_initialized(self) -> None:
        """Initialize the agent if not already done."""
        async with self._lock:
            if not self._initialized:
                await self._initialize()
                self._initialized = True

    async def _initialize(self) -> None:
        logger.info("agent_service_initializing", storage_backend=self.storage_backend, model=LLM_MODEL)

        llm = ChatOllama(model=LLM_MODEL, base_url=OLLAMA_BASE_URL, temperature=LLM_TEMPERATURE)
        embeddings = OllamaEmbeddings(model=EMBEDDINGS_MODEL, base_url=OLLAMA_BASE_URL)

        if self.storage_backend == "memory":
            conversation_log = InMemoryConversationLog()
            checkpoints = InMemoryCheckpointStore()
            index = InMemoryPassageIndex(embeddings)
        else:
            database = Database()
            await database.open()
            await database.setup_schema()
            self.database = database
            conversation_log = PostgresConversationLog(database)
            checkpoints = PostgresCheckpointStore(database)
            index = PgVectorPassageIndex(embeddings, VECTOR_COLLECTION_NAME, database)

        agent_loop = AgentLoop(llm, RetrievalTool(index), checkpoints)
        self.orchestrator = SessionOrchestrator(
            conversation_log, checkpoints, agent_loop, self.relay, database=self.database
        )
        logger.info("agent_service_ready")

    async def shutdown(self) -> None:
        if self.orchestrator is not None:
            await self.orchestrator.wait_idle()
        if self.database is not None:
            await self.database.close()
        logger.info("agent_service_stopped")

    async def health(self) -> Dict[str, Any]:
        """Health of the service and its dependencies."""
        status: Dict[str, Any] = {
            "status": "ok",
            "storage_backend": self.storage_backend,
            "initialized": self._initialized,
            "postgres": None,
            "ollama": False,
            "subscribers": self.relay.subscriber_count(),
        }

        if self.database is not None:
            status["postgres"] = await self.database.ping()

        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(f"{OLLAMA_BASE_URL}/api/tags", timeout=5.0)
                status["ollama"] = response.status_code == 200
        except httpx.HTTPError as e:
            status["ollama_error"] = str(e)

        if status["postgres"] is False or not status["ollama"]:
            status["status"] = "degraded"
        return status


# Global service instance
service = AgentService()


def get_service() -> AgentService:
    """The service instance, without initializing it."""
    return service


async def get_agent_service() -> AgentService:
    """FastAPI dependency returning the initialized service."""
    await service.ensure_initialized()
    return service
