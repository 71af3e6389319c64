"""
FastAPI application with WebSocket streaming for the ISO New England assistant.

This is the main entry point for the API.
Run with: uvicorn iso_assistant.api.main:app --reload --port 8000
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from iso_assistant.api.routes import chat, conversations, health
from iso_assistant.api.services.agent_service import service
from iso_assistant.config import CORS_ALLOW_ORIGINS, STORAGE_BACKEND
from iso_assistant.errors import AuthError, StorageError, ThreadBusyError
from iso_assistant.logging_config import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging on startup; wait for in-flight turns on shutdown."""
    configure_logging()
    logger.info(
        "api_starting",
        storage_backend=STORAGE_BACKEND,
        rest="http://localhost:8000",
        websocket="ws://localhost:8000/ws/chat",
        docs="http://localhost:8000/docs",
    )
    # The agent itself initializes lazily on the first request
    yield
    await service.shutdown()


app = FastAPI(
    title="ISO New England Assistant API",
    description="Streaming retrieval-augmented chat over the ISO New England corpus",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS configuration for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register REST routes
app.include_router(health.router, prefix="/api", tags=["health"])
app.include_router(conversations.router, prefix="/api", tags=["conversations"])

# Register chat routes (REST + WebSocket)
app.include_router(chat.router, tags=["chat"])


# ============================================================================
# ERROR HANDLERS
# ============================================================================


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": "not_authenticated"},
        headers={"WWW-Authenticate": "ApiKey"},
    )


@app.exception_handler(ThreadBusyError)
async def thread_busy_handler(request: Request, exc: ThreadBusyError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"error": "thread_busy", "interaction_id": exc.interaction_id},
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("request_storage_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "storage_unavailable"},
    )
