"""
Configuration constants for the ISO New England assistant
"""

import os
from psycopg.rows import dict_row

__all__ = [
    # Ollama configuration
    "LLM_MODEL",
    "LLM_TEMPERATURE",
    "EMBEDDINGS_MODEL",
    "OLLAMA_BASE_URL",
    # PostgreSQL configuration
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "POSTGRES_HOST",
    "POSTGRES_PORT",
    "POSTGRES_DB",
    "DATABASE_URL",
    "DB_CONNECTION_KWARGS",
    "DB_POOL_MAX_SIZE",
    "STORAGE_BACKEND",
    # PGVector configuration
    "VECTOR_DIMENSION",
    "VECTOR_COLLECTION_NAME",
    # Retriever configuration
    "RETRIEVER_K",
    "RETRIEVER_FETCH_K",
    "RETRIEVER_MIN_SIMILARITY",
    "RETRIEVER_TOOL_NAME",
    # Agent loop configuration
    "AGENT_MAX_TOOL_CALLS",
    "REASONING_MAX_ATTEMPTS",
    "TOOL_MAX_ATTEMPTS",
    "TOOL_RETRY_BACKOFF_SECONDS",
    "TOOL_RETRY_BACKOFF_MAX_SECONDS",
    "TURN_TIMEOUT_SECONDS",
    "MAX_HISTORY_MESSAGES",
    # Conversation threads
    "DEFAULT_THREAD_NAME",
    "HISTORY_DEFAULT_LIMIT",
    # Streaming relay
    "RELAY_SUBSCRIBER_QUEUE_SIZE",
    "STATUS_FINDING_MATCHES",
    # User-visible fallback messages
    "GENERATION_ERROR_MESSAGE",
    "TIMEOUT_ERROR_MESSAGE",
    "STORAGE_ERROR_MESSAGE",
    # API / authentication
    "API_KEYS",
    "API_KEY_HEADER",
    "API_KEY_QUERY_PARAM",
    "CORS_ALLOW_ORIGINS",
    # Logging
    "LOG_LEVEL",
    "LOG_FORMAT",
    "LOG_INCLUDE_TIMESTAMP",
]

# ============================================================================
# OLLAMA CONFIGURATION
# ============================================================================

# LLM Model (must support tool calling)
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-oss:20b")
LLM_TEMPERATURE = 0

# Embeddings Model
EMBEDDINGS_MODEL = "nomic-embed-text:latest"

# Ollama Base URL (adjust if Ollama runs on different host/port)
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")

# ============================================================================
# POSTGRES CONFIGURATION
# ============================================================================

# Database connection details
POSTGRES_USER = os.getenv("POSTGRES_USER", "postgres")
POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
POSTGRES_HOST = os.getenv("POSTGRES_HOST", "localhost")
POSTGRES_PORT = int(os.getenv("POSTGRES_PORT", "5432"))
POSTGRES_DB = os.getenv("POSTGRES_DB", "iso_assistant")

DATABASE_URL = f"postgresql://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}"

# Connection pool settings
DB_CONNECTION_KWARGS = {
    "autocommit": True,
    "prepare_threshold": 0,
    "row_factory": dict_row,
}
DB_POOL_MAX_SIZE = 20

# "postgres" for durable storage, "memory" for local development without a database
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "postgres")

# ============================================================================
# PGVECTOR CONFIGURATION
# ============================================================================

# nomic-embed-text produces 768-dimensional vectors
VECTOR_DIMENSION = 768

# Collection populated by the ingestion pipeline
VECTOR_COLLECTION_NAME = "iso_ne_docs"

# ============================================================================
# RETRIEVER CONFIGURATION
# ============================================================================

# Number of passages handed to the model per tool call
RETRIEVER_K = 4

# Candidates fetched from the index before de-duplication by source url
RETRIEVER_FETCH_K = 12

# Cosine similarity floor; passages below it are never returned
RETRIEVER_MIN_SIMILARITY = 0.3

RETRIEVER_TOOL_NAME = "iso_context_retriever"

# ============================================================================
# AGENT LOOP CONFIGURATION
# ============================================================================

# Retrieval calls allowed per turn before the model is forced to answer
AGENT_MAX_TOOL_CALLS = 3

# Attempts to get a recognisable action out of the model
REASONING_MAX_ATTEMPTS = 2

# Attempts per tool call (1 = no retry)
TOOL_MAX_ATTEMPTS = 2

# Exponential backoff between tool attempts
TOOL_RETRY_BACKOFF_SECONDS = 0.5
TOOL_RETRY_BACKOFF_MAX_SECONDS = 4.0

# Wall-clock bound for a whole turn, tool retries included
TURN_TIMEOUT_SECONDS = float(os.getenv("TURN_TIMEOUT_SECONDS", "120"))

# Most recent messages sent to the model (cut on a user message boundary)
MAX_HISTORY_MESSAGES = 20

# ============================================================================
# CONVERSATION THREADS
# ============================================================================

# Thread name used when the client does not pick one
DEFAULT_THREAD_NAME = "default"

# Turns returned by the history endpoint when no limit is given
HISTORY_DEFAULT_LIMIT = 20

# ============================================================================
# STREAMING RELAY
# ============================================================================

# Events buffered per subscriber before it is considered too slow and dropped
RELAY_SUBSCRIBER_QUEUE_SIZE = 1000

STATUS_FINDING_MATCHES = "Finding matches..."

# ============================================================================
# USER-VISIBLE FALLBACK MESSAGES
# ============================================================================

GENERATION_ERROR_MESSAGE = (
    "I'm sorry, something went wrong while generating a response. Please try again."
)
TIMEOUT_ERROR_MESSAGE = (
    "I'm sorry, this answer took too long to generate. Please try again."
)
STORAGE_ERROR_MESSAGE = (
    "I'm sorry, the conversation could not be saved. Please try again."
)

# ============================================================================
# API / AUTHENTICATION
# ============================================================================


def _parse_api_keys(raw: str) -> dict:
    """Parse "key1:user1,key2:user2" into {key: user_id}."""
    keys = {}
    for item in raw.split(","):
        item = item.strip()
        if not item or ":" not in item:
            continue
        key, user_id = item.split(":", 1)
        if key.strip() and user_id.strip():
            keys[key.strip()] = user_id.strip()
    return keys


# API key -> user id. The identity provider issues the keys.
API_KEYS = _parse_api_keys(os.getenv("API_KEYS", ""))
API_KEY_HEADER = "X-API-Key"
API_KEY_QUERY_PARAM = "api_key"

CORS_ALLOW_ORIGINS = [
    "http://localhost:5173",  # Vite dev server
    "http://localhost:3000",  # Next.js dev server
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]

# ============================================================================
# LOGGING
# ============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# "json" for production, "console" for development
LOG_FORMAT = os.getenv("LOG_FORMAT", "console")

LOG_INCLUDE_TIMESTAMP = True
