"""
API Key authentication for FastAPI.

Provides:
- Header-based authentication (X-API-Key) for REST endpoints
- Query parameter authentication (api_key) for WebSocket endpoints

Each key maps to the user id it was issued for; requests are always
attributed to that user.
"""

from typing import Optional

from fastapi import Request, Security, WebSocket
from fastapi.security import APIKeyHeader

from iso_assistant.config import API_KEYS, API_KEY_HEADER, API_KEY_QUERY_PARAM
from iso_assistant.errors import AuthError
from iso_assistant.logging_config import get_logger

logger = get_logger(__name__)

# API Key security scheme for OpenAPI documentation
api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def resolve_user(provided_key: Optional[str]) -> str:
    """
    Map an API key to its user id.

    Raises:
        AuthError: Missing or unknown key
    """
    if not provided_key:
        raise AuthError(f"API key is required. Provide {API_KEY_HEADER} header.")

    user_id = API_KEYS.get(provided_key)
    if user_id is None:
        logger.warning("auth_invalid_api_key")
        raise AuthError("Invalid API key")
    return user_id


async def require_user(request: Request, api_key: Optional[str] = Security(api_key_header)) -> str:
    """FastAPI dependency returning the authenticated user id."""
    return resolve_user(api_key or request.headers.get(API_KEY_HEADER))


async def authenticate_websocket(websocket: WebSocket) -> Optional[str]:
    """
    Authenticate a WebSocket handshake.

    Browsers cannot set headers on the WebSocket handshake, so the key comes
    from the api_key query parameter.

    Returns:
        The user id, or None if the connection was closed with code 4001
    """
    try:
        return resolve_user(websocket.query_params.get(API_KEY_QUERY_PARAM))
    except AuthError as e:
        await websocket.close(code=4001, reason=str(e))
        return None
