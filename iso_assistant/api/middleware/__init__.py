"""API middleware components."""

from iso_assistant.api.middleware.auth import authenticate_websocket, require_user

__all__ = ["authenticate_websocket", "require_user"]
