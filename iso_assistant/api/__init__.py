"""HTTP and WebSocket API for the ISO New England assistant."""
