"""API module for HTTP routes and WebSocket handlers.

This module exposes the FastAPI routers for the scaffold generation backend.
"""

from api.routes import get_run_manager, router
from api.websocket import websocket_router

__all__ = ["get_run_manager", "router", "websocket_router"]
