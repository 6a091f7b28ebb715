"""Shared FastAPI dependencies for objects owned by the app, not the request."""

from fastapi import Request

from ripple.bus.publisher import ConnectionManager, EventPublisher


def get_publisher(request: Request) -> EventPublisher:
    """The app's publisher (created in create_app, connected in lifespan)."""
    return request.app.state.publisher


def get_connection(request: Request) -> ConnectionManager:
    return request.app.state.connection
