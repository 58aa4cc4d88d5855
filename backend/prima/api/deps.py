"""Request-scoped dependencies for the API routes."""

from fastapi import Request

from prima.services.engine import ReminderEngine


def get_engine(request: Request) -> ReminderEngine:
    """The engine built in the startup hook and stored on ``app.state``."""
    return request.app.state.engine
