"""Shared FastAPI dependencies."""

from fastapi import Header, Request

from app.core.security import require_admin_token
from app.services.daraja import DarajaClient, build_daraja_client
from app.services.stk_request import PushRequestBuilder


def get_daraja_client(request: Request) -> DarajaClient:
    """Process-wide client so the cached access token is shared across requests."""
    client = getattr(request.app.state, "daraja_client", None)
    if client is None:
        client = build_daraja_client()
        request.app.state.daraja_client = client
    return client


def get_push_builder() -> PushRequestBuilder:
    return PushRequestBuilder.from_settings()


def get_redis(request: Request):
    """Redis for the initiation throttle; None when not configured at startup."""
    return getattr(request.app.state, "redis", None)


async def require_operator(x_admin_token: str | None = Header(None, alias="X-Admin-Token")) -> str:
    """Dependency: operator endpoints need the shared ADMIN_API_TOKEN."""
    return require_admin_token(x_admin_token)
