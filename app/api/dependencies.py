"""FastAPI dependencies for matchflow."""

import hmac
from collections.abc import AsyncGenerator

import redis.asyncio as redis
from fastapi import Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.models.base import async_session_factory
from app.services.automation import WebhookClient


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory (automation runs open one session per phase)."""
    return async_session_factory


async def get_redis() -> AsyncGenerator[redis.Redis, None]:
    """Get Redis client dependency."""
    settings = get_settings()
    client = redis.from_url(settings.redis_url)
    try:
        yield client
    finally:
        await client.aclose()


async def get_webhook_client() -> AsyncGenerator[WebhookClient, None]:
    """Get webhook client dependency."""
    async with WebhookClient(get_settings()) as client:
        yield client


async def require_admin(
    x_api_key: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    """
    Admin/service credential gate.

    Accepts the shared key as ``X-API-Key`` or ``Authorization: Bearer``.
    With no key configured every request is refused.
    """
    expected = get_settings().admin_api_key
    provided = x_api_key
    if not provided and authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()

    if not expected or not provided or not hmac.compare_digest(
        provided.encode(), expected.encode()
    ):
        raise HTTPException(status_code=403, detail="Unauthorized")
