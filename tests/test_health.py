"""Health check endpoint test."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from marketplace import redis as redis_client


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient) -> None:
    with patch("marketplace.redis.ping", AsyncMock(return_value=True)):
        resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "redis": "ok"}


@pytest.mark.asyncio
async def test_health_reports_redis_outage(client: AsyncClient) -> None:
    with patch("marketplace.redis.ping", AsyncMock(return_value=False)):
        resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["redis"] == "unavailable"


@pytest.mark.asyncio
async def test_ping_swallows_connection_errors() -> None:
    fake = MagicMock()
    fake.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
    fake.aclose = AsyncMock()
    with patch("marketplace.redis.aioredis.Redis", return_value=fake):
        assert await redis_client.ping() is False
    fake.aclose.assert_awaited_once()
