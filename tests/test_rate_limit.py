"""Tests for rate limiting (marketplace/auth/rate_limit.py) with Redis mocked out."""

import uuid
from unittest.mock import AsyncMock

import pytest
from fastapi import HTTPException
from httpx import AsyncClient
from starlette.requests import Request
from starlette.responses import Response

from marketplace.auth.rate_limit import _get_rate_config, _token_subject, check_rate_limit
from marketplace.main import app
from marketplace.models.user import UserRole
from marketplace.redis import get_redis
from tests.conftest import auth_headers, make_token, send_event


def _request(method: str, path: str, headers: dict[str, str] | None = None) -> Request:
    return Request({
        "type": "http",
        "method": method,
        "path": path,
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": ("10.0.0.1", 52000),
    })


def _redis(allowed: int, remaining: int, retry_after: int) -> AsyncMock:
    redis = AsyncMock()
    redis.eval.return_value = [allowed, remaining, retry_after]
    return redis


def test_rate_categories() -> None:
    assert _get_rate_config("GET", "/projects/abc")[2] == "read"
    assert _get_rate_config("POST", "/projects")[2] == "write"
    assert _get_rate_config("DELETE", "/projects/abc/milestones/def")[2] == "write"
    assert _get_rate_config("POST", "/escrow/abc/milestones/def/release")[2] == "money"
    assert _get_rate_config("POST", "/escrow/abc/refund")[2] == "money"
    assert _get_rate_config("POST", "/disputes/abc/resolve")[2] == "money"
    # Reading money endpoints is not a money operation.
    assert _get_rate_config("GET", "/escrow/abc/audit")[2] == "read"


def test_token_subject_is_read_without_verification() -> None:
    user_id = uuid.uuid4()
    token = make_token(user_id, UserRole.EMPLOYER)
    assert _token_subject(f"Bearer {token}") == str(user_id)
    assert _token_subject("Bearer not-a-token") is None
    assert _token_subject("Basic abc") is None
    assert _token_subject("") is None


@pytest.mark.asyncio
async def test_allowed_request_sets_headers_and_keys_by_subject() -> None:
    user_id = uuid.uuid4()
    request = _request(
        "POST", "/escrow/e/refund", {"Authorization": f"Bearer {make_token(user_id, UserRole.ADMIN)}"}
    )
    response = Response()
    redis = _redis(1, 9, 0)

    await check_rate_limit(request, response, redis=redis)

    assert redis.eval.await_args.args[2] == f"ratelimit:{user_id}:money"
    assert response.headers["X-RateLimit-Limit"] == "10"
    assert response.headers["X-RateLimit-Remaining"] == "9"


@pytest.mark.asyncio
async def test_anonymous_requests_keyed_by_forwarded_ip() -> None:
    request = _request("GET", "/projects/p", {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
    redis = _redis(1, 5, 0)
    await check_rate_limit(request, Response(), redis=redis)
    assert redis.eval.await_args.args[2] == "ratelimit:ip:203.0.113.7:read"


@pytest.mark.asyncio
async def test_denied_request_raises_429_with_retry_after() -> None:
    request = _request("POST", "/projects")
    with pytest.raises(HTTPException) as excinfo:
        await check_rate_limit(request, Response(), redis=_redis(0, 0, 5))
    assert excinfo.value.status_code == 429
    assert excinfo.value.detail == "Rate limit exceeded"
    assert excinfo.value.headers == {"Retry-After": "5"}


@pytest.mark.asyncio
async def test_rate_limit_enforced_over_http(client: AsyncClient, freelancer) -> None:
    app.dependency_overrides.pop(check_rate_limit)
    app.dependency_overrides[get_redis] = lambda: _redis(0, 0, 7)

    resp = await client.get("/users/me", headers=auth_headers(freelancer))
    assert resp.status_code == 429
    assert resp.headers["retry-after"] == "7"

    # Processor webhooks are never throttled.
    resp = await send_event(client, {"id": "evt_rl", "type": "charge.captured", "data": {"object": {}}})
    assert resp.status_code == 200
