import fakeredis
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from redis_rate_limiter import RedisRateLimiter


@pytest.fixture
def limited_app():
    app = FastAPI()
    app.add_middleware(
        RedisRateLimiter,
        redis_client=fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True),
        requests_per_minute_ip=3,
        requests_per_minute_user=2,
    )

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return TestClient(app)


def test_ip_limit(limited_app):
    statuses = [limited_app.get("/ping").status_code for _ in range(4)]

    assert statuses == [200, 200, 200, 429]


def test_limit_response_shape(limited_app):
    for _ in range(3):
        limited_app.get("/ping")

    response = limited_app.get("/ping")

    assert response.json()["code"] == "rate_limited"
    assert response.headers["Retry-After"] == "60"


def test_user_limit_is_tighter(limited_app):
    headers = {"Authorization": "Bearer customer-token-123"}

    statuses = [limited_app.get("/ping", headers=headers).status_code for _ in range(3)]

    assert statuses == [200, 200, 429]


def test_exempt_paths_are_not_limited(limited_app):
    statuses = [limited_app.get("/health").status_code for _ in range(5)]

    assert statuses == [200] * 5


def test_fails_open_when_redis_is_down():
    server = fakeredis.FakeServer()
    server.connected = False
    app = FastAPI()
    app.add_middleware(
        RedisRateLimiter,
        redis_client=fakeredis.FakeRedis(server=server),
        requests_per_minute_ip=1,
    )

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    client = TestClient(app)

    assert [client.get("/ping").status_code for _ in range(3)] == [200, 200, 200]
