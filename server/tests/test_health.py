"""
Tests for the health, readiness and metrics endpoints.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from routers import health
from room import RoomManager


@pytest.fixture
def client():
    app = FastAPI()
    app.include_router(health.router)
    yield TestClient(app)
    health.set_health_dependencies()


class TestHealthEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready_without_redis(self, client):
        health.set_health_dependencies()
        body = client.get("/ready").json()
        assert body["status"] == "ok"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_ready_with_unreachable_redis(self, client):
        redis_client = AsyncMock()
        redis_client.ping.side_effect = RedisConnectionError("refused")
        health.set_health_dependencies(redis_client=redis_client)

        response = client.get("/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"

    def test_metrics(self, client):
        rm = RoomManager()
        room = rm.create_room("Ann", player_id="ann")
        rm.join_room(room.code, "Bo", player_id="bo")
        health.set_health_dependencies(room_manager=rm)

        body = client.get("/metrics").json()

        assert body["active_rooms"] == 1
        assert body["total_players"] == 2
        assert body["matches_in_progress"] == 0
