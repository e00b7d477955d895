"""Tests for health probes and API error mapping."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.routes import health
from app.core.errors import (
    GatewayReadError,
    InvalidTransitionError,
    NotFoundError,
    TransactionAbortedError,
)
from app.main import slot_engine_exception_handler


@pytest.fixture
def client():
    app = FastAPI()
    app.include_router(health.router)
    return TestClient(app)


def probes(db: bool, redis: bool):
    return (
        patch("app.api.routes.health.check_db_health", new=AsyncMock(return_value=db)),
        patch("app.api.routes.health.check_redis_health", new=AsyncMock(return_value=redis)),
    )


class TestHealthRoutes:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["version"] == health.VERSION

    def test_ready(self, client):
        db, redis = probes(True, True)
        with db, redis:
            response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"] == {"database": "ok", "redis": "ok"}

    def test_not_ready(self, client):
        db, redis = probes(True, False)
        with db, redis:
            response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"
        assert response.json()["checks"]["redis"] == "failed"

    def test_live_reports_uptime(self, client):
        health.set_start_time()

        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["uptime_seconds"] >= 0

    def test_detailed_hides_secrets(self, client):
        db, redis = probes(True, True)
        with db, redis:
            response = client.get("/health/detailed")

        assert response.status_code == 200
        config = response.json()["config"]
        assert "clinic_timezone" in config
        assert not any("token" in key for key in config)


class TestErrorMapping:

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,status_code",
        [
            (NotFoundError("Appointment a1 not found", org_id="org"), 404),
            (InvalidTransitionError("Pending", "Pending", slot_id="s1"), 422),
            (TransactionAbortedError("conflict"), 409),
            (GatewayReadError("Conversation CH1 could not be read", org_id="org"), 503),
        ],
    )
    async def test_status_codes(self, error, status_code):
        response = await slot_engine_exception_handler(None, error)

        assert response.status_code == status_code
        assert json.loads(response.body)["error"] == error.code
