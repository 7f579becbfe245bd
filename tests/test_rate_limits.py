"""Tests for the rate limiter and its use on auth endpoints."""

import pytest
from fastapi.testclient import TestClient

from stayhub import app as app_module
from stayhub.api.routes import _enforce_rate_limit
from stayhub.service.errors import RateLimitedError
from stayhub.service.runtime import check_rate_limit, get_runtime


class TestLocalRateLimit:
    async def test_allows_up_to_limit(self):
        runtime = get_runtime()

        results = [await check_rate_limit(runtime, "login:k", 3, 60) for _ in range(4)]

        assert results == [True, True, True, False]

    async def test_reports_remaining_and_reset(self):
        runtime = get_runtime()

        allowed, remaining, reset = await check_rate_limit(
            runtime, "login:r", 2, 60, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 1, 0)

        await check_rate_limit(runtime, "login:r", 2, 60)
        allowed, remaining, reset = await check_rate_limit(
            runtime, "login:r", 2, 60, return_remaining=True
        )
        assert allowed is False
        assert remaining == 0
        assert reset > 0

    async def test_keys_are_independent(self):
        runtime = get_runtime()

        assert await check_rate_limit(runtime, "a", 1, 60)
        assert await check_rate_limit(runtime, "b", 1, 60)
        assert not await check_rate_limit(runtime, "a", 1, 60)

    async def test_non_positive_limit_disables_check(self):
        runtime = get_runtime()

        assert await check_rate_limit(runtime, "off", 0, 60)


class TestEnforceRateLimit:
    async def test_exhausted_bucket_raises_rate_limited(self):
        runtime = get_runtime()
        info = await _enforce_rate_limit(runtime, "login:x", 1, 60)
        assert info.remaining == 0

        with pytest.raises(RateLimitedError) as excinfo:
            await _enforce_rate_limit(runtime, "login:x", 1, 60)

        assert excinfo.value.status_code == 429
        assert excinfo.value.error_code == "rate_limited"
        assert excinfo.value.detail["retry_after"] > 0


class TestEndpointLimits:
    @pytest.fixture
    def client(self, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "login_rate_limit_per_minute", 2)
        return TestClient(app_module.app)

    def test_login_is_rate_limited(self, client):
        body = {"email": "someone@example.com", "password": "Whatever-1"}

        statuses = [client.post("/api/auth/login", json=body).status_code for _ in range(3)]

        assert statuses == [401, 401, 429]

    def test_rate_limited_response_shape(self, client):
        body = {"email": "someone@example.com", "password": "Whatever-1"}
        for _ in range(2):
            client.post("/api/auth/login", json=body)

        response = client.post("/api/auth/login", json=body)

        error = response.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["details"]["retry_after"] > 0

    def test_limit_is_per_email(self, client):
        for _ in range(2):
            client.post(
                "/api/auth/login", json={"email": "a@example.com", "password": "Whatever-1"}
            )

        response = client.post(
            "/api/auth/login", json={"email": "b@example.com", "password": "Whatever-1"}
        )

        assert response.status_code == 401
