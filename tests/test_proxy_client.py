"""Tests for the proxy client: retries, error mapping, caching and envelopes."""
import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from circuitbreaker import CircuitBreaker

from llm_control_plane.errors import ErrorCode, ProxyRequestError, ProxyUnavailableError
from llm_control_plane.schemas.proxy import KeyGenerationRequest
from llm_control_plane.services.cache_service import TTLCache
from llm_control_plane.services.proxy_client import ProxyClient, normalize_key_info, normalize_user_info

from helpers import proxy_model


def _client(handler, **kwargs) -> ProxyClient:
    kwargs.setdefault("retry_attempts", 3)
    kwargs.setdefault("mock_mode", False)
    return ProxyClient(
        base_url="http://proxy.test",
        api_key="master",
        retry_delay=0,
        cache=TTLCache(),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestEnvelopeNormalization:
    """Key and user info come in flat and nested shapes depending on proxy version."""

    def test_key_info_nested(self):
        info = normalize_key_info({"key": "sk-abc", "info": {"spend": 1.5, "models": ["gpt-4o"]}})
        assert info.key == "sk-abc"
        assert info.spend == 1.5
        assert info.models == ["gpt-4o"]

    def test_key_info_flat_defaults(self):
        info = normalize_key_info({"key_alias": "ci", "spend": None}, key="sk-xyz")
        assert info.key == "sk-xyz"
        assert info.spend == 0.0
        assert info.models == []

    def test_user_info_team_objects(self):
        info = normalize_user_info({"user_id": "u1", "user_info": {"teams": [{"team_id": "t1"}, "t2"]}})
        assert info.user_id == "u1"
        assert info.teams == ["t1", "t2"]
        assert info.exists

    def test_user_info_without_teams_does_not_exist(self):
        assert not normalize_user_info({"user_id": "ghost", "teams": []}).exists


class TestRequestErrors:

    @pytest.mark.asyncio
    async def test_retries_5xx_then_succeeds(self):
        attempts = []

        def handler(request):
            attempts.append(request.url.path)
            if len(attempts) < 3:
                return httpx.Response(503, json={"error": "busy"})
            return httpx.Response(200, json={"data": []})

        client = _client(handler)
        assert await client.request("/model/info") == {"data": []}
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_4xx_is_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            return httpx.Response(400, json={"detail": "bad request body"})

        client = _client(handler)
        with pytest.raises(ProxyRequestError) as exc_info:
            await client.request("/key/generate", method="POST", body={})

        assert len(attempts) == 1
        assert exc_info.value.status_code == 400
        assert "bad request body" in exc_info.value.message
        assert exc_info.value.http_status == 502

    @pytest.mark.asyncio
    async def test_network_error_exhausts_retries(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        client = _client(handler, retry_attempts=2)
        with pytest.raises(ProxyUnavailableError) as exc_info:
            await client.request("/health/liveness")
        assert exc_info.value.code == ErrorCode.PROXY_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(500, json={"error": "down"})

        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60, expected_exception=ProxyUnavailableError)
        client = _client(handler, retry_attempts=1, breaker=breaker)

        for _ in range(2):
            with pytest.raises(ProxyUnavailableError):
                await client.request("/model/info")
        with pytest.raises(ProxyUnavailableError) as exc_info:
            await client.request("/model/info")

        assert len(calls) == 2
        assert "circuit breaker" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_half_open_trial_closes_or_reopens(self):
        statuses = [500, 500, 200, 500, 500, 500]
        calls = []

        def handler(request):
            calls.append(1)
            status = statuses.pop(0)
            return httpx.Response(status, json={"data": []} if status == 200 else {"error": "down"})

        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=1, expected_exception=ProxyUnavailableError)
        client = _client(handler, retry_attempts=1, breaker=breaker)

        for _ in range(2):
            with pytest.raises(ProxyUnavailableError):
                await client.request("/model/info")
        assert breaker.state == "open"

        await asyncio.sleep(1.1)
        assert breaker.state == "half_open"
        assert await client.request("/model/info") == {"data": []}
        assert breaker.state == "closed"
        assert breaker.failure_count == 0

        for _ in range(2):
            with pytest.raises(ProxyUnavailableError):
                await client.request("/model/info")
        await asyncio.sleep(1.1)
        with pytest.raises(ProxyUnavailableError):
            await client.request("/model/info")
        assert breaker.state == "open"

        with pytest.raises(ProxyUnavailableError) as exc_info:
            await client.request("/model/info")
        assert "circuit breaker" in exc_info.value.message
        assert len(calls) == 6

    @pytest.mark.asyncio
    async def test_retry_delay_grows_linearly(self):
        def handler(request):
            return httpx.Response(503, json={"error": "busy"})

        client = ProxyClient(
            base_url="http://proxy.test",
            api_key="master",
            retry_attempts=3,
            retry_delay=0.5,
            mock_mode=False,
            cache=TTLCache(),
            transport=httpx.MockTransport(handler),
        )
        with patch("llm_control_plane.services.proxy_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(ProxyUnavailableError):
                await client.request("/key/info")

        assert [call.args[0] for call in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_empty_model_list_marker_is_not_an_error(self):
        def handler(request):
            return httpx.Response(500, json={"error": {"message": "LLM Model List not loaded in"}})

        client = _client(handler)
        assert await client.get_models(refresh=True) == []


class TestModels:

    @pytest.mark.asyncio
    async def test_get_models_uses_cache(self, proxy_client, fake_proxy):
        fake_proxy.models = [proxy_model("gpt-4o")]

        first = await proxy_client.get_models()
        fake_proxy.models = []
        second = await proxy_client.get_models()
        refreshed = await proxy_client.get_models(refresh=True)

        assert [m["model_name"] for m in first] == ["gpt-4o"]
        assert second == first
        assert refreshed == []

    @pytest.mark.asyncio
    async def test_stale_models_served_when_proxy_down(self, fake_proxy):
        cache = TTLCache()
        client = ProxyClient(
            base_url="http://proxy.test",
            retry_attempts=1,
            retry_delay=0,
            mock_mode=False,
            cache=cache,
            transport=httpx.MockTransport(fake_proxy),
        )
        fake_proxy.models = [proxy_model("gpt-4o")]
        await client.get_models()

        fake_proxy.fail[("GET", "/model/info")] = 503
        models = await client.get_models(refresh=True)

        assert [m["model_name"] for m in models] == ["gpt-4o"]

    @pytest.mark.asyncio
    async def test_rejected_request_is_not_masked_by_stale_models(self, fake_proxy):
        cache = TTLCache()
        client = ProxyClient(
            base_url="http://proxy.test",
            retry_attempts=1,
            retry_delay=0,
            mock_mode=False,
            cache=cache,
            transport=httpx.MockTransport(fake_proxy),
        )
        fake_proxy.models = [proxy_model("gpt-4o")]
        await client.get_models()

        fake_proxy.fail[("GET", "/model/info")] = 400
        with pytest.raises(ProxyRequestError) as exc_info:
            await client.get_models(refresh=True)
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_cache_counts_hits_and_misses(self, fake_proxy):
        cache = TTLCache()
        client = ProxyClient(
            base_url="http://proxy.test",
            retry_attempts=1,
            retry_delay=0,
            mock_mode=False,
            cache=cache,
            transport=httpx.MockTransport(fake_proxy),
        )
        fake_proxy.models = [proxy_model("gpt-4o")]

        await client.get_models()
        await client.get_models()

        stats = cache.stats()
        assert stats["misses"] == 1
        assert stats["hits"] == 1
        assert stats["size"] == 1

    @pytest.mark.asyncio
    async def test_get_model_by_external_id(self, proxy_client, fake_proxy):
        fake_proxy.models = [proxy_model("gpt-4o", external_id="abc-123")]
        model = await proxy_client.get_model_by_id("abc-123")
        assert model["model_name"] == "gpt-4o"


class TestKeys:

    @pytest.mark.asyncio
    async def test_generate_and_info(self, proxy_client, fake_proxy):
        generated = await proxy_client.generate_key(
            KeyGenerationRequest(key_alias="ci_1234abcd", models=["gpt-4o"], max_budget=50, user_id="u1")
        )
        info = await proxy_client.get_key_info(generated.key)

        assert generated.key.startswith("sk-")
        assert info.models == ["gpt-4o"]
        assert info.max_budget == 50
        assert fake_proxy.calls_to("POST", "/key/generate")[0]["metadata"] == {}

    @pytest.mark.asyncio
    async def test_delete_absent_key_is_success(self, proxy_client):
        assert await proxy_client.delete_key("sk-never-issued") is False

    @pytest.mark.asyncio
    async def test_unknown_user_is_absent(self, proxy_client, fake_proxy):
        assert await proxy_client.user_exists("nobody") is False
        fake_proxy.users.add("somebody")
        assert await proxy_client.user_exists("somebody") is True

    @pytest.mark.asyncio
    async def test_update_user_limits(self, proxy_client, fake_proxy):
        fake_proxy.users.add("u1")
        await proxy_client.update_user("u1", max_budget=25, tpm_limit=1000)

        assert fake_proxy.calls_to("POST", "/user/update") == [
            {"user_id": "u1", "max_budget": 25, "tpm_limit": 1000}
        ]
        with pytest.raises(ProxyRequestError):
            await proxy_client.update_user("nobody", max_budget=5)

    @pytest.mark.asyncio
    async def test_unknown_team_is_absent(self, proxy_client):
        assert await proxy_client.team_exists("missing-team") is False


class TestHealthAndUsage:

    @pytest.mark.asyncio
    async def test_health_never_raises(self, fake_proxy):
        fake_proxy.fail[("GET", "/health/liveness")] = 503
        client = _client(fake_proxy, retry_attempts=1)
        health = await client.get_health()
        assert health["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_health_text_body(self, proxy_client):
        health = await proxy_client.get_health()
        assert health["status"] == "healthy"
        assert health["detail"] == "I'm alive!"

    @pytest.mark.asyncio
    async def test_daily_activity_pages_and_aggregates(self, proxy_client, fake_proxy):
        def day(date, spend, model_spend):
            return {
                "date": date,
                "metrics": {"spend": spend, "total_tokens": 100, "api_requests": 2},
                "breakdown": {"models": {"gpt-4o": {"metrics": {"spend": model_spend, "total_tokens": 100, "api_requests": 2}}}},
            }

        fake_proxy.activity_pages = [
            {"results": [day("2026-01-01", 1.0, 1.0)], "metadata": {"total_spend": 3.0, "total_tokens": 200, "has_more": True}},
            {"results": [day("2026-01-02", 2.0, 2.0)], "metadata": {"has_more": False}},
        ]

        activity = await proxy_client.get_daily_activity(start_date="2026-01-01", end_date="2026-01-02")

        assert activity.pages_fetched == 2
        assert activity.spend == 3.0
        assert activity.total_tokens == 200
        assert len(activity.daily_metrics) == 2
        assert activity.by_model[0].model == "gpt-4o"
        assert activity.by_model[0].spend == 3.0
        assert activity.by_model[0].api_requests == 4

    @pytest.mark.asyncio
    async def test_activity_cache_clear(self, proxy_client, fake_proxy):
        fake_proxy.activity_pages = [{"results": [], "metadata": {"total_spend": 1.0}}]
        await proxy_client.get_daily_activity()
        await proxy_client.get_daily_activity()
        assert len(fake_proxy.calls_to("GET", "/user/daily/activity")) == 1

        await proxy_client.clear_activity_cache()
        await proxy_client.get_daily_activity()
        assert len(fake_proxy.calls_to("GET", "/user/daily/activity")) == 2


class TestMockMode:

    @pytest.mark.asyncio
    async def test_mock_mode_sends_nothing(self):
        def handler(request):
            raise AssertionError("no request expected in mock mode")

        client = _client(handler, mock_mode=True)
        models = await client.get_models()
        generated = await client.generate_key(KeyGenerationRequest(models=["gpt-4o"]))

        assert {m["model_name"] for m in models} == {"gpt-4o", "claude-3-5-sonnet-20241022"}
        assert generated.key.startswith("sk-")
