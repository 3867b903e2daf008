# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Client for the LiteLLM-compatible model-serving proxy.

All network interaction with the proxy goes through ``ProxyClient.request``,
which applies, in order:

1. a circuit breaker (``circuitbreaker.CircuitBreaker``, one per client
   instance) that fails fast while the proxy is known to be down,
2. retries with linear backoff (``delay * attempt``) on network errors,
   timeouts and 5xx answers,
3. immediate ``ProxyRequestError`` on 4xx answers (never retried).

Read paths (model list, health, usage) are cached in a per-instance
``TTLCache`` and fall back to stale entries when the proxy is unreachable.
In mock mode no request leaves the process.
"""
import asyncio
import copy
import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from circuitbreaker import CircuitBreaker, CircuitBreakerError

from ..config import settings
from ..errors import ControlPlaneError, ProxyRequestError, ProxyUnavailableError, UnavailableError
from ..schemas.proxy import (
    DailyActivity,
    DailyMetric,
    KeyGenerationRequest,
    KeyGenerationResponse,
    ModelUsage,
    ProxyKeyInfo,
    ProxyUserInfo,
)
from .cache_service import TTLCache

logger = logging.getLogger(__name__)

# Error bodies a fresh proxy returns on /model/info when it has no models
NO_MODELS_MARKERS = ("LLM Model List not loaded in", "No models configured")

# Statuses below 500 that still mean "try again"
RETRYABLE_STATUS_CODES = {408, 429}

ACTIVITY_PAGE_SIZE = 1000
MAX_ACTIVITY_PAGES = 10000

MOCK_MODELS: List[Dict[str, Any]] = [
    {
        "model_name": "gpt-4o",
        "litellm_params": {"model": "openai/gpt-4o", "custom_llm_provider": "openai"},
        "model_info": {
            "id": "mock-gpt-4o-id",
            "max_tokens": 128000,
            "supports_function_calling": True,
            "supports_parallel_function_calling": True,
            "supports_vision": True,
            "supports_tool_choice": True,
            "input_cost_per_token": 0.0000025,
            "output_cost_per_token": 0.00001,
        },
    },
    {
        "model_name": "claude-3-5-sonnet-20241022",
        "litellm_params": {"model": "anthropic/claude-3-5-sonnet-20241022"},
        "model_info": {
            "id": "mock-claude-3-5-sonnet-id",
            "max_tokens": 200000,
            "supports_function_calling": True,
            "supports_parallel_function_calling": False,
            "supports_vision": True,
            "input_cost_per_token": 0.000003,
            "output_cost_per_token": 0.000015,
        },
    },
]


def normalize_key_info(payload: Dict[str, Any], key: Optional[str] = None) -> ProxyKeyInfo:
    """Turn either key-info envelope into one ProxyKeyInfo.

    Newer proxies answer ``{"key": ..., "info": {...}}``, older ones return
    the info object flat.
    """
    if isinstance(payload.get("info"), dict):
        data = dict(payload["info"])
        data.setdefault("key", payload.get("key"))
    else:
        data = dict(payload)
    if key and not data.get("key"):
        data["key"] = key
    data["spend"] = data.get("spend") or 0.0
    data["models"] = data.get("models") or []
    return ProxyKeyInfo.model_validate(data)


def normalize_user_info(payload: Dict[str, Any]) -> ProxyUserInfo:
    """Turn either user-info envelope (flat or ``{"user_info": {...}}``) into one ProxyUserInfo."""
    if isinstance(payload.get("user_info"), dict):
        data = dict(payload["user_info"])
        data.setdefault("user_id", payload.get("user_id"))
    else:
        data = dict(payload)
    teams = data.get("teams") or []
    # Some versions list team objects instead of ids
    data["teams"] = [t.get("team_id") if isinstance(t, dict) else t for t in teams]
    data["spend"] = data.get("spend") or 0.0
    data["models"] = data.get("models") or []
    return ProxyUserInfo.model_validate(data)


def _error_message(payload: Any) -> str:
    """Extract the proxy's message from its several error shapes."""
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        detail = payload.get("detail")
        if isinstance(detail, str):
            return detail
        if isinstance(detail, dict):
            return str(detail.get("error") or detail)
    if isinstance(payload, str) and payload:
        return payload
    return "Unknown error"


class ProxyClient:
    """Resilient async client for the model-serving proxy.

    Construct one per process and share it explicitly; tests build isolated
    instances with their own cache, breaker and ``httpx`` transport.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        mock_mode: Optional[bool] = None,
        cache: Optional[TTLCache] = None,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = (base_url or settings.PROXY_URL).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.PROXY_API_KEY
        self._timeout = timeout if timeout is not None else settings.PROXY_TIMEOUT
        self._retry_attempts = max(1, retry_attempts if retry_attempts is not None else settings.PROXY_RETRY_ATTEMPTS)
        self._retry_delay = retry_delay if retry_delay is not None else settings.PROXY_RETRY_DELAY
        self.mock_mode = mock_mode if mock_mode is not None else settings.PROXY_MOCK_MODE
        self._cache = cache or TTLCache(default_ttl_seconds=settings.PROXY_CACHE_TTL)
        self._breaker = breaker or CircuitBreaker(
            failure_threshold=settings.PROXY_CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=settings.PROXY_CIRCUIT_RECOVERY_TIMEOUT,
            expected_exception=ProxyUnavailableError,
            name=f"model_proxy_{id(self):x}",
        )
        self._guarded_send = self._breaker.decorate(self._send_with_retries)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self):
        """Create the underlying HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json", "Accept": "application/json"}
            if self._api_key:
                headers["x-litellm-api-key"] = self._api_key
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
                transport=self._transport,
            )
            logger.info(
                "Proxy client initialized",
                extra={"base_url": self._base_url, "mock_mode": self.mock_mode, "timeout": self._timeout},
            )

    async def disconnect(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    # ============== Transport ==============

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Send one logical request to the proxy.

        Raises:
            ProxyUnavailableError: circuit open, or retries exhausted
            ProxyRequestError: the proxy answered 4xx
        """
        try:
            return await self._guarded_send(method, endpoint, body, params)
        except CircuitBreakerError as e:
            logger.warning(f"Proxy circuit breaker open, rejecting {method} {endpoint}")
            raise ProxyUnavailableError(
                "Proxy service is temporarily unavailable due to circuit breaker. Please try again later",
                details={"endpoint": endpoint},
            ) from e

    async def _send_with_retries(
        self,
        method: str,
        endpoint: str,
        body: Optional[Dict[str, Any]],
        params: Optional[Dict[str, Any]],
    ) -> Any:
        await self.connect()
        last_error: Optional[ProxyUnavailableError] = None

        for attempt in range(1, self._retry_attempts + 1):
            try:
                response = await self._client.request(method, endpoint, json=body, params=params)
            except httpx.TimeoutException:
                last_error = ProxyUnavailableError(
                    f"Proxy request timed out after {self._timeout}s", details={"endpoint": endpoint}
                )
            except httpx.HTTPError as e:
                last_error = ProxyUnavailableError(
                    f"Proxy unreachable: {e}", details={"endpoint": endpoint}
                )
            else:
                if response.status_code < 400:
                    return self._parse_body(response)

                message = _error_message(self._parse_body(response))
                if (
                    response.status_code == 500
                    and endpoint == "/model/info"
                    and any(marker in message for marker in NO_MODELS_MARKERS)
                ):
                    logger.info("Proxy has no models configured - treating as empty model list")
                    return {"data": []}
                if response.status_code < 500 and response.status_code not in RETRYABLE_STATUS_CODES:
                    raise ProxyRequestError(response.status_code, message, endpoint)
                last_error = ProxyUnavailableError(
                    f"Proxy API error: {response.status_code} - {message}",
                    details={"endpoint": endpoint, "status_code": response.status_code},
                )

            logger.warning(
                f"Proxy request failed (attempt {attempt}/{self._retry_attempts}): "
                f"{method} {endpoint}: {last_error.message}"
            )
            if attempt < self._retry_attempts:
                await asyncio.sleep(self._retry_delay * attempt)

        raise last_error

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return response.text

    # ============== Models ==============

    async def get_models(self, refresh: bool = False, team_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """List models the proxy serves; an empty list is a valid answer."""
        cache_key = f"models:{team_id or 'default'}"

        if not refresh:
            cached = await self._cache.get(cache_key)
            if cached is not None:
                logger.debug("Returning cached models")
                return cached

        if self.mock_mode:
            models = copy.deepcopy(MOCK_MODELS)
            await self._cache.set(cache_key, models)
            return models

        try:
            response = await self.request("/model/info", params={"team_id": team_id} if team_id else None)
        except UnavailableError as e:
            stale = await self._cache.get_stale(cache_key)
            if stale is not None:
                logger.warning(f"Returning stale cached models due to proxy failure: {e.message}")
                return stale
            raise

        models = response.get("data", []) if isinstance(response, dict) else []
        await self._cache.set(cache_key, models)
        return models

    async def get_model_by_id(self, model_id: str) -> Optional[Dict[str, Any]]:
        """Find a model by proxy model name or by proxy-internal id."""
        for model in await self.get_models():
            if model.get("model_name") == model_id or (model.get("model_info") or {}).get("id") == model_id:
                return model
        return None

    async def create_model(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.mock_mode:
            return {
                "model_name": payload.get("model_name"),
                "model_info": {"id": f"mock-{secrets.token_hex(6)}", **(payload.get("model_info") or {})},
                "litellm_params": payload.get("litellm_params"),
            }
        logger.info(f"Creating model {payload.get('model_name')} in proxy")
        return await self.request("/model/new", method="POST", body=payload)

    async def update_model(self, external_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.mock_mode:
            return {"model_name": payload.get("model_name"), "model_info": {"id": external_id}}
        logger.info(f"Updating model {external_id} in proxy")
        return await self.request(f"/model/{external_id}/update", method="PATCH", body=payload)

    async def delete_model(self, external_id: str) -> None:
        if self.mock_mode:
            return
        logger.info(f"Deleting model {external_id} from proxy")
        await self.request("/model/delete", method="POST", body={"id": external_id})

    # ============== Health ==============

    async def get_health(self) -> Dict[str, Any]:
        """Proxy liveness; never raises."""
        cached = await self._cache.get("health")
        if cached is not None:
            return cached

        if self.mock_mode:
            health = {"status": "healthy", "db": "connected", "litellm_version": "mock"}
        else:
            try:
                result = await self.request("/health/liveness")
            except ControlPlaneError as e:
                logger.error(f"Failed to check proxy health: {e.message}")
                return {"status": "unhealthy", "db": "unknown"}
            health = result if isinstance(result, dict) and result else {"status": "healthy", "detail": result}
            health.setdefault("status", "healthy")

        await self._cache.set("health", health, settings.PROXY_HEALTH_CACHE_TTL)
        return health

    # ============== Keys ==============

    async def generate_key(self, request: KeyGenerationRequest) -> KeyGenerationResponse:
        if self.mock_mode:
            return KeyGenerationResponse(
                key=f"sk-litellm-{secrets.token_hex(16)}",
                key_name=request.key_alias,
                key_alias=request.key_alias,
                user_id=request.user_id,
                team_id=request.team_id,
                max_budget=request.max_budget,
            )
        response = await self.request(
            "/key/generate", method="POST", body=request.model_dump(exclude_none=True)
        )
        return KeyGenerationResponse.model_validate(response)

    async def get_key_info(self, key: str) -> ProxyKeyInfo:
        if self.mock_mode:
            return ProxyKeyInfo(key=key, key_name=f"sk-...{key[-4:]}", spend=0.0, models=[])
        response = await self.request("/key/info", params={"key": key})
        return normalize_key_info(response, key)

    async def get_key_alias(self, key: str) -> Optional[str]:
        """Alias the proxy holds for a key value; used to back-fill old rows."""
        if self.mock_mode:
            return f"mock_alias_{key[-8:]}"
        return (await self.get_key_info(key)).key_alias

    async def update_key(self, key: str, **updates: Any) -> Dict[str, Any]:
        if self.mock_mode:
            return {"key": key, **updates}
        return await self.request("/key/update", method="POST", body={"key": key, **updates})

    async def delete_key(self, key: str) -> bool:
        """Delete a key. A key the proxy does not know is already deleted.

        Returns True when the proxy deleted it, False when it was absent.
        """
        if self.mock_mode:
            return True
        try:
            await self.request("/key/delete", method="POST", body={"keys": [key]})
        except ProxyRequestError as e:
            if e.is_not_found or "not found" in e.message.lower():
                logger.info("Key already absent from proxy, treating delete as success")
                return False
            raise
        return True

    # ============== Users & teams ==============

    async def create_user(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.mock_mode:
            logger.warning(f"Proxy mock mode - user {payload.get('user_id')} not created remotely")
            return {"spend": 0, **payload}
        return await self.request("/user/new", method="POST", body=payload)

    async def get_user_info(self, user_id: str) -> Optional[ProxyUserInfo]:
        """User info, or None when the proxy does not know the user."""
        if self.mock_mode:
            return ProxyUserInfo(user_id=user_id, teams=[settings.DEFAULT_TEAM_ID])
        try:
            response = await self.request("/user/info", params={"user_id": user_id})
        except ProxyRequestError as e:
            if e.is_not_found:
                return None
            raise
        info = normalize_user_info(response if isinstance(response, dict) else {})
        if not info.exists:
            logger.info(f"User {user_id} does not exist in proxy (empty teams array)")
            return None
        return info

    async def user_exists(self, user_id: str) -> bool:
        return await self.get_user_info(user_id) is not None

    async def update_user(self, user_id: str, **updates: Any) -> Dict[str, Any]:
        if self.mock_mode:
            return {"user_id": user_id, **updates}
        return await self.request("/user/update", method="POST", body={"user_id": user_id, **updates})

    async def create_team(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.mock_mode:
            return {"members": [], "spend": 0, **payload}
        return await self.request("/team/new", method="POST", body=payload)

    async def get_team_info(self, team_id: str) -> Optional[Dict[str, Any]]:
        if self.mock_mode:
            return {"team_id": team_id, "team_alias": f"Team {team_id}", "models": []}
        try:
            return await self.request("/team/info", params={"team_id": team_id})
        except ProxyRequestError as e:
            if e.is_not_found or "not found" in e.message.lower() or "doesn't exist" in e.message.lower():
                return None
            raise

    async def team_exists(self, team_id: str) -> bool:
        return await self.get_team_info(team_id) is not None

    # ============== Usage ==============

    async def get_daily_activity(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        user_id: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> DailyActivity:
        """Fetch every page of daily activity and aggregate it.

        Totals come from the proxy's metadata; only the per-model breakdown
        is summed locally.
        """
        cache_key = f"activity:{api_key or user_id or 'all'}:{start_date}:{end_date}"
        cached = await self._cache.get(cache_key)
        if cached is not None:
            return cached

        if self.mock_mode:
            today = datetime.utcnow().date().isoformat()
            activity = DailyActivity(
                spend=12.45, total_tokens=125000, prompt_tokens=75000, completion_tokens=50000,
                api_requests=523,
                by_model=[ModelUsage(model="gpt-4o", spend=12.45, tokens=125000, api_requests=523)],
                daily_metrics=[DailyMetric(date=today, spend=12.45, tokens=125000, requests=523)],
                pages_fetched=0,
            )
            await self._cache.set(cache_key, activity)
            return activity

        results: List[Dict[str, Any]] = []
        metadata: Optional[Dict[str, Any]] = None
        page = 1
        has_more = True

        while has_more:
            params: Dict[str, Any] = {"page": page, "page_size": ACTIVITY_PAGE_SIZE}
            if start_date:
                params["start_date"] = start_date
            if end_date:
                params["end_date"] = end_date
            if user_id:
                params["user_id"] = user_id
            if api_key:
                params["api_key"] = api_key

            response = await self.request("/user/daily/activity", params=params)
            page_results = response.get("results") or []
            results.extend(page_results)
            page_metadata = response.get("metadata") or {}
            if metadata is None:
                metadata = page_metadata
            has_more = page_metadata.get("has_more") is True
            logger.debug(
                f"Fetched daily activity page {page} ({len(page_results)} results, has_more={has_more})"
            )

            page += 1
            if page > MAX_ACTIVITY_PAGES:
                logger.error(f"Daily activity pagination safety limit reached after {MAX_ACTIVITY_PAGES} pages")
                break

        metadata = metadata or {}
        by_model: Dict[str, ModelUsage] = {}
        daily_metrics: List[DailyMetric] = []
        for day in results:
            metrics = day.get("metrics") or {}
            breakdown = day.get("breakdown") or {}
            daily_metrics.append(
                DailyMetric(
                    date=day.get("date", ""),
                    spend=metrics.get("spend") or 0.0,
                    tokens=metrics.get("total_tokens") or 0,
                    requests=metrics.get("api_requests") or 0,
                    breakdown=breakdown or None,
                )
            )
            for model_name, model_data in (breakdown.get("models") or {}).items():
                model_metrics = (model_data or {}).get("metrics") or {}
                usage = by_model.setdefault(model_name, ModelUsage(model=model_name))
                usage.spend += model_metrics.get("spend") or 0.0
                usage.tokens += model_metrics.get("total_tokens") or 0
                usage.api_requests += model_metrics.get("api_requests") or 0

        activity = DailyActivity(
            spend=metadata.get("total_spend") or 0.0,
            total_tokens=metadata.get("total_tokens") or 0,
            prompt_tokens=metadata.get("total_prompt_tokens") or 0,
            completion_tokens=metadata.get("total_completion_tokens") or 0,
            api_requests=metadata.get("total_api_requests") or 0,
            by_model=list(by_model.values()),
            daily_metrics=daily_metrics,
            pages_fetched=page - 1,
        )
        await self._cache.set(cache_key, activity)
        return activity

    # ============== Cache & status ==============

    async def clear_cache(self, pattern: Optional[str] = None) -> None:
        if pattern:
            await self._cache.delete_matching(pattern)
        else:
            await self._cache.clear()
        logger.info(f"Proxy cache cleared (pattern={pattern})")

    async def clear_activity_cache(self) -> None:
        await self._cache.delete_matching("activity:")

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "cache": self._cache.stats(),
            "circuit_breaker": {
                "state": self._breaker.state,
                "failure_count": self._breaker.failure_count,
            },
            "config": {
                "base_url": self._base_url,
                "mock_mode": self.mock_mode,
                "timeout": self._timeout,
            },
        }
