"""Test doubles and data factories shared by the test modules."""

import json
import secrets
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from llm_control_plane.models import (
    ApiKey,
    ApiKeyModel,
    KeySyncStatus,
    LLMModel,
    ModelAvailability,
    Subscription,
    SubscriptionStatus,
    User,
)
from llm_control_plane.services.api_key_service import ApiKeyService


# ============== Fake proxy ==============

def proxy_model(
    name: str,
    external_id: Optional[str] = None,
    provider: str = "openai",
    **info: Any,
) -> Dict[str, Any]:
    """A /model/info entry as the proxy returns it."""
    model_info = {
        "id": external_id or f"{name}-id",
        "max_tokens": 8192,
        "input_cost_per_token": 0.000001,
        "output_cost_per_token": 0.000002,
        "supports_function_calling": True,
    }
    model_info.update(info)
    return {
        "model_name": name,
        "litellm_params": {"model": f"{provider}/{name}"},
        "model_info": model_info,
    }


class FakeProxy:
    """In-process stand-in for the LiteLLM proxy, served through httpx.MockTransport.

    Holds models, keys, users and teams in memory and records every call.
    ``fail`` maps (method, path) to a forced status code; ``failing_keys``
    makes /key/update fail for specific key values.
    """

    def __init__(self):
        self.models: List[Dict[str, Any]] = []
        self.keys: Dict[str, Dict[str, Any]] = {}
        self.users: Set[str] = set()
        self.teams: Set[str] = set()
        self.activity_pages: List[Dict[str, Any]] = []
        self.calls: List[Tuple[str, str, Any]] = []
        self.fail: Dict[Tuple[str, str], int] = {}
        self.failing_keys: Set[str] = set()

    def calls_to(self, method: str, path: str) -> List[Any]:
        return [body for m, p, body in self.calls if m == method and p == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        body = json.loads(request.content) if request.content else None
        params = dict(request.url.params)
        self.calls.append((method, path, body if body is not None else params))

        forced = self.fail.get((method, path))
        if forced:
            return httpx.Response(forced, json={"error": {"message": f"forced failure {forced}"}})

        if path == "/model/info":
            return httpx.Response(200, json={"data": self.models})
        if path == "/model/new":
            created = {
                "model_name": body["model_name"],
                "litellm_params": body.get("litellm_params") or {},
                "model_info": {"id": f"{body['model_name']}-{secrets.token_hex(3)}", **(body.get("model_info") or {})},
            }
            self.models.append(created)
            return httpx.Response(200, json=created)
        if path.startswith("/model/") and path.endswith("/update"):
            external_id = path.split("/")[2]
            for model in self.models:
                if model["model_info"]["id"] == external_id:
                    model["litellm_params"].update(body.get("litellm_params") or {})
                    model["model_info"].update(body.get("model_info") or {})
                    return httpx.Response(200, json=model)
            return httpx.Response(404, json={"detail": "Model not found"})
        if path == "/model/delete":
            before = len(self.models)
            self.models = [m for m in self.models if m["model_info"]["id"] != body["id"]]
            if len(self.models) == before:
                return httpx.Response(404, json={"detail": f"Model with id={body['id']} not found"})
            return httpx.Response(200, json={"message": "deleted"})

        if path == "/key/generate":
            key = f"sk-{secrets.token_hex(16)}"
            self.keys[key] = {"key_alias": body.get("key_alias"), "spend": 0.0, **body}
            return httpx.Response(200, json={"key": key, "key_alias": body.get("key_alias"), "user_id": body.get("user_id")})
        if path == "/key/info":
            info = self.keys.get(params.get("key"))
            if info is None:
                return httpx.Response(404, json={"detail": "Key not found"})
            return httpx.Response(200, json={"key": params["key"], "info": info})
        if path == "/key/update":
            update = dict(body)
            key = update.pop("key")
            if key in self.failing_keys:
                return httpx.Response(500, json={"error": {"message": "update failed"}})
            if key not in self.keys:
                return httpx.Response(404, json={"detail": "Key not found"})
            self.keys[key].update(update)
            return httpx.Response(200, json={"key": key, **self.keys[key]})
        if path == "/key/delete":
            missing = [k for k in body["keys"] if k not in self.keys]
            if missing:
                return httpx.Response(404, json={"detail": "Key not found"})
            for key in body["keys"]:
                del self.keys[key]
            return httpx.Response(200, json={"deleted_keys": body["keys"]})

        if path == "/user/info":
            user_id = params.get("user_id")
            teams = ["default-team"] if user_id in self.users else []
            return httpx.Response(200, json={"user_id": user_id, "user_info": {"user_id": user_id, "teams": teams}})
        if path == "/user/update":
            if body["user_id"] not in self.users:
                return httpx.Response(404, json={"detail": "User not found"})
            return httpx.Response(200, json=body)
        if path == "/user/new":
            self.users.add(body["user_id"])
            return httpx.Response(200, json=body)
        if path == "/team/info":
            if params.get("team_id") not in self.teams:
                return httpx.Response(404, json={"detail": "Team not found"})
            return httpx.Response(200, json={"team_id": params["team_id"]})
        if path == "/team/new":
            self.teams.add(body["team_id"])
            return httpx.Response(200, json=body)

        if path == "/health/liveness":
            return httpx.Response(200, json="I'm alive!")
        if path == "/user/daily/activity":
            page = int(params.get("page", 1))
            return httpx.Response(200, json=self.activity_pages[page - 1])

        return httpx.Response(404, json={"detail": f"Unknown endpoint {path}"})


# ============== Data factories ==============

async def create_user(session: AsyncSession, username: str = "alice", roles: Optional[List[str]] = None) -> User:
    user = User(
        id=str(uuid.uuid4()),
        username=username,
        email=f"{username}@example.com",
        roles=roles or ["user"],
    )
    session.add(user)
    await session.commit()
    return user


async def create_model(
    session: AsyncSession,
    model_id: str,
    restricted: bool = False,
    availability: ModelAvailability = ModelAvailability.AVAILABLE,
    external_id: Optional[str] = None,
) -> LLMModel:
    model = LLMModel(
        id=model_id,
        name=model_id,
        provider="openai",
        availability=availability,
        restricted_access=restricted,
        litellm_model_id=external_id or f"{model_id}-id",
        backend_model_name=model_id,
        features=["chat"],
    )
    session.add(model)
    await session.commit()
    return model


async def create_subscription(
    session: AsyncSession,
    user_id: str,
    model_id: str,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
) -> Subscription:
    subscription = Subscription(user_id=user_id, model_id=model_id, status=status)
    session.add(subscription)
    await session.commit()
    return subscription


async def create_api_key(
    session: AsyncSession,
    user_id: str,
    model_ids: List[str],
    key_value: Optional[str] = None,
    fake_proxy: Optional[FakeProxy] = None,
    **fields: Any,
) -> ApiKey:
    """Insert a key row (and register it with the fake proxy when given)."""
    key_value = key_value or f"sk-{secrets.token_hex(16)}"
    api_key = ApiKey(
        user_id=user_id,
        name=fields.pop("name", "test-key"),
        key_hash=ApiKeyService.hash_key(key_value),
        key_prefix=ApiKeyService.key_prefix(key_value),
        litellm_key_value=key_value,
        litellm_key_alias=fields.pop("litellm_key_alias", f"test-key_{secrets.token_hex(4)}"),
        is_active=fields.pop("is_active", True),
        sync_status=KeySyncStatus.SYNCED,
        created_at=datetime.utcnow(),
        **fields,
    )
    session.add(api_key)
    await session.flush()
    for model_id in model_ids:
        session.add(ApiKeyModel(api_key_id=api_key.id, model_id=model_id))
    await session.commit()
    if fake_proxy is not None:
        fake_proxy.keys[key_value] = {"models": list(model_ids), "spend": 0.0, "user_id": user_id}
    return api_key


