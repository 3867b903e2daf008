"""HTTP-level tests: identity, roles, error bodies and the main flows."""
import pytest
from sqlalchemy import select

from llm_control_plane.models import AuditLog, Subscription, SubscriptionStatus

from helpers import create_api_key, create_model, create_subscription, create_user, proxy_model


def _as(user):
    return {"X-User-Id": user.id}


class TestHealth:

    @pytest.mark.asyncio
    async def test_live(self, client):
        response = await client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_degraded_when_proxy_down(self, client, fake_proxy):
        fake_proxy.fail[("GET", "/health/liveness")] = 503
        response = await client.get("/health")
        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "degraded"
        assert data["checks"]["circuit_breaker"]["state"] == "closed"


class TestIdentity:

    @pytest.mark.asyncio
    async def test_missing_header(self, client):
        response = await client.get("/v1/models")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_user(self, client):
        response = await client.get("/v1/models", headers={"X-User-Id": "nobody"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_admin_route_requires_admin_role(self, client, db_session):
        user = await create_user(db_session)
        response = await client.post("/v1/admin/models/sync", headers=_as(user))
        assert response.status_code == 403


class TestCatalog:

    @pytest.mark.asyncio
    async def test_list_and_get(self, client, db_session):
        user = await create_user(db_session)
        await create_model(db_session, "gpt-4o")

        listing = await client.get("/v1/models", headers=_as(user))
        single = await client.get("/v1/models/gpt-4o", headers=_as(user))
        missing = await client.get("/v1/models/ghost", headers=_as(user))

        assert [m["id"] for m in listing.json()] == ["gpt-4o"]
        assert single.json()["availability"] == "available"
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "MODEL_NOT_FOUND"


class TestApiKeyRoutes:

    @pytest.mark.asyncio
    async def test_create_list_and_revoke(self, client, db_session, fake_proxy):
        user = await create_user(db_session)
        await create_model(db_session, "m1")
        await create_subscription(db_session, user.id, "m1")

        created = await client.post("/v1/api-keys", json={"model_ids": ["m1"], "name": "cli"}, headers=_as(user))
        assert created.status_code == 201
        key = created.json()
        assert key["key"].startswith("sk-")
        assert key["models"] == ["m1"]

        listing = await client.get("/v1/api-keys", headers=_as(user))
        assert listing.json()["total"] == 1
        assert "key" not in listing.json()["items"][0]

        validated = await client.post("/v1/api-keys/validate", json={"key": key["key"]})
        assert validated.json()["is_valid"] is True

        revoked = await client.post(f"/v1/api-keys/{key['id']}/revoke", headers=_as(user))
        assert revoked.json()["is_active"] is False

    @pytest.mark.asyncio
    async def test_subscription_required_error_body(self, client, db_session):
        user = await create_user(db_session)
        await create_model(db_session, "m1")

        response = await client.post("/v1/api-keys", json={"model_ids": ["m1"]}, headers=_as(user))

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "SUBSCRIPTION_REQUIRED"
        assert error["details"] == {"field": "model_ids", "value": ["m1"]}
        assert error["suggestion"]

    @pytest.mark.asyncio
    async def test_legacy_body_is_accepted(self, client, db_session):
        user = await create_user(db_session)
        await create_model(db_session, "m1")
        subscription = await create_subscription(db_session, user.id, "m1")

        response = await client.post(
            "/v1/api-keys", json={"subscription_id": subscription.id}, headers=_as(user)
        )

        assert response.status_code == 201
        assert response.json()["subscription_id"] == subscription.id
        assert response.json()["models"] == ["m1"]

    @pytest.mark.asyncio
    async def test_other_users_key_is_not_found(self, client, db_session):
        owner = await create_user(db_session)
        intruder = await create_user(db_session, username="mallory")
        await create_model(db_session, "m1")
        await create_subscription(db_session, owner.id, "m1")
        created = await client.post("/v1/api-keys", json={"model_ids": ["m1"]}, headers=_as(owner))

        response = await client.post(f"/v1/api-keys/{created.json()['id']}/reveal", headers=_as(intruder))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "API_KEY_NOT_FOUND"


class TestAdminRoutes:

    @pytest.mark.asyncio
    async def test_sync_then_issue_key_for_user(self, client, db_session, fake_proxy):
        admin = await create_user(db_session, username="root", roles=["admin"])
        user = await create_user(db_session)
        fake_proxy.models = [proxy_model("gpt-4o"), proxy_model("llama-3")]

        synced = await client.post("/v1/admin/models/sync", json={}, headers=_as(admin))
        assert synced.status_code == 200
        assert synced.json()["new_models"] == 2

        issued = await client.post(
            f"/v1/admin/users/{user.id}/api-keys",
            json={"model_ids": ["gpt-4o", "llama-3"], "name": "provisioned"},
            headers=_as(admin),
        )
        assert issued.status_code == 201
        assert sorted(issued.json()["models"]) == ["gpt-4o", "llama-3"]

        ensured = await client.post(
            f"/v1/admin/users/{user.id}/subscriptions/ensure",
            json={"model_ids": ["gpt-4o"]},
            headers=_as(admin),
        )
        assert ensured.json()["already_active"] == ["gpt-4o"]

    @pytest.mark.asyncio
    async def test_edit_user_key_provisions_added_models(self, client, db_session, fake_proxy):
        admin = await create_user(db_session, username="root", roles=["admin"])
        user = await create_user(db_session)
        await create_model(db_session, "m1")
        await create_model(db_session, "m2")
        await create_subscription(db_session, user.id, "m1")
        key = await create_api_key(db_session, user.id, ["m1"], fake_proxy=fake_proxy)
        key_id, key_value, user_id, admin_id = key.id, key.litellm_key_value, user.id, admin.id

        edited = await client.patch(
            f"/v1/admin/users/{user_id}/api-keys/{key_id}",
            json={"model_ids": ["m1", "m2"]},
            headers=_as(admin),
        )
        missing = await client.patch(
            f"/v1/admin/users/{user_id}/api-keys/ghost",
            json={"model_ids": ["m2"]},
            headers=_as(admin),
        )

        assert edited.status_code == 200
        assert sorted(edited.json()["models"]) == ["m1", "m2"]
        assert fake_proxy.keys[key_value]["models"] == ["m1", "m2"]
        status = (await db_session.execute(
            select(Subscription.status).where(Subscription.user_id == user_id, Subscription.model_id == "m2")
        )).scalar_one()
        assert status == SubscriptionStatus.ACTIVE
        actor = (await db_session.execute(
            select(AuditLog.user_id).where(AuditLog.action == "API_KEY_UPDATE", AuditLog.resource_id == key_id)
        )).scalar_one()
        assert actor == admin_id
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "API_KEY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_mark_unavailable_route(self, client, db_session):
        admin = await create_user(db_session, username="root", roles=["admin"])
        await create_model(db_session, "m1")

        first = await client.post("/v1/admin/models/m1/unavailable", headers=_as(admin))
        second = await client.post("/v1/admin/models/m1/unavailable", headers=_as(admin))
        missing = await client.post("/v1/admin/models/ghost/unavailable", headers=_as(admin))

        assert first.status_code == 200
        assert second.json() == {
            "subscriptions_deactivated": 0,
            "api_key_model_associations_removed": 0,
            "orphaned_api_keys_deactivated": 0,
        }
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_proxy_unavailable_maps_to_503(self, client, db_session, fake_proxy):
        user = await create_user(db_session)
        await create_model(db_session, "m1")
        await create_subscription(db_session, user.id, "m1")
        fake_proxy.fail[("POST", "/key/generate")] = 503

        response = await client.post("/v1/api-keys", json={"model_ids": ["m1"]}, headers=_as(user))

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "PROXY_UNAVAILABLE"
