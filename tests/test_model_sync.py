"""Tests for model synchronization and the unavailability cascade."""
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from llm_control_plane.models import (
    ApiKey,
    ApiKeyModel,
    AuditLog,
    LLMModel,
    ModelAvailability,
    Subscription,
    SubscriptionStatus,
    SubscriptionStatusHistory,
)
from llm_control_plane.models.user import SYSTEM_USER_ID
from llm_control_plane.services.model_sync_service import (
    UNAVAILABLE_REASON,
    ModelSyncService,
    build_features,
    extract_backend_model_name,
    extract_provider,
    to_model_values,
)

from helpers import create_api_key, create_model, create_subscription, create_user, proxy_model


async def _scalar(session, query):
    return (await session.execute(query)).scalar_one_or_none()


async def _all(session, query):
    return list((await session.execute(query)).scalars().all())


class TestProxyModelMapping:

    def test_provider_from_custom_llm_provider(self):
        model = {"litellm_params": {"model": "openai/x", "custom_llm_provider": "vllm"}}
        assert extract_provider(model) == "vllm"

    def test_provider_from_model_path(self):
        assert extract_provider({"litellm_params": {"model": "anthropic/claude"}}) == "anthropic"
        assert extract_provider({"litellm_params": {"model": "gpt-4o"}}) == "unknown"

    def test_backend_model_name_keeps_nested_path(self):
        model = {"litellm_params": {"model": "openai/RedHatAI/Qwen3-32B"}}
        assert extract_backend_model_name(model) == "RedHatAI/Qwen3-32B"

    def test_features_order(self):
        info = {"supports_vision": True, "supports_function_calling": True, "supports_tool_choice": True}
        assert build_features(info) == ["function_calling", "tool_choice", "vision", "chat"]

    def test_values_never_carry_description(self):
        values = to_model_values(proxy_model("gpt-4o"))
        assert "description" not in values
        assert values["litellm_model_id"] == "gpt-4o-id"
        assert values["availability"] == ModelAvailability.AVAILABLE


class TestSyncModels:

    @pytest.mark.asyncio
    async def test_first_sync_inserts_then_second_is_noop(self, db_session, proxy_client, fake_proxy):
        fake_proxy.models = [proxy_model("gpt-4o"), proxy_model("llama-3"), proxy_model("mistral-7b")]
        service = ModelSyncService(db_session, proxy_client)

        first = await service.sync_models()
        second = await service.sync_models()

        assert first.success
        assert first.new_models == 3
        assert first.total_models == 3
        assert second.new_models == 0
        assert second.updated_models == 0
        assert second.unavailable_models == 0

    @pytest.mark.asyncio
    async def test_empty_proxy_marks_all_unavailable(self, db_session, proxy_client, fake_proxy):
        for model_id in ("a", "b", "c"):
            await create_model(db_session, model_id)
        fake_proxy.models = []

        result = await ModelSyncService(db_session, proxy_client).sync_models()

        assert result.success
        assert result.total_models == 0
        assert result.unavailable_models == 3
        availability = await _all(db_session, select(LLMModel.availability))
        assert set(availability) == {ModelAvailability.UNAVAILABLE}

    @pytest.mark.asyncio
    async def test_mark_unavailable_disabled(self, db_session, proxy_client, fake_proxy):
        await create_model(db_session, "legacy")
        result = await ModelSyncService(db_session, proxy_client).sync_models(mark_unavailable=False)

        assert result.unavailable_models == 0
        assert await _scalar(db_session, select(LLMModel.availability)) == ModelAvailability.AVAILABLE

    @pytest.mark.asyncio
    async def test_update_keeps_local_description(self, db_session, proxy_client, fake_proxy):
        model = await create_model(db_session, "gpt-4o")
        model.description = "Curated by the platform team"
        await db_session.commit()
        fake_proxy.models = [proxy_model("gpt-4o", max_tokens=32000)]

        result = await ModelSyncService(db_session, proxy_client).sync_models(force_update=True)

        assert result.updated_models == 1
        row = (await db_session.execute(
            select(LLMModel.description, LLMModel.context_length).where(LLMModel.id == "gpt-4o")
        )).one()
        assert row.description == "Curated by the platform team"
        assert row.context_length == 32000

    @pytest.mark.asyncio
    async def test_recreated_model_is_reported(self, db_session, proxy_client, fake_proxy):
        await create_model(db_session, "gpt-4o", external_id="old-id")
        fake_proxy.models = [proxy_model("gpt-4o", external_id="new-id")]

        result = await ModelSyncService(db_session, proxy_client).sync_models()

        assert result.recreated_models == ["gpt-4o"]
        assert result.updated_models == 1
        assert await _scalar(db_session, select(LLMModel.litellm_model_id)) == "new-id"

    @pytest.mark.asyncio
    async def test_repeated_model_name_keeps_first_deployment(self, db_session, proxy_client, fake_proxy):
        await create_model(db_session, "existing", external_id="old-id")
        await create_model(db_session, "gone")
        fake_proxy.models = [
            proxy_model("dup", external_id="d1"),
            proxy_model("dup", external_id="d2"),
            proxy_model("existing", external_id="new-id"),
        ]

        result = await ModelSyncService(db_session, proxy_client).sync_models()

        assert result.success, result.errors
        assert result.new_models == 1
        assert result.updated_models == 1
        assert result.unavailable_models == 1
        assert await _scalar(db_session, select(LLMModel.litellm_model_id).where(LLMModel.id == "dup")) == "d1"
        assert await _scalar(
            db_session, select(LLMModel.availability).where(LLMModel.id == "gone")
        ) == ModelAvailability.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_failed_model_write_does_not_stop_the_run(self, db_session, proxy_client, fake_proxy):
        for model_id in ("a", "b", "gone"):
            await create_model(db_session, model_id)
        fake_proxy.models = [proxy_model("a", max_tokens=16000), proxy_model("b", max_tokens=16000)]
        service = ModelSyncService(db_session, proxy_client)
        update_from_proxy = service.models.update_from_proxy

        async def flaky_update(model_id, values):
            if model_id == "a":
                raise RuntimeError("disk full")
            return await update_from_proxy(model_id, values)

        with patch.object(service.models, "update_from_proxy", flaky_update):
            result = await service.sync_models()

        assert result.success is False
        assert result.errors == ["Failed to sync model a: disk full"]
        assert result.updated_models == 1
        assert result.unavailable_models == 1
        assert await _scalar(db_session, select(LLMModel.context_length).where(LLMModel.id == "b")) == 16000
        assert await _scalar(
            db_session, select(LLMModel.availability).where(LLMModel.id == "gone")
        ) == ModelAvailability.UNAVAILABLE

    @pytest.mark.asyncio
    async def test_proxy_failure_is_reported_not_raised(self, db_session, proxy_client, fake_proxy):
        await create_model(db_session, "gpt-4o")
        fake_proxy.fail[("GET", "/model/info")] = 503

        result = await ModelSyncService(db_session, proxy_client).sync_models()

        assert result.success is False
        assert result.errors and "Synchronization failed" in result.errors[0]
        # Nothing is marked unavailable when the proxy could not be read
        assert await _scalar(db_session, select(LLMModel.availability)) == ModelAvailability.AVAILABLE


class TestMarkModelUnavailable:

    @pytest.mark.asyncio
    async def test_cascade_and_idempotency(self, db_session, proxy_client):
        user = await create_user(db_session)
        await create_model(db_session, "m1")
        await create_model(db_session, "m2")
        sub1 = await create_subscription(db_session, user.id, "m1")
        await create_subscription(db_session, user.id, "m2")
        only_m1 = await create_api_key(db_session, user.id, ["m1"], name="only-m1")
        both = await create_api_key(db_session, user.id, ["m1", "m2"], name="both")

        service = ModelSyncService(db_session, proxy_client)
        stats = await service.mark_model_unavailable("m1")

        assert stats.subscriptions_deactivated == 1
        assert stats.api_key_model_associations_removed == 2
        assert stats.orphaned_api_keys_deactivated == 1

        assert await _scalar(db_session, select(Subscription.status).where(Subscription.id == sub1.id)) == SubscriptionStatus.INACTIVE
        assert await _scalar(db_session, select(Subscription.status_reason).where(Subscription.id == sub1.id)) == UNAVAILABLE_REASON
        assert await _scalar(db_session, select(ApiKey.is_active).where(ApiKey.id == only_m1.id)) is False
        assert await _scalar(db_session, select(ApiKey.is_active).where(ApiKey.id == both.id)) is True
        assert await _all(db_session, select(ApiKeyModel.model_id).where(ApiKeyModel.api_key_id == both.id)) == ["m2"]

        history = await _all(
            db_session,
            select(SubscriptionStatusHistory).where(SubscriptionStatusHistory.subscription_id == sub1.id),
        )
        assert len(history) == 1
        assert history[0].old_status == SubscriptionStatus.ACTIVE
        assert history[0].new_status == SubscriptionStatus.INACTIVE
        assert history[0].changed_by == SYSTEM_USER_ID

        audits = await _all(db_session, select(AuditLog).where(AuditLog.resource_id == "m1"))
        assert [a.action for a in audits] == ["MODEL_MARKED_UNAVAILABLE_WITH_CASCADE"]
        assert audits[0].metadata_["cascadeStatistics"]["subscriptions_deactivated"] == 1

        assert await service.mark_model_unavailable("m1") is None
        audits = await _all(db_session, select(AuditLog).where(AuditLog.resource_id == "m1"))
        assert len(audits) == 1

    @pytest.mark.asyncio
    async def test_failed_cascade_rolls_back_and_audits_failure(self, db_session, proxy_client):
        user = await create_user(db_session)
        await create_model(db_session, "m1")
        sub_id = (await create_subscription(db_session, user.id, "m1")).id
        service = ModelSyncService(db_session, proxy_client)

        failing = AsyncMock(side_effect=RuntimeError("connection reset"))
        with patch.object(service.api_keys, "delete_model_associations", failing):
            with pytest.raises(RuntimeError):
                await service.mark_model_unavailable("m1")

        assert await _scalar(db_session, select(LLMModel.availability)) == ModelAvailability.AVAILABLE
        assert await _scalar(db_session, select(Subscription.status).where(Subscription.id == sub_id)) == SubscriptionStatus.ACTIVE
        assert await _all(db_session, select(SubscriptionStatusHistory)) == []

        audit = await _scalar(db_session, select(AuditLog).where(AuditLog.resource_id == "m1"))
        assert audit.success is False
        assert audit.error_message == "connection reset"

    @pytest.mark.asyncio
    async def test_orphan_check_limited_to_affected_keys(self, db_session, proxy_client):
        user = await create_user(db_session)
        await create_model(db_session, "m1")
        await create_model(db_session, "m2")
        unrelated = await create_api_key(db_session, user.id, [], name="already-empty")

        stats = await ModelSyncService(db_session, proxy_client).mark_model_unavailable("m1")

        assert stats.orphaned_api_keys_deactivated == 0
        assert await _scalar(db_session, select(ApiKey.is_active).where(ApiKey.id == unrelated.id)) is True

    @pytest.mark.asyncio
    async def test_non_active_subscriptions_untouched(self, db_session, proxy_client):
        user = await create_user(db_session)
        await create_model(db_session, "m1")
        pending = await create_subscription(db_session, user.id, "m1", SubscriptionStatus.PENDING)

        stats = await ModelSyncService(db_session, proxy_client).mark_model_unavailable("m1")

        assert stats.subscriptions_deactivated == 0
        assert await _scalar(db_session, select(Subscription.status).where(Subscription.id == pending.id)) == SubscriptionStatus.PENDING


class TestReports:

    @pytest.mark.asyncio
    async def test_stats_and_validation(self, db_session, proxy_client):
        user = await create_user(db_session)
        await create_model(db_session, "ok")
        await create_model(db_session, "gone", availability=ModelAvailability.UNAVAILABLE)
        broken = await create_model(db_session, "broken")
        broken.provider = ""
        await db_session.commit()
        await create_subscription(db_session, user.id, "gone")

        service = ModelSyncService(db_session, proxy_client)
        stats = await service.get_sync_stats()
        report = await service.validate_models()

        assert stats["total_models"] == 3
        assert stats["available_models"] == 2
        assert stats["unavailable_models"] == 1
        assert stats["last_sync_at"] is not None
        assert report["valid_models"] == 2
        assert report["invalid_models"] == ["broken (broken)"]
        assert report["orphaned_subscriptions"] == 1
