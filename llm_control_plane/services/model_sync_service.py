# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Model synchronization from the proxy to the local catalog.

The proxy is the source of truth for which models exist. The database keeps
the catalog plus user-entered fields (description) and the access graph
(subscriptions, key associations) that must follow a model's availability.
"""
import logging
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import unit_of_work
from ..errors import NotFoundError
from ..models.llm_model import LLMModel, ModelAvailability
from ..models.subscription import SubscriptionStatus
from ..models.user import SYSTEM_USER_ID
from ..repositories.api_key import ApiKeyRepository
from ..repositories.model import ModelRepository
from ..repositories.subscription import SubscriptionRepository
from .audit_service import AuditAction, AuditService, ResourceType
from .proxy_client import ProxyClient

if TYPE_CHECKING:
    from .subscription_cascade_service import SubscriptionCascadeService

logger = logging.getLogger(__name__)

PRICE_EPSILON = 1e-10
UNAVAILABLE_REASON = "Model no longer available in proxy"


@dataclass
class CascadeStatistics:
    subscriptions_deactivated: int = 0
    api_key_model_associations_removed: int = 0
    orphaned_api_keys_deactivated: int = 0

    def add(self, other: "CascadeStatistics"):
        self.subscriptions_deactivated += other.subscriptions_deactivated
        self.api_key_model_associations_removed += other.api_key_model_associations_removed
        self.orphaned_api_keys_deactivated += other.orphaned_api_keys_deactivated


@dataclass
class SyncResult:
    """Result of a model sync run."""
    success: bool = True
    total_models: int = 0
    new_models: int = 0
    updated_models: int = 0
    unavailable_models: int = 0
    recreated_models: List[str] = field(default_factory=list)
    cascade_statistics: CascadeStatistics = field(default_factory=CascadeStatistics)
    errors: List[str] = field(default_factory=list)
    synced_at: datetime = field(default_factory=datetime.utcnow)

    def add_error(self, error: str):
        self.errors.append(error)
        self.success = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["synced_at"] = self.synced_at.isoformat()
        return data


def _model_path(proxy_model: Dict[str, Any]) -> Optional[str]:
    return (proxy_model.get("litellm_params") or {}).get("model")


def extract_provider(proxy_model: Dict[str, Any]) -> str:
    """custom_llm_provider, else the prefix of the model path, else 'unknown'."""
    params = proxy_model.get("litellm_params") or {}
    if params.get("custom_llm_provider"):
        return params["custom_llm_provider"]
    path = params.get("model") or ""
    if "/" in path:
        return path.split("/", 1)[0]
    return "unknown"


def extract_backend_model_name(proxy_model: Dict[str, Any]) -> Optional[str]:
    """Everything after the provider prefix: 'openai/RedHatAI/Qwen' -> 'RedHatAI/Qwen'."""
    path = _model_path(proxy_model)
    if not path:
        return None
    return path.split("/", 1)[1] if "/" in path else path


def build_features(info: Dict[str, Any]) -> List[str]:
    features = []
    if info.get("supports_function_calling"):
        features.append("function_calling")
    if info.get("supports_parallel_function_calling"):
        features.append("parallel_function_calling")
    if info.get("supports_tool_choice"):
        features.append("tool_choice")
    if info.get("supports_vision"):
        features.append("vision")
    features.append("chat")
    return features


def to_model_values(proxy_model: Dict[str, Any]) -> Dict[str, Any]:
    """Map a proxy /model/info entry onto catalog columns (description excluded)."""
    info = proxy_model.get("model_info") or {}
    params = proxy_model.get("litellm_params") or {}
    return {
        "name": proxy_model.get("model_name"),
        "provider": extract_provider(proxy_model),
        "category": "Language Model",
        "context_length": info.get("max_tokens"),
        "input_cost_per_token": info.get("input_cost_per_token") or params.get("input_cost_per_token"),
        "output_cost_per_token": info.get("output_cost_per_token") or params.get("output_cost_per_token"),
        "supports_vision": bool(info.get("supports_vision")),
        "supports_function_calling": bool(info.get("supports_function_calling")),
        "supports_parallel_function_calling": bool(info.get("supports_parallel_function_calling")),
        "supports_tool_choice": bool(info.get("supports_tool_choice")),
        "features": build_features(info),
        "availability": ModelAvailability.AVAILABLE,
        "version": "1.0",
        "metadata_": {"litellm_model_info": info, "litellm_params": params},
        "api_base": params.get("api_base"),
        "tpm": params.get("tpm"),
        "rpm": params.get("rpm"),
        "max_tokens": info.get("max_tokens"),
        "litellm_model_id": info.get("id"),
        "backend_model_name": extract_backend_model_name(proxy_model),
    }


def _price(value: Any) -> float:
    return float(value) if value is not None else 0.0


def snapshot_model(model: LLMModel) -> SimpleNamespace:
    """Plain copy of a model's columns, still readable after a session rollback."""
    return SimpleNamespace(**{attr.key: getattr(model, attr.key) for attr in sa_inspect(model).mapper.column_attrs})


def models_equal(existing: Any, proxy_model: Dict[str, Any]) -> bool:
    """True when writing proxy_model over existing would change nothing.

    Includes the proxy-internal id: a model deleted and recreated under the
    same name gets a new id and must not be skipped.
    """
    values = to_model_values(proxy_model)
    return (
        existing.availability == ModelAvailability.AVAILABLE
        and existing.context_length == values["context_length"]
        and math.isclose(_price(existing.input_cost_per_token), _price(values["input_cost_per_token"]), rel_tol=0, abs_tol=PRICE_EPSILON)
        and math.isclose(_price(existing.output_cost_per_token), _price(values["output_cost_per_token"]), rel_tol=0, abs_tol=PRICE_EPSILON)
        and existing.supports_vision == values["supports_vision"]
        and existing.supports_function_calling == values["supports_function_calling"]
        and existing.supports_tool_choice == values["supports_tool_choice"]
        and existing.supports_parallel_function_calling == values["supports_parallel_function_calling"]
        and list(existing.features or []) == values["features"]
        and existing.api_base == values["api_base"]
        and existing.backend_model_name == values["backend_model_name"]
        and existing.tpm == values["tpm"]
        and existing.rpm == values["rpm"]
        and existing.max_tokens == values["max_tokens"]
        and existing.litellm_model_id == values["litellm_model_id"]
    )


class ModelSyncService:
    """Reconciles the local model catalog with the proxy's live model list."""

    def __init__(
        self,
        db: AsyncSession,
        proxy: ProxyClient,
        cascade_service: Optional["SubscriptionCascadeService"] = None,
    ):
        self.db = db
        self.proxy = proxy
        self.models = ModelRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.api_keys = ApiKeyRepository(db)
        self.audit = AuditService(db)
        self._cascade_service = cascade_service

    @property
    def cascade_service(self) -> "SubscriptionCascadeService":
        if self._cascade_service is None:
            from .api_key_service import ApiKeyService
            from .subscription_cascade_service import SubscriptionCascadeService
            self._cascade_service = SubscriptionCascadeService(self.db, ApiKeyService(self.db, self.proxy))
        return self._cascade_service

    async def sync_models(self, force_update: bool = False, mark_unavailable: bool = True) -> SyncResult:
        """Pull the proxy's model list and reconcile the catalog.

        Never raises: failures land in ``result.errors`` with ``success=False``,
        and per-model failures do not stop the run.
        """
        result = SyncResult()
        logger.info(f"Starting model synchronization (force_update={force_update}, mark_unavailable={mark_unavailable})")

        try:
            proxy_models = await self.proxy.get_models(refresh=True)
        except Exception as e:
            logger.error(f"Model synchronization failed: {e}")
            result.add_error(f"Synchronization failed: {e}")
            return result

        result.total_models = len(proxy_models)
        if not proxy_models:
            logger.info("No models found in proxy - all local models will be marked unavailable")

        # A failed write rolls back and expires every loaded instance
        existing = {model.id: snapshot_model(model) for model in await self.models.list_all()}
        proxy_ids = set()

        for proxy_model in proxy_models:
            model_id = proxy_model.get("model_name")
            if not model_id:
                result.add_error("Skipped proxy model without model_name")
                continue
            if model_id in proxy_ids:
                # Several deployments under one model_name: the first one wins
                logger.debug(f"Skipping additional proxy deployment of model {model_id}")
                continue
            proxy_ids.add(model_id)
            try:
                local = existing.get(model_id)
                if local is None:
                    await self._insert_model(model_id, proxy_model)
                    result.new_models += 1
                elif await self._update_model(local, proxy_model, force_update, result):
                    result.updated_models += 1
            except Exception as e:
                logger.error(f"Failed to sync model {model_id}: {e}")
                result.add_error(f"Failed to sync model {model_id}: {e}")

        if mark_unavailable:
            gone = [
                model_id for model_id, model in existing.items()
                if model_id not in proxy_ids and model.availability == ModelAvailability.AVAILABLE
            ]
            for model_id in gone:
                try:
                    stats = await self.mark_model_unavailable(model_id)
                except Exception as e:
                    logger.error(f"Failed to mark model {model_id} as unavailable: {e}")
                    result.add_error(f"Failed to mark model {model_id} as unavailable: {e}")
                    continue
                if stats is not None:
                    result.unavailable_models += 1
                    result.cascade_statistics.add(stats)

        logger.info(
            f"Model synchronization completed: total={result.total_models} new={result.new_models} "
            f"updated={result.updated_models} unavailable={result.unavailable_models} errors={len(result.errors)}"
        )
        return result

    async def _insert_model(self, model_id: str, proxy_model: Dict[str, Any]) -> None:
        async with unit_of_work(self.db):
            await self.models.insert({"id": model_id, "description": None, **to_model_values(proxy_model)})
        logger.debug(f"Inserted new model {model_id}")

    async def _update_model(
        self, local: SimpleNamespace, proxy_model: Dict[str, Any], force_update: bool, result: SyncResult
    ) -> bool:
        if not force_update and models_equal(local, proxy_model):
            return False

        values = to_model_values(proxy_model)
        if local.litellm_model_id and values["litellm_model_id"] and local.litellm_model_id != values["litellm_model_id"]:
            # Same name, new proxy-internal id: the proxy model was deleted and recreated
            logger.warning(
                f"Model {local.id} was recreated in proxy "
                f"({local.litellm_model_id} -> {values['litellm_model_id']})"
            )
            result.recreated_models.append(local.id)

        async with unit_of_work(self.db):
            await self.models.update_from_proxy(local.id, {**values, "description": None})
        return True

    async def mark_model_unavailable(self, model_id: str) -> Optional[CascadeStatistics]:
        """Mark a model unavailable and cascade, all in one transaction.

        Returns None when the model was already unavailable; the cascade then
        does not run again.
        """
        stats = CascadeStatistics()
        try:
            async with unit_of_work(self.db):
                if not await self.models.mark_unavailable(model_id):
                    logger.debug(f"Model {model_id} already unavailable, no cascade needed")
                    return None

                active = await self.subscriptions.list_by_model_and_status(model_id, SubscriptionStatus.ACTIVE)
                stats.subscriptions_deactivated = await self.subscriptions.transition(
                    active, SubscriptionStatus.INACTIVE, UNAVAILABLE_REASON, SYSTEM_USER_ID
                )

                affected_key_ids = await self.api_keys.list_key_ids_with_model(model_id)
                stats.api_key_model_associations_removed = await self.api_keys.delete_model_associations(model_id)
                stats.orphaned_api_keys_deactivated = await self.api_keys.deactivate_orphans(affected_key_ids)

                self.audit.log(
                    SYSTEM_USER_ID,
                    AuditAction.MODEL_MARKED_UNAVAILABLE_WITH_CASCADE,
                    ResourceType.MODEL,
                    model_id,
                    {
                        "modelId": model_id,
                        "cascadeStatistics": asdict(stats),
                        "operation": "model_sync_cascade",
                    },
                )
        except Exception as e:
            logger.error(f"Cascade for unavailable model {model_id} failed, transaction rolled back: {e}")
            await self.audit.log_detached(
                SYSTEM_USER_ID,
                AuditAction.MODEL_MARKED_UNAVAILABLE_WITH_CASCADE,
                ResourceType.MODEL,
                model_id,
                {"modelId": model_id, "operation": "model_sync_cascade", "error": "Transaction failed and was rolled back"},
                success=False,
                error_message=str(e),
            )
            raise

        logger.info(f"Marked model {model_id} unavailable with cascade: {asdict(stats)}")
        return stats

    async def get_sync_stats(self) -> Dict[str, Any]:
        return await self.models.get_stats()

    async def validate_models(self) -> Dict[str, Any]:
        """Integrity report; reports problems, repairs nothing."""
        all_models = await self.models.list_all()
        invalid = await self.models.list_missing_required_fields()
        orphaned = await self.models.count_active_subscriptions_on_unavailable()
        return {
            "valid_models": len(all_models) - len(invalid),
            "invalid_models": [f"{m.id} ({m.name})" for m in invalid],
            "orphaned_subscriptions": orphaned,
        }

    async def update_model_restriction(self, model_id: str, restricted: bool, actor_id: str) -> Dict[str, Any]:
        """Set a model's restricted flag; cascades only when the value changes."""
        model = await self.models.get_by_id(model_id)
        if model is None:
            raise NotFoundError("Model", model_id)

        previous = bool(model.restricted_access)
        async with unit_of_work(self.db):
            await self.models.set_restricted(model_id, restricted)

        cascade: Optional[Dict[str, Any]] = None
        if previous != restricted:
            cascade = await self.cascade_service.handle_model_restriction_change(model_id, restricted)

        async with unit_of_work(self.db):
            self.audit.log(
                actor_id,
                AuditAction.MODEL_RESTRICTION_CHANGE,
                ResourceType.MODEL,
                model_id,
                {"restrictedAccess": restricted, "previousValue": previous},
            )

        logger.info(f"Model {model_id} restriction updated to {restricted} by {actor_id}")
        return {"model_id": model_id, "restricted_access": restricted, "previous_value": previous, "cascade": cascade}
