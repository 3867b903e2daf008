"""Admin model management: changes are pushed to the proxy, then pulled back by a sync"""
import asyncio
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import unit_of_work
from ..errors import NotFoundError, ProxyRequestError, ValidationError
from ..repositories.model import ModelRepository
from ..schemas.model import AdminModelCreate, AdminModelResult, AdminModelUpdate
from .audit_service import AuditAction, AuditService, ResourceType
from .model_sync_service import ModelSyncService, SyncResult
from .proxy_client import ProxyClient

logger = logging.getLogger(__name__)

PROXY_PARAM_FIELDS = ("api_base", "api_key", "input_cost_per_token", "output_cost_per_token", "tpm", "rpm")
PROXY_INFO_FIELDS = (
    "max_tokens",
    "supports_vision",
    "supports_function_calling",
    "supports_parallel_function_calling",
    "supports_tool_choice",
)


def build_create_payload(request: AdminModelCreate) -> Dict[str, Any]:
    """Admin form -> proxy /model/new body (OpenAI-compatible backends)"""
    params = {
        "model": f"openai/{request.backend_model_name}",
        "custom_llm_provider": "openai",
        "api_base": request.api_base,
        "input_cost_per_token": request.input_cost_per_token,
        "output_cost_per_token": request.output_cost_per_token,
        "tpm": request.tpm,
        "rpm": request.rpm,
    }
    if request.api_key:
        params["api_key"] = request.api_key
    return {
        "model_name": request.model_name,
        "litellm_params": {k: v for k, v in params.items() if v is not None},
        "model_info": {
            "db_model": True,
            "max_tokens": request.max_tokens,
            "supports_vision": request.supports_vision,
            "supports_function_calling": request.supports_function_calling,
            "supports_parallel_function_calling": request.supports_parallel_function_calling,
            "supports_tool_choice": request.supports_tool_choice,
        },
    }


def build_update_payload(request: AdminModelUpdate) -> Dict[str, Any]:
    """Only fields the admin sent end up in the proxy PATCH body"""
    changes = request.model_dump(exclude_unset=True)
    payload: Dict[str, Any] = {}
    if changes.get("model_name"):
        payload["model_name"] = changes["model_name"]

    params = {k: changes[k] for k in PROXY_PARAM_FIELDS if k in changes}
    if changes.get("backend_model_name"):
        params["model"] = f"openai/{changes['backend_model_name']}"
    if params:
        payload["litellm_params"] = params

    info = {k: changes[k] for k in PROXY_INFO_FIELDS if k in changes}
    if info:
        payload["model_info"] = info
    return payload


class ModelAdminService:
    """Create, update and delete proxy models on behalf of an admin"""

    def __init__(
        self,
        db: AsyncSession,
        proxy: ProxyClient,
        sync_service: Optional[ModelSyncService] = None,
        sync_delay: Optional[float] = None,
    ):
        self.db = db
        self.proxy = proxy
        self.models = ModelRepository(db)
        self.audit = AuditService(db)
        self.sync_service = sync_service or ModelSyncService(db, proxy)
        self.sync_delay = settings.MODEL_SYNC_DELAY_SECONDS if sync_delay is None else sync_delay

    async def _resync(self, operation: str) -> SyncResult:
        """Wait for the proxy to persist the change, then pull it back"""
        await asyncio.sleep(self.sync_delay)
        result = await self.sync_service.sync_models(force_update=True)
        if not result.success:
            logger.warning(f"Model synchronization after {operation} reported errors: {result.errors}")
        else:
            logger.info(f"Model synchronization completed after {operation}")
        return result

    async def create_model(self, request: AdminModelCreate, actor_id: str) -> AdminModelResult:
        response = await self.proxy.create_model(build_create_payload(request))
        model_id = (response or {}).get("model_name") or request.model_name

        async with unit_of_work(self.db):
            self.audit.log(
                actor_id,
                AuditAction.MODEL_CREATE,
                ResourceType.MODEL,
                model_id,
                request.model_dump(exclude={"api_key"}, exclude_none=True),
            )

        result = await self._resync("model creation")

        if await self.models.get_by_id(model_id) is not None:
            async with unit_of_work(self.db):
                if request.description:
                    await self.models.set_description(model_id, request.description)
                if request.restricted_access is not None:
                    await self.models.set_restricted(model_id, request.restricted_access)
        else:
            logger.warning(f"Model {model_id} not yet visible after sync; local fields not applied")

        return AdminModelResult(
            message=f"Model '{model_id}' created successfully",
            model_id=model_id,
            sync=result.to_dict(),
        )

    async def update_model(self, model_id: str, request: AdminModelUpdate, actor_id: str) -> AdminModelResult:
        model = await self.models.get_by_id(model_id)
        if model is None:
            raise NotFoundError("Model", model_id)
        if not model.litellm_model_id:
            raise ValidationError(
                f"Model '{model_id}' has no proxy model id and cannot be updated",
                field="litellm_model_id",
                suggestion="Run a model synchronization first",
            )

        payload = build_update_payload(request)
        if payload:
            await self.proxy.update_model(model.litellm_model_id, payload)

        async with unit_of_work(self.db):
            self.audit.log(
                actor_id,
                AuditAction.MODEL_UPDATE,
                ResourceType.MODEL,
                model_id,
                {"modelId": model_id, "updateData": request.model_dump(exclude={"api_key"}, exclude_unset=True)},
            )

        result = await self._resync("model update")

        changes = request.model_dump(exclude_unset=True)
        if "description" in changes or "backend_model_name" in changes:
            async with unit_of_work(self.db):
                if "description" in changes:
                    await self.models.set_description(model_id, changes["description"])
                if changes.get("backend_model_name"):
                    await self.models.set_backend_model_name(model_id, changes["backend_model_name"])

        if request.restricted_access is not None:
            await self.sync_service.update_model_restriction(model_id, request.restricted_access, actor_id)

        return AdminModelResult(
            message=f"Model '{model_id}' updated successfully",
            model_id=model_id,
            sync=result.to_dict(),
        )

    async def delete_model(self, model_id: str, actor_id: str) -> AdminModelResult:
        """Delete from the proxy; the model is then cascaded unavailable locally"""
        model = await self.models.get_by_id(model_id)
        if model is None:
            raise NotFoundError("Model", model_id)
        if not model.litellm_model_id:
            raise ValidationError(
                f"Model '{model_id}' has no proxy model id and cannot be deleted",
                field="litellm_model_id",
            )

        try:
            await self.proxy.delete_model(model.litellm_model_id)
        except ProxyRequestError as e:
            if not (e.is_not_found or "not found" in e.message.lower()):
                raise
            logger.warning(f"Model {model_id} already absent from proxy, proceeding with local cleanup")

        async with unit_of_work(self.db):
            self.audit.log(actor_id, AuditAction.MODEL_DELETE, ResourceType.MODEL, model_id, {"modelId": model_id})

        result = await self._resync("model deletion")

        # Normally already cascaded by the sync; covers a sync that could not fetch
        await self.sync_service.mark_model_unavailable(model_id)

        return AdminModelResult(
            message=f"Model '{model_id}' deleted successfully",
            model_id=model_id,
            sync=result.to_dict(),
        )
