"""Admin router - model catalog sync, access policy and provisioning overrides"""
import logging
from dataclasses import asdict
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..dependencies import (
    get_api_key_service,
    get_current_user,
    get_model_admin_service,
    get_model_sync_service,
    get_subscription_cascade_service,
    require_admin,
)
from ..errors import NotFoundError
from ..models.user import User
from ..repositories.api_key import ApiKeyRepository
from ..repositories.model import ModelRepository
from ..schemas.api_key import (
    AnyCreateApiKeyRequest,
    ApiKeyResponse,
    ApiKeyWithSecret,
    CreateApiKeyRequest,
    UpdateApiKeyRequest,
)
from ..schemas.model import (
    AdminModelCreate,
    AdminModelResult,
    AdminModelUpdate,
    CascadeStatisticsResponse,
    EnsureSubscriptionsRequest,
    EnsureSubscriptionsResponse,
    ModelResponse,
    ModelValidationResponse,
    RestrictionUpdate,
    RestrictionUpdateResponse,
    SyncRequest,
    SyncResultResponse,
    SyncStatsResponse,
)
from ..services.api_key_service import ApiKeyService
from ..services.model_admin_service import ModelAdminService
from ..services.model_sync_service import CascadeStatistics, ModelSyncService
from ..services.subscription_cascade_service import SubscriptionCascadeService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Models"])


# ============== Catalog (any authenticated user) ==============

@router.get("/v1/models", response_model=List[ModelResponse])
async def list_models(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await ModelRepository(db).list_all()


@router.get("/v1/models/{model_id}", response_model=ModelResponse)
async def get_model(
    model_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    model = await ModelRepository(db).get_by_id(model_id)
    if model is None:
        raise NotFoundError("Model", model_id)
    return model


# ============== Synchronization ==============

@router.post("/v1/admin/models/sync", response_model=SyncResultResponse)
async def sync_models(
    request: SyncRequest = SyncRequest(),
    admin: User = Depends(require_admin),
    service: ModelSyncService = Depends(get_model_sync_service),
):
    """
    Pull the proxy's model list into the catalog.

    Models missing from the proxy are marked unavailable and their
    subscriptions and key associations are cascaded. Partial failures are
    reported in `errors` with `success=false` rather than as an error status.
    """
    logger.info(f"Model sync triggered by {admin.id} (force_update={request.force_update})")
    result = await service.sync_models(
        force_update=request.force_update,
        mark_unavailable=request.mark_unavailable,
    )
    return result.to_dict()


@router.get("/v1/admin/models/sync/stats", response_model=SyncStatsResponse)
async def get_sync_stats(
    admin: User = Depends(require_admin),
    service: ModelSyncService = Depends(get_model_sync_service),
):
    return await service.get_sync_stats()


@router.get("/v1/admin/models/validate", response_model=ModelValidationResponse)
async def validate_models(
    admin: User = Depends(require_admin),
    service: ModelSyncService = Depends(get_model_sync_service),
):
    return await service.validate_models()


@router.post("/v1/admin/models/{model_id}/unavailable", response_model=CascadeStatisticsResponse)
async def mark_model_unavailable(
    model_id: str,
    admin: User = Depends(require_admin),
    service: ModelSyncService = Depends(get_model_sync_service),
    db: AsyncSession = Depends(get_db),
):
    """Mark a model unavailable and cascade. A second call is a no-op."""
    if await ModelRepository(db).get_by_id(model_id) is None:
        raise NotFoundError("Model", model_id)
    stats = await service.mark_model_unavailable(model_id)
    return CascadeStatisticsResponse(**asdict(stats or CascadeStatistics()))


# ============== Access policy ==============

@router.patch("/v1/admin/models/{model_id}/restriction", response_model=RestrictionUpdateResponse)
async def update_model_restriction(
    model_id: str,
    request: RestrictionUpdate,
    admin: User = Depends(require_admin),
    service: ModelSyncService = Depends(get_model_sync_service),
):
    """
    Toggle restricted access.

    Restricting a model moves its active subscriptions to pending and removes
    it from the subscribers' keys. Lifting the restriction changes nothing
    else.
    """
    return await service.update_model_restriction(model_id, request.restricted_access, admin.id)


# ============== Model management ==============

@router.post("/v1/admin/models", response_model=AdminModelResult, status_code=201)
async def create_model(
    request: AdminModelCreate,
    admin: User = Depends(require_admin),
    service: ModelAdminService = Depends(get_model_admin_service),
):
    return await service.create_model(request, admin.id)


@router.patch("/v1/admin/models/{model_id}", response_model=AdminModelResult)
async def update_model(
    model_id: str,
    request: AdminModelUpdate,
    admin: User = Depends(require_admin),
    service: ModelAdminService = Depends(get_model_admin_service),
):
    return await service.update_model(model_id, request, admin.id)


@router.delete("/v1/admin/models/{model_id}", response_model=AdminModelResult)
async def delete_model(
    model_id: str,
    admin: User = Depends(require_admin),
    service: ModelAdminService = Depends(get_model_admin_service),
):
    return await service.delete_model(model_id, admin.id)


# ============== User provisioning ==============

@router.post(
    "/v1/admin/users/{user_id}/subscriptions/ensure",
    response_model=EnsureSubscriptionsResponse,
)
async def ensure_active_subscriptions(
    user_id: str,
    request: EnsureSubscriptionsRequest,
    admin: User = Depends(require_admin),
    service: SubscriptionCascadeService = Depends(get_subscription_cascade_service),
    db: AsyncSession = Depends(get_db),
):
    if await db.get(User, user_id) is None:
        raise NotFoundError("User", user_id)
    return await service.ensure_active_subscriptions(user_id, request.model_ids, admin.id)


@router.post("/v1/admin/users/{user_id}/api-keys", response_model=ApiKeyWithSecret, status_code=201)
async def create_api_key_for_user(
    user_id: str,
    request: AnyCreateApiKeyRequest,
    admin: User = Depends(require_admin),
    cascade: SubscriptionCascadeService = Depends(get_subscription_cascade_service),
    keys: ApiKeyService = Depends(get_api_key_service),
    db: AsyncSession = Depends(get_db),
):
    """
    Issue a key on behalf of a user.

    Subscriptions for the requested models are created or reactivated first,
    so the admin does not have to walk the approval workflow.
    """
    if await db.get(User, user_id) is None:
        raise NotFoundError("User", user_id)
    if isinstance(request, CreateApiKeyRequest) and request.model_ids:
        await cascade.ensure_active_subscriptions(user_id, request.model_ids, admin.id)
    return await keys.create_api_key(user_id, request, actor_id=admin.id)


@router.patch("/v1/admin/users/{user_id}/api-keys/{key_id}", response_model=ApiKeyResponse)
async def update_api_key_for_user(
    user_id: str,
    key_id: str,
    request: UpdateApiKeyRequest,
    admin: User = Depends(require_admin),
    cascade: SubscriptionCascadeService = Depends(get_subscription_cascade_service),
    keys: ApiKeyService = Depends(get_api_key_service),
    db: AsyncSession = Depends(get_db),
):
    """Edit a user's key; newly added models are subscribed on the user's behalf."""
    if await db.get(User, user_id) is None:
        raise NotFoundError("User", user_id)
    if await ApiKeyRepository(db).get_by_id(key_id, user_id) is None:
        raise NotFoundError("API key", key_id)
    if request.model_ids:
        await cascade.ensure_active_subscriptions(user_id, request.model_ids, admin.id)
    return await keys.update_api_key(key_id, user_id, request, actor_id=admin.id)


@router.post("/v1/admin/api-keys/cleanup-expired")
async def cleanup_expired_keys(
    admin: User = Depends(require_admin),
    keys: ApiKeyService = Depends(get_api_key_service),
):
    return {"deactivated": await keys.cleanup_expired_keys()}


@router.post("/v1/admin/api-keys/repair-hashes")
async def repair_key_hashes(
    admin: User = Depends(require_admin),
    keys: ApiKeyService = Depends(get_api_key_service),
):
    return await keys.repair_key_hashes()


@router.post("/v1/admin/api-keys/backfill-aliases")
async def backfill_key_aliases(
    admin: User = Depends(require_admin),
    keys: ApiKeyService = Depends(get_api_key_service),
):
    return await keys.backfill_key_aliases()


@router.post("/v1/admin/api-keys/reconcile")
async def reconcile_key_models(
    admin: User = Depends(require_admin),
    keys: ApiKeyService = Depends(get_api_key_service),
):
    """Drop local key/model associations the proxy no longer grants"""
    return await keys.reconcile_key_models()


@router.get("/v1/admin/api-keys/stats")
async def get_global_api_key_stats(
    admin: User = Depends(require_admin),
    keys: ApiKeyService = Depends(get_api_key_service),
):
    return await keys.get_api_key_stats()
