"""API keys router - multi-model key lifecycle for the calling user"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from ..dependencies import get_api_key_service, get_current_user
from ..models.user import User
from ..schemas.api_key import (
    AnyCreateApiKeyRequest,
    ApiKeyListResponse,
    ApiKeyResponse,
    ApiKeySpendInfo,
    ApiKeyStats,
    ApiKeyValidation,
    ApiKeyWithSecret,
    FullKeyResponse,
    RotateApiKeyResponse,
    UpdateApiKeyLimitsRequest,
    UpdateApiKeyRequest,
    ValidateApiKeyRequest,
)
from ..services.api_key_service import ApiKeyService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/api-keys", tags=["API Keys"])


@router.post("", response_model=ApiKeyWithSecret, status_code=201)
async def create_api_key(
    request: AnyCreateApiKeyRequest,
    user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    """
    Create a new API key.

    Accepts `model_ids` (one key, several models) or the deprecated
    `subscription_id` form. Every model needs an active subscription.

    Returns the full key (shown only once!).
    """
    return await service.create_api_key(user.id, request)


@router.get("", response_model=ApiKeyListResponse)
async def list_api_keys(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    model_id: Optional[str] = None,
    is_active: Optional[bool] = None,
    user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    return await service.get_user_api_keys(user.id, page, limit, model_id, is_active)


@router.get("/stats", response_model=ApiKeyStats)
async def get_api_key_stats(
    user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    return await service.get_api_key_stats(user.id)


@router.post("/validate", response_model=ApiKeyValidation)
async def validate_api_key(
    request: ValidateApiKeyRequest,
    service: ApiKeyService = Depends(get_api_key_service),
):
    """Check a raw key. Called by the gateway, so no caller identity is required."""
    return await service.validate_api_key(request.key)


@router.get("/{key_id}", response_model=ApiKeyResponse)
async def get_api_key(
    key_id: str,
    user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    return await service.get_api_key(key_id, user.id)


@router.patch("/{key_id}", response_model=ApiKeyResponse)
async def update_api_key(
    key_id: str,
    request: UpdateApiKeyRequest,
    user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    return await service.update_api_key(key_id, user.id, request)


@router.patch("/{key_id}/limits", response_model=ApiKeyResponse)
async def update_api_key_limits(
    key_id: str,
    request: UpdateApiKeyLimitsRequest,
    user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    return await service.update_api_key_limits(key_id, user.id, request)


@router.delete("/{key_id}", status_code=204)
async def delete_api_key(
    key_id: str,
    user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    await service.delete_api_key(key_id, user.id)
    return Response(status_code=204)


@router.post("/{key_id}/revoke", response_model=ApiKeyResponse)
async def revoke_api_key(
    key_id: str,
    user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    return await service.revoke_api_key(key_id, user.id)


@router.post("/{key_id}/rotate", response_model=RotateApiKeyResponse)
async def rotate_api_key(
    key_id: str,
    user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    """
    Replace the key's secret, keeping its models and limits.

    Returns the new key (shown only once!).
    """
    return await service.rotate_api_key(key_id, user.id)


@router.post("/{key_id}/reveal", response_model=FullKeyResponse)
async def retrieve_full_key(
    key_id: str,
    user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    """Return the full key again. Every call is audited."""
    return await service.retrieve_full_key(key_id, user.id)


@router.get("/{key_id}/spend", response_model=ApiKeySpendInfo)
async def get_api_key_spend(
    key_id: str,
    user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    return await service.get_api_key_spend_info(key_id, user.id)


@router.post("/{key_id}/sync", response_model=ApiKeyResponse)
async def sync_api_key(
    key_id: str,
    user: User = Depends(get_current_user),
    service: ApiKeyService = Depends(get_api_key_service),
):
    return await service.sync_api_key_with_proxy(key_id, user.id)
