# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""API key lifecycle: creation, mutation, rotation, revocation and validation.

The proxy issues and enforces the secret. Locally we keep its sha256 (for
authentication lookups), a display prefix, the model associations and the
limits. Whenever model access is taken away, the proxy is updated first and
the local rows only follow for keys whose proxy update succeeded.
"""
import hashlib
import logging
import math
import re
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import unit_of_work
from ..errors import (
    ControlPlaneError,
    ErrorCode,
    InternalError,
    NotFoundError,
    ProxyRequestError,
    ValidationError,
)
from ..models.api_key import ApiKey, KeySyncStatus
from ..models.subscription import SubscriptionStatus
from ..models.user import SYSTEM_USER_ID, User
from ..repositories.api_key import ApiKeyRepository
from ..repositories.subscription import SubscriptionRepository
from ..schemas.api_key import (
    AnyCreateApiKeyRequest,
    ApiKeyListResponse,
    ApiKeyResponse,
    ApiKeySpendInfo,
    ApiKeyStats,
    ApiKeyValidation,
    ApiKeyWithSecret,
    FullKeyResponse,
    LegacyCreateApiKeyRequest,
    ResolvedKeyRequest,
    RotateApiKeyResponse,
    UpdateApiKeyLimitsRequest,
    UpdateApiKeyRequest,
    ValidatedApiKey,
)
from ..schemas.proxy import KeyGenerationRequest
from .audit_service import AuditAction, AuditService, ResourceType
from .proxy_client import ProxyClient

logger = logging.getLogger(__name__)

_SECRET_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")
_ALIAS_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")


class ApiKeyService:
    """Multi-model API keys mirrored to the proxy"""

    # Visible characters after the proxy prefix in key_prefix
    PREFIX_LENGTH = 4
    MIN_SECRET_LENGTH = 8

    def __init__(self, db: AsyncSession, proxy: ProxyClient):
        self.db = db
        self.proxy = proxy
        self.api_keys = ApiKeyRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.audit = AuditService(db)

    # ============== Key material ==============

    @classmethod
    def hash_key(cls, api_key: str) -> str:
        """Hex-encoded SHA-256 of the proxy-issued key"""
        return hashlib.sha256(api_key.encode("utf-8")).hexdigest()

    @classmethod
    def key_prefix(cls, api_key: str) -> str:
        return api_key[:len(settings.PROXY_KEY_PREFIX) + cls.PREFIX_LENGTH]

    @classmethod
    def mask_key(cls, key_prefix: str, api_key: Optional[str] = None) -> str:
        """Display form, e.g. "sk-abcd...wxyz" """
        if not api_key or len(api_key) < 12:
            return f"{key_prefix}..."
        return f"{key_prefix}...{api_key[-4:]}"

    @classmethod
    def validate_format(cls, api_key: Optional[str]) -> bool:
        """Prefix plus at least MIN_SECRET_LENGTH url-safe characters"""
        if not api_key or not api_key.startswith(settings.PROXY_KEY_PREFIX):
            return False
        secret = api_key[len(settings.PROXY_KEY_PREFIX):]
        return len(secret) >= cls.MIN_SECRET_LENGTH and bool(_SECRET_PATTERN.match(secret))

    @staticmethod
    def generate_unique_alias(base_name: Optional[str]) -> str:
        """Proxy-side alias: sanitized display name plus 8 random hex chars.

        Display names may repeat across keys; aliases never do.
        """
        sanitized = _ALIAS_UNSAFE.sub("-", base_name or "")
        sanitized = re.sub(r"-+", "-", sanitized).strip("-")[:50]
        return f"{sanitized or 'api-key'}_{secrets.token_hex(4)}"

    @staticmethod
    def _duration(expires_at: datetime) -> str:
        seconds = (expires_at - datetime.utcnow()).total_seconds()
        return f"{max(1, math.ceil(seconds / 86400))}d"

    # ============== Creation ==============

    async def resolve_request(self, user_id: str, request: AnyCreateApiKeyRequest) -> ResolvedKeyRequest:
        """Turn either request shape into the canonical one"""
        options = request.model_dump(exclude={"model_ids", "subscription_id"})

        if isinstance(request, LegacyCreateApiKeyRequest):
            subscription = await self.subscriptions.get_by_id(request.subscription_id)
            if subscription is None or subscription.user_id != user_id:
                raise NotFoundError(
                    "Subscription",
                    request.subscription_id,
                    message="Subscription not found. Please verify the subscription exists and is accessible",
                )
            if subscription.status != SubscriptionStatus.ACTIVE:
                raise ValidationError(
                    f"Cannot create API key for {subscription.status.value} subscription",
                    field="subscription_status",
                    value=subscription.status.value,
                    suggestion="Subscription must be active to create API keys",
                )
            logger.warning(
                f"User {user_id} used deprecated subscription_id {request.subscription_id}; migrate to model_ids"
            )
            return ResolvedKeyRequest(
                **options,
                model_ids=[subscription.model_id],
                subscription_id=subscription.id,
                legacy=True,
            )

        return ResolvedKeyRequest(**options, model_ids=list(dict.fromkeys(request.model_ids)))

    async def create_api_key(
        self,
        user_id: str,
        request: AnyCreateApiKeyRequest,
        actor_id: Optional[str] = None,
    ) -> ApiKeyWithSecret:
        """Create a key in the proxy, then record it locally.

        Returns the only response that ever carries the full secret.
        """
        resolved = await self.resolve_request(user_id, request)

        if not resolved.model_ids:
            raise ValidationError(
                "At least one model must be selected",
                field="model_ids",
                value=[],
                suggestion="Please select at least one model for the API key",
            )

        await self._require_active_subscriptions(
            user_id,
            resolved.model_ids,
            "You do not have active subscriptions for the following models",
            "Please ensure you have active subscriptions for all selected models",
        )

        active_count = await self.api_keys.count_active_for_user(user_id)
        if active_count >= settings.MAX_ACTIVE_KEYS_PER_USER:
            raise ValidationError(
                f"Maximum {settings.MAX_ACTIVE_KEYS_PER_USER} active API keys allowed per user",
                field="active_keys_count",
                value=active_count,
                suggestion="Please revoke some existing API keys before creating new ones",
                code=ErrorCode.KEY_LIMIT_EXCEEDED,
            )

        await self.ensure_proxy_user(user_id, resolved.team_id)

        alias = self.generate_unique_alias(resolved.name)
        generation = KeyGenerationRequest(
            key_alias=alias,
            duration=self._duration(resolved.expires_at) if resolved.expires_at else None,
            models=resolved.model_ids,
            max_budget=resolved.max_budget,
            user_id=user_id,
            team_id=resolved.team_id,
            tpm_limit=resolved.tpm_limit,
            rpm_limit=resolved.rpm_limit,
            budget_duration=resolved.budget_duration,
            soft_budget=resolved.soft_budget,
            max_parallel_requests=resolved.max_parallel_requests,
            model_max_budget=resolved.model_max_budget,
            model_rpm_limit=resolved.model_rpm_limit,
            model_tpm_limit=resolved.model_tpm_limit,
            tags=resolved.tags,
            guardrails=resolved.guardrails,
            permissions=resolved.permissions.model_dump(exclude_none=True) if resolved.permissions else None,
            metadata={
                "created_by": settings.APP_NAME,
                "model_count": len(resolved.model_ids),
                "legacy_request": resolved.legacy,
                **(resolved.metadata or {}),
            },
        )
        generated = await self.proxy.generate_key(generation)
        if not generated.key:
            raise InternalError("Proxy returned no key. Please try again or contact support")

        now = datetime.utcnow()
        try:
            async with unit_of_work(self.db):
                api_key = ApiKey(
                    user_id=user_id,
                    name=resolved.name,
                    key_hash=self.hash_key(generated.key),
                    key_prefix=self.key_prefix(generated.key),
                    litellm_key_value=generated.key,
                    litellm_key_alias=alias,
                    max_budget=resolved.max_budget,
                    current_spend=0,
                    tpm_limit=resolved.tpm_limit,
                    rpm_limit=resolved.rpm_limit,
                    budget_duration=resolved.budget_duration,
                    soft_budget=resolved.soft_budget,
                    max_parallel_requests=resolved.max_parallel_requests,
                    model_max_budget=resolved.model_max_budget,
                    model_rpm_limit=resolved.model_rpm_limit,
                    model_tpm_limit=resolved.model_tpm_limit,
                    metadata_=resolved.metadata or {},
                    is_active=True,
                    expires_at=resolved.expires_at,
                    last_sync_at=now,
                    sync_status=KeySyncStatus.SYNCED,
                    subscription_id=resolved.subscription_id,
                )
                await self.api_keys.create(api_key, resolved.model_ids)
                self.audit.log(
                    actor_id or user_id,
                    AuditAction.API_KEY_CREATE,
                    ResourceType.API_KEY,
                    api_key.id,
                    {
                        "name": resolved.name,
                        "keyPrefix": api_key.key_prefix,
                        "keyAlias": alias,
                        "models": resolved.model_ids,
                        "modelCount": len(resolved.model_ids),
                        "legacy": resolved.legacy,
                        "ownerId": user_id,
                    },
                )
        except Exception:
            await self._discard_proxy_key(generated.key)
            raise

        logger.info(
            f"API key {api_key.id} created for user {user_id} "
            f"(prefix={api_key.key_prefix}, models={resolved.model_ids})"
        )
        response = self._to_response(api_key, resolved.model_ids)
        return ApiKeyWithSecret(**response.model_dump(), key=generated.key)

    async def _discard_proxy_key(self, key: str) -> None:
        """Best-effort removal of a proxy key that has no local record"""
        try:
            await self.proxy.delete_key(key)
        except ControlPlaneError as e:
            logger.error(f"Failed to clean up proxy key after local failure: {e.message}")

    async def _require_active_subscriptions(
        self, user_id: str, model_ids: List[str], message: str, suggestion: str
    ) -> None:
        active = set(await self.subscriptions.get_active_model_ids(user_id, model_ids))
        missing = [model_id for model_id in model_ids if model_id not in active]
        if missing:
            raise ValidationError(
                f"{message}: {', '.join(missing)}",
                field="model_ids",
                value=missing,
                suggestion=suggestion,
                code=ErrorCode.SUBSCRIPTION_REQUIRED,
            )

    async def ensure_proxy_user(self, user_id: str, team_id: Optional[str] = None) -> None:
        """Provision the user (and its team) in the proxy on first use"""
        team_id = team_id or settings.DEFAULT_TEAM_ID
        if not await self.proxy.team_exists(team_id):
            logger.info(f"Creating team {team_id} in proxy")
            await self.proxy.create_team({"team_id": team_id, "team_alias": team_id, "models": []})

        if await self.proxy.user_exists(user_id):
            return

        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)

        logger.info(f"Creating user {user_id} in proxy")
        try:
            await self.proxy.create_user(
                {
                    "user_id": user_id,
                    "user_email": user.email,
                    "user_alias": user.username,
                    "user_role": "internal_user",
                    "max_budget": float(user.max_budget) if user.max_budget is not None else settings.DEFAULT_USER_MAX_BUDGET,
                    "tpm_limit": user.tpm_limit or settings.DEFAULT_USER_TPM_LIMIT,
                    "rpm_limit": user.rpm_limit or settings.DEFAULT_USER_RPM_LIMIT,
                    "teams": [team_id],
                    "auto_create_key": False,
                }
            )
        except ProxyRequestError as e:
            if "already exists" not in e.message.lower():
                raise
            logger.info(f"User {user_id} already exists in proxy")

    # ============== Reads ==============

    async def _get_owned_key(self, key_id: str, user_id: str) -> ApiKey:
        api_key = await self.api_keys.get_by_id(key_id, user_id)
        if api_key is None:
            raise NotFoundError(
                "API key",
                key_id,
                message="API key not found or you do not have permission to access it",
            )
        return api_key

    async def _model_ids_for(self, api_key: ApiKey) -> List[str]:
        """Join-table models, or the legacy subscription's model"""
        model_ids = await self.api_keys.get_model_ids(api_key.id)
        if not model_ids and api_key.subscription_id:
            legacy = await self.api_keys.get_legacy_subscription_model(api_key.subscription_id)
            if legacy:
                model_ids = [legacy[0]]
        return model_ids

    def _to_response(self, api_key: ApiKey, model_ids: List[str]) -> ApiKeyResponse:
        max_budget = float(api_key.max_budget) if api_key.max_budget is not None else None
        current_spend = float(api_key.current_spend) if api_key.current_spend is not None else None
        utilization = None
        if max_budget and current_spend:
            utilization = round(current_spend / max_budget * 100)

        return ApiKeyResponse(
            id=api_key.id,
            user_id=api_key.user_id,
            name=api_key.name,
            key_prefix=api_key.key_prefix,
            masked_key=self.mask_key(api_key.key_prefix, api_key.litellm_key_value),
            models=model_ids,
            subscription_id=api_key.subscription_id,
            is_active=api_key.is_active,
            created_at=api_key.created_at,
            expires_at=api_key.expires_at,
            revoked_at=api_key.revoked_at,
            last_used_at=api_key.last_used_at,
            last_sync_at=api_key.last_sync_at,
            sync_status=KeySyncStatus(api_key.sync_status).value,
            sync_error=api_key.sync_error,
            key_alias=api_key.litellm_key_alias,
            max_budget=max_budget,
            current_spend=current_spend,
            budget_utilization=utilization,
            tpm_limit=api_key.tpm_limit,
            rpm_limit=api_key.rpm_limit,
            budget_duration=api_key.budget_duration,
            soft_budget=float(api_key.soft_budget) if api_key.soft_budget is not None else None,
            max_parallel_requests=api_key.max_parallel_requests,
            model_max_budget=api_key.model_max_budget,
            model_rpm_limit=api_key.model_rpm_limit,
            model_tpm_limit=api_key.model_tpm_limit,
            metadata=api_key.metadata_ or {},
        )

    async def get_user_api_keys(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        model_id: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> ApiKeyListResponse:
        keys, total = await self.api_keys.list_for_user(user_id, page, limit, model_id, is_active)
        models_by_key = await self.api_keys.get_model_ids_for_keys([k.id for k in keys])

        items = []
        for api_key in keys:
            model_ids = models_by_key.get(api_key.id) or []
            if not model_ids and api_key.subscription_id:
                model_ids = await self._model_ids_for(api_key)
            items.append(self._to_response(api_key, model_ids))

        return ApiKeyListResponse(
            items=items,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if limit else 0,
        )

    async def get_api_key(self, key_id: str, user_id: str) -> ApiKeyResponse:
        api_key = await self._get_owned_key(key_id, user_id)
        return self._to_response(api_key, await self._model_ids_for(api_key))

    async def retrieve_full_key(self, key_id: str, user_id: str) -> FullKeyResponse:
        """Return the secret again; every retrieval is audited"""
        api_key = await self._get_owned_key(key_id, user_id)
        now = datetime.utcnow()

        if not api_key.is_active:
            raise ValidationError(
                "API key is inactive",
                field="is_active",
                value=False,
                suggestion="This API key has been deactivated and cannot be used",
                code=ErrorCode.INVALID_KEY_STATE,
            )
        if api_key.expires_at and api_key.expires_at < now:
            raise ValidationError(
                "API key has expired",
                field="expires_at",
                value=api_key.expires_at.isoformat(),
                suggestion="Please create a new API key to continue using the service",
                code=ErrorCode.INVALID_KEY_STATE,
            )
        if not api_key.litellm_key_value:
            raise NotFoundError(
                "API key",
                key_id,
                message="No proxy key associated with this API key. Please sync it with the proxy",
            )

        async with unit_of_work(self.db):
            self.audit.log(
                user_id,
                AuditAction.API_KEY_RETRIEVE_FULL,
                ResourceType.API_KEY,
                key_id,
                {"keyName": api_key.name, "retrievedAt": now.isoformat(), "retrievalMethod": "secure_endpoint"},
            )

        logger.info(f"Full value of API key {key_id} retrieved by user {user_id}")
        return FullKeyResponse(key=api_key.litellm_key_value, retrieved_at=now)

    # ============== Mutation ==============

    def _require_active(self, api_key: ApiKey) -> None:
        if not api_key.is_active:
            raise ValidationError(
                "Cannot update inactive API key",
                field="is_active",
                value=False,
                suggestion="Reactivate the API key before making updates",
                code=ErrorCode.INVALID_KEY_STATE,
            )

    async def update_api_key(
        self,
        key_id: str,
        user_id: str,
        request: UpdateApiKeyRequest,
        actor_id: Optional[str] = None,
    ) -> ApiKeyResponse:
        """Rename, re-scope or annotate a key. Proxy first, then local rows"""
        api_key = await self._get_owned_key(key_id, user_id)
        self._require_active(api_key)

        if request.model_ids is not None:
            if not request.model_ids:
                raise ValidationError(
                    "At least one model must be selected",
                    field="model_ids",
                    value=[],
                    suggestion="Delete or revoke the key instead of removing all of its models",
                )
            await self._require_active_subscriptions(
                user_id,
                request.model_ids,
                "Cannot add models without active subscriptions",
                "Ensure all models have active subscriptions before adding them to an API key",
            )

        proxy_updates: Dict[str, Any] = {}
        new_alias = None
        if request.name is not None:
            new_alias = self.generate_unique_alias(request.name)
            proxy_updates["key_alias"] = new_alias
        if request.model_ids is not None:
            proxy_updates["models"] = list(dict.fromkeys(request.model_ids))
        if request.metadata is not None:
            proxy_updates["metadata"] = request.metadata

        if proxy_updates and api_key.litellm_key_value:
            await self.proxy.update_key(api_key.litellm_key_value, **proxy_updates)
            logger.info(f"Proxy key for API key {key_id} updated: {sorted(proxy_updates)}")

        async with unit_of_work(self.db):
            if request.name is not None:
                api_key.name = request.name
                api_key.litellm_key_alias = new_alias
            if request.metadata is not None:
                api_key.metadata_ = {**(api_key.metadata_ or {}), **request.metadata}
            api_key.last_sync_at = datetime.utcnow()
            if request.model_ids is not None:
                await self.api_keys.replace_models(key_id, proxy_updates["models"])
            self.audit.log(
                actor_id or user_id,
                AuditAction.API_KEY_UPDATE,
                ResourceType.API_KEY,
                key_id,
                request.model_dump(exclude_none=True),
            )

        logger.info(f"API key {key_id} of user {user_id} updated by {actor_id or user_id}")
        return self._to_response(api_key, await self._model_ids_for(api_key))

    async def update_api_key_limits(
        self, key_id: str, user_id: str, limits: UpdateApiKeyLimitsRequest
    ) -> ApiKeyResponse:
        api_key = await self._get_owned_key(key_id, user_id)
        self._require_active(api_key)

        changes = limits.model_dump(exclude_none=True)
        if not changes:
            return self._to_response(api_key, await self._model_ids_for(api_key))

        if api_key.litellm_key_value:
            await self.proxy.update_key(api_key.litellm_key_value, **changes)

        async with unit_of_work(self.db):
            for field_name, value in changes.items():
                setattr(api_key, field_name, value)
            api_key.last_sync_at = datetime.utcnow()
            self.audit.log(user_id, AuditAction.API_KEY_UPDATE, ResourceType.API_KEY, key_id, {"limits": changes})

        logger.info(f"API key {key_id} limits updated: {changes}")
        return self._to_response(api_key, await self._model_ids_for(api_key))

    async def delete_api_key(self, key_id: str, user_id: str) -> None:
        """Permanently delete a key. A key already absent from the proxy is fine"""
        api_key = await self._get_owned_key(key_id, user_id)
        model_ids = await self._model_ids_for(api_key)

        if api_key.litellm_key_value:
            try:
                if not await self.proxy.delete_key(api_key.litellm_key_value):
                    logger.info(f"API key {key_id} was already absent from proxy")
            except ControlPlaneError as e:
                logger.warning(f"Failed to delete API key {key_id} from proxy, proceeding with local deletion: {e.message}")

        async with unit_of_work(self.db):
            await self.api_keys.delete(api_key)
            self.audit.log(
                user_id,
                AuditAction.API_KEY_DELETE,
                ResourceType.API_KEY,
                key_id,
                {"models": model_ids, "keyName": api_key.name, "keyPrefix": api_key.key_prefix},
            )

        logger.info(f"API key {key_id} deleted by user {user_id}")

    async def revoke_api_key(self, key_id: str, user_id: str) -> ApiKeyResponse:
        """Soft revocation: the row stays, inactive, with revoked_at set"""
        api_key = await self._get_owned_key(key_id, user_id)
        if api_key.revoked_at is not None:
            raise ValidationError(
                "API key is already revoked",
                field="revoked_at",
                value=api_key.revoked_at.isoformat(),
                code=ErrorCode.INVALID_KEY_STATE,
            )

        sync_error = None
        if api_key.litellm_key_value:
            try:
                await self.proxy.delete_key(api_key.litellm_key_value)
            except ControlPlaneError as e:
                sync_error = e.message
                logger.warning(f"Failed to delete revoked API key {key_id} from proxy: {e.message}")

        now = datetime.utcnow()
        async with unit_of_work(self.db):
            api_key.is_active = False
            api_key.revoked_at = now
            api_key.sync_status = KeySyncStatus.ERROR if sync_error else KeySyncStatus.SYNCED
            api_key.sync_error = sync_error
            api_key.last_sync_at = now
            self.audit.log(
                user_id,
                AuditAction.API_KEY_REVOKE,
                ResourceType.API_KEY,
                key_id,
                {"keyPrefix": api_key.key_prefix, "proxyDeleted": sync_error is None},
            )

        logger.info(f"API key {key_id} revoked by user {user_id}")
        return self._to_response(api_key, await self._model_ids_for(api_key))

    async def rotate_api_key(self, key_id: str, user_id: str) -> RotateApiKeyResponse:
        """Replace the secret, keeping models and limits.

        The new proxy key is issued before the old one is deleted, so a failure
        at any step leaves the key usable. Nothing is rotated locally unless
        the proxy issued the new secret.
        """
        api_key = await self._get_owned_key(key_id, user_id)
        self._require_active(api_key)
        model_ids = await self._model_ids_for(api_key)
        old_value = api_key.litellm_key_value
        old_prefix = api_key.key_prefix

        await self.ensure_proxy_user(user_id)
        alias = self.generate_unique_alias(api_key.name)
        generated = await self.proxy.generate_key(
            KeyGenerationRequest(
                key_alias=alias,
                duration=self._duration(api_key.expires_at) if api_key.expires_at else None,
                models=model_ids,
                max_budget=float(api_key.max_budget) if api_key.max_budget is not None else None,
                user_id=user_id,
                tpm_limit=api_key.tpm_limit,
                rpm_limit=api_key.rpm_limit,
                budget_duration=api_key.budget_duration,
                soft_budget=float(api_key.soft_budget) if api_key.soft_budget is not None else None,
                max_parallel_requests=api_key.max_parallel_requests,
                model_max_budget=api_key.model_max_budget,
                model_rpm_limit=api_key.model_rpm_limit,
                model_tpm_limit=api_key.model_tpm_limit,
                metadata={
                    **(api_key.metadata_ or {}),
                    "rotated_from_key_id": key_id,
                    "rotated_at": datetime.utcnow().isoformat(),
                },
            )
        )
        if not generated.key:
            raise InternalError("Proxy returned no key during rotation")

        try:
            async with unit_of_work(self.db):
                api_key.key_hash = self.hash_key(generated.key)
                api_key.key_prefix = self.key_prefix(generated.key)
                api_key.litellm_key_value = generated.key
                api_key.litellm_key_alias = alias
                api_key.last_sync_at = datetime.utcnow()
                api_key.sync_status = KeySyncStatus.SYNCED
                api_key.sync_error = None
                self.audit.log(
                    user_id,
                    AuditAction.API_KEY_ROTATE,
                    ResourceType.API_KEY,
                    key_id,
                    {"models": model_ids, "keyName": api_key.name, "oldPrefix": old_prefix, "newPrefix": api_key.key_prefix},
                )
        except Exception:
            await self._discard_proxy_key(generated.key)
            raise

        if old_value:
            try:
                await self.proxy.delete_key(old_value)
            except ControlPlaneError as e:
                logger.warning(f"Rotated API key {key_id} but failed to delete the old proxy key: {e.message}")

        logger.info(f"API key {key_id} rotated ({old_prefix} -> {api_key.key_prefix})")
        return RotateApiKeyResponse(id=key_id, key=generated.key, key_prefix=api_key.key_prefix)

    # ============== Validation ==============

    async def validate_api_key(self, raw_key: str) -> ApiKeyValidation:
        if not self.validate_format(raw_key):
            return ApiKeyValidation(is_valid=False, error="Invalid key format")

        api_key = await self.api_keys.get_active_by_hash(self.hash_key(raw_key))
        if api_key is None:
            return ApiKeyValidation(is_valid=False, error="API key not found")

        if api_key.expires_at and api_key.expires_at < datetime.utcnow():
            return ApiKeyValidation(is_valid=False, error="API key expired")

        model_ids = await self.api_keys.get_model_ids(api_key.id)
        if not model_ids and api_key.subscription_id:
            legacy = await self.api_keys.get_legacy_subscription_model(api_key.subscription_id)
            if legacy:
                model_id, status = legacy
                if status != SubscriptionStatus.ACTIVE:
                    return ApiKeyValidation(is_valid=False, error=f"Subscription is {SubscriptionStatus(status).value}")
                model_ids = [model_id]

        await self._touch_last_used(api_key.id)

        return ApiKeyValidation(
            is_valid=True,
            api_key=ValidatedApiKey(
                id=api_key.id,
                user_id=api_key.user_id,
                name=api_key.name,
                key_prefix=api_key.key_prefix,
                models=model_ids,
                expires_at=api_key.expires_at,
            ),
        )

    async def _touch_last_used(self, key_id: str) -> None:
        try:
            async with unit_of_work(self.db):
                await self.api_keys.touch_last_used(key_id)
        except Exception as e:
            logger.warning(f"Failed to update last used timestamp for API key {key_id}: {e}")

    # ============== Model access removal ==============

    async def remove_model_from_user_api_keys(self, user_id: str, model_id: str) -> Dict[str, int]:
        """Strip model_id from every active key of user_id.

        The proxy is updated first, key by key. Local associations are only
        deleted for keys whose proxy update succeeded; a key the proxy still
        grants the model to keeps its local row.
        """
        keys = [k for k in await self.api_keys.list_user_keys_with_model(user_id, model_id) if k.is_active]
        if not keys:
            return {"keys_updated": 0, "keys_failed": 0, "keys_deactivated": 0}

        succeeded: List[str] = []
        failed: List[Tuple[str, str]] = []
        for api_key in keys:
            if not api_key.litellm_key_value:
                succeeded.append(api_key.id)
                continue
            remaining = [m for m in await self.api_keys.get_model_ids(api_key.id) if m != model_id]
            updates: Dict[str, Any] = {"models": remaining}
            if not remaining:
                # An empty model list means "all models" to the proxy
                updates["blocked"] = True
            try:
                await self.proxy.update_key(api_key.litellm_key_value, **updates)
            except ControlPlaneError as e:
                logger.error(f"Failed to update proxy key {api_key.id}, leaving its local models untouched: {e.message}")
                failed.append((api_key.id, e.message))
                continue
            succeeded.append(api_key.id)

        deactivated = 0
        if succeeded:
            async with unit_of_work(self.db):
                await self.api_keys.delete_model_associations(model_id, succeeded)
                deactivated = await self.api_keys.deactivate_orphans(succeeded)
                for key_id in succeeded:
                    self.audit.log(
                        SYSTEM_USER_ID,
                        AuditAction.API_KEY_MODEL_REMOVED,
                        ResourceType.API_KEY,
                        key_id,
                        {"modelId": model_id, "ownerId": user_id},
                    )
            logger.info(f"Removed model {model_id} from {len(succeeded)}/{len(keys)} API keys of user {user_id}")

        if failed:
            logger.warning(
                f"{len(failed)}/{len(keys)} API keys of user {user_id} could not be updated in proxy; "
                f"local state unchanged for those keys"
            )

        return {"keys_updated": len(succeeded), "keys_failed": len(failed), "keys_deactivated": deactivated}

    # ============== Proxy sync & maintenance ==============

    async def sync_api_key_with_proxy(self, key_id: str, user_id: str) -> ApiKeyResponse:
        """Refresh spend and limits from the proxy's copy of the key"""
        api_key = await self._get_owned_key(key_id, user_id)
        if not api_key.litellm_key_value:
            raise ValidationError(
                "API key is not integrated with the proxy",
                field="litellm_key_value",
                suggestion="Rotate the key to issue a proxy-backed secret",
            )

        try:
            info = await self.proxy.get_key_info(api_key.litellm_key_value)
        except ControlPlaneError as e:
            async with unit_of_work(self.db):
                api_key.sync_status = KeySyncStatus.ERROR
                api_key.sync_error = e.message
                api_key.last_sync_at = datetime.utcnow()
            logger.error(f"Failed to sync API key {key_id} with proxy: {e.message}")
            raise

        async with unit_of_work(self.db):
            api_key.current_spend = info.spend
            api_key.max_budget = info.max_budget
            api_key.tpm_limit = info.tpm_limit
            api_key.rpm_limit = info.rpm_limit
            api_key.last_sync_at = datetime.utcnow()
            api_key.sync_status = KeySyncStatus.SYNCED
            api_key.sync_error = None

        logger.info(f"API key {key_id} synced with proxy (spend={info.spend}, max_budget={info.max_budget})")
        return self._to_response(api_key, await self._model_ids_for(api_key))

    async def get_api_key_spend_info(self, key_id: str, user_id: str) -> ApiKeySpendInfo:
        """Live spend from the proxy; the local copy when the proxy is unavailable"""
        api_key = await self._get_owned_key(key_id, user_id)
        current_spend = float(api_key.current_spend or 0)
        max_budget = float(api_key.max_budget) if api_key.max_budget is not None else None
        source = "cached"

        if api_key.litellm_key_value:
            try:
                info = await self.proxy.get_key_info(api_key.litellm_key_value)
                current_spend, max_budget, source = info.spend, info.max_budget, "proxy"
            except ControlPlaneError as e:
                logger.warning(f"Failed to get live spend for API key {key_id}, using cached values: {e.message}")

        return ApiKeySpendInfo(
            key_id=key_id,
            current_spend=current_spend,
            max_budget=max_budget,
            budget_utilization=(current_spend / max_budget * 100) if max_budget else 0.0,
            remaining_budget=(max_budget - current_spend) if max_budget is not None else None,
            source=source,
            last_updated_at=api_key.last_sync_at or api_key.created_at,
        )

    async def cleanup_expired_keys(self) -> int:
        """Deactivate expired keys, then drop them from the proxy"""
        now = datetime.utcnow()
        expired = await self.api_keys.list_expired_active(now)
        if not expired:
            return 0

        async with unit_of_work(self.db):
            count = await self.api_keys.deactivate_expired(now)
            for api_key in expired:
                self.audit.log(
                    api_key.user_id,
                    AuditAction.API_KEY_EXPIRED,
                    ResourceType.API_KEY,
                    api_key.id,
                    {"keyName": api_key.name, "keyPrefix": api_key.key_prefix, "cleanupReason": "expired"},
                )

        for api_key in expired:
            if api_key.litellm_key_value:
                try:
                    await self.proxy.delete_key(api_key.litellm_key_value)
                except ControlPlaneError as e:
                    logger.warning(f"Failed to delete expired API key {api_key.id} from proxy: {e.message}")

        logger.info(f"Cleaned up {count} expired API keys")
        return count

    async def get_api_key_stats(self, user_id: Optional[str] = None) -> ApiKeyStats:
        return ApiKeyStats(**await self.api_keys.get_stats(user_id))

    async def repair_key_hashes(self) -> Dict[str, int]:
        """Recompute key_hash for rows whose hash is not sha256 of the proxy key"""
        keys = [k for k in await self.api_keys.list_all() if k.litellm_key_value]
        broken = [k for k in keys if k.key_hash != self.hash_key(k.litellm_key_value)]
        if not broken:
            return {"checked": len(keys), "repaired": 0}

        async with unit_of_work(self.db):
            for api_key in broken:
                api_key.key_hash = self.hash_key(api_key.litellm_key_value)
                api_key.key_prefix = self.key_prefix(api_key.litellm_key_value)
                self.audit.log(
                    SYSTEM_USER_ID,
                    AuditAction.API_KEY_HASH_REPAIR,
                    ResourceType.API_KEY,
                    api_key.id,
                    {"keyPrefix": api_key.key_prefix},
                )

        logger.warning(f"Repaired key_hash on {len(broken)} API keys")
        return {"checked": len(keys), "repaired": len(broken)}

    async def backfill_key_aliases(self) -> Dict[str, int]:
        """Fill missing aliases from the proxy so usage records can be matched"""
        keys = [k for k in await self.api_keys.list_all() if k.litellm_key_value and not k.litellm_key_alias]
        aliases: Dict[str, str] = {}
        failed = 0
        for api_key in keys:
            try:
                alias = await self.proxy.get_key_alias(api_key.litellm_key_value)
            except ControlPlaneError as e:
                logger.warning(f"Could not fetch alias for API key {api_key.id}: {e.message}")
                failed += 1
                continue
            if alias:
                aliases[api_key.id] = alias

        if aliases:
            async with unit_of_work(self.db):
                for api_key in keys:
                    if api_key.id in aliases:
                        api_key.litellm_key_alias = aliases[api_key.id]

        return {"updated": len(aliases), "failed": failed}

    async def reconcile_key_models(self) -> Dict[str, int]:
        """Drop local associations the proxy no longer grants.

        Repairs keys left behind when the proxy update of a model removal
        succeeded but the local delete did not.
        """
        checked = failed = 0
        stale: Dict[str, List[str]] = {}
        for api_key in await self.api_keys.list_active():
            if not api_key.litellm_key_value:
                continue
            try:
                info = await self.proxy.get_key_info(api_key.litellm_key_value)
            except ControlPlaneError as e:
                logger.warning(f"Could not reconcile API key {api_key.id}: {e.message}")
                failed += 1
                continue
            checked += 1
            if not info.models:
                # No model restriction in the proxy: local rows are the narrower grant
                continue
            granted = set(info.models)
            extra = [m for m in await self.api_keys.get_model_ids(api_key.id) if m not in granted]
            if extra:
                stale[api_key.id] = extra

        removed = deactivated = 0
        if stale:
            async with unit_of_work(self.db):
                for key_id, model_ids in stale.items():
                    for model_id in model_ids:
                        removed += await self.api_keys.delete_key_model(key_id, model_id)
                deactivated = await self.api_keys.deactivate_orphans(list(stale))
            logger.warning(f"Reconciled {len(stale)} API keys with proxy: {removed} stale associations removed")

        return {
            "checked": checked,
            "failed": failed,
            "associations_removed": removed,
            "keys_deactivated": deactivated,
        }
