"""Repository for API key and key/model association operations"""
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update, delete, func, exists, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.api_key import ApiKey, ApiKeyModel
from ..models.subscription import Subscription


class ApiKeyRepository:
    """Repository for API key database operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, api_key: ApiKey, model_ids: List[str]) -> ApiKey:
        self.session.add(api_key)
        await self.session.flush()
        for model_id in model_ids:
            self.session.add(ApiKeyModel(api_key_id=api_key.id, model_id=model_id))
        await self.session.flush()
        return api_key

    async def get_by_id(self, key_id: str, user_id: Optional[str] = None) -> Optional[ApiKey]:
        """Get a key by id, scoped to its owner when user_id is given"""
        query = select(ApiKey).where(ApiKey.id == key_id)
        if user_id is not None:
            query = query.where(ApiKey.user_id == user_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_active_by_hash(self, key_hash: str) -> Optional[ApiKey]:
        result = await self.session.execute(
            select(ApiKey).where(ApiKey.key_hash == key_hash, ApiKey.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def count_active_for_user(self, user_id: str) -> int:
        result = await self.session.execute(
            select(func.count(ApiKey.id)).where(ApiKey.user_id == user_id, ApiKey.is_active.is_(True))
        )
        return result.scalar_one()

    async def list_for_user(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        model_id: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Tuple[List[ApiKey], int]:
        """List a user's keys with pagination, newest first"""
        filters = [ApiKey.user_id == user_id]
        if is_active is not None:
            filters.append(ApiKey.is_active.is_(is_active))
        if model_id:
            filters.append(
                exists().where(and_(ApiKeyModel.api_key_id == ApiKey.id, ApiKeyModel.model_id == model_id))
            )

        total = (await self.session.execute(select(func.count(ApiKey.id)).where(*filters))).scalar_one()

        offset = (page - 1) * limit
        result = await self.session.execute(
            select(ApiKey).where(*filters).order_by(ApiKey.created_at.desc()).offset(offset).limit(limit)
        )
        return list(result.scalars().all()), total

    async def list_active(self) -> List[ApiKey]:
        result = await self.session.execute(select(ApiKey).where(ApiKey.is_active.is_(True)))
        return list(result.scalars().all())

    async def list_all(self) -> List[ApiKey]:
        result = await self.session.execute(select(ApiKey))
        return list(result.scalars().all())

    async def get_model_ids(self, key_id: str) -> List[str]:
        result = await self.session.execute(
            select(ApiKeyModel.model_id).where(ApiKeyModel.api_key_id == key_id).order_by(ApiKeyModel.model_id)
        )
        return list(result.scalars().all())

    async def get_model_ids_for_keys(self, key_ids: List[str]) -> Dict[str, List[str]]:
        mapping: Dict[str, List[str]] = {key_id: [] for key_id in key_ids}
        if not key_ids:
            return mapping
        result = await self.session.execute(
            select(ApiKeyModel.api_key_id, ApiKeyModel.model_id)
            .where(ApiKeyModel.api_key_id.in_(key_ids))
            .order_by(ApiKeyModel.model_id)
        )
        for key_id, model_id in result.all():
            mapping[key_id].append(model_id)
        return mapping

    async def get_legacy_subscription_model(self, subscription_id: str) -> Optional[Tuple[str, str]]:
        """(model_id, status) of the subscription a legacy key is bound to"""
        result = await self.session.execute(
            select(Subscription.model_id, Subscription.status).where(Subscription.id == subscription_id)
        )
        row = result.first()
        return (row[0], row[1]) if row else None

    async def replace_models(self, key_id: str, model_ids: List[str]) -> None:
        await self.session.execute(delete(ApiKeyModel).where(ApiKeyModel.api_key_id == key_id))
        for model_id in model_ids:
            self.session.add(ApiKeyModel(api_key_id=key_id, model_id=model_id))
        await self.session.flush()

    async def list_key_ids_with_model(self, model_id: str) -> List[str]:
        result = await self.session.execute(
            select(ApiKeyModel.api_key_id).where(ApiKeyModel.model_id == model_id)
        )
        return list(result.scalars().all())

    async def list_user_ids_with_model(self, model_id: str) -> List[str]:
        """Owners of active keys that still grant model_id."""
        result = await self.session.execute(
            select(ApiKey.user_id)
            .join(ApiKeyModel, ApiKeyModel.api_key_id == ApiKey.id)
            .where(ApiKeyModel.model_id == model_id, ApiKey.is_active.is_(True))
            .distinct()
        )
        return list(result.scalars().all())

    async def list_user_keys_with_model(self, user_id: str, model_id: str) -> List[ApiKey]:
        result = await self.session.execute(
            select(ApiKey)
            .join(ApiKeyModel, ApiKeyModel.api_key_id == ApiKey.id)
            .where(ApiKey.user_id == user_id, ApiKeyModel.model_id == model_id)
        )
        return list(result.scalars().all())

    async def delete_model_associations(self, model_id: str, key_ids: Optional[List[str]] = None) -> int:
        """Delete join rows for model_id, optionally only for the given keys"""
        stmt = delete(ApiKeyModel).where(ApiKeyModel.model_id == model_id)
        if key_ids is not None:
            if not key_ids:
                return 0
            stmt = stmt.where(ApiKeyModel.api_key_id.in_(key_ids))
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount

    async def delete_key_model(self, key_id: str, model_id: str) -> int:
        result = await self.session.execute(
            delete(ApiKeyModel)
            .where(ApiKeyModel.api_key_id == key_id, ApiKeyModel.model_id == model_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def deactivate_orphans(self, key_ids: List[str]) -> int:
        """Deactivate active keys among key_ids that have no model association left"""
        if not key_ids:
            return 0
        result = await self.session.execute(
            update(ApiKey)
            .where(
                ApiKey.id.in_(key_ids),
                ApiKey.is_active.is_(True),
                ~exists().where(ApiKeyModel.api_key_id == ApiKey.id),
            )
            .values(is_active=False, updated_at=datetime.utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    async def delete(self, api_key: ApiKey) -> None:
        await self.session.execute(delete(ApiKeyModel).where(ApiKeyModel.api_key_id == api_key.id))
        await self.session.delete(api_key)
        await self.session.flush()

    async def touch_last_used(self, key_id: str, now: Optional[datetime] = None) -> None:
        await self.session.execute(
            update(ApiKey)
            .where(ApiKey.id == key_id)
            .values(last_used_at=now or datetime.utcnow())
            .execution_options(synchronize_session=False)
        )

    async def list_expired_active(self, now: datetime) -> List[ApiKey]:
        result = await self.session.execute(
            select(ApiKey).where(
                ApiKey.is_active.is_(True),
                ApiKey.expires_at.is_not(None),
                ApiKey.expires_at < now,
            )
        )
        return list(result.scalars().all())

    async def deactivate_expired(self, now: datetime) -> int:
        result = await self.session.execute(
            update(ApiKey)
            .where(
                ApiKey.is_active.is_(True),
                ApiKey.expires_at.is_not(None),
                ApiKey.expires_at < now,
            )
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    async def get_stats(self, user_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        base = select(func.count(ApiKey.id))
        if user_id:
            base = base.where(ApiKey.user_id == user_id)

        async def count(*criteria) -> int:
            query = base.where(*criteria) if criteria else base
            return (await self.session.execute(query)).scalar_one()

        return {
            "total": await count(),
            "active": await count(
                ApiKey.is_active.is_(True),
                (ApiKey.expires_at.is_(None)) | (ApiKey.expires_at >= now),
            ),
            "expired": await count(ApiKey.expires_at.is_not(None), ApiKey.expires_at < now),
            "revoked": await count(ApiKey.revoked_at.is_not(None)),
        }
