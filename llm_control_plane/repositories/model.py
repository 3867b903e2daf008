"""Repository for model catalog operations"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.llm_model import LLMModel, ModelAvailability
from ..models.subscription import Subscription, SubscriptionStatus


class ModelRepository:
    """Repository for model catalog database operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, model_id: str) -> Optional[LLMModel]:
        result = await self.session.execute(select(LLMModel).where(LLMModel.id == model_id))
        return result.scalar_one_or_none()

    async def list_all(self) -> List[LLMModel]:
        result = await self.session.execute(select(LLMModel).order_by(LLMModel.id))
        return list(result.scalars().all())

    async def get_existing_ids(self, model_ids: List[str]) -> List[str]:
        if not model_ids:
            return []
        result = await self.session.execute(select(LLMModel.id).where(LLMModel.id.in_(model_ids)))
        return list(result.scalars().all())

    async def insert(self, values: Dict[str, Any]) -> LLMModel:
        model = LLMModel(**values)
        self.session.add(model)
        await self.session.flush()
        return model

    async def update_from_proxy(self, model_id: str, values: Dict[str, Any]) -> None:
        """Overwrite proxy-owned fields; description only fills a local NULL."""
        values = dict(values)
        description = values.pop("description", None)
        values["description"] = func.coalesce(LLMModel.description, description)
        values["updated_at"] = datetime.utcnow()
        await self.session.execute(
            update(LLMModel)
            .where(LLMModel.id == model_id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )

    async def mark_unavailable(self, model_id: str) -> bool:
        """Flip availability; False when the model was already unavailable (or absent)."""
        result = await self.session.execute(
            update(LLMModel)
            .where(
                LLMModel.id == model_id,
                LLMModel.availability != ModelAvailability.UNAVAILABLE,
            )
            .values(availability=ModelAvailability.UNAVAILABLE, updated_at=datetime.utcnow())
        )
        return result.rowcount > 0

    async def set_restricted(self, model_id: str, restricted: bool) -> None:
        await self.session.execute(
            update(LLMModel)
            .where(LLMModel.id == model_id)
            .values(restricted_access=restricted, updated_at=datetime.utcnow())
        )

    async def set_description(self, model_id: str, description: Optional[str]) -> None:
        await self.session.execute(
            update(LLMModel)
            .where(LLMModel.id == model_id)
            .values(description=description, updated_at=datetime.utcnow())
        )

    async def set_backend_model_name(self, model_id: str, backend_model_name: str) -> None:
        await self.session.execute(
            update(LLMModel)
            .where(LLMModel.id == model_id)
            .values(backend_model_name=backend_model_name, updated_at=datetime.utcnow())
        )

    async def get_stats(self) -> Dict[str, Any]:
        result = await self.session.execute(
            select(LLMModel.availability, func.count(LLMModel.id)).group_by(LLMModel.availability)
        )
        counts = {row[0]: row[1] for row in result.all()}
        last_sync = await self.session.execute(select(func.max(LLMModel.updated_at)))
        available = counts.get(ModelAvailability.AVAILABLE, 0)
        unavailable = counts.get(ModelAvailability.UNAVAILABLE, 0)
        return {
            "total_models": available + unavailable,
            "available_models": available,
            "unavailable_models": unavailable,
            "last_sync_at": last_sync.scalar_one_or_none(),
        }

    async def list_missing_required_fields(self) -> List[LLMModel]:
        result = await self.session.execute(
            select(LLMModel).where(
                or_(
                    LLMModel.name.is_(None),
                    LLMModel.name == "",
                    LLMModel.provider.is_(None),
                    LLMModel.provider == "",
                )
            )
        )
        return list(result.scalars().all())

    async def count_active_subscriptions_on_unavailable(self) -> int:
        result = await self.session.execute(
            select(func.count(Subscription.id))
            .join(LLMModel, LLMModel.id == Subscription.model_id)
            .where(
                LLMModel.availability == ModelAvailability.UNAVAILABLE,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
        )
        return result.scalar_one()
