"""Repository for subscription operations"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.subscription import Subscription, SubscriptionStatus, SubscriptionStatusHistory


class SubscriptionRepository:
    """Repository for subscription database operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, subscription: Subscription) -> Subscription:
        """Create a new subscription"""
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def list_for_user_and_models(self, user_id: str, model_ids: List[str]) -> List[Subscription]:
        if not model_ids:
            return []
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.model_id.in_(model_ids),
            )
        )
        return list(result.scalars().all())

    async def get_active_model_ids(self, user_id: str, model_ids: List[str]) -> List[str]:
        """Subset of model_ids the user holds an active subscription for"""
        if not model_ids:
            return []
        result = await self.session.execute(
            select(Subscription.model_id).where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.model_id.in_(model_ids),
            )
        )
        return list(result.scalars().all())

    async def list_by_model_and_status(
        self, model_id: str, status: SubscriptionStatus
    ) -> List[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.model_id == model_id,
                Subscription.status == status,
            )
        )
        return list(result.scalars().all())

    async def transition(
        self,
        subscriptions: List[Subscription],
        new_status: SubscriptionStatus,
        reason: Optional[str],
        changed_by: Optional[str],
    ) -> int:
        """Move subscriptions to new_status and append one history row each."""
        if not subscriptions:
            return 0
        now = datetime.utcnow()
        for subscription in subscriptions:
            self.add_history(subscription.id, subscription.status, new_status, reason, changed_by, now)
        result = await self.session.execute(
            update(Subscription)
            .where(Subscription.id.in_([s.id for s in subscriptions]))
            .values(
                status=new_status,
                status_reason=reason,
                status_changed_at=now,
                status_changed_by=changed_by,
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    def add_history(
        self,
        subscription_id: str,
        old_status: Optional[SubscriptionStatus],
        new_status: SubscriptionStatus,
        reason: Optional[str],
        changed_by: Optional[str],
        changed_at: Optional[datetime] = None,
    ) -> SubscriptionStatusHistory:
        entry = SubscriptionStatusHistory(
            subscription_id=subscription_id,
            old_status=old_status,
            new_status=new_status,
            reason=reason,
            changed_by=changed_by,
            changed_at=changed_at or datetime.utcnow(),
        )
        self.session.add(entry)
        return entry
