"""Subscription transitions driven by model access policy and admin overrides"""
import logging
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession

from ..database import unit_of_work
from ..errors import ValidationError
from ..models.subscription import Subscription, SubscriptionStatus
from ..models.user import SYSTEM_USER_ID
from ..repositories.api_key import ApiKeyRepository
from ..repositories.model import ModelRepository
from ..repositories.subscription import SubscriptionRepository
from ..schemas.model import AutoSubscriptionEntry, EnsureSubscriptionsResponse
from .api_key_service import ApiKeyService
from .audit_service import AuditAction, AuditService, ResourceType

logger = logging.getLogger(__name__)

RESTRICTED_REASON = "Model became restricted; re-approval required"
AUTO_CREATED_REASON = "Auto-created by admin during API key assignment"
REACTIVATED_REASON = "Reactivated by admin during API key assignment"


class SubscriptionCascadeService:
    """Moves subscriptions when a model's access policy changes"""

    def __init__(self, db: AsyncSession, api_key_service: ApiKeyService):
        self.db = db
        self.api_key_service = api_key_service
        self.api_keys = ApiKeyRepository(db)
        self.models = ModelRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.audit = AuditService(db)

    async def handle_model_restriction_change(self, model_id: str, restricted: bool) -> Dict[str, Any]:
        """Demote active subscriptions to pending and strip the model from every key.

        Lifting a restriction has no automatic effect: re-approval is an
        explicit admin action.
        """
        stats = {"subscriptions_pending": 0, "users_affected": 0, "keys_updated": 0, "keys_failed": 0}
        if not restricted:
            logger.info(f"Model {model_id} is no longer restricted; subscriptions left unchanged")
            return stats

        async with unit_of_work(self.db):
            active = await self.subscriptions.list_by_model_and_status(model_id, SubscriptionStatus.ACTIVE)
            key_owners = await self.api_keys.list_user_ids_with_model(model_id)
            user_ids = sorted({s.user_id for s in active} | set(key_owners))
            stats["subscriptions_pending"] = await self.subscriptions.transition(
                active, SubscriptionStatus.PENDING, RESTRICTED_REASON, SYSTEM_USER_ID
            )
            self.audit.log(
                SYSTEM_USER_ID,
                AuditAction.MODEL_RESTRICTED_SUBSCRIPTIONS_PENDING,
                ResourceType.MODEL,
                model_id,
                {"modelId": model_id, "affectedSubscriptions": stats["subscriptions_pending"]},
            )

        # Proxy-first key cleanup runs per user after the status change is committed
        for user_id in user_ids:
            removal = await self.api_key_service.remove_model_from_user_api_keys(user_id, model_id)
            stats["keys_updated"] += removal["keys_updated"]
            stats["keys_failed"] += removal["keys_failed"]
        stats["users_affected"] = len(user_ids)

        logger.info(f"Restriction cascade for model {model_id}: {stats}")
        return stats

    async def ensure_active_subscriptions(
        self, user_id: str, model_ids: List[str], admin_id: str
    ) -> EnsureSubscriptionsResponse:
        """Admin override: make every model in model_ids actively subscribed for user_id.

        Creates missing subscriptions and reactivates non-active ones; the
        admin's action stands in for the approval workflow.
        """
        model_ids = list(dict.fromkeys(model_ids))
        existing_models = set(await self.models.get_existing_ids(model_ids))
        unknown = [model_id for model_id in model_ids if model_id not in existing_models]
        if unknown:
            raise ValidationError(
                f"The following model IDs do not exist: {', '.join(unknown)}",
                field="model_ids",
                value=unknown,
            )

        result = EnsureSubscriptionsResponse()
        async with unit_of_work(self.db):
            by_model = {
                s.model_id: s for s in await self.subscriptions.list_for_user_and_models(user_id, model_ids)
            }
            for model_id in model_ids:
                subscription = by_model.get(model_id)

                if subscription is None:
                    subscription = await self.subscriptions.create(
                        Subscription(
                            user_id=user_id,
                            model_id=model_id,
                            status=SubscriptionStatus.ACTIVE,
                            status_reason=AUTO_CREATED_REASON,
                            status_changed_by=admin_id,
                            status_changed_at=datetime.utcnow(),
                        )
                    )
                    self.subscriptions.add_history(
                        subscription.id, None, SubscriptionStatus.ACTIVE, AUTO_CREATED_REASON, admin_id
                    )
                    self.audit.log(
                        admin_id,
                        AuditAction.ADMIN_AUTO_CREATE_SUBSCRIPTION,
                        ResourceType.SUBSCRIPTION,
                        subscription.id,
                        {"targetUserId": user_id, "modelId": model_id},
                    )
                    result.created.append(AutoSubscriptionEntry(model_id=model_id, subscription_id=subscription.id))

                elif subscription.status != SubscriptionStatus.ACTIVE:
                    previous = subscription.status
                    await self.subscriptions.transition(
                        [subscription], SubscriptionStatus.ACTIVE, REACTIVATED_REASON, admin_id
                    )
                    self.audit.log(
                        admin_id,
                        AuditAction.ADMIN_AUTO_ACTIVATE_SUBSCRIPTION,
                        ResourceType.SUBSCRIPTION,
                        subscription.id,
                        {"targetUserId": user_id, "modelId": model_id, "previousStatus": previous.value},
                    )
                    result.activated.append(
                        AutoSubscriptionEntry(
                            model_id=model_id, subscription_id=subscription.id, previous_status=previous.value
                        )
                    )

                else:
                    result.already_active.append(model_id)

        if result.created or result.activated:
            logger.info(
                f"Admin {admin_id} auto-provisioned subscriptions for user {user_id}: "
                f"created={len(result.created)} activated={len(result.activated)} "
                f"already_active={len(result.already_active)}"
            )
        return result
