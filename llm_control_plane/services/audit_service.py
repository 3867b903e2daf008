"""Audit sink: append-only records of admin and system actions."""
import enum
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..models.audit_log import AuditLog

logger = logging.getLogger(__name__)


class AuditAction(str, enum.Enum):
    API_KEY_CREATE = "API_KEY_CREATE"
    API_KEY_UPDATE = "API_KEY_UPDATE"
    API_KEY_DELETE = "API_KEY_DELETE"
    API_KEY_REVOKE = "API_KEY_REVOKE"
    API_KEY_ROTATE = "API_KEY_ROTATE"
    API_KEY_RETRIEVE_FULL = "API_KEY_RETRIEVE_FULL"
    API_KEY_EXPIRED = "API_KEY_EXPIRED"
    API_KEY_MODEL_REMOVED = "API_KEY_MODEL_REMOVED"
    API_KEY_HASH_REPAIR = "API_KEY_HASH_REPAIR"
    MODEL_CREATE = "MODEL_CREATE"
    MODEL_UPDATE = "MODEL_UPDATE"
    MODEL_DELETE = "MODEL_DELETE"
    MODEL_MARKED_UNAVAILABLE_WITH_CASCADE = "MODEL_MARKED_UNAVAILABLE_WITH_CASCADE"
    MODEL_RESTRICTION_CHANGE = "MODEL_RESTRICTION_CHANGE"
    MODEL_RESTRICTED_SUBSCRIPTIONS_PENDING = "MODEL_RESTRICTED_SUBSCRIPTIONS_PENDING"
    ADMIN_AUTO_CREATE_SUBSCRIPTION = "ADMIN_AUTO_CREATE_SUBSCRIPTION"
    ADMIN_AUTO_ACTIVATE_SUBSCRIPTION = "ADMIN_AUTO_ACTIVATE_SUBSCRIPTION"


class ResourceType(str, enum.Enum):
    API_KEY = "API_KEY"
    MODEL = "MODEL"
    SUBSCRIPTION = "SUBSCRIPTION"


class AuditService:
    """Writes audit rows. Never read back by the control plane itself."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def log(
        self,
        actor_id: Optional[str],
        action: AuditAction,
        resource_type: ResourceType,
        resource_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> AuditLog:
        """Append an audit row to the caller's current transaction."""
        entry = AuditLog(
            user_id=actor_id,
            action=action.value,
            resource_type=resource_type.value,
            resource_id=resource_id,
            metadata_=metadata or {},
            success=success,
            error_message=error_message,
        )
        self.session.add(entry)
        return entry

    async def log_detached(
        self,
        actor_id: Optional[str],
        action: AuditAction,
        resource_type: ResourceType,
        resource_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> None:
        """Write and commit an audit row on its own; failures are logged only.

        Used after a rolled-back transaction to record the failure itself.
        """
        try:
            self.log(actor_id, action, resource_type, resource_id, metadata, success, error_message)
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error(f"Failed to write audit log {action.value} for {resource_type.value}:{resource_id}: {e}")
