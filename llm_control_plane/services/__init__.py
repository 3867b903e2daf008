from .proxy_client import ProxyClient
from .cache_service import TTLCache
from .audit_service import AuditAction, AuditService, ResourceType
from .api_key_service import ApiKeyService
from .model_sync_service import CascadeStatistics, ModelSyncService, SyncResult
from .subscription_cascade_service import SubscriptionCascadeService
from .model_admin_service import ModelAdminService

__all__ = [
    "ProxyClient",
    "TTLCache",
    "AuditAction",
    "AuditService",
    "ResourceType",
    "ApiKeyService",
    "CascadeStatistics",
    "ModelSyncService",
    "SyncResult",
    "SubscriptionCascadeService",
    "ModelAdminService",
]
