from .user import User, SYSTEM_USER_ID, SYSTEM_USER_EMAIL
from .llm_model import LLMModel, ModelAvailability
from .subscription import Subscription, SubscriptionStatus, SubscriptionStatusHistory
from .api_key import ApiKey, ApiKeyModel, KeySyncStatus
from .audit_log import AuditLog
