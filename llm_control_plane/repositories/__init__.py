from .model import ModelRepository
from .subscription import SubscriptionRepository
from .api_key import ApiKeyRepository
