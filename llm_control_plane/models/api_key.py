"""API key SQLAlchemy models: multi-model keys and their model associations"""
from sqlalchemy import (
    Column, String, DateTime, Enum as SQLEnum, Text, Index, Integer, Boolean, Numeric, JSON,
    ForeignKey,
)
from datetime import datetime
import uuid
import enum

from ..database import Base


class KeySyncStatus(str, enum.Enum):
    """Proxy sync state of a key"""
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class ApiKey(Base):
    """API key model - the secret lives in the proxy; key_hash is sha256 of that secret"""
    __tablename__ = "api_keys"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=True)

    key_hash = Column(String(255), nullable=False, unique=True)
    key_prefix = Column(String(20), nullable=False)  # display only
    litellm_key_value = Column(Text, nullable=True)  # proxy-issued secret
    litellm_key_alias = Column(String(255), nullable=True, index=True)  # usage matching

    # Budget / rate limits
    max_budget = Column(Numeric(12, 4), nullable=True)
    current_spend = Column(Numeric(12, 4), nullable=False, default=0)
    tpm_limit = Column(Integer, nullable=True)
    rpm_limit = Column(Integer, nullable=True)
    budget_duration = Column(String(50), nullable=True)
    soft_budget = Column(Numeric(12, 4), nullable=True)
    max_parallel_requests = Column(Integer, nullable=True)

    # Per-model overrides keyed by model id
    model_max_budget = Column(JSON, nullable=True)
    model_rpm_limit = Column(JSON, nullable=True)
    model_tpm_limit = Column(JSON, nullable=True)

    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    last_used_at = Column(DateTime, nullable=True)

    # Proxy sync
    last_sync_at = Column(DateTime, nullable=True)
    sync_status = Column(
        SQLEnum(KeySyncStatus, name="keysyncstatus", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=KeySyncStatus.PENDING,
    )
    sync_error = Column(Text, nullable=True)

    # Legacy one-subscription-per-key binding
    subscription_id = Column(
        String(36), ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('ix_api_keys_user_active', 'user_id', 'is_active'),
    )

    def __repr__(self) -> str:
        return f"<ApiKey {self.id} user={self.user_id} prefix={self.key_prefix} active={self.is_active}>"


class ApiKeyModel(Base):
    """Many-to-many join between API keys and models"""
    __tablename__ = "api_key_models"

    api_key_id = Column(String(36), ForeignKey("api_keys.id", ondelete="CASCADE"), primary_key=True)
    model_id = Column(String(255), ForeignKey("models.id", ondelete="CASCADE"), primary_key=True, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<ApiKeyModel key={self.api_key_id} model={self.model_id}>"
