"""Subscription SQLAlchemy models: a user's grant to one model, plus its status history"""
from sqlalchemy import (
    Column, String, DateTime, Enum as SQLEnum, Text, Index, Integer, Numeric,
    ForeignKey, UniqueConstraint,
)
from datetime import datetime
import uuid
import enum

from ..database import Base


class SubscriptionStatus(str, enum.Enum):
    """Subscription status enum"""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INACTIVE = "inactive"
    PENDING = "pending"
    DENIED = "denied"


def _status_enum(name: str) -> SQLEnum:
    return SQLEnum(SubscriptionStatus, name=name, values_callable=lambda e: [m.value for m in e])


class Subscription(Base):
    """Subscription model - at most one per (user, model); never deleted"""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    model_id = Column(String(255), ForeignKey("models.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(_status_enum("subscriptionstatus"), nullable=False, default=SubscriptionStatus.PENDING)

    # Quotas
    quota_requests = Column(Integer, nullable=False, default=10000)
    quota_tokens = Column(Integer, nullable=False, default=1000000)
    used_requests = Column(Integer, nullable=False, default=0)
    used_tokens = Column(Integer, nullable=False, default=0)

    # Budget
    max_budget = Column(Numeric(12, 4), nullable=True)
    current_spend = Column(Numeric(12, 4), nullable=False, default=0)

    # Status bookkeeping
    status_reason = Column(Text, nullable=True)
    status_changed_at = Column(DateTime, nullable=True)
    status_changed_by = Column(String(36), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'model_id', name='uq_subscriptions_user_model'),
        Index('ix_subscriptions_model_status', 'model_id', 'status'),
        Index('ix_subscriptions_user_status', 'user_id', 'status'),
    )

    def __repr__(self) -> str:
        return f"<Subscription {self.id} user={self.user_id} model={self.model_id} status={self.status}>"


class SubscriptionStatusHistory(Base):
    """Append-only log of subscription status transitions"""
    __tablename__ = "subscription_status_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    subscription_id = Column(
        String(36), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    old_status = Column(_status_enum("subscriptionstatus"), nullable=True)
    new_status = Column(_status_enum("subscriptionstatus"), nullable=False)
    reason = Column(Text, nullable=True)
    changed_by = Column(String(36), nullable=True)
    changed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<SubscriptionStatusHistory {self.subscription_id} {self.old_status}->{self.new_status}>"
