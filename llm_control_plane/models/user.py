"""User SQLAlchemy model"""
from sqlalchemy import Column, String, DateTime, Boolean, Integer, Numeric, JSON
from datetime import datetime
import uuid

from ..database import Base

# Reserved actor for automated transitions (cascades, sync)
SYSTEM_USER_ID = "00000000-0000-0000-0000-000000000001"
SYSTEM_USER_EMAIL = "system@llmcp.internal"


class User(Base):
    """User model - a person (or the system actor) owning subscriptions and keys"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String(255), nullable=False, unique=True)
    email = Column(String(255), nullable=False, unique=True)
    full_name = Column(String(255), nullable=True)
    roles = Column(JSON, nullable=False, default=lambda: ["user"])

    # Proxy-side defaults applied when the user is provisioned
    max_budget = Column(Numeric(12, 4), nullable=True)
    tpm_limit = Column(Integer, nullable=True)
    rpm_limit = Column(Integer, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<User {self.id} {self.username}>"
