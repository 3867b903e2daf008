"""Model catalog SQLAlchemy model"""
from sqlalchemy import Column, String, DateTime, Enum as SQLEnum, Text, Index, Integer, Boolean, Numeric, JSON
from datetime import datetime
import enum

from ..database import Base


class ModelAvailability(str, enum.Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class LLMModel(Base):
    """A served LLM endpoint, keyed by the proxy's model name"""
    __tablename__ = "models"

    # Catalog identifier, also the proxy's model_name
    id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=True)
    provider = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)  # user-entered, never written by sync
    category = Column(String(100), nullable=True, default="Language Model")
    context_length = Column(Integer, nullable=True)

    # Pricing per token
    input_cost_per_token = Column(Numeric(20, 12), nullable=True)
    output_cost_per_token = Column(Numeric(20, 12), nullable=True)

    # Capabilities
    supports_vision = Column(Boolean, nullable=False, default=False)
    supports_function_calling = Column(Boolean, nullable=False, default=False)
    supports_parallel_function_calling = Column(Boolean, nullable=False, default=False)
    supports_tool_choice = Column(Boolean, nullable=False, default=False)
    features = Column(JSON, nullable=False, default=list)

    availability = Column(
        SQLEnum(ModelAvailability, name="modelavailability", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=ModelAvailability.AVAILABLE,
    )
    version = Column(String(50), nullable=True, default="1.0")
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    # Admin-managed proxy fields
    api_base = Column(String(500), nullable=True)
    tpm = Column(Integer, nullable=True)
    rpm = Column(Integer, nullable=True)
    max_tokens = Column(Integer, nullable=True)
    litellm_model_id = Column(String(255), nullable=True, index=True)  # proxy-internal id
    backend_model_name = Column(String(255), nullable=True)

    restricted_access = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('ix_models_availability', 'availability'),
        Index('ix_models_provider', 'provider'),
    )

    def __repr__(self) -> str:
        return f"<LLMModel {self.id} provider={self.provider} availability={self.availability}>"
