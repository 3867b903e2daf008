"""Pydantic schemas for model catalog and admin endpoints"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.llm_model import ModelAvailability


class ModelResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    provider: str
    description: Optional[str] = None
    category: Optional[str] = None
    context_length: Optional[int] = None
    input_cost_per_token: Optional[float] = None
    output_cost_per_token: Optional[float] = None
    supports_vision: bool = False
    supports_function_calling: bool = False
    supports_parallel_function_calling: bool = False
    supports_tool_choice: bool = False
    features: List[str] = Field(default_factory=list)
    availability: ModelAvailability
    api_base: Optional[str] = None
    backend_model_name: Optional[str] = None
    tpm: Optional[int] = None
    rpm: Optional[int] = None
    max_tokens: Optional[int] = None
    litellm_model_id: Optional[str] = None
    restricted_access: bool = False
    created_at: datetime
    updated_at: datetime


class AdminModelCreate(BaseModel):
    """Admin request to register a new model in the proxy"""
    model_name: str = Field(..., min_length=1, max_length=255)
    backend_model_name: str = Field(..., min_length=1)
    description: Optional[str] = None
    api_base: str
    api_key: Optional[str] = Field(None, description="Backend credential, forwarded to the proxy only")
    input_cost_per_token: Optional[float] = Field(None, ge=0)
    output_cost_per_token: Optional[float] = Field(None, ge=0)
    tpm: Optional[int] = Field(None, ge=0)
    rpm: Optional[int] = Field(None, ge=0)
    max_tokens: Optional[int] = Field(None, ge=0)
    supports_vision: bool = False
    supports_function_calling: bool = False
    supports_parallel_function_calling: bool = False
    supports_tool_choice: bool = False
    restricted_access: Optional[bool] = None

    model_config = ConfigDict(
        protected_namespaces=(),
        json_schema_extra={
            "example": {
                "model_name": "qwen3-32b",
                "backend_model_name": "RedHatAI/Qwen3-32B",
                "api_base": "https://vllm.internal:8000/v1",
                "max_tokens": 32768,
                "supports_function_calling": True,
            }
        },
    )


class AdminModelUpdate(BaseModel):
    """Partial admin update. Omitted fields are left unchanged"""
    model_config = ConfigDict(protected_namespaces=())

    model_name: Optional[str] = Field(None, min_length=1, max_length=255)
    backend_model_name: Optional[str] = None
    description: Optional[str] = None
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    input_cost_per_token: Optional[float] = Field(None, ge=0)
    output_cost_per_token: Optional[float] = Field(None, ge=0)
    tpm: Optional[int] = Field(None, ge=0)
    rpm: Optional[int] = Field(None, ge=0)
    max_tokens: Optional[int] = Field(None, ge=0)
    supports_vision: Optional[bool] = None
    supports_function_calling: Optional[bool] = None
    supports_parallel_function_calling: Optional[bool] = None
    supports_tool_choice: Optional[bool] = None
    restricted_access: Optional[bool] = None


class AdminModelResult(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    success: bool = True
    message: str
    model_id: str
    sync: Optional[Dict[str, Any]] = None


class SyncRequest(BaseModel):
    force_update: bool = False
    mark_unavailable: bool = True


class CascadeStatisticsResponse(BaseModel):
    subscriptions_deactivated: int = 0
    api_key_model_associations_removed: int = 0
    orphaned_api_keys_deactivated: int = 0


class SyncResultResponse(BaseModel):
    success: bool
    total_models: int
    new_models: int
    updated_models: int
    unavailable_models: int
    recreated_models: List[str] = Field(default_factory=list)
    cascade_statistics: CascadeStatisticsResponse
    errors: List[str] = Field(default_factory=list)
    synced_at: datetime


class SyncStatsResponse(BaseModel):
    total_models: int
    available_models: int
    unavailable_models: int
    last_sync_at: Optional[datetime] = None


class ModelValidationResponse(BaseModel):
    valid_models: int
    invalid_models: List[str]
    orphaned_subscriptions: int


class RestrictionUpdate(BaseModel):
    restricted_access: bool


class RestrictionUpdateResponse(BaseModel):
    model_id: str
    restricted_access: bool
    previous_value: bool
    cascade: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(protected_namespaces=())


class EnsureSubscriptionsRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_ids: List[str] = Field(..., min_length=1)


class AutoSubscriptionEntry(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    subscription_id: str
    previous_status: Optional[str] = None


class EnsureSubscriptionsResponse(BaseModel):
    created: List[AutoSubscriptionEntry] = Field(default_factory=list)
    activated: List[AutoSubscriptionEntry] = Field(default_factory=list)
    already_active: List[str] = Field(default_factory=list)
