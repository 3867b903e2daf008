"""Pydantic schemas for API key endpoints"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ApiKeyPermissions(BaseModel):
    """Endpoint families a key may call"""
    allow_chat_completions: Optional[bool] = None
    allow_embeddings: Optional[bool] = None
    allow_completions: Optional[bool] = None


class ApiKeyOptions(BaseModel):
    """Fields shared by every key creation request"""
    model_config = ConfigDict(protected_namespaces=())

    name: Optional[str] = Field(None, max_length=255)
    expires_at: Optional[datetime] = None
    max_budget: Optional[float] = Field(None, ge=0)
    tpm_limit: Optional[int] = Field(None, ge=0)
    rpm_limit: Optional[int] = Field(None, ge=0)
    budget_duration: Optional[str] = Field(None, max_length=50)
    soft_budget: Optional[float] = Field(None, ge=0)
    max_parallel_requests: Optional[int] = Field(None, ge=0)
    model_max_budget: Optional[Dict[str, Any]] = None
    model_rpm_limit: Optional[Dict[str, int]] = None
    model_tpm_limit: Optional[Dict[str, int]] = None
    team_id: Optional[str] = None
    tags: Optional[List[str]] = None
    guardrails: Optional[List[str]] = None
    permissions: Optional[ApiKeyPermissions] = None
    metadata: Optional[Dict[str, Any]] = None


class CreateApiKeyRequest(ApiKeyOptions):
    """Multi-model key creation request"""
    model_ids: List[str] = Field(default_factory=list)

    model_config = ConfigDict(
        protected_namespaces=(),
        json_schema_extra={
            "example": {
                "model_ids": ["gpt-4o"],
                "name": "ci-pipeline",
                "max_budget": 50,
                "tpm_limit": 100000,
                "rpm_limit": 120,
            }
        },
    )


class LegacyCreateApiKeyRequest(ApiKeyOptions):
    """Deprecated: one key bound to one subscription"""
    subscription_id: str


# Legacy first: a body carrying subscription_id must not parse as an empty model_ids request
AnyCreateApiKeyRequest = Union[LegacyCreateApiKeyRequest, CreateApiKeyRequest]


class ResolvedKeyRequest(ApiKeyOptions):
    """Canonical key request: every creation path is resolved into this once"""
    model_ids: List[str]
    subscription_id: Optional[str] = None
    legacy: bool = False


class UpdateApiKeyRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    name: Optional[str] = Field(None, max_length=255)
    model_ids: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class UpdateApiKeyLimitsRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    max_budget: Optional[float] = Field(None, ge=0)
    tpm_limit: Optional[int] = Field(None, ge=0)
    rpm_limit: Optional[int] = Field(None, ge=0)
    budget_duration: Optional[str] = Field(None, max_length=50)
    soft_budget: Optional[float] = Field(None, ge=0)
    max_parallel_requests: Optional[int] = Field(None, ge=0)
    model_max_budget: Optional[Dict[str, Any]] = None
    model_rpm_limit: Optional[Dict[str, int]] = None
    model_tpm_limit: Optional[Dict[str, int]] = None


class ApiKeyResponse(BaseModel):
    """Key as shown after creation: the secret is never included"""
    model_config = ConfigDict(protected_namespaces=())

    id: str
    user_id: str
    name: Optional[str] = None
    key_prefix: str
    masked_key: str
    models: List[str] = Field(default_factory=list)
    subscription_id: Optional[str] = None
    is_active: bool
    created_at: datetime
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    sync_status: str
    sync_error: Optional[str] = None
    key_alias: Optional[str] = None
    max_budget: Optional[float] = None
    current_spend: Optional[float] = None
    budget_utilization: Optional[int] = None
    tpm_limit: Optional[int] = None
    rpm_limit: Optional[int] = None
    budget_duration: Optional[str] = None
    soft_budget: Optional[float] = None
    max_parallel_requests: Optional[int] = None
    model_max_budget: Optional[Dict[str, Any]] = None
    model_rpm_limit: Optional[Dict[str, int]] = None
    model_tpm_limit: Optional[Dict[str, int]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ApiKeyWithSecret(ApiKeyResponse):
    """Creation response. The only time the full key is returned"""
    key: str = Field(..., description="Full API key - shown only once!")


class ApiKeyListResponse(BaseModel):
    items: List[ApiKeyResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class RotateApiKeyResponse(BaseModel):
    id: str
    key: str = Field(..., description="New API key - shown only once!")
    key_prefix: str


class FullKeyResponse(BaseModel):
    key: str
    key_type: str = "proxy"
    retrieved_at: datetime


class ValidatedApiKey(BaseModel):
    id: str
    user_id: str
    name: Optional[str] = None
    key_prefix: str
    models: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None


class ApiKeyValidation(BaseModel):
    is_valid: bool
    api_key: Optional[ValidatedApiKey] = None
    error: Optional[str] = None


class ValidateApiKeyRequest(BaseModel):
    key: str


class ApiKeySpendInfo(BaseModel):
    key_id: str
    current_spend: float = 0.0
    max_budget: Optional[float] = None
    budget_utilization: float = 0.0
    remaining_budget: Optional[float] = None
    source: str = Field("proxy", description="'proxy' for live data, 'cached' for the local copy")
    last_updated_at: Optional[datetime] = None


class ApiKeyStats(BaseModel):
    total: int
    active: int
    expired: int
    revoked: int
