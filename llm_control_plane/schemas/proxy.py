"""Pydantic schemas for payloads exchanged with the model-serving proxy"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class KeyGenerationRequest(BaseModel):
    """Body of POST /key/generate"""
    model_config = ConfigDict(protected_namespaces=())

    key_alias: Optional[str] = None
    duration: Optional[str] = None
    models: List[str] = Field(default_factory=list)
    max_budget: Optional[float] = None
    user_id: Optional[str] = None
    team_id: Optional[str] = None
    tpm_limit: Optional[int] = None
    rpm_limit: Optional[int] = None
    budget_duration: Optional[str] = None
    soft_budget: Optional[float] = None
    max_parallel_requests: Optional[int] = None
    model_max_budget: Optional[Dict[str, Any]] = None
    model_rpm_limit: Optional[Dict[str, int]] = None
    model_tpm_limit: Optional[Dict[str, int]] = None
    tags: Optional[List[str]] = None
    guardrails: Optional[List[str]] = None
    permissions: Optional[Dict[str, bool]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class KeyGenerationResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    key: str
    key_name: Optional[str] = None
    key_alias: Optional[str] = None
    user_id: Optional[str] = None
    team_id: Optional[str] = None
    max_budget: Optional[float] = None
    expires: Optional[str] = None


class ProxyKeyInfo(BaseModel):
    """Canonical key info, whatever envelope the proxy version used"""
    model_config = ConfigDict(extra="allow")

    key: Optional[str] = None
    key_name: Optional[str] = None
    key_alias: Optional[str] = None
    spend: float = 0.0
    max_budget: Optional[float] = None
    soft_budget: Optional[float] = None
    models: List[str] = Field(default_factory=list)
    tpm_limit: Optional[int] = None
    rpm_limit: Optional[int] = None
    max_parallel_requests: Optional[int] = None
    user_id: Optional[str] = None
    team_id: Optional[str] = None
    expires: Optional[str] = None
    budget_reset_at: Optional[str] = None
    blocked: Optional[bool] = None


class ProxyUserInfo(BaseModel):
    """Canonical user info"""
    model_config = ConfigDict(extra="allow")

    user_id: Optional[str] = None
    user_email: Optional[str] = None
    user_alias: Optional[str] = None
    user_role: Optional[str] = None
    teams: List[str] = Field(default_factory=list)
    max_budget: Optional[float] = None
    spend: float = 0.0
    models: List[str] = Field(default_factory=list)
    tpm_limit: Optional[int] = None
    rpm_limit: Optional[int] = None

    @property
    def exists(self) -> bool:
        # The proxy answers 200 with placeholder data for unknown ids;
        # only real users belong to at least one team
        return bool(self.teams)


class ModelUsage(BaseModel):
    model: str
    spend: float = 0.0
    tokens: int = 0
    api_requests: int = 0


class DailyMetric(BaseModel):
    date: str
    spend: float = 0.0
    tokens: int = 0
    requests: int = 0
    breakdown: Optional[Dict[str, Any]] = None


class DailyActivity(BaseModel):
    """Usage over a date range; totals are the proxy's own aggregates"""
    spend: float = 0.0
    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    api_requests: int = 0
    by_model: List[ModelUsage] = Field(default_factory=list)
    daily_metrics: List[DailyMetric] = Field(default_factory=list)
    pages_fetched: int = 0
