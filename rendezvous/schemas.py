"""Pydantic request/response schemas for the Rendezvous API."""
from __future__ import annotations

from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _Params(BaseModel):
    """Action parameters arrive camelCase; unknown keys are ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Pipeline action parameters
# ---------------------------------------------------------------------------


class NoParams(_Params):
    pass


class GenerateMatchesParams(_Params):
    batch_size: int = Field(50, ge=1, le=500)


class ManualMatchParams(_Params):
    participant_a_id: int
    participant_b_id: int


class ActivateParams(_Params):
    user_id: int | None = None


class ExecuteConversationParams(_Params):
    match_id: int


class AnalyzeOutcomeParams(_Params):
    conversation_id: int


class GenerateReportsParams(_Params):
    report_date: date | None = Field(None, alias="date")
    user_id: int | None = None
    force_regenerate: bool = False


class SendEmailsParams(_Params):
    report_date: date | None = Field(None, alias="date")
    user_ids: list[int] | None = None
    force_resend: bool = False
    dry_run: bool = False
    email_override: str | None = None
    report_id: int | None = None

    @field_validator("email_override")
    @classmethod
    def _blank_is_none(cls, v: str | None) -> str | None:
        return v.strip() or None if v is not None else None


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class PipelineRequest(BaseModel):
    action: str
    params: dict[str, Any] = {}


class ActionEnvelope(BaseModel):
    success: bool
    action: str
    summary: dict[str, Any] = {}
    data: list[dict[str, Any]] = []
    error: str | None = None
    # invalid_request | not_found | failed
    error_code: str | None = None


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


class StatsOut(BaseModel):
    matches_total: int
    matches_by_status: dict[str, int]
    conversations_by_status: dict[str, int]
    average_opportunity_score: float
    average_quality_score: float
    llm_total_tokens: int
    llm_estimated_cost: float
    reports_total: int
    reports_sent: int
    reports_unsent: int


class ProcessingLogOut(BaseModel):
    id: int
    action: str
    status: str
    target_type: str
    target_id: str
    metadata: dict[str, Any] = {}
    error_message: str
    duration_ms: int | None = None
    created_at: str | None = None
    completed_at: str | None = None


class PromptOut(BaseModel):
    key: str
    label: str
    content: str
    llm_model: str
    temperature: float | None = None
    max_tokens: int
    json_response: bool


class PromptUpdate(BaseModel):
    content: str | None = None
    llm_model: str | None = None
    temperature: float | None = Field(None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(None, ge=1, le=32000)

    @field_validator("content")
    @classmethod
    def _non_empty(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("content cannot be empty")
        return v


class ConfigValue(BaseModel):
    key: str
    value: str | None = None


class ConfigUpdate(BaseModel):
    value: str
