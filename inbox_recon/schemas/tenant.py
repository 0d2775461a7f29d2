from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from inbox_recon.schemas.common import CurrencyCode, OrmBase


class TenantCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    base_currency: CurrencyCode | None = None


class TenantOut(OrmBase):
    id: int
    name: str
    base_currency: str | None
    created_at: datetime


class PolicyUpdate(BaseModel):
    """Per-tenant overrides. A null field falls back to the global setting."""

    auto_match_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    suggestion_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    min_auto_margin: float | None = Field(default=None, ge=0.0, le=1.0)


class PolicyOut(BaseModel):
    tenant_id: int
    similarity_weight: float
    amount_weight: float
    date_weight: float
    suggestion_threshold: float
    auto_match_threshold: float
    min_auto_margin: float
    high_confidence_threshold: float
    max_suggestions: int
    candidate_limit: int
    overrides: PolicyUpdate
