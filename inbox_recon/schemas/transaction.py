from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field

from inbox_recon.schemas.common import AmountRange, CurrencyCode, DateRange, OrmBase


class TransactionIn(BaseModel):
    external_id: str | None = Field(default=None, max_length=128)
    name: str | None = Field(default=None, max_length=200)
    description: str | None = None
    posted_on: date
    amount: float
    currency: CurrencyCode = "USD"
    embedding: list[float] | None = None


class TransactionOut(OrmBase):
    id: int
    tenant_id: int
    external_id: str | None
    name: str | None
    description: str | None
    posted_on: date
    amount: float
    currency: str
    base_amount: float | None
    base_currency: str | None
    matched_inbox_id: int | None
    created_at: datetime


class TransactionFilters(BaseModel):
    posted_on: DateRange | None = None
    amount: AmountRange | None = None
    description_contains: str | None = None
    unmatched_only: bool = False
