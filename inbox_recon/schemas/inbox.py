from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field

from inbox_recon.models.models import DocumentKind, InboxStatus
from inbox_recon.schemas.common import CurrencyCode, OrmBase


class InboxItemCreate(BaseModel):
    display_name: str | None = Field(default=None, max_length=200)
    description: str | None = None
    amount: float | None = None
    currency: CurrencyCode | None = None
    document_date: date | None = None
    kind: DocumentKind = DocumentKind.expense
    embedding: list[float] | None = None


class InboxItemOut(OrmBase):
    id: int
    tenant_id: int
    display_name: str | None
    description: str | None
    amount: float | None
    currency: str | None
    base_amount: float | None
    base_currency: str | None
    document_date: date | None
    kind: DocumentKind
    status: InboxStatus
    transaction_id: int | None
    status_changed_at: datetime
    reviewed_at: datetime | None
    created_at: datetime


class ConfirmRequest(BaseModel):
    transaction_id: int
