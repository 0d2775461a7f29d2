from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from inbox_recon.models.models import InboxStatus, MatchType, SuggestionStatus
from inbox_recon.schemas.common import OrmBase


class SuggestionOut(OrmBase):
    id: int
    inbox_id: int
    transaction_id: int
    confidence: float
    similarity_score: float
    amount_score: float
    date_score: float
    embedding_distance: float | None
    missing_signals: list[str]
    match_type: MatchType
    status: SuggestionStatus
    scored_at: datetime
    user_action_at: datetime | None


class MatchEventOut(OrmBase):
    id: int
    inbox_id: int
    transaction_id: int | None
    action: str
    previous_status: InboxStatus | None
    new_status: InboxStatus | None
    confidence: float | None
    actor: str
    note: str | None
    created_at: datetime


class BulkFailure(BaseModel):
    id: int
    reason: str


class BulkConfirmOut(BaseModel):
    confirmed: int
    failed: list[BulkFailure]


class ExplanationOut(BaseModel):
    explanation: str
    confidence: str


class CalibrationOut(BaseModel):
    tenant_id: int
    window_days: int
    samples: int
    confirmed: int
    rejected: int
    avg_confidence_confirmed: float
    avg_confidence_rejected: float
    auto_match_accuracy: float | None
    suggested_match_accuracy: float | None
    current_auto_match_threshold: float
    current_suggestion_threshold: float
    proposed_auto_match_threshold: float
    proposed_suggestion_threshold: float
