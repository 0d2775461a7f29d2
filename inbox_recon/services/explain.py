from __future__ import annotations

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from inbox_recon.config import Settings, resolve_policy, settings
from inbox_recon.errors import NotFound
from inbox_recon.models.models import InboxItem, MatchSuggestion, Tenant, Transaction
from inbox_recon.schemas.match import ExplanationOut


class ExplanationService:
    def __init__(self, db: Session, *, cfg: Settings | None = None) -> None:
        self.db = db
        self.cfg = cfg or settings

    def _describe(self, *, item: InboxItem, txn: Transaction, s: MatchSuggestion, label: str) -> ExplanationOut:
        parts: list[str] = []
        if item.amount is None:
            parts.append("The document has no amount")
        elif s.amount_score >= 0.999:
            parts.append("The amounts match exactly")
        elif s.amount_score >= 0.82:
            parts.append("The amounts are close")
        else:
            parts.append("The amounts differ")
        if (item.currency or "").upper() != (txn.currency or "").upper() and item.amount is not None:
            parts.append("the currencies differ")

        days = abs((txn.posted_on - item.effective_date).days)
        parts.append(f"the dates are {days} days apart")

        if s.embedding_distance is None:
            parts.append("no text similarity was available")
        elif s.similarity_score >= 0.8:
            parts.append("the descriptions are very similar")
        elif s.similarity_score >= 0.5:
            parts.append("the descriptions are somewhat similar")
        else:
            parts.append("the descriptions have little in common")

        text = ", ".join(parts) + f". Overall confidence {s.confidence:.2f} is {label}."
        return ExplanationOut(explanation=text, confidence=label)

    def explain(self, *, tenant_id: int, inbox_id: int, suggestion_id: int) -> ExplanationOut:
        item = self.db.scalar(select(InboxItem).where(and_(InboxItem.tenant_id == tenant_id, InboxItem.id == inbox_id)))
        s = self.db.scalar(
            select(MatchSuggestion).where(and_(MatchSuggestion.id == suggestion_id, MatchSuggestion.inbox_id == inbox_id))
        )
        if not item or not s:
            raise NotFound("Inbox item or suggestion not found")
        txn = self.db.get(Transaction, s.transaction_id)

        policy = resolve_policy(self.cfg, self.db.get(Tenant, tenant_id))
        label = "low"
        if s.confidence >= policy.high_confidence_threshold:
            label = "high"
        elif s.confidence >= policy.suggestion_threshold:
            label = "medium"
        return self._describe(item=item, txn=txn, s=s, label=label)
