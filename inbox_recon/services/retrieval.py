from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from inbox_recon.config import Settings, settings
from inbox_recon.errors import RetrievalUnavailable
from inbox_recon.models.models import (
    DocumentKind,
    InboxItem,
    MatchSuggestion,
    SuggestionStatus,
    Transaction,
)
from inbox_recon.services.embeddings import EmbeddingProvider, build_embedding_provider
from inbox_recon.utils.scoring import amount_score

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    transaction: Transaction
    distance: float | None = None


@dataclass(frozen=True)
class CandidateSet:
    candidates: list[Candidate] = field(default_factory=list)
    # True when the vector index could not answer; the caller must not treat
    # the empty list as a genuine "nothing matches".
    unavailable: bool = False


class VectorIndex:
    def rank(self, query: list[float], transactions: list[Transaction], *, deadline: float) -> list[Candidate]:
        raise NotImplementedError


class DatabaseVectorIndex(VectorIndex):
    """Nearest-neighbour ranking over embeddings stored on the transaction rows."""

    def __init__(self, provider: EmbeddingProvider) -> None:
        self.provider = provider

    def rank(self, query: list[float], transactions: list[Transaction], *, deadline: float) -> list[Candidate]:
        scored: list[Candidate] = []
        for tx in transactions:
            if time.monotonic() > deadline:
                raise RetrievalUnavailable("Vector search exceeded its deadline")
            if not tx.embedding:
                continue
            try:
                d = self.provider.distance(query, tx.embedding)
            except ValueError as e:
                # left unranked; retrieve() still offers it through the fallback order
                logger.warning("Transaction %s skipped in vector ranking: %s", tx.id, e)
                continue
            scored.append(Candidate(transaction=tx, distance=d))
        scored.sort(key=lambda c: (c.distance, c.transaction.id))
        return scored


def candidate_window(item: InboxItem, cfg: Settings | None = None):
    cfg = cfg or settings
    day = item.effective_date
    if item.kind == DocumentKind.invoice:
        return day - timedelta(days=cfg.invoice_window_before_days), day + timedelta(days=cfg.invoice_window_after_days)
    return day - timedelta(days=cfg.expense_window_before_days), day + timedelta(days=cfg.expense_window_after_days)


class CandidateRetriever:
    def __init__(self, db: Session, *, cfg: Settings | None = None, index: VectorIndex | None = None) -> None:
        self.db = db
        self.cfg = cfg or settings
        self.index = index or DatabaseVectorIndex(build_embedding_provider(self.cfg))

    def _rejected_ids(self, item: InboxItem) -> set[int]:
        """Transactions the user declined for this item or unmatched from it."""
        stmt = select(MatchSuggestion.transaction_id).where(
            and_(
                MatchSuggestion.inbox_id == item.id,
                MatchSuggestion.status.in_([SuggestionStatus.declined, SuggestionStatus.unmatched]),
            )
        )
        return set(self.db.scalars(stmt))

    def _pool(self, item: InboxItem, exclude: set[int]) -> list[Transaction]:
        start, end = candidate_window(item, self.cfg)
        stmt = select(Transaction).where(
            and_(
                Transaction.tenant_id == item.tenant_id,
                Transaction.matched_inbox_id.is_(None),
                Transaction.posted_on >= start,
                Transaction.posted_on <= end,
            )
        )
        if exclude:
            stmt = stmt.where(Transaction.id.not_in(exclude))
        return list(self.db.scalars(stmt.order_by(Transaction.id)))

    def _fallback_order(self, item: InboxItem, transactions: list[Transaction]) -> list[Candidate]:
        day = item.effective_date

        def key(tx: Transaction):
            amt = amount_score(
                float(item.amount) if item.amount is not None else None,
                item.currency,
                float(tx.amount),
                tx.currency,
            )
            return (-amt, abs((tx.posted_on - day).days), tx.id)

        return [Candidate(transaction=tx) for tx in sorted(transactions, key=key)]

    def retrieve(self, item: InboxItem, *, limit: int, exclude: set[int] | None = None) -> CandidateSet:
        excluded = set(exclude or ()) | self._rejected_ids(item)
        pool = self._pool(item, excluded)
        logger.debug("Inbox item %s: %d transactions inside the date window", item.id, len(pool))
        if not pool:
            return CandidateSet()

        if not item.embedding:
            return CandidateSet(self._fallback_order(item, pool)[:limit])

        deadline = time.monotonic() + self.cfg.retrieval_timeout_seconds
        try:
            ranked = self.index.rank(item.embedding, pool, deadline=deadline)
        except RetrievalUnavailable as e:
            logger.warning("Retrieval unavailable for inbox item %s: %s", item.id, e)
            return CandidateSet(unavailable=True)

        # Transactions without an embedding still compete, after the ranked ones.
        seen = {c.transaction.id for c in ranked}
        rest = self._fallback_order(item, [tx for tx in pool if tx.id not in seen])
        return CandidateSet((ranked + rest)[:limit])
