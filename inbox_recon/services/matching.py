from __future__ import annotations

import logging

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from inbox_recon.config import MatchingPolicy, Settings, resolve_policy, settings
from inbox_recon.errors import MatchConflict, NotFound
from inbox_recon.models.models import InboxItem, InboxStatus, Tenant, Transaction
from inbox_recon.services.retrieval import Candidate, CandidateRetriever, candidate_window
from inbox_recon.services.state_machine import MatchStateMachine
from inbox_recon.utils.confidence import MatchInputs, ScoredCandidate, Weights, rank, score_pair
from inbox_recon.utils.decision import Decision, decide

logger = logging.getLogger(__name__)


def _num(value) -> float | None:
    return float(value) if value is not None else None


def item_inputs(item: InboxItem) -> MatchInputs:
    return MatchInputs(
        amount=_num(item.amount),
        currency=item.currency,
        day=item.effective_date,
        base_amount=_num(item.base_amount),
        base_currency=item.base_currency,
    )


def transaction_inputs(tx: Transaction) -> MatchInputs:
    return MatchInputs(
        amount=_num(tx.amount),
        currency=tx.currency,
        day=tx.posted_on,
        base_amount=_num(tx.base_amount),
        base_currency=tx.base_currency,
    )


def weights_for(policy: MatchingPolicy) -> Weights:
    return Weights(similarity=policy.similarity_weight, amount=policy.amount_weight, date=policy.date_weight)


class MatchingService:
    """Retriever -> scorers -> aggregator -> policy -> state machine, for one item."""

    def __init__(
        self,
        db: Session,
        *,
        cfg: Settings | None = None,
        retriever: CandidateRetriever | None = None,
        policy: MatchingPolicy | None = None,
    ) -> None:
        self.db = db
        self.cfg = cfg or settings
        self.retriever = retriever or CandidateRetriever(db, cfg=self.cfg)
        self.policy = policy
        self.sm = MatchStateMachine(db)

    def policy_for(self, tenant_id: int) -> MatchingPolicy:
        if self.policy is not None:
            return self.policy
        return resolve_policy(self.cfg, self.db.get(Tenant, tenant_id))

    def score_candidates(self, item: InboxItem, candidates: list[Candidate], policy: MatchingPolicy) -> list[ScoredCandidate]:
        weights = weights_for(policy)
        left = item_inputs(item)
        scored = []
        for c in candidates:
            breakdown = score_pair(
                left, transaction_inputs(c.transaction), kind=item.kind, distance=c.distance, weights=weights
            )
            scored.append(ScoredCandidate(c.transaction.id, c.transaction.posted_on, breakdown))
            logger.debug(
                "Inbox item %s vs transaction %s: confidence=%.4f (sim=%.2f amt=%.2f date=%.2f)",
                item.id,
                c.transaction.id,
                breakdown.confidence,
                breakdown.similarity,
                breakdown.amount,
                breakdown.date,
            )
        return rank(scored)

    def process(self, item: InboxItem) -> Decision | None:
        """Score an ``analyzing`` item and apply the outcome.

        Returns None when the item was parked in ``pending`` instead.
        """
        policy = self.policy_for(item.tenant_id)
        excluded: set[int] = set()

        for _ in range(self.cfg.conflict_retry_limit + 1):
            found = self.retriever.retrieve(item, limit=policy.candidate_limit, exclude=excluded)
            if found.unavailable:
                self.sm.defer(item, note="candidate retrieval unavailable")
                return None

            ranked = self.score_candidates(item, found.candidates, policy)
            decision = decide(ranked, policy)
            try:
                self.sm.apply_decision(item, decision, policy)
            except MatchConflict as e:
                # Lost the claim: drop that transaction and score what is left.
                excluded.add(e.transaction_id)
                continue

            logger.info(
                "Inbox item %s: %s from %d candidate(s), best=%s",
                item.id,
                decision.outcome.value,
                len(ranked),
                f"{decision.best.confidence:.4f}" if decision.best else "n/a",
            )
            return decision

        logger.warning("Inbox item %s: gave up after %d conflicting claims", item.id, len(excluded))
        self.sm.defer(item, note="conflicting claims")
        return None

    def items_awaiting_transaction(self, *, tenant_id: int, transaction_id: int) -> list[int]:
        """Unreviewed no_match/pending items whose date window covers the transaction."""
        tx = self.db.scalar(
            select(Transaction).where(and_(Transaction.tenant_id == tenant_id, Transaction.id == transaction_id))
        )
        if not tx:
            raise NotFound(f"Transaction {transaction_id} not found")
        if tx.matched_inbox_id is not None:
            return []

        stmt = (
            select(InboxItem)
            .where(
                and_(
                    InboxItem.tenant_id == tenant_id,
                    InboxItem.status.in_([InboxStatus.no_match, InboxStatus.pending]),
                    InboxItem.reviewed_at.is_(None),
                )
            )
            .order_by(InboxItem.created_at.desc(), InboxItem.id.desc())
        )
        ids: list[int] = []
        for item in self.db.scalars(stmt):
            start, end = candidate_window(item, self.cfg)
            if start <= tx.posted_on <= end:
                ids.append(item.id)
                if len(ids) >= self.cfg.reverse_match_limit:
                    break
        return ids
