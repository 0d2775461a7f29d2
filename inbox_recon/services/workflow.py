from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from inbox_recon.config import Settings, resolve_policy, settings
from inbox_recon.errors import NotFound, ReconciliationError
from inbox_recon.models.models import (
    ConfirmedBy,
    InboxItem,
    InboxStatus,
    MatchSuggestion,
    MatchType,
    SuggestionStatus,
    Tenant,
    Transaction,
    utcnow,
)
from inbox_recon.services.state_machine import MatchStateMachine

logger = logging.getLogger(__name__)

CALIBRATION_WINDOW_DAYS = 90
CALIBRATION_MIN_SAMPLES = 5
CALIBRATION_STEP = 0.03


class ReconciliationWorkflow:
    """Operator batch actions, built only from state machine transitions."""

    def __init__(self, db: Session, *, cfg: Settings | None = None) -> None:
        self.db = db
        self.cfg = cfg or settings
        self.sm = MatchStateMachine(db)

    def _tenant(self, tenant_id: int) -> Tenant:
        tenant = self.db.get(Tenant, tenant_id)
        if not tenant:
            raise NotFound(f"Tenant {tenant_id} not found")
        return tenant

    def auto_eligible(self, *, tenant_id: int) -> list[tuple[int, int]]:
        """(inbox_id, transaction_id) for suggested items whose best suggestion clears auto-match."""
        policy = resolve_policy(self.cfg, self._tenant(tenant_id))
        stmt = (
            select(MatchSuggestion.inbox_id, MatchSuggestion.transaction_id)
            .join(InboxItem, InboxItem.id == MatchSuggestion.inbox_id)
            .join(Transaction, Transaction.id == MatchSuggestion.transaction_id)
            .where(
                and_(
                    MatchSuggestion.tenant_id == tenant_id,
                    MatchSuggestion.status == SuggestionStatus.pending,
                    MatchSuggestion.confidence >= policy.auto_match_threshold,
                    InboxItem.status == InboxStatus.suggested_match,
                )
            )
            .order_by(
                MatchSuggestion.inbox_id,
                MatchSuggestion.confidence.desc(),
                Transaction.posted_on.desc(),
                MatchSuggestion.transaction_id,
            )
        )
        best: dict[int, int] = {}
        for inbox_id, tx_id in self.db.execute(stmt):
            best.setdefault(inbox_id, tx_id)
        return list(best.items())

    def bulk_confirm_auto_eligible(self, *, tenant_id: int) -> dict[str, Any]:
        confirmed = 0
        failed: list[dict[str, Any]] = []
        for inbox_id, tx_id in self.auto_eligible(tenant_id=tenant_id):
            try:
                self.sm.confirm(tenant_id=tenant_id, inbox_id=inbox_id, transaction_id=tx_id, confirmed_by=ConfirmedBy.user)
            except ReconciliationError as e:
                failed.append({"id": inbox_id, "reason": str(e)})
                continue
            confirmed += 1
        logger.info("Tenant %s bulk confirm: %d confirmed, %d failed", tenant_id, confirmed, len(failed))
        return {"confirmed": confirmed, "failed": failed}

    def discrepancy_queue(
        self, *, tenant_id: int, include_reviewed: bool = False, limit: int = 50, offset: int = 0
    ) -> list[InboxItem]:
        self._tenant(tenant_id)
        stmt = select(InboxItem).where(
            and_(
                InboxItem.tenant_id == tenant_id,
                InboxItem.status.in_([InboxStatus.no_match, InboxStatus.pending]),
            )
        )
        if not include_reviewed:
            stmt = stmt.where(InboxItem.reviewed_at.is_(None))
        stmt = stmt.order_by(InboxItem.status_changed_at, InboxItem.id).offset(offset).limit(limit)
        return list(self.db.scalars(stmt))

    def mark_reviewed(self, *, tenant_id: int, inbox_id: int) -> InboxItem:
        return self.sm.mark_reviewed(tenant_id=tenant_id, inbox_id=inbox_id)

    def calibration_report(self, *, tenant_id: int) -> dict[str, Any]:
        """Summarise recent feedback and propose thresholds. Nothing is applied."""
        policy = resolve_policy(self.cfg, self._tenant(tenant_id))
        cutoff = utcnow() - timedelta(days=CALIBRATION_WINDOW_DAYS)
        rows = self.db.execute(
            select(MatchSuggestion.match_type, MatchSuggestion.status, func.count(), func.avg(MatchSuggestion.confidence))
            .where(
                and_(
                    MatchSuggestion.tenant_id == tenant_id,
                    MatchSuggestion.status.in_(
                        [SuggestionStatus.confirmed, SuggestionStatus.declined, SuggestionStatus.unmatched]
                    ),
                    MatchSuggestion.scored_at >= cutoff,
                )
            )
            .group_by(MatchSuggestion.match_type, MatchSuggestion.status)
        ).all()

        counts: dict[tuple[MatchType, SuggestionStatus], tuple[int, float]] = {
            (MatchType(mt), SuggestionStatus(st)): (int(n), float(avg or 0.0)) for mt, st, n, avg in rows
        }

        def tally(types: tuple[MatchType, ...], statuses: tuple[SuggestionStatus, ...]) -> tuple[int, float]:
            n = 0
            total = 0.0
            for (mt, st), (count, avg) in counts.items():
                if mt in types and st in statuses:
                    n += count
                    total += count * avg
            return n, (total / n if n else 0.0)

        all_types = tuple(MatchType)
        rejected = (SuggestionStatus.declined, SuggestionStatus.unmatched)
        confirmed_n, confirmed_avg = tally(all_types, (SuggestionStatus.confirmed,))
        rejected_n, rejected_avg = tally(all_types, rejected)

        auto_ok, _ = tally((MatchType.auto_matched,), (SuggestionStatus.confirmed,))
        auto_bad, _ = tally((MatchType.auto_matched,), rejected)
        manual = (MatchType.high_confidence, MatchType.suggested)
        sugg_ok, _ = tally(manual, (SuggestionStatus.confirmed,))
        sugg_bad, _ = tally(manual, rejected)

        auto_accuracy = auto_ok / (auto_ok + auto_bad) if auto_ok + auto_bad else None
        suggested_accuracy = sugg_ok / (sugg_ok + sugg_bad) if sugg_ok + sugg_bad else None

        proposed_auto = policy.auto_match_threshold
        proposed_suggestion = policy.suggestion_threshold
        if auto_accuracy is not None and auto_ok + auto_bad >= CALIBRATION_MIN_SAMPLES:
            if auto_accuracy > 0.97:
                proposed_auto -= CALIBRATION_STEP
            elif auto_accuracy < 0.95:
                proposed_auto += CALIBRATION_STEP
        if suggested_accuracy is not None and sugg_ok + sugg_bad >= CALIBRATION_MIN_SAMPLES:
            if suggested_accuracy > 0.8:
                proposed_suggestion -= CALIBRATION_STEP
            elif suggested_accuracy < 0.5:
                proposed_suggestion += CALIBRATION_STEP

        proposed_auto = round(min(1.0, max(0.0, proposed_auto)), 4)
        proposed_suggestion = round(min(proposed_auto, max(0.0, proposed_suggestion)), 4)

        return {
            "tenant_id": tenant_id,
            "window_days": CALIBRATION_WINDOW_DAYS,
            "samples": confirmed_n + rejected_n,
            "confirmed": confirmed_n,
            "rejected": rejected_n,
            "avg_confidence_confirmed": round(confirmed_avg, 4),
            "avg_confidence_rejected": round(rejected_avg, 4),
            "auto_match_accuracy": auto_accuracy,
            "suggested_match_accuracy": suggested_accuracy,
            "current_auto_match_threshold": policy.auto_match_threshold,
            "current_suggestion_threshold": policy.suggestion_threshold,
            "proposed_auto_match_threshold": proposed_auto,
            "proposed_suggestion_threshold": proposed_suggestion,
        }
