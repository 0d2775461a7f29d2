from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import and_, delete, select, update
from sqlalchemy.orm import Session

from inbox_recon.config import MatchingPolicy
from inbox_recon.errors import InvalidTransition, MatchConflict, NotFound
from inbox_recon.models.models import (
    ConfirmedBy,
    ConfirmedMatch,
    InboxItem,
    InboxStatus,
    MatchEvent,
    MatchSuggestion,
    SuggestionStatus,
    Transaction,
    utcnow,
)
from inbox_recon.utils.confidence import ScoredCandidate
from inbox_recon.utils.decision import Decision, Outcome, classify

logger = logging.getLogger(__name__)

S = InboxStatus

# action -> states it may be issued from
ALLOWED_FROM: dict[str, frozenset[InboxStatus]] = {
    "ingest": frozenset({S.new}),
    "retry": frozenset({S.no_match, S.pending}),
    "apply_decision": frozenset({S.analyzing}),
    "defer": frozenset({S.analyzing}),
    "confirm": frozenset({S.suggested_match, S.no_match, S.pending}),
    "decline": frozenset({S.suggested_match}),
    "unmatch": frozenset({S.done}),
    "review": frozenset({S.no_match, S.pending}),
    "archive": frozenset(set(S) - {S.archived, S.deleted}),
    "delete": frozenset(set(S) - {S.deleted}),
}


def _reason(item_id: int, action: str, status: InboxStatus) -> str | None:
    if status == S.done and action in ("confirm", "decline", "retry", "review"):
        return f"Inbox item {item_id} is already matched"
    if status == S.deleted:
        return f"Inbox item {item_id} has been deleted"
    if status == S.analyzing and action != "apply_decision":
        return f"Inbox item {item_id} is being analyzed; try again shortly"
    return None


class MatchStateMachine:
    """Owns inbox item lifecycle and the one-match-per-transaction invariant.

    Every status change is a conditional UPDATE on the current status, and the
    transaction back-reference is only ever written through ``_claim`` /
    ``_release``. A failed step raises before anything else is written, so the
    caller's session never holds a half-applied transition.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---------------------------
    # primitives
    # ---------------------------

    def get_item(self, *, tenant_id: int, inbox_id: int) -> InboxItem:
        item = self.db.scalar(select(InboxItem).where(and_(InboxItem.tenant_id == tenant_id, InboxItem.id == inbox_id)))
        if not item:
            raise NotFound(f"Inbox item {inbox_id} not found")
        return item

    def _invalid(self, item: InboxItem, action: str) -> InvalidTransition:
        status = InboxStatus(item.status)
        return InvalidTransition(
            inbox_id=item.id, action=action, status=status.value, reason=_reason(item.id, action, status)
        )

    def _require(self, item: InboxItem, action: str) -> None:
        if item.status not in ALLOWED_FROM[action]:
            raise self._invalid(item, action)

    def _transition(
        self, item: InboxItem, action: str, new_status: InboxStatus | None = None, *, guard=None, **values
    ) -> InboxStatus:
        """Compare-and-set on the item status. Returns the status it moved from.

        ``guard`` is an extra condition the row must still satisfy at UPDATE time.
        """
        previous = InboxStatus(item.status)
        if new_status is not None:
            values["status"] = new_status
            values["status_changed_at"] = utcnow()
        stmt = (
            update(InboxItem)
            .where(and_(InboxItem.id == item.id, InboxItem.status.in_(sorted(ALLOWED_FROM[action]))))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if guard is not None:
            stmt = stmt.where(guard)
        res = self.db.execute(stmt)
        self.db.refresh(item)
        if res.rowcount == 0:
            raise self._invalid(item, action)
        return previous

    def _claim(self, item: InboxItem, transaction_id: int) -> None:
        stmt = (
            update(Transaction)
            .where(
                and_(
                    Transaction.id == transaction_id,
                    Transaction.tenant_id == item.tenant_id,
                    Transaction.matched_inbox_id.is_(None),
                )
            )
            .values(matched_inbox_id=item.id)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount == 1:
            return
        holder = self.db.scalar(
            select(Transaction.matched_inbox_id).where(
                and_(Transaction.id == transaction_id, Transaction.tenant_id == item.tenant_id)
            )
        )
        logger.warning("Claim on transaction %s by inbox item %s lost to %s", transaction_id, item.id, holder)
        raise MatchConflict(transaction_id=transaction_id, holder_inbox_id=holder)

    def _release(self, item_id: int, transaction_id: int) -> None:
        self.db.execute(
            update(Transaction)
            .where(and_(Transaction.id == transaction_id, Transaction.matched_inbox_id == item_id))
            .values(matched_inbox_id=None)
            .execution_options(synchronize_session=False)
        )

    def _require_transaction(self, tenant_id: int, transaction_id: int) -> Transaction:
        tx = self.db.scalar(
            select(Transaction).where(and_(Transaction.tenant_id == tenant_id, Transaction.id == transaction_id))
        )
        if not tx:
            raise NotFound(f"Transaction {transaction_id} not found")
        return tx

    def _match(self, item: InboxItem, action: str, transaction_id: int) -> InboxStatus:
        """Claim the transaction, then move the item to done; undo the claim if the item moved on."""
        self._claim(item, transaction_id)
        try:
            return self._transition(item, action, S.done, transaction_id=transaction_id)
        except InvalidTransition:
            self._release(item.id, transaction_id)
            raise

    def _drop_active_match(self, item: InboxItem) -> int | None:
        cm = self.db.scalar(select(ConfirmedMatch).where(ConfirmedMatch.inbox_id == item.id))
        if cm is None:
            return None
        tx_id = cm.transaction_id
        self._release(item.id, tx_id)
        self.db.delete(cm)
        self.db.execute(
            update(MatchSuggestion)
            .where(
                and_(
                    MatchSuggestion.inbox_id == item.id,
                    MatchSuggestion.transaction_id == tx_id,
                    MatchSuggestion.status == SuggestionStatus.confirmed,
                )
            )
            .values(status=SuggestionStatus.unmatched, user_action_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return tx_id

    def _clear_pending_suggestions(self, item_id: int) -> None:
        self.db.execute(
            delete(MatchSuggestion)
            .where(and_(MatchSuggestion.inbox_id == item_id, MatchSuggestion.status == SuggestionStatus.pending))
            .execution_options(synchronize_session=False)
        )

    def _save_suggestion(
        self, item: InboxItem, candidate: ScoredCandidate, *, outcome: Outcome, policy: MatchingPolicy, status: SuggestionStatus
    ) -> MatchSuggestion:
        s = self.db.scalar(
            select(MatchSuggestion).where(
                and_(MatchSuggestion.inbox_id == item.id, MatchSuggestion.transaction_id == candidate.transaction_id)
            )
        )
        if s is None:
            s = MatchSuggestion(tenant_id=item.tenant_id, inbox_id=item.id, transaction_id=candidate.transaction_id)
            self.db.add(s)
        b = candidate.breakdown
        s.confidence = b.confidence
        s.similarity_score = b.similarity
        s.amount_score = b.amount
        s.date_score = b.date
        s.embedding_distance = b.distance
        s.missing_signals = list(b.missing_signals)
        s.match_type = classify(candidate, outcome, policy)
        s.status = status
        s.scored_at = utcnow()
        s.user_action_at = None
        return s

    def _record(
        self,
        item: InboxItem,
        action: str,
        previous: InboxStatus | None,
        *,
        transaction_id: int | None = None,
        confidence: float | None = None,
        actor: ConfirmedBy = ConfirmedBy.system,
        note: str | None = None,
    ) -> None:
        self.db.add(
            MatchEvent(
                tenant_id=item.tenant_id,
                inbox_id=item.id,
                transaction_id=transaction_id,
                action=action,
                previous_status=previous,
                new_status=item.status,
                confidence=confidence,
                actor=actor.value,
                note=note,
            )
        )
        self.db.flush()
        logger.info(
            "Inbox item %s: %s (%s -> %s)",
            item.id,
            action,
            previous.value if previous else None,
            InboxStatus(item.status).value,
        )

    # ---------------------------
    # pipeline transitions
    # ---------------------------

    def ingest(self, item: InboxItem) -> InboxItem:
        prev = self._transition(item, "ingest", S.analyzing)
        self._record(item, "ingest", prev)
        return item

    def retry_matching(self, *, tenant_id: int, inbox_id: int, actor: ConfirmedBy = ConfirmedBy.user) -> InboxItem:
        item = self.get_item(tenant_id=tenant_id, inbox_id=inbox_id)
        prev = self._transition(item, "retry", S.analyzing)
        self._record(item, "retry", prev, actor=actor)
        return item

    def apply_decision(self, item: InboxItem, decision: Decision, policy: MatchingPolicy) -> InboxItem:
        self._require(item, "apply_decision")

        if decision.outcome is Outcome.auto_match:
            best = decision.best
            prev = self._match(item, "apply_decision", best.transaction_id)
            self._clear_pending_suggestions(item.id)
            self._save_suggestion(item, best, outcome=decision.outcome, policy=policy, status=SuggestionStatus.confirmed)
            self.db.add(
                ConfirmedMatch(
                    tenant_id=item.tenant_id,
                    inbox_id=item.id,
                    transaction_id=best.transaction_id,
                    confirmed_by=ConfirmedBy.system,
                    confidence=best.confidence,
                )
            )
            self._record(item, "auto_match", prev, transaction_id=best.transaction_id, confidence=best.confidence)
            return item

        if decision.outcome is Outcome.suggest:
            prev = self._transition(item, "apply_decision", S.suggested_match)
            self._clear_pending_suggestions(item.id)
            for c in decision.candidates:
                self._save_suggestion(item, c, outcome=decision.outcome, policy=policy, status=SuggestionStatus.pending)
            best = decision.best
            self._record(
                item,
                "suggest",
                prev,
                transaction_id=best.transaction_id,
                confidence=best.confidence,
                note=f"{len(decision.candidates)} suggestion(s)",
            )
            return item

        prev = self._transition(item, "apply_decision", S.no_match)
        self._clear_pending_suggestions(item.id)
        self._record(item, "no_match", prev)
        return item

    def defer(self, item: InboxItem, *, note: str) -> InboxItem:
        """Park an analyzing item in ``pending`` so it can be retried later."""
        prev = self._transition(item, "defer", S.pending)
        self._record(item, "defer", prev, note=note)
        return item

    def expire_stale(self, *, older_than: datetime) -> list[int]:
        ids = list(
            self.db.scalars(
                select(InboxItem.id).where(
                    and_(InboxItem.status == S.analyzing, InboxItem.status_changed_at < older_than)
                )
            )
        )
        moved: list[int] = []
        for item_id in ids:
            item = self.db.get(InboxItem, item_id)
            try:
                # a retry between the SELECT and here makes the item fresh again
                prev = self._transition(item, "defer", S.pending, guard=InboxItem.status_changed_at < older_than)
            except InvalidTransition:
                logger.info("Inbox item %s left analyzing; no longer stale", item_id)
                continue
            self._record(item, "defer", prev, note="analysis timed out")
            logger.warning("Inbox item %s was stuck in analyzing; moved to pending", item_id)
            moved.append(item_id)
        return moved

    # ---------------------------
    # human actions
    # ---------------------------

    def confirm(
        self,
        *,
        tenant_id: int,
        inbox_id: int,
        transaction_id: int,
        confirmed_by: ConfirmedBy = ConfirmedBy.user,
    ) -> InboxItem:
        item = self.get_item(tenant_id=tenant_id, inbox_id=inbox_id)
        self._require(item, "confirm")
        self._require_transaction(tenant_id, transaction_id)

        prev = self._match(item, "confirm", transaction_id)

        suggestion = self.db.scalar(
            select(MatchSuggestion).where(
                and_(MatchSuggestion.inbox_id == item.id, MatchSuggestion.transaction_id == transaction_id)
            )
        )
        confidence = None
        if suggestion is not None:
            suggestion.status = SuggestionStatus.confirmed
            suggestion.user_action_at = utcnow()
            confidence = suggestion.confidence
            self.db.flush()
        self._clear_pending_suggestions(item.id)

        self.db.add(
            ConfirmedMatch(
                tenant_id=tenant_id,
                inbox_id=item.id,
                transaction_id=transaction_id,
                confirmed_by=confirmed_by,
                confidence=confidence,
            )
        )
        self._record(item, "confirm", prev, transaction_id=transaction_id, confidence=confidence, actor=confirmed_by)
        return item

    def decline(self, *, tenant_id: int, inbox_id: int, suggestion_id: int) -> InboxItem:
        item = self.get_item(tenant_id=tenant_id, inbox_id=inbox_id)
        suggestion = self.db.scalar(
            select(MatchSuggestion).where(
                and_(MatchSuggestion.id == suggestion_id, MatchSuggestion.inbox_id == item.id)
            )
        )
        if not suggestion:
            raise NotFound(f"Suggestion {suggestion_id} not found")
        self._require(item, "decline")
        if suggestion.status != SuggestionStatus.pending:
            raise InvalidTransition(
                inbox_id=item.id,
                action="decline",
                status=InboxStatus(item.status).value,
                reason=f"Suggestion {suggestion_id} is already {SuggestionStatus(suggestion.status).value}",
            )

        remaining = self.db.scalar(
            select(MatchSuggestion.id).where(
                and_(
                    MatchSuggestion.inbox_id == item.id,
                    MatchSuggestion.status == SuggestionStatus.pending,
                    MatchSuggestion.id != suggestion.id,
                )
            ).limit(1)
        )
        if remaining is None:
            prev = self._transition(item, "decline", S.no_match)
        else:
            prev = self._transition(item, "decline", S.suggested_match)

        suggestion.status = SuggestionStatus.declined
        suggestion.user_action_at = utcnow()
        self._record(
            item,
            "decline",
            prev,
            transaction_id=suggestion.transaction_id,
            confidence=suggestion.confidence,
            actor=ConfirmedBy.user,
        )
        return item

    def unmatch(self, *, tenant_id: int, inbox_id: int, actor: ConfirmedBy = ConfirmedBy.user) -> InboxItem:
        item = self.get_item(tenant_id=tenant_id, inbox_id=inbox_id)
        if item.status == S.pending and item.transaction_id is None:
            return item

        prev = self._transition(item, "unmatch", S.pending, transaction_id=None)
        tx_id = self._drop_active_match(item)
        self._record(item, "unmatch", prev, transaction_id=tx_id, actor=actor)
        return item

    def mark_reviewed(self, *, tenant_id: int, inbox_id: int) -> InboxItem:
        item = self.get_item(tenant_id=tenant_id, inbox_id=inbox_id)
        prev = self._transition(item, "review", reviewed_at=utcnow())
        self._record(item, "review", prev, actor=ConfirmedBy.user)
        return item

    def archive(self, *, tenant_id: int, inbox_id: int) -> InboxItem:
        return self._retire(tenant_id, inbox_id, "archive", S.archived)

    def delete(self, *, tenant_id: int, inbox_id: int) -> InboxItem:
        return self._retire(tenant_id, inbox_id, "delete", S.deleted)

    def _retire(self, tenant_id: int, inbox_id: int, action: str, target: InboxStatus) -> InboxItem:
        item = self.get_item(tenant_id=tenant_id, inbox_id=inbox_id)
        prev = self._transition(item, action, target, transaction_id=None)
        tx_id = self._drop_active_match(item)
        self._clear_pending_suggestions(item.id)
        self._record(item, action, prev, transaction_id=tx_id, actor=ConfirmedBy.user)
        return item
