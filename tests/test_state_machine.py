from __future__ import annotations

import threading
from datetime import date, timedelta

import pytest
from sqlalchemy import func, select, update

from inbox_recon.db.init_db import init_db
from inbox_recon.db.session import create_db_engine, make_session_factory, session_scope
from inbox_recon.errors import InvalidTransition, MatchConflict, NotFound
from inbox_recon.models.models import (
    ConfirmedBy,
    ConfirmedMatch,
    InboxItem,
    InboxStatus,
    MatchEvent,
    MatchSuggestion,
    SuggestionStatus,
    Tenant,
    Transaction,
    utcnow,
)
from inbox_recon.services.state_machine import MatchStateMachine


def suggest(db, item, tx, conf=0.7) -> MatchSuggestion:
    s = MatchSuggestion(
        tenant_id=item.tenant_id,
        inbox_id=item.id,
        transaction_id=tx.id,
        confidence=conf,
        similarity_score=0.8,
        amount_score=0.9,
        date_score=0.9,
        missing_signals=[],
    )
    db.add(s)
    db.commit()
    return s


def test_confirm_creates_match_and_claims_transaction(db, make_item, make_tx):
    item = make_item(status=InboxStatus.no_match)
    tx = make_tx()

    out = MatchStateMachine(db).confirm(tenant_id=item.tenant_id, inbox_id=item.id, transaction_id=tx.id)
    db.commit()

    assert out.status == InboxStatus.done
    assert out.transaction_id == tx.id
    db.refresh(tx)
    assert tx.matched_inbox_id == item.id
    cm = db.scalar(select(ConfirmedMatch).where(ConfirmedMatch.inbox_id == item.id))
    assert cm.transaction_id == tx.id
    assert cm.confirmed_by == ConfirmedBy.user


def test_confirm_on_done_item_is_rejected_and_state_unchanged(db, make_item, make_tx):
    item = make_item(status=InboxStatus.pending)
    tx1, tx2 = make_tx(), make_tx(amount=-30.0)
    sm = MatchStateMachine(db)
    sm.confirm(tenant_id=item.tenant_id, inbox_id=item.id, transaction_id=tx1.id)
    db.commit()

    with pytest.raises(InvalidTransition) as exc:
        sm.confirm(tenant_id=item.tenant_id, inbox_id=item.id, transaction_id=tx2.id)
    assert "already matched" in str(exc.value)
    db.rollback()

    db.refresh(item)
    db.refresh(tx2)
    assert item.status == InboxStatus.done
    assert item.transaction_id == tx1.id
    assert tx2.matched_inbox_id is None


def test_second_item_cannot_claim_a_matched_transaction(db, make_item, make_tx):
    first = make_item(status=InboxStatus.no_match)
    second = make_item(status=InboxStatus.suggested_match, display_name="Other")
    tx = make_tx()
    sm = MatchStateMachine(db)
    sm.confirm(tenant_id=first.tenant_id, inbox_id=first.id, transaction_id=tx.id)
    db.commit()

    with pytest.raises(MatchConflict) as exc:
        sm.confirm(tenant_id=second.tenant_id, inbox_id=second.id, transaction_id=tx.id)
    assert exc.value.holder_inbox_id == first.id
    db.rollback()

    db.refresh(second)
    assert second.status == InboxStatus.suggested_match
    assert second.transaction_id is None
    assert db.scalar(select(func.count()).select_from(ConfirmedMatch)) == 1


def test_confirm_unknown_transaction(db, make_item):
    item = make_item(status=InboxStatus.no_match)
    with pytest.raises(NotFound):
        MatchStateMachine(db).confirm(tenant_id=item.tenant_id, inbox_id=item.id, transaction_id=999)


def test_transaction_of_another_tenant_is_not_found(db, make_item):
    other = Tenant(name="Globex")
    db.add(other)
    db.commit()
    foreign = Transaction(tenant_id=other.id, amount=10, currency="USD", posted_on=date(2026, 3, 10))
    db.add(foreign)
    db.commit()
    item = make_item(status=InboxStatus.no_match)
    with pytest.raises(NotFound):
        MatchStateMachine(db).confirm(tenant_id=item.tenant_id, inbox_id=item.id, transaction_id=foreign.id)


def test_confirm_marks_suggestion_and_drops_the_others(db, make_item, make_tx):
    item = make_item(status=InboxStatus.suggested_match)
    tx1, tx2 = make_tx(), make_tx(amount=-26.0)
    s1 = suggest(db, item, tx1, 0.8)
    suggest(db, item, tx2, 0.6)

    MatchStateMachine(db).confirm(tenant_id=item.tenant_id, inbox_id=item.id, transaction_id=tx1.id)
    db.commit()

    rows = list(db.scalars(select(MatchSuggestion).where(MatchSuggestion.inbox_id == item.id)))
    assert [(r.id, r.status) for r in rows] == [(s1.id, SuggestionStatus.confirmed)]
    cm = db.scalar(select(ConfirmedMatch).where(ConfirmedMatch.inbox_id == item.id))
    assert cm.confidence == pytest.approx(0.8)


def test_unmatch_twice_is_a_noop(db, make_item, make_tx):
    item = make_item(status=InboxStatus.no_match)
    tx = make_tx()
    sm = MatchStateMachine(db)
    sm.confirm(tenant_id=item.tenant_id, inbox_id=item.id, transaction_id=tx.id)
    db.commit()

    first = sm.unmatch(tenant_id=item.tenant_id, inbox_id=item.id)
    db.commit()
    assert first.status == InboxStatus.pending
    assert first.transaction_id is None
    db.refresh(tx)
    assert tx.matched_inbox_id is None
    assert db.scalar(select(ConfirmedMatch).where(ConfirmedMatch.inbox_id == item.id)) is None

    second = sm.unmatch(tenant_id=item.tenant_id, inbox_id=item.id)
    db.commit()
    assert second.status == InboxStatus.pending
    unmatches = db.scalar(
        select(func.count()).select_from(MatchEvent).where(MatchEvent.inbox_id == item.id, MatchEvent.action == "unmatch")
    )
    assert unmatches == 1


def test_unmatched_transaction_can_be_claimed_again(db, make_item, make_tx):
    a = make_item(status=InboxStatus.no_match)
    b = make_item(status=InboxStatus.no_match)
    tx = make_tx()
    sm = MatchStateMachine(db)
    sm.confirm(tenant_id=a.tenant_id, inbox_id=a.id, transaction_id=tx.id)
    sm.unmatch(tenant_id=a.tenant_id, inbox_id=a.id)
    sm.confirm(tenant_id=b.tenant_id, inbox_id=b.id, transaction_id=tx.id)
    db.commit()
    db.refresh(tx)
    assert tx.matched_inbox_id == b.id


def test_unmatch_marks_confirmed_suggestion_unmatched(db, make_item, make_tx):
    item = make_item(status=InboxStatus.suggested_match)
    tx = make_tx()
    s = suggest(db, item, tx)
    sm = MatchStateMachine(db)
    sm.confirm(tenant_id=item.tenant_id, inbox_id=item.id, transaction_id=tx.id)
    sm.unmatch(tenant_id=item.tenant_id, inbox_id=item.id)
    db.commit()
    db.refresh(s)
    assert s.status == SuggestionStatus.unmatched


def test_decline_keeps_item_suggested_while_suggestions_remain(db, make_item, make_tx):
    item = make_item(status=InboxStatus.suggested_match)
    tx1, tx2 = make_tx(), make_tx(amount=-27.0)
    s1, s2 = suggest(db, item, tx1, 0.7), suggest(db, item, tx2, 0.6)
    sm = MatchStateMachine(db)

    out = sm.decline(tenant_id=item.tenant_id, inbox_id=item.id, suggestion_id=s1.id)
    db.commit()
    assert out.status == InboxStatus.suggested_match
    db.refresh(s1)
    assert s1.status == SuggestionStatus.declined

    out = sm.decline(tenant_id=item.tenant_id, inbox_id=item.id, suggestion_id=s2.id)
    db.commit()
    assert out.status == InboxStatus.no_match


def test_decline_unknown_suggestion(db, make_item):
    item = make_item(status=InboxStatus.suggested_match)
    with pytest.raises(NotFound):
        MatchStateMachine(db).decline(tenant_id=item.tenant_id, inbox_id=item.id, suggestion_id=42)


def test_decline_twice_is_rejected(db, make_item, make_tx):
    item = make_item(status=InboxStatus.suggested_match)
    s1 = suggest(db, item, make_tx(), 0.7)
    suggest(db, item, make_tx(amount=-3.0), 0.55)
    sm = MatchStateMachine(db)
    sm.decline(tenant_id=item.tenant_id, inbox_id=item.id, suggestion_id=s1.id)
    db.commit()
    with pytest.raises(InvalidTransition):
        sm.decline(tenant_id=item.tenant_id, inbox_id=item.id, suggestion_id=s1.id)


@pytest.mark.parametrize(
    "action,status",
    [
        ("retry", InboxStatus.new),
        ("retry", InboxStatus.suggested_match),
        ("retry", InboxStatus.done),
        ("confirm", InboxStatus.analyzing),
        ("confirm", InboxStatus.archived),
        ("confirm", InboxStatus.deleted),
        ("decline", InboxStatus.no_match),
        ("unmatch", InboxStatus.no_match),
        ("unmatch", InboxStatus.suggested_match),
        ("review", InboxStatus.done),
        ("review", InboxStatus.suggested_match),
        ("archive", InboxStatus.archived),
        ("archive", InboxStatus.deleted),
        ("delete", InboxStatus.deleted),
    ],
)
def test_guarded_transitions(db, make_item, make_tx, action, status):
    item = make_item(status=status)
    tx = make_tx()
    s = suggest(db, item, tx)
    sm = MatchStateMachine(db)
    calls = {
        "retry": lambda: sm.retry_matching(tenant_id=item.tenant_id, inbox_id=item.id),
        "confirm": lambda: sm.confirm(tenant_id=item.tenant_id, inbox_id=item.id, transaction_id=tx.id),
        "decline": lambda: sm.decline(tenant_id=item.tenant_id, inbox_id=item.id, suggestion_id=s.id),
        "unmatch": lambda: sm.unmatch(tenant_id=item.tenant_id, inbox_id=item.id),
        "review": lambda: sm.mark_reviewed(tenant_id=item.tenant_id, inbox_id=item.id),
        "archive": lambda: sm.archive(tenant_id=item.tenant_id, inbox_id=item.id),
        "delete": lambda: sm.delete(tenant_id=item.tenant_id, inbox_id=item.id),
    }
    with pytest.raises(InvalidTransition) as exc:
        calls[action]()
    assert exc.value.status == status.value
    db.rollback()
    db.refresh(item)
    assert item.status == status
    db.refresh(tx)
    assert tx.matched_inbox_id is None


def test_ingest_only_from_new(db, make_item):
    item = make_item()
    sm = MatchStateMachine(db)
    sm.ingest(item)
    assert item.status == InboxStatus.analyzing
    with pytest.raises(InvalidTransition):
        sm.ingest(item)


def test_retry_moves_waiting_item_to_analyzing(db, make_item):
    item = make_item(status=InboxStatus.no_match)
    out = MatchStateMachine(db).retry_matching(tenant_id=item.tenant_id, inbox_id=item.id)
    assert out.status == InboxStatus.analyzing


def test_archive_releases_active_match(db, make_item, make_tx):
    item = make_item(status=InboxStatus.no_match)
    tx = make_tx()
    sm = MatchStateMachine(db)
    sm.confirm(tenant_id=item.tenant_id, inbox_id=item.id, transaction_id=tx.id)
    out = sm.archive(tenant_id=item.tenant_id, inbox_id=item.id)
    db.commit()
    assert out.status == InboxStatus.archived
    assert out.transaction_id is None
    db.refresh(tx)
    assert tx.matched_inbox_id is None

    out = sm.delete(tenant_id=item.tenant_id, inbox_id=item.id)
    assert out.status == InboxStatus.deleted


def test_mark_reviewed_keeps_status(db, make_item):
    item = make_item(status=InboxStatus.pending)
    out = MatchStateMachine(db).mark_reviewed(tenant_id=item.tenant_id, inbox_id=item.id)
    assert out.status == InboxStatus.pending
    assert out.reviewed_at is not None


def test_expire_stale_moves_only_old_analyzing_items(db, make_item):
    stale = make_item(status=InboxStatus.analyzing, status_changed_at=utcnow() - timedelta(hours=1))
    fresh = make_item(status=InboxStatus.analyzing)
    done = make_item(status=InboxStatus.no_match, status_changed_at=utcnow() - timedelta(hours=1))

    moved = MatchStateMachine(db).expire_stale(older_than=utcnow() - timedelta(minutes=5))
    db.commit()

    assert moved == [stale.id]
    for it in (stale, fresh, done):
        db.refresh(it)
    assert stale.status == InboxStatus.pending
    assert fresh.status == InboxStatus.analyzing
    assert done.status == InboxStatus.no_match


def test_expire_stale_skips_item_retried_after_selection(db, make_item, monkeypatch):
    item = make_item(status=InboxStatus.analyzing, status_changed_at=utcnow() - timedelta(hours=1))
    db.commit()
    original_get = db.get

    def get_after_retry(entity, ident, **kw):
        # the item finished and was retried after the stale SELECT ran
        db.execute(update(InboxItem).where(InboxItem.id == ident).values(status_changed_at=utcnow()))
        return original_get(entity, ident, **kw)

    monkeypatch.setattr(db, "get", get_after_retry)
    moved = MatchStateMachine(db).expire_stale(older_than=utcnow() - timedelta(minutes=5))
    db.commit()

    assert moved == []
    db.refresh(item)
    assert item.status == InboxStatus.analyzing
    assert db.scalar(select(func.count()).select_from(MatchEvent).where(MatchEvent.inbox_id == item.id)) == 0


def test_every_transition_is_recorded(db, make_item, make_tx):
    item = make_item(status=InboxStatus.no_match)
    tx = make_tx()
    sm = MatchStateMachine(db)
    sm.confirm(tenant_id=item.tenant_id, inbox_id=item.id, transaction_id=tx.id)
    sm.unmatch(tenant_id=item.tenant_id, inbox_id=item.id)
    sm.retry_matching(tenant_id=item.tenant_id, inbox_id=item.id)
    db.commit()

    events = list(db.scalars(select(MatchEvent).where(MatchEvent.inbox_id == item.id).order_by(MatchEvent.id)))
    assert [(e.action, e.previous_status, e.new_status) for e in events] == [
        ("confirm", InboxStatus.no_match, InboxStatus.done),
        ("unmatch", InboxStatus.done, InboxStatus.pending),
        ("retry", InboxStatus.pending, InboxStatus.analyzing),
    ]
    assert events[0].transaction_id == tx.id
    assert events[1].transaction_id == tx.id


def test_concurrent_confirms_on_one_transaction(tmp_path):
    engine = create_db_engine(f"sqlite+pysqlite:///{tmp_path / 'race.db'}")
    init_db(engine)
    factory = make_session_factory(engine)

    with session_scope(factory) as s:
        t = Tenant(name="Race")
        s.add(t)
        s.flush()
        a = InboxItem(tenant_id=t.id, amount=10, currency="USD", status=InboxStatus.suggested_match)
        b = InboxItem(tenant_id=t.id, amount=10, currency="USD", status=InboxStatus.no_match)
        tx = Transaction(tenant_id=t.id, amount=10, currency="USD", posted_on=date(2026, 3, 10))
        s.add_all([a, b, tx])
        s.flush()
        tenant_id, a_id, b_id, tx_id = t.id, a.id, b.id, tx.id

    barrier = threading.Barrier(2)
    results: dict[int, object] = {}

    def confirm(inbox_id: int) -> None:
        try:
            with session_scope(factory) as s:
                sm = MatchStateMachine(s)
                sm.get_item(tenant_id=tenant_id, inbox_id=inbox_id)
                barrier.wait(timeout=10)
                sm.confirm(tenant_id=tenant_id, inbox_id=inbox_id, transaction_id=tx_id)
            results[inbox_id] = "ok"
        except MatchConflict as e:
            results[inbox_id] = e

    threads = [threading.Thread(target=confirm, args=(i,)) for i in (a_id, b_id)]
    for th in threads:
        th.start()
    for th in threads:
        th.join(timeout=60)

    winners = [i for i, r in results.items() if r == "ok"]
    losers = [i for i, r in results.items() if isinstance(r, MatchConflict)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert results[losers[0]].holder_inbox_id == winners[0]

    with session_scope(factory) as s:
        assert s.get(Transaction, tx_id).matched_inbox_id == winners[0]
        assert s.get(InboxItem, winners[0]).status == InboxStatus.done
        assert s.get(InboxItem, losers[0]).status != InboxStatus.done
        assert s.scalar(select(func.count()).select_from(ConfirmedMatch)) == 1
    engine.dispose()
