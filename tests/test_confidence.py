from __future__ import annotations

from datetime import date

import pytest

from inbox_recon.utils.confidence import MatchInputs, ScoredCandidate, ScoreBreakdown, Weights, rank, score_pair

D = date(2026, 3, 10)


def _breakdown(conf: float) -> ScoreBreakdown:
    return ScoreBreakdown(similarity=0.0, amount=0.0, date=0.0, confidence=conf)


def test_reference_confidence():
    item = MatchInputs(amount=25.99, currency="USD", day=D)
    tx = MatchInputs(amount=25.99, currency="USD", day=D)
    b = score_pair(item, tx, kind="expense", distance=0.1, weights=Weights())
    assert b.similarity == pytest.approx(0.9)
    assert b.amount == 1.0
    assert b.date == 0.99
    assert b.confidence == pytest.approx(0.35 * 0.9 + 0.4 * 1.0 + 0.05 * 0.99)
    assert b.missing_signals == ()


def test_aggregation_is_deterministic():
    item = MatchInputs(amount=120.0, currency="EUR", day=D, base_amount=130.0, base_currency="USD")
    tx = MatchInputs(amount=131.2, currency="USD", day=date(2026, 3, 14), base_amount=131.2, base_currency="USD")
    first = score_pair(item, tx, kind="invoice", distance=0.27, weights=Weights())
    for _ in range(20):
        assert score_pair(item, tx, kind="invoice", distance=0.27, weights=Weights()) == first


def test_missing_signals_are_recorded_not_fatal():
    item = MatchInputs(amount=None, currency=None, day=None)
    tx = MatchInputs(amount=10.0, currency="USD", day=D)
    b = score_pair(item, tx, kind="expense", distance=None, weights=Weights())
    assert set(b.missing_signals) == {"similarity", "amount", "date"}
    assert b.confidence == pytest.approx(0.5 * (0.35 + 0.4 + 0.05))


def test_custom_weights():
    item = MatchInputs(amount=10.0, currency="USD", day=D)
    b = score_pair(item, item, kind="expense", distance=0.0, weights=Weights(similarity=0.0, amount=1.0, date=0.0))
    assert b.confidence == 1.0


def test_rank_orders_by_confidence_then_recency_then_id():
    older = ScoredCandidate(3, date(2026, 1, 1), _breakdown(0.8))
    newer = ScoredCandidate(4, date(2026, 2, 1), _breakdown(0.8))
    best = ScoredCandidate(9, date(2025, 1, 1), _breakdown(0.9))
    twin = ScoredCandidate(2, date(2026, 2, 1), _breakdown(0.8))
    ranked = rank([older, newer, best, twin])
    assert [c.transaction_id for c in ranked] == [9, 2, 4, 3]


def test_rank_does_not_depend_on_input_order():
    cands = [ScoredCandidate(i, date(2026, 1, i + 1), _breakdown(0.5 + i / 100)) for i in range(10)]
    assert rank(cands) == rank(list(reversed(cands)))
