from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date

from inbox_recon.models.models import DocumentKind
from inbox_recon.utils.scoring import amount_score, date_score, similarity_score


@dataclass(frozen=True)
class Weights:
    similarity: float = 0.35
    amount: float = 0.40
    date: float = 0.05


@dataclass(frozen=True)
class MatchInputs:
    """Comparable attributes of one side of an (item, transaction) pair."""

    amount: float | None
    currency: str | None
    day: date | None
    base_amount: float | None = None
    base_currency: str | None = None


@dataclass(frozen=True)
class ScoreBreakdown:
    similarity: float
    amount: float
    date: float
    confidence: float
    distance: float | None = None
    missing_signals: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ScoredCandidate:
    transaction_id: int
    transaction_date: date | None
    breakdown: ScoreBreakdown

    @property
    def confidence(self) -> float:
        return self.breakdown.confidence


def score_pair(
    item: MatchInputs,
    transaction: MatchInputs,
    *,
    kind: DocumentKind | str,
    distance: float | None,
    weights: Weights,
) -> ScoreBreakdown:
    """Combine the three signal scores into one confidence value.

    Pure: the result depends only on the arguments.
    """
    missing: list[str] = []
    if distance is None:
        missing.append("similarity")
    if item.amount is None or transaction.amount is None:
        missing.append("amount")
    if item.day is None or transaction.day is None:
        missing.append("date")

    sim = similarity_score(distance)
    amt = amount_score(
        item.amount,
        item.currency,
        transaction.amount,
        transaction.currency,
        item.base_amount,
        item.base_currency,
        transaction.base_amount,
        transaction.base_currency,
    )
    dt = date_score(item.day, transaction.day, kind)

    confidence = sim * weights.similarity + amt * weights.amount + dt * weights.date
    confidence = round(min(1.0, max(0.0, confidence)), 6)
    return ScoreBreakdown(
        similarity=sim,
        amount=amt,
        date=dt,
        confidence=confidence,
        distance=distance,
        missing_signals=tuple(missing),
    )


def _sort_key(c: ScoredCandidate) -> tuple[float, int, int]:
    day = c.transaction_date.toordinal() if c.transaction_date else 0
    return (-c.confidence, -day, c.transaction_id)


def rank(candidates: Iterable[ScoredCandidate]) -> list[ScoredCandidate]:
    """Confidence descending, then most recent transaction, then id."""
    return sorted(candidates, key=_sort_key)
