from __future__ import annotations

from datetime import date

from inbox_recon.models.models import DocumentKind

NEUTRAL_SCORE = 0.5
AMOUNT_FLOOR = 0.3
UNVERIFIED_CURRENCY_PENALTY = 0.6


def _tiered(diff: float, largest: float, *, exact: float, near: float, close: float, base: float) -> float:
    if diff < 0.01:
        return exact
    if diff < 1.0:
        return near
    if diff < 5.0:
        return close
    return max(AMOUNT_FLOOR, base - diff / largest)


def _same_currency(a: str | None, b: str | None) -> bool:
    return (a or "").upper() == (b or "").upper()


def amount_score(
    amount1: float | None,
    currency1: str | None,
    amount2: float | None,
    currency2: str | None,
    base_amount1: float | None = None,
    base_currency1: str | None = None,
    base_amount2: float | None = None,
    base_currency2: str | None = None,
) -> float:
    """Score how well two amounts agree, in [0.3, 1.0] or 0.5 when one is missing.

    Amounts are compared by magnitude, so a -25.99 debit matches a 25.99 receipt.
    """
    if amount1 is None or amount2 is None:
        return NEUTRAL_SCORE

    a1, a2 = abs(float(amount1)), abs(float(amount2))
    largest = max(a1, a2)
    if largest == 0.0:
        return 1.0

    if _same_currency(currency1, currency2):
        return _tiered(abs(a1 - a2), largest, exact=1.0, near=0.95, close=0.85, base=1.0)

    if (
        base_amount1 is not None
        and base_amount2 is not None
        and base_currency1
        and base_currency2
        and _same_currency(base_currency1, base_currency2)
    ):
        b1, b2 = abs(float(base_amount1)), abs(float(base_amount2))
        base_largest = max(b1, b2)
        if base_largest == 0.0:
            return 0.98
        return _tiered(abs(b1 - b2), base_largest, exact=0.98, near=0.92, close=0.82, base=0.9)

    raw = _tiered(abs(a1 - a2), largest, exact=1.0, near=0.95, close=0.85, base=1.0)
    return max(AMOUNT_FLOOR, raw * UNVERIFIED_CURRENCY_PENALTY)


def _expense_date_score(gap: int) -> float:
    gap = abs(gap)
    if gap <= 1:
        return 0.99
    if gap <= 3:
        return 0.95
    if gap <= 7:
        return 0.9
    if gap <= 30:
        return max(0.7, 0.9 - 0.01 * (gap - 7))
    return 0.6


def _invoice_date_score(gap: int) -> float:
    # gap is signed: positive means paid after issue
    if gap < 0:
        return 0.85
    if 24 <= gap <= 38:
        return 0.98
    if 55 <= gap <= 68:
        return 0.96
    if gap <= 6:
        return 0.99
    if gap <= 123:
        return max(0.7, 0.9 - (gap - 33) * 0.002)
    return 0.85


def date_score(item_date: date | None, transaction_date: date | None, kind: DocumentKind | str) -> float:
    if item_date is None or transaction_date is None:
        return NEUTRAL_SCORE
    gap = (transaction_date - item_date).days
    if DocumentKind(kind) is DocumentKind.invoice:
        return _invoice_date_score(gap)
    return _expense_date_score(gap)


def similarity_score(distance: float | None) -> float:
    if distance is None:
        return NEUTRAL_SCORE
    return min(1.0, max(0.0, 1.0 - float(distance)))
