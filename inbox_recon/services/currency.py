from __future__ import annotations

from datetime import date

from inbox_recon.config import Settings, settings


class CurrencyConverter:
    def to_base_currency(
        self, amount: float, currency: str, as_of: date | None, base_currency: str
    ) -> tuple[float, str] | None:
        """Return ``(amount, base_currency)`` or None when no rate is known."""
        raise NotImplementedError


class DisabledCurrencyConverter(CurrencyConverter):
    def to_base_currency(self, amount, currency, as_of, base_currency):
        if currency.upper() == base_currency.upper():
            return round(float(amount), 2), base_currency.upper()
        return None


class StaticRateConverter(CurrencyConverter):
    """Fixed rates keyed ``"EUR/USD"``; the inverse pair is derived when missing."""

    def __init__(self, rates: dict[str, float]) -> None:
        self.rates = {k.upper(): float(v) for k, v in rates.items() if v}

    def _rate(self, source: str, target: str) -> float | None:
        direct = self.rates.get(f"{source}/{target}")
        if direct is not None:
            return direct
        inverse = self.rates.get(f"{target}/{source}")
        if inverse:
            return 1.0 / inverse
        return None

    def to_base_currency(self, amount, currency, as_of, base_currency):
        source, target = currency.upper(), base_currency.upper()
        if source == target:
            return round(float(amount), 2), target
        rate = self._rate(source, target)
        if rate is None:
            return None
        return round(float(amount) * rate, 2), target


def build_currency_converter(cfg: Settings | None = None) -> CurrencyConverter:
    cfg = cfg or settings
    if cfg.fx_rates:
        return StaticRateConverter(cfg.fx_rates)
    return DisabledCurrencyConverter()


def base_amount_for(
    converter: CurrencyConverter,
    amount: float | None,
    currency: str | None,
    as_of: date | None,
    base_currency: str | None,
) -> tuple[float | None, str | None]:
    if amount is None or not currency or not base_currency:
        return None, None
    converted = converter.to_base_currency(float(amount), currency, as_of, base_currency)
    if converted is None:
        return None, None
    return converted
