from __future__ import annotations

from billing_sync.core.errors import ReconcileError
from billing_sync.services.sync_types import Money, round8

VAT_RATE = 0.16
VAT_PCT = 16.0
# legacy single-leg totals include 16% VAT
VAT_DIVISOR = 1.16
IGTF_PCT = 0.0

MONEY_FIELDS = ('subtotal', 'discount', 'taxable_base', 'vat', 'igtf_base', 'igtf', 'total')


def require_rate(exchange_rate: float | None, *, legacy_id: str | None = None) -> float:
    if exchange_rate is None or exchange_rate <= 0:
        raise ReconcileError(f'no usable exchange rate ({exchange_rate!r})', legacy_id=legacy_id)
    return float(exchange_rate)


def reconcile_dual_leg(amounts: dict[str, Money], *, legacy_id: str | None = None) -> dict[str, Money]:
    """Passthrough for entities that already carry both legs; both must be present."""
    out: dict[str, Money] = {}
    for name, money in amounts.items():
        if money is None or money.dollar is None or money.bolivar is None:
            raise ReconcileError(f'{name} is missing a currency leg', legacy_id=legacy_id)
        out[name] = money.rounded()
    return out


def withholding_percentage(withheld_bolivar: float, base_bolivar: float) -> float:
    if not base_bolivar:
        return 0.0
    return round(float(withheld_bolivar) * 100 / float(base_bolivar), 2)


def reconcile_pre_invoice(total_dollar: float, exchange_rate: float | None, *, legacy_id: str | None = None) -> tuple[dict[str, Money], dict[str, float]]:
    """
    Derive every money pair of a pre-invoice from its VAT-inclusive dollar total.

    subtotal = total / 1.16, taxable base = subtotal, vat = base * 0.16, igtf = 0;
    each bolivar leg is the dollar leg times the rate in force at creation.
    Returns (amounts, percentages).
    """
    rate = require_rate(exchange_rate, legacy_id=legacy_id)
    total = float(total_dollar)
    subtotal = total / VAT_DIVISOR
    vat = subtotal * VAT_RATE

    def pair(dollar: float) -> Money:
        return Money(round8(dollar), round8(dollar * rate))

    amounts = {
        'subtotal': pair(subtotal),
        'discount': Money(0.0, 0.0),
        'taxable_base': pair(subtotal),
        'vat': pair(vat),
        'igtf_base': Money(0.0, 0.0),
        'igtf': Money(0.0, 0.0),
        'total': pair(total),
    }
    percentages = {'discount': 0.0, 'vat': VAT_PCT, 'igtf': IGTF_PCT}
    return amounts, percentages
