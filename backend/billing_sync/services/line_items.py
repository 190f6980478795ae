from __future__ import annotations

from typing import Callable

from billing_sync.core.errors import DecodeError, LineItemValueError
from billing_sync.services.currency import VAT_DIVISOR
from billing_sync.services.parsing import clean_description
from billing_sync.services.sync_types import LineItem, Money, RawLineItem, SubscriptionSummary

ENTRY_SEPARATOR = '||'
FIELD_SEPARATOR = 'üü'
FIELD_COUNT = 9

SubscriptionLookup = Callable[[str], SubscriptionSummary | None]


def split_blob(blob: str | None, *, legacy_id: str | None = None) -> list[RawLineItem]:
    """
    Split a GROUP_CONCAT line-item blob into raw entries.

    Entries are separated by '||' and fields by 'üü'. Every entry must carry
    exactly nine fields; anything else raises DecodeError, which aborts the whole
    batch. An empty blob means the parent has no line items.
    """
    if blob is None:
        return []
    if isinstance(blob, bytes):
        blob = blob.decode('utf-8')
    if blob == '':
        return []
    out: list[RawLineItem] = []
    for entry in blob.split(ENTRY_SEPARATOR):
        parts = entry.split(FIELD_SEPARATOR)
        if len(parts) != FIELD_COUNT:
            raise DecodeError(
                f'line item entry has {len(parts)} fields, expected {FIELD_COUNT}',
                legacy_id=legacy_id,
                entry=entry,
            )
        out.append(RawLineItem(*parts))
    return out


def _parse_leg(value: str, name: str, raw: RawLineItem) -> float:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise LineItemValueError(
            f'line item {raw.child_id}: {name} is not numeric ({value!r})',
            legacy_id=raw.parent_id,
        ) from exc


def _subscription(raw: RawLineItem, lookup: SubscriptionLookup | None) -> SubscriptionSummary | None:
    key = raw.subscription_key.strip()
    if not key or lookup is None:
        return None
    return lookup(key)


def decode_dual_leg(raw_lines: list[RawLineItem], lookup: SubscriptionLookup | None = None) -> list[LineItem]:
    """Fiscal invoice lines: both currency legs come from the legacy row."""
    items: list[LineItem] = []
    for raw in raw_lines:
        qty = _parse_leg(raw.qty, 'qty', raw)
        unit_usd = _parse_leg(raw.unit_leg1, 'price_unit', raw)
        total_usd = _parse_leg(raw.total_leg1, 'price_tot', raw)
        unit_ves = _parse_leg(raw.unit_leg2, 'price_unit_bs', raw)
        total_ves = _parse_leg(raw.total_leg2, 'price_tot_bs', raw)
        items.append(
            LineItem(
                legacy_id=raw.child_id,
                parent_legacy_id=raw.parent_id,
                qty=qty,
                unit_price=Money(unit_usd, unit_ves).rounded(),
                total_price=Money(total_usd, total_ves).rounded(),
                description=clean_description(raw.description),
                subscription=_subscription(raw, lookup),
            )
        )
    return items


def decode_single_leg(
    raw_lines: list[RawLineItem],
    exchange_rate: float,
    lookup: SubscriptionLookup | None = None,
) -> list[LineItem]:
    """
    Pre-invoice lines: only the VAT-inclusive dollar leg exists.

    dollar = leg / 1.16, bolivar = dollar * exchange_rate, where the rate is the
    one in force at the pre-invoice's creation, resolved by the caller.
    """
    items: list[LineItem] = []
    for raw in raw_lines:
        qty = _parse_leg(raw.qty, 'qty', raw)
        unit_usd = _parse_leg(raw.unit_leg1, 'price_unit', raw) / VAT_DIVISOR
        total_usd = _parse_leg(raw.total_leg1, 'price_tot', raw) / VAT_DIVISOR
        items.append(
            LineItem(
                legacy_id=raw.child_id,
                parent_legacy_id=raw.parent_id,
                qty=qty,
                unit_price=Money(unit_usd, unit_usd * exchange_rate).rounded(),
                total_price=Money(total_usd, total_usd * exchange_rate).rounded(),
                description=clean_description(raw.description),
                subscription=_subscription(raw, lookup),
            )
        )
    return items
