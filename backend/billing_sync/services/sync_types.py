from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, NamedTuple

STATUS_PENDING = 'pendiente'
STATUS_PARTIAL = 'abonado'
STATUS_PAID = 'pagado'
STATUS_VOIDED = 'anulado'
STATUS_PROCESSED = 'procesado'

REF_PROCEED = 'proceed'
REF_SKIP_MIGRATED = 'skip_already_migrated'
REF_SKIP_PARENT = 'skip_parent_missing'

OUTCOME_INSERTED = 'inserted'
OUTCOME_SKIPPED_MIGRATED = 'skipped_already_migrated'
OUTCOME_SKIPPED_PARENT = 'skipped_parent_missing'


def round8(value: float) -> float:
    return round(float(value), 8)


@dataclass(frozen=True)
class Money:
    dollar: float = 0.0
    bolivar: float | None = 0.0

    def rounded(self) -> 'Money':
        return Money(round8(self.dollar), None if self.bolivar is None else round8(self.bolivar))

    def as_list(self) -> list[float]:
        return [self.dollar, self.bolivar if self.bolivar is not None else 0.0]


@dataclass(frozen=True)
class SyncWindow:
    entity_type: str
    start: datetime
    end: datetime | None
    from_watermark: bool = True


class RawLineItem(NamedTuple):
    child_id: str
    parent_id: str
    subscription_key: str
    qty: str
    unit_leg1: str
    total_leg1: str
    unit_leg2: str
    total_leg2: str
    description: str


@dataclass
class SubscriptionSummary:
    id: int
    legacy_id: str
    speed_value: int | None
    speed_unit: str
    zone: str
    connection_type: str
    service_type: str

    def as_dict(self) -> dict:
        return {
            'id': self.id,
            'oldid': self.legacy_id,
            'speed_value': self.speed_value,
            'speed_unit': self.speed_unit,
            'zona': self.zone,
            'tipo_conexion': self.connection_type,
            'tipo_servicio': self.service_type,
        }


@dataclass
class LineItem:
    legacy_id: str
    parent_legacy_id: str
    qty: float
    unit_price: Money
    total_price: Money
    description: str
    subscription: SubscriptionSummary | None = None
    tax_status: str = 'gravable'

    def info(self) -> dict:
        return {
            'oldid': self.legacy_id,
            'prefact_oldid': self.parent_legacy_id,
            'concepto': self.description,
            'suscripcion': self.subscription.as_dict() if self.subscription else None,
        }


@dataclass
class CustomerSnapshot:
    name: str = ''
    doc_id: str = ''
    phone: str = ''
    address: str = ''

    def as_dict(self) -> dict:
        return {
            'razon_social': self.name,
            'docid': self.doc_id,
            'telefono': self.phone,
            'direccion': self.address,
        }


@dataclass
class LegacyExchangeRate:
    amount: float
    created_by: str
    created_at: datetime


@dataclass
class LegacyInvoice:
    """Fiscal invoice or pre-invoice as read from the legacy store."""

    legacy_id: str
    pre_invoice_id: str
    client_legacy_id: str
    invoice_type: str
    status: str
    issued_on: date | None
    created_at: datetime
    updated_at: datetime
    created_by_legacy_id: str
    updated_by_legacy_id: str
    customer: CustomerSnapshot
    concept: str = ''
    control_number: str | None = None
    invoice_number: str = ''
    credit_days: int = 0
    amounts: dict[str, Money] = field(default_factory=dict)
    percentages: dict[str, float] = field(default_factory=dict)
    exchange_rate: float = 0.0
    fiscal_json: str = ''
    line_blob: str | None = None
    raw_lines: list[RawLineItem] = field(default_factory=list)


@dataclass
class LegacyWithholding:
    legacy_id: str
    invoice_legacy_id: str
    invoice_created_at: datetime | None
    withheld_on: date | None
    voucher_number: str
    url_file: str
    description: str
    withheld: Money
    taxable_base: Money
    withholding_type: str
    status: str
    created_at: datetime
    updated_at: datetime
    created_by_legacy_id: str
    updated_by_legacy_id: str


@dataclass
class LegacyReceipt:
    legacy_id: str
    user_receipt_id: str
    client_legacy_id: str
    status: str
    paid_on: date | None
    reference: str
    payment_method: str
    amount: Money
    exchange_rate: float
    created_at: datetime
    updated_at: datetime
    created_by_legacy_id: str
    updated_by_legacy_id: str
    allocation_detail: str
    url_file: str
    pre_invoice_legacy_id: str | None


@dataclass
class CrossReference:
    status: str
    created_by: int | None = None
    updated_by: int | None = None
    client_id: int | None = None
    parent_id: int | None = None
    existing_id: int | None = None
    exchange_rate: float | None = None

    @property
    def proceed(self) -> bool:
        return self.status == REF_PROCEED


@dataclass
class PreparedInsert:
    """A fully resolved and reconciled record ready for its insert transaction."""

    entity_type: str
    legacy_id: str
    payload: dict[str, Any]
    lines: list[LineItem] = field(default_factory=list)


@dataclass
class RunSummary:
    job_id: str
    entity_type: str
    caller: str
    window_start: datetime | None = None
    window_end: datetime | None = None
    rows_read: int = 0
    rows_retried: int = 0
    inserted: int = 0
    skipped_migrated: int = 0
    skipped_parent: int = 0
    failed: int = 0
    max_in_flight: int = 0
    errors: list[str] = field(default_factory=list)
    duration_sec: float = 0.0

    def as_dict(self) -> dict:
        return {
            'job_id': self.job_id,
            'entity_type': self.entity_type,
            'caller': self.caller,
            'window_start': self.window_start.isoformat() if self.window_start else None,
            'window_end': self.window_end.isoformat() if self.window_end else None,
            'rows_read': self.rows_read,
            'rows_retried': self.rows_retried,
            'inserted': self.inserted,
            'skipped_migrated': self.skipped_migrated,
            'skipped_parent': self.skipped_parent,
            'failed': self.failed,
            'max_in_flight': self.max_in_flight,
            'duration_sec': self.duration_sec,
        }
