import calendar
import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_sync.core.errors import WatermarkError
from billing_sync.models.billing import ExchangeRate, Invoice, InvoiceWithholding, PaymentReceipt
from billing_sync.services.parsing import parse_datetime
from billing_sync.services.stores import TargetStore
from billing_sync.services.sync_entities import (
    INVOICE_TYPE_FISCAL_BOOKLET,
    INVOICE_TYPE_FISCAL_MACHINE,
    INVOICE_TYPE_NOTE,
    entity_spec,
)
from billing_sync.services.sync_types import SyncWindow

logger = logging.getLogger(__name__)


def add_months(value: datetime, months: int) -> datetime:
    serial = value.year * 12 + (value.month - 1) + int(months)
    year, month_index = divmod(serial, 12)
    month = month_index + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _latest_timestamp(db: Session, entity_type: str) -> datetime | None:
    spec = entity_spec(entity_type)
    if entity_type == 'exchange_rate':
        q = db.query(func.max(ExchangeRate.created_at)).filter(ExchangeRate.currency == 'bolivar')
    elif entity_type == 'fiscal_invoice':
        q = db.query(func.max(Invoice.updated_at)).filter(
            Invoice.invoice_type.in_([INVOICE_TYPE_FISCAL_MACHINE, INVOICE_TYPE_FISCAL_BOOKLET])
        )
    elif entity_type.startswith('pre_invoice_'):
        q = db.query(func.max(Invoice.updated_at)).filter(
            Invoice.invoice_type == INVOICE_TYPE_NOTE,
            Invoice.status.in_(list(spec.target_statuses)),
        )
    elif entity_type == 'withholding':
        # irrespective of status
        q = db.query(func.max(InvoiceWithholding.updated_at))
    elif entity_type.startswith('receipt_'):
        q = db.query(func.max(PaymentReceipt.created_at)).filter(PaymentReceipt.status.in_(list(spec.target_statuses)))
    else:
        raise WatermarkError(f'no watermark rule for {entity_type}')
    return parse_datetime(q.scalar())


def resolve_window(target: TargetStore, entity_type: str, *, backfill_start: str | datetime | None = None) -> SyncWindow:
    """
    Bounded extraction window for one entity type.

    start is the newest already-migrated timestamp; end is start plus the entity's
    fixed offset (open-ended for exchange rates). An empty destination has no
    watermark: the operator must supply the backfill start explicitly.
    """
    spec = entity_spec(entity_type)
    try:
        with target.session() as db:
            latest = _latest_timestamp(db, spec.entity_type)
    except SQLAlchemyError as exc:
        logger.error('[sync:%s] watermark lookup failed: %s', spec.entity_type, exc)
        raise WatermarkError(f'watermark lookup failed for {spec.entity_type}: {exc}') from exc

    from_watermark = latest is not None
    start = latest
    if start is None:
        start = parse_datetime(backfill_start)
        if start is None:
            raise WatermarkError(
                f'no migrated {spec.entity_type} records yet and no backfill start configured (SYNC_BACKFILL_START)'
            )
        logger.info('[sync:%s] no watermark, backfilling from %s', spec.entity_type, start.isoformat())

    end = add_months(start, spec.offset_months) if spec.offset_months else None
    return SyncWindow(entity_type=spec.entity_type, start=start, end=end, from_watermark=from_watermark)


def advance_window(window: SyncWindow, next_start: datetime) -> SyncWindow:
    """
    Same-width window starting at the next legacy timestamp. Used when the current
    window holds nothing newer than its start, so the watermark could never move.
    """
    spec = entity_spec(window.entity_type)
    end = add_months(next_start, spec.offset_months) if spec.offset_months else None
    return SyncWindow(entity_type=window.entity_type, start=next_start, end=end, from_watermark=window.from_watermark)
