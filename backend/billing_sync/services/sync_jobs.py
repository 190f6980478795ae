"""
Per-entity prepare/insert rules.

prepare() runs inline on the orchestrator thread: cross-reference lookup, line-item
decode and currency reconciliation. It returns either a PreparedInsert or a skip
outcome. insert() runs on an inserter thread and writes the entity, its children
and its legacy_id_map row in one short transaction.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from billing_sync.core.errors import InsertError, ReconcileError
from billing_sync.models.billing import ExchangeRate, Invoice, InvoiceLine, InvoiceWithholding, PaymentReceipt
from billing_sync.services.cross_reference import AlternateKeys, CrossReferenceResolver, is_migrated, mapped_id, register_mapping
from billing_sync.services.currency import (
    MONEY_FIELDS,
    reconcile_dual_leg,
    reconcile_pre_invoice,
    require_rate,
    withholding_percentage,
)
from billing_sync.services.line_items import decode_dual_leg, decode_single_leg, split_blob
from billing_sync.services.stores import TargetStore
from billing_sync.services.sync_entities import MAP_FISCAL_INVOICE, MAP_USER, EntitySpec
from billing_sync.services.sync_types import (
    OUTCOME_INSERTED,
    OUTCOME_SKIPPED_MIGRATED,
    OUTCOME_SKIPPED_PARENT,
    REF_SKIP_MIGRATED,
    STATUS_PENDING,
    STATUS_PROCESSED,
    LegacyExchangeRate,
    LegacyInvoice,
    LegacyReceipt,
    LegacyWithholding,
    LineItem,
    Money,
    PreparedInsert,
    round8,
)

logger = logging.getLogger(__name__)

ORIGIN_MARKER = 'from_scratch'


def _json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _skip_outcome(status: str) -> str:
    return OUTCOME_SKIPPED_MIGRATED if status == REF_SKIP_MIGRATED else OUTCOME_SKIPPED_PARENT


def _money_columns(amounts: dict[str, Money], names: tuple[str, ...]) -> dict[str, float]:
    out: dict[str, float] = {}
    for name in names:
        money = amounts.get(name) or Money(0.0, 0.0)
        out[f'{name}_usd'] = money.dollar
        out[f'{name}_ves'] = money.bolivar if money.bolivar is not None else 0.0
    return out


class EntityJob:
    def __init__(self, spec: EntitySpec, target: TargetStore, resolver: CrossReferenceResolver, company_id: int = 1) -> None:
        self.spec = spec
        self.target = target
        self.resolver = resolver
        self.company_id = company_id

    @staticmethod
    def legacy_id(record: Any) -> str:
        return str(record.legacy_id)

    def validate_batch(self, records: list[Any]) -> None:
        """Structural checks over the whole batch before any insert is dispatched."""

    def prepare(self, record: Any) -> PreparedInsert | str:
        raise NotImplementedError

    def build(self, prepared: PreparedInsert, db) -> Any:
        raise NotImplementedError

    def insert(self, prepared: PreparedInsert) -> str:
        try:
            with self.target.transaction(timeout_seconds=self.spec.insert_timeout_seconds) as db:
                # resolution and insertion are not atomic
                if is_migrated(db, self.spec.map_entity, prepared.legacy_id):
                    return OUTCOME_SKIPPED_MIGRATED
                entity = self.build(prepared, db)
                register_mapping(db, self.spec.map_entity, prepared.legacy_id, entity.id)
        except SQLAlchemyError as exc:
            raise InsertError(f'insert failed: {exc}', legacy_id=prepared.legacy_id) from exc
        return OUTCOME_INSERTED


class ExchangeRateJob:
    """Exchange rates are inserted sequentially in one transaction; any failure is fatal."""

    def __init__(self, spec: EntitySpec, target: TargetStore, company_id: int = 1) -> None:
        self.spec = spec
        self.target = target
        self.company_id = company_id

    def insert_all(self, rates: list[LegacyExchangeRate]) -> int:
        if not rates:
            return 0
        users: dict[str, int | None] = {}
        with self.target.transaction() as db:
            for rate in rates:
                legacy_user = rate.created_by
                if legacy_user and legacy_user not in users:
                    users[legacy_user] = mapped_id(db, MAP_USER, legacy_user)
                db.add(
                    ExchangeRate(
                        company_id=self.company_id,
                        currency='bolivar',
                        amount=rate.amount,
                        created_at=rate.created_at,
                        created_by=users.get(legacy_user) if legacy_user else None,
                    )
                )
        return len(rates)


class _InvoiceJob(EntityJob):
    def validate_batch(self, records: list[LegacyInvoice]) -> None:
        for record in records:
            if record.line_blob is not None:
                record.raw_lines = split_blob(record.line_blob, legacy_id=record.legacy_id)

    def _invoice_payload(self, record: LegacyInvoice, ref, amounts: dict[str, Money], percentages: dict[str, float], rate: float, info: dict) -> dict:
        payload = {
            'company_id': self.company_id,
            'client_id': ref.client_id,
            'control_number': record.control_number,
            'invoice_number': record.invoice_number,
            'issued_on': record.issued_on,
            'invoice_type': record.invoice_type,
            'status': record.status,
            'credit_days': record.credit_days,
            'discount_pct': percentages.get('discount', 0.0),
            'vat_pct': percentages.get('vat', 0.0),
            'igtf_pct': percentages.get('igtf', 0.0),
            'exchange_rate': rate,
            'legacy_pre_invoice_id': record.pre_invoice_id or None,
            'info_json': _json(info),
            'created_at': record.created_at,
            'updated_at': record.updated_at,
            'created_by': ref.created_by,
            'updated_by': ref.updated_by,
        }
        payload.update(_money_columns(amounts, MONEY_FIELDS))
        return payload

    @staticmethod
    def _base_info(record: LegacyInvoice) -> dict:
        return {
            'origen': ORIGIN_MARKER,
            'cliente_info': record.customer.as_dict(),
            'prefact_oldid': record.pre_invoice_id,
            'concepto': record.concept,
        }

    def build(self, prepared: PreparedInsert, db) -> Invoice:
        invoice = Invoice(**prepared.payload)
        db.add(invoice)
        db.flush()
        for line in prepared.lines:
            db.add(self._line_row(invoice.id, line))
        return invoice

    @staticmethod
    def _line_row(invoice_id: int, line: LineItem) -> InvoiceLine:
        return InvoiceLine(
            invoice_id=invoice_id,
            tax_status=line.tax_status,
            qty=line.qty,
            unit_price_usd=line.unit_price.dollar,
            unit_price_ves=line.unit_price.bolivar or 0.0,
            total_usd=line.total_price.dollar,
            total_ves=line.total_price.bolivar or 0.0,
            description=line.description,
            subscription_id=line.subscription.id if line.subscription else None,
            info_json=_json(line.info()),
        )


class FiscalInvoiceJob(_InvoiceJob):
    def prepare(self, record: LegacyInvoice) -> PreparedInsert | str:
        ref = self.resolver.resolve(
            AlternateKeys(
                map_entity=self.spec.map_entity,
                legacy_id=record.legacy_id,
                created_by=record.created_by_legacy_id,
                updated_by=record.updated_by_legacy_id,
                client=record.client_legacy_id,
            )
        )
        if not ref.proceed:
            return _skip_outcome(ref.status)
        lines = decode_dual_leg(record.raw_lines, self.resolver.subscription)
        amounts = reconcile_dual_leg(record.amounts, legacy_id=record.legacy_id)
        info = self._base_info(record)
        info['fact_oldid'] = record.legacy_id
        info['json_maq_fiscal'] = record.fiscal_json
        payload = self._invoice_payload(record, ref, amounts, record.percentages, record.exchange_rate, info)
        payload['legacy_invoice_id'] = record.legacy_id
        return PreparedInsert(self.spec.entity_type, record.legacy_id, payload, lines)


class PreInvoiceJob(_InvoiceJob):
    def prepare(self, record: LegacyInvoice) -> PreparedInsert | str:
        ref = self.resolver.resolve(
            AlternateKeys(
                map_entity=self.spec.map_entity,
                legacy_id=record.legacy_id,
                created_by=record.created_by_legacy_id,
                updated_by=record.updated_by_legacy_id,
                client=record.client_legacy_id,
                rate_at=record.created_at,
            )
        )
        if not ref.proceed:
            return _skip_outcome(ref.status)
        rate = require_rate(ref.exchange_rate, legacy_id=record.legacy_id)
        lines = decode_single_leg(record.raw_lines, rate, self.resolver.subscription)
        total = record.amounts.get('total') or Money(0.0, None)
        amounts, percentages = reconcile_pre_invoice(total.dollar, rate, legacy_id=record.legacy_id)
        payload = self._invoice_payload(record, ref, amounts, percentages, rate, self._base_info(record))
        return PreparedInsert(self.spec.entity_type, record.legacy_id, payload, lines)


class WithholdingJob(EntityJob):
    def prepare(self, record: LegacyWithholding) -> PreparedInsert | str:
        ref = self.resolver.resolve(
            AlternateKeys(
                map_entity=self.spec.map_entity,
                legacy_id=record.legacy_id,
                created_by=record.created_by_legacy_id,
                updated_by=record.updated_by_legacy_id,
                parent_entity=MAP_FISCAL_INVOICE,
                parent=record.invoice_legacy_id or None,
            )
        )
        if not ref.proceed:
            return _skip_outcome(ref.status)
        amounts = reconcile_dual_leg(
            {'withheld': record.withheld, 'taxable_base': record.taxable_base},
            legacy_id=record.legacy_id,
        )
        payload = {
            'invoice_id': ref.parent_id,
            'withholding_type': record.withholding_type,
            'percentage': withholding_percentage(record.withheld.bolivar or 0.0, record.taxable_base.bolivar or 0.0),
            'withheld_on': record.withheld_on,
            'voucher_number': record.voucher_number or None,
            'status': record.status,
            'info_json': _json(
                {
                    'oldid': record.legacy_id,
                    'fact_oldid': record.invoice_legacy_id,
                    'descripcion': record.description,
                    'url_file': record.url_file,
                }
            ),
            'created_at': record.created_at,
            'updated_at': record.updated_at,
            'created_by': ref.created_by,
            'updated_by': ref.updated_by,
        }
        payload.update(_money_columns(amounts, ('withheld', 'taxable_base')))
        return PreparedInsert(self.spec.entity_type, record.legacy_id, payload)

    def build(self, prepared: PreparedInsert, db) -> InvoiceWithholding:
        row = InvoiceWithholding(**prepared.payload)
        db.add(row)
        db.flush()
        return row


def parse_allocations(record: LegacyReceipt) -> list[tuple[str, Money]]:
    """
    Split a processed receipt into (pre-invoice legacy id, amount) allocations.

    A receipt tied to one pre-invoice whose detail has at most two ';' parts uses
    the whole receipt amount. Otherwise the detail is 'pre_invoice_id|dollars;...';
    malformed parts and non-positive amounts are ignored.
    """
    detail = record.allocation_detail or ''
    if record.pre_invoice_legacy_id and len(detail.split(';')) <= 2:
        return [(record.pre_invoice_legacy_id, record.amount.rounded())]
    out: list[tuple[str, Money]] = []
    for item in detail.split(';'):
        parts = item.split('|')
        if len(parts) != 2:
            continue
        try:
            dollars = float(parts[1].strip())
        except ValueError as exc:
            raise ReconcileError(f'allocation amount is not numeric ({parts[1]!r})', legacy_id=record.legacy_id) from exc
        if dollars <= 0:
            continue
        out.append((parts[0].strip(), Money(round8(dollars), round8(dollars * record.exchange_rate))))
    return out


class ReceiptJob(EntityJob):
    def prepare(self, record: LegacyReceipt) -> PreparedInsert | str:
        ref = self.resolver.resolve(
            AlternateKeys(
                map_entity=self.spec.map_entity,
                legacy_id=record.legacy_id,
                created_by=record.created_by_legacy_id,
                updated_by=record.updated_by_legacy_id,
                client=record.client_legacy_id,
            )
        )
        if not ref.proceed:
            return _skip_outcome(ref.status)
        payment_method_id = self.resolver.payment_method_id(record.payment_method)
        amounts = reconcile_dual_leg({'amount': record.amount}, legacy_id=record.legacy_id)

        status = record.status
        details: list[dict] = []
        if record.status == STATUS_PROCESSED:
            allocations = parse_allocations(record)
            invoices = self.resolver.invoices_for_pre_invoices(pre_id for pre_id, _ in allocations)
            if any(pre_id not in invoices for pre_id, _ in allocations):
                return OUTCOME_SKIPPED_PARENT
            details = [
                {'factura_id': invoices[pre_id], 'prefact_oldid': pre_id, 'monto': money.as_list()}
                for pre_id, money in allocations
            ]
            status = STATUS_PROCESSED if details else STATUS_PENDING

        payload = {
            'company_id': self.company_id,
            'client_id': ref.client_id,
            'status': status,
            'paid_on': record.paid_on,
            'reference': record.reference or None,
            'payment_method_id': payment_method_id,
            'exchange_rate': record.exchange_rate,
            'info_json': _json(
                {
                    'url_file': record.url_file,
                    'recibo_pago_id': record.legacy_id,
                    'recibo_pago_user_id': record.user_receipt_id,
                    'payment_detail': details,
                }
            ),
            'created_at': record.created_at,
            'updated_at': record.updated_at,
            'created_by': ref.created_by,
            'updated_by': ref.updated_by,
        }
        payload.update(_money_columns(amounts, ('amount',)))
        return PreparedInsert(self.spec.entity_type, record.legacy_id, payload)

    def build(self, prepared: PreparedInsert, db) -> PaymentReceipt:
        row = PaymentReceipt(**prepared.payload)
        db.add(row)
        db.flush()
        return row


def job_for(spec: EntitySpec, target: TargetStore, resolver: CrossReferenceResolver, company_id: int = 1):
    if spec.entity_type == 'exchange_rate':
        return ExchangeRateJob(spec, target, company_id)
    if spec.entity_type == 'fiscal_invoice':
        return FiscalInvoiceJob(spec, target, resolver, company_id)
    if spec.entity_type.startswith('pre_invoice_'):
        return PreInvoiceJob(spec, target, resolver, company_id)
    if spec.entity_type == 'withholding':
        return WithholdingJob(spec, target, resolver, company_id)
    if spec.entity_type.startswith('receipt_'):
        return ReceiptJob(spec, target, resolver, company_id)
    raise KeyError(f'no job for {spec.entity_type}')
