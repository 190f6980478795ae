"""
Read-only extraction of legacy billing rows from MySQL.

Every query is bounded by the entity's row cap and ordered by ascending
update/create timestamp so that whatever does not fit lands in the next run's
window. Legacy numeric/boolean flags are translated here into the semantic values
the rest of the pipeline consumes.
"""
import base64
import calendar
import hashlib
import logging
from datetime import datetime
from typing import Any, Iterable, Iterator, Sequence

import mysql.connector

from billing_sync.core.errors import ExtractionError
from billing_sync.services.parsing import parse_date, parse_datetime, to_float, to_int, to_optional_float, to_text
from billing_sync.services.stores import SourceStore
from billing_sync.services.sync_entities import (
    INVOICE_TYPE_FISCAL_BOOKLET,
    INVOICE_TYPE_FISCAL_MACHINE,
    INVOICE_TYPE_NOTE,
    EntitySpec,
    entity_spec,
)
from billing_sync.services.sync_types import (
    STATUS_PAID,
    STATUS_PARTIAL,
    STATUS_PENDING,
    STATUS_PROCESSED,
    STATUS_VOIDED,
    CustomerSnapshot,
    LegacyExchangeRate,
    LegacyInvoice,
    LegacyReceipt,
    LegacyWithholding,
    Money,
    RawLineItem,
    SyncWindow,
)

logger = logging.getLogger(__name__)

LINE_TRANSFER_MODES = {'joined', 'blob'}
PARENT_CHUNK_SIZE = 500

# legacy recibo_pago.forma_pago -> "bank_currency_method_webname"
PAYMENT_METHODS = {
    0: 'besser_bolivar_efectivo_efectivo',
    1: 'besser_dolar_efectivo_efectivo',
    2: 'banesco_bolivar_transferencia_banesco',
    3: 'bank of america_dolar_divisa_transferencia bofa',
    4: 'bnc inter_dolar_divisa_transferencia bnc inter',
    5: 'bank of america_dolar_divisa_zelle',
    6: 'airtm_dolar_divisa_airtm',
    7: 'bod_bolivar_transferencia_bod',
    8: 'banesco_bolivar_pago.movil_banesco',
    9: 'mercantil_bolivar_punto.venta_mercantil',
    10: 'mercantil_bolivar_transferencia_mercantil',
    11: 'mercantil_bolivar_pago.movil_mercantil',
    12: 'venezuela_bolivar_biopago_biopago',
    13: 'banesco_bolivar_punto.venta_banesco',
    14: 'exterior_bolivar_transferencia_exterior',
    15: 'exterior_bolivar_pago.movil_exterior',
    16: 'exterior_bolivar_punto.venta_exterior',
    17: 'banplus_bolivar_transferencia_banplus',
    18: 'banplus_bolivar_pago.movil_banplus',
    19: 'banplus_bolivar_punto.venta_banplus',
    20: 'bancaribe_bolivar_transferencia_bancaribe',
    21: 'bancaribe_bolivar_pago.movil_bancaribe',
    22: 'venezuela_bolivar_transferencia_venezuela',
}
UNKNOWN_PAYMENT_METHOD = 'unknown'

WITHHOLDING_TYPES = {1: 'islr', 2: 'im'}

_LINE_BLOB_SQL = (
    "GROUP_CONCAT("
    "pfd.id, 'üü', pfd.pre_factura_id, 'üü', COALESCE(pfd.contrato_det_id, ''), 'üü', pfd.qty, 'üü', "
    "CAST(pfd.price_unit AS DECIMAL(20,8)), 'üü', CAST(pfd.price_tot AS DECIMAL(20,8)), 'üü', "
    "CAST(COALESCE(pfd.price_unit_bs, 0) AS DECIMAL(20,8)), 'üü', CAST(COALESCE(pfd.price_tot_bs, 0) AS DECIMAL(20,8)), 'üü', "
    "LOWER(pfd.descripcion) ORDER BY pfd.id ASC SEPARATOR '||') AS factura_det"
)

_LINE_ROWS_SQL = """
SELECT pfd.id, pfd.pre_factura_id, COALESCE(pfd.contrato_det_id, '') AS contrato_det_id, pfd.qty,
    CAST(pfd.price_unit AS DECIMAL(20,8)) AS price_unit,
    CAST(pfd.price_tot AS DECIMAL(20,8)) AS price_tot,
    CAST(COALESCE(pfd.price_unit_bs, 0) AS DECIMAL(20,8)) AS price_unit_bs,
    CAST(COALESCE(pfd.price_tot_bs, 0) AS DECIMAL(20,8)) AS price_tot_bs,
    LOWER(pfd.descripcion) AS descripcion
FROM pre_factura_det AS pfd
WHERE pfd.pre_factura_id IN ({placeholders})
ORDER BY pfd.pre_factura_id ASC, pfd.id ASC
"""


def normalize_exchange_rate(value: object) -> float:
    """Legacy rates above 1000 were stored scaled by one million."""
    amount = to_float(value)
    if amount > 1000:
        return amount / 1000000
    return amount


def map_invoice_status(voided: object, paid: object, amount_paid: object) -> str:
    if to_int(voided) == 1:
        return STATUS_VOIDED
    paid_flag = to_text(paid)
    if paid_flag == '1':
        return STATUS_PAID
    if paid_flag == '0' and to_float(amount_paid) == 0:
        return STATUS_PENDING
    return STATUS_PARTIAL


def fiscal_invoice_number(machine_number: object, booklet_number: object) -> tuple[str, str]:
    machine = to_text(machine_number)
    if len(machine) > 1:
        return machine, INVOICE_TYPE_FISCAL_MACHINE
    return to_text(booklet_number), INVOICE_TYPE_FISCAL_BOOKLET


def pre_invoice_number(created_at: datetime, client_legacy_id: str, pre_invoice_id: str) -> str:
    """Deterministic 10-char invoice number for a pre-invoice that never got a fiscal one."""
    nanos = calendar.timegm(created_at.timetuple()) * 1000000000 + created_at.microsecond * 1000
    digest = hashlib.sha256(f'{nanos}-{client_legacy_id}-{pre_invoice_id}'.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(digest).decode('ascii')[:10]


def payment_method_for(code: object) -> str:
    if code is None or to_text(code) == '':
        return UNKNOWN_PAYMENT_METHOD
    return PAYMENT_METHODS.get(to_int(code, -1), UNKNOWN_PAYMENT_METHOD)


def _placeholders(count: int) -> str:
    return ', '.join(['%s'] * count)


def _chunks(items: Sequence[Any], size: int) -> Iterator[list[Any]]:
    for i in range(0, len(items), size):
        yield list(items[i:i + size])


def _customer(row: dict) -> CustomerSnapshot:
    return CustomerSnapshot(
        name=to_text(row.get('rsocial')),
        doc_id=to_text(row.get('docid')),
        phone=to_text(row.get('telf')),
        address=to_text(row.get('direccion')),
    )


def _raw_line_from_row(row: dict) -> RawLineItem:
    return RawLineItem(
        child_id=to_text(row.get('id')),
        parent_id=to_text(row.get('pre_factura_id')),
        subscription_key=to_text(row.get('contrato_det_id')),
        qty=to_text(row.get('qty')),
        unit_leg1=to_text(row.get('price_unit')),
        total_leg1=to_text(row.get('price_tot')),
        unit_leg2=to_text(row.get('price_unit_bs')),
        total_leg2=to_text(row.get('price_tot_bs')),
        description=to_text(row.get('descripcion')),
    )


class LegacyExtractor:
    def __init__(self, source: SourceStore, *, line_item_transfer: str = 'joined') -> None:
        mode = str(line_item_transfer or 'joined').strip().lower()
        if mode not in LINE_TRANSFER_MODES:
            raise ValueError(f'unsupported line item transfer mode: {line_item_transfer}')
        self._source = source
        self._line_mode = mode

    # public API -----------------------------------------------------------------

    def extract(self, entity_type: str, window: SyncWindow) -> Iterator[Any]:
        spec = entity_spec(entity_type)
        return self._extract(spec, window=window, ids=None)

    def extract_by_ids(self, entity_type: str, legacy_ids: Iterable[str], window: SyncWindow | None = None) -> Iterator[Any]:
        """
        Re-read specific legacy records. With a window, records updated past its end
        are left out; the regular window extraction reaches them in order.
        """
        spec = entity_spec(entity_type)
        ids = [str(i) for i in legacy_ids if str(i or '').strip()]
        if not ids or spec.map_entity is None:
            return iter(())
        return self._extract(spec, window=window, ids=ids)

    def next_timestamp(self, entity_type: str, after: datetime) -> datetime | None:
        """Watermark timestamp of the first extractable legacy record at or after `after`."""
        spec = entity_spec(entity_type)
        if spec.map_entity is None:
            raise ExtractionError(f'no look-ahead for {spec.entity_type}')
        open_window = SyncWindow(entity_type=spec.entity_type, start=after, end=None)
        for record in self._extract(spec, window=open_window, ids=None, limit=1):
            return getattr(record, spec.watermark_field)
        return None

    # dispatch -------------------------------------------------------------------

    def _extract(self, spec: EntitySpec, *, window: SyncWindow | None, ids: list[str] | None, limit: int | None = None) -> Iterator[Any]:
        cap = int(limit or spec.row_cap)
        if spec.entity_type == 'exchange_rate':
            return self._exchange_rates(spec, window)
        if spec.entity_type == 'fiscal_invoice':
            return self._invoices(spec, self._fiscal_invoice_query(spec, window, ids, cap), self._fiscal_invoice_from_row)
        if spec.entity_type.startswith('pre_invoice_'):
            return self._invoices(spec, self._pre_invoice_query(spec, window, ids, cap), self._pre_invoice_from_row)
        if spec.entity_type == 'withholding':
            sql, params = self._withholding_query(spec, window, ids, cap)
            return (self._withholding_from_row(r) for r in self._rows(spec, sql, params))
        if spec.entity_type.startswith('receipt_'):
            sql, params = self._receipt_query(spec, window, ids, cap)
            return (self._receipt_from_row(r) for r in self._rows(spec, sql, params))
        raise ExtractionError(f'no extraction rule for {spec.entity_type}')

    def _rows(self, spec: EntitySpec, sql: str, params: Sequence[Any]) -> Iterator[dict]:
        try:
            yield from self._source.iter_rows(sql, params)
        except mysql.connector.Error as exc:
            logger.error('[sync:%s] legacy extraction failed: %s', spec.entity_type, exc)
            raise ExtractionError(f'legacy extraction failed for {spec.entity_type}: {exc}') from exc

    @staticmethod
    def _filter(column: str, id_column: str, window: SyncWindow | None, ids: list[str] | None) -> tuple[str, list[Any]]:
        if ids is not None:
            where, params = f'{id_column} IN ({_placeholders(len(ids))})', list(ids)
            if window is not None and window.end is not None:
                where, params = f'{where} AND {column} <= %s', params + [window.end]
            return where, params
        if window is None:
            raise ExtractionError('extraction needs either a window or explicit ids')
        if window.end is None:
            return f'{column} >= %s', [window.start]
        return f'{column} >= %s AND {column} <= %s', [window.start, window.end]

    # exchange rates ---------------------------------------------------------------

    def _exchange_rates(self, spec: EntitySpec, window: SyncWindow | None) -> Iterator[LegacyExchangeRate]:
        if window is None:
            raise ExtractionError('exchange rates are only extracted by window')
        sql = (
            'SELECT CAST(valor AS DECIMAL(15,4)) AS valor, created_by, created_at '
            'FROM tasa_cambio WHERE created_at > %s ORDER BY created_at ASC LIMIT %s'
        )
        for row in self._rows(spec, sql, [window.start, spec.row_cap]):
            created_at = parse_datetime(row.get('created_at'))
            if created_at is None:
                raise ExtractionError(f'exchange rate row without created_at: {row!r}')
            yield LegacyExchangeRate(
                amount=normalize_exchange_rate(row.get('valor')),
                created_by=to_text(row.get('created_by')),
                created_at=created_at,
            )

    # invoices -------------------------------------------------------------------

    def _blob_parts(self) -> tuple[str, str, str]:
        if self._line_mode != 'blob':
            return '', '', ''
        return f', {_LINE_BLOB_SQL}', 'LEFT JOIN pre_factura_det AS pfd ON pfd.pre_factura_id={parent} ', 'GROUP BY {group} '

    def _fiscal_invoice_query(
        self, spec: EntitySpec, window: SyncWindow | None, ids: list[str] | None, cap: int
    ) -> tuple[str, list[Any]]:
        where, params = self._filter('f.updated_at', 'f.id', window, ids)
        blob_col, blob_join, group_by = self._blob_parts()
        sql = (
            'SELECT f.id AS factura_id, pf.id AS pre_factura_id, pf.client_id, f.ncontrol, f.fecha, '
            'CAST(f.subtotal AS DECIMAL(20,8)) AS subtotal_dolar, CAST(f.subtotal2 AS DECIMAL(20,8)) AS subtotal_bolivar, '
            'CAST(f.base_imponible AS DECIMAL(20,8)) AS baseim_dolar, CAST(f.base_imponible2 AS DECIMAL(20,8)) AS baseim_bolivar, '
            'CAST(f.iva AS DECIMAL(20,8)) AS iva_porc, '
            'CAST(f.iva_monto AS DECIMAL(20,8)) AS iva_dolar, CAST(f.iva_monto2 AS DECIMAL(20,8)) AS iva_bolivar, '
            'CAST(f.igtf AS DECIMAL(20,8)) AS igtf_porc, '
            'CAST(f.igtf_base AS DECIMAL(20,8)) AS igtf_baseim_dolar, CAST(f.igtf_base2 AS DECIMAL(20,8)) AS igtf_baseim_bolivar, '
            'CAST(f.igtf_monto AS DECIMAL(20,8)) AS igtf_monto_dolar, CAST(f.igtf_monto2 AS DECIMAL(20,8)) AS igtf_monto_bolivar, '
            'CAST(f.total AS DECIMAL(20,8)) AS total_dolar, CAST(f.total2 AS DECIMAL(20,8)) AS total_bolivar, '
            'CAST(f.tasa_cambio AS DECIMAL(20,8)) AS tasa_cambio, '
            'f.num_fact_fiscal, f.num_factura, f.anulado, f.pagado, f.monto_pagado, f.body_json, '
            'f.created_at, f.updated_at, f.created_by, f.updated_by, '
            'LOWER(pf.razon_social) AS rsocial, LOWER(pf.doc_id) AS docid, pf.telf, LOWER(pf.direccion) AS direccion, pf.concepto'
            f'{blob_col} '
            'FROM factura AS f '
            'LEFT JOIN pre_factura AS pf ON pf.id=f.pre_factura_id '
            f"{blob_join.format(parent='f.pre_factura_id')}"
            f'WHERE {where} '
            f"{group_by.format(group='f.id')}"
            'ORDER BY f.updated_at ASC '
            'LIMIT %s'
        )
        return sql, params + [cap]

    def _pre_invoice_query(
        self, spec: EntitySpec, window: SyncWindow | None, ids: list[str] | None, cap: int
    ) -> tuple[str, list[Any]]:
        where, params = self._filter('pf.updated_at', 'pf.id', window, ids)
        blob_col, blob_join, group_by = self._blob_parts()
        voided = STATUS_VOIDED in spec.target_statuses
        paid_clause = '' if voided else 'AND (pf.monto_pagado+0)>0 '
        sql = (
            'SELECT pf.id AS pre_factura_id, pf.client_id, pf.fecha, '
            'CAST(pf.subtotal AS DECIMAL(20,8)) AS total_dolar, '
            "COALESCE(pf.concepto, '') AS concepto, pf.anulado, pf.pagado, pf.monto_pagado, "
            'pf.created_at, pf.updated_at, pf.created_by, pf.updated_by, '
            'LOWER(pf.razon_social) AS rsocial, LOWER(pf.doc_id) AS docid, pf.telf, LOWER(pf.direccion) AS direccion'
            f'{blob_col} '
            'FROM pre_factura AS pf '
            'LEFT JOIN factura AS f ON f.pre_factura_id=pf.id '
            f"{blob_join.format(parent='pf.id')}"
            f"WHERE {where} AND f.id IS NULL AND pf.anulado=%s AND pf.pagado IN ('0','1') "
            f'{paid_clause}'
            f"{group_by.format(group='pf.id')}"
            'ORDER BY pf.updated_at ASC '
            'LIMIT %s'
        )
        return sql, params + [1 if voided else 0, cap]

    def _invoices(self, spec: EntitySpec, query: tuple[str, list[Any]], convert) -> Iterator[LegacyInvoice]:
        sql, params = query
        pending: list[LegacyInvoice] = []
        for row in self._rows(spec, sql, params):
            pending.append(convert(row))
            if len(pending) >= PARENT_CHUNK_SIZE:
                yield from self._with_lines(spec, pending)
                pending = []
        if pending:
            yield from self._with_lines(spec, pending)

    def _with_lines(self, spec: EntitySpec, invoices: list[LegacyInvoice]) -> list[LegacyInvoice]:
        if self._line_mode == 'blob':
            return invoices
        parent_ids = sorted({inv.pre_invoice_id for inv in invoices if inv.pre_invoice_id})
        lines_by_parent: dict[str, list[RawLineItem]] = {}
        for chunk in _chunks(parent_ids, PARENT_CHUNK_SIZE):
            sql = _LINE_ROWS_SQL.format(placeholders=_placeholders(len(chunk)))
            for row in self._rows(spec, sql, chunk):
                line = _raw_line_from_row(row)
                lines_by_parent.setdefault(line.parent_id, []).append(line)
        for inv in invoices:
            inv.raw_lines = list(lines_by_parent.get(inv.pre_invoice_id, []))
        return invoices

    def _fiscal_invoice_from_row(self, row: dict) -> LegacyInvoice:
        number, invoice_type = fiscal_invoice_number(row.get('num_fact_fiscal'), row.get('num_factura'))
        created_at = parse_datetime(row.get('created_at'))
        updated_at = parse_datetime(row.get('updated_at'))
        if created_at is None or updated_at is None:
            raise ExtractionError(f"factura {row.get('factura_id')} without created_at/updated_at")

        def pair(prefix: str) -> Money:
            return Money(to_optional_float(row.get(f'{prefix}_dolar')), to_optional_float(row.get(f'{prefix}_bolivar')))

        return LegacyInvoice(
            legacy_id=to_text(row.get('factura_id')),
            pre_invoice_id=to_text(row.get('pre_factura_id')),
            client_legacy_id=to_text(row.get('client_id')),
            invoice_type=invoice_type,
            status=map_invoice_status(row.get('anulado'), row.get('pagado'), row.get('monto_pagado')),
            issued_on=parse_date(row.get('fecha')),
            created_at=created_at,
            updated_at=updated_at,
            created_by_legacy_id=to_text(row.get('created_by')),
            updated_by_legacy_id=to_text(row.get('updated_by')),
            customer=_customer(row),
            concept=to_text(row.get('concepto')),
            control_number=to_text(row.get('ncontrol')) or None,
            invoice_number=number,
            amounts={
                'subtotal': pair('subtotal'),
                'discount': Money(0.0, 0.0),
                'taxable_base': pair('baseim'),
                'vat': pair('iva'),
                'igtf_base': pair('igtf_baseim'),
                'igtf': pair('igtf_monto'),
                'total': pair('total'),
            },
            percentages={
                'discount': 0.0,
                'vat': to_float(row.get('iva_porc')),
                'igtf': to_float(row.get('igtf_porc')),
            },
            exchange_rate=to_float(row.get('tasa_cambio')),
            fiscal_json=to_text(row.get('body_json')),
            line_blob=row.get('factura_det') if self._line_mode == 'blob' else None,
        )

    def _pre_invoice_from_row(self, row: dict) -> LegacyInvoice:
        created_at = parse_datetime(row.get('created_at'))
        updated_at = parse_datetime(row.get('updated_at'))
        if created_at is None or updated_at is None:
            raise ExtractionError(f"pre_factura {row.get('pre_factura_id')} without created_at/updated_at")
        legacy_id = to_text(row.get('pre_factura_id'))
        client_legacy_id = to_text(row.get('client_id'))
        return LegacyInvoice(
            legacy_id=legacy_id,
            pre_invoice_id=legacy_id,
            client_legacy_id=client_legacy_id,
            invoice_type=INVOICE_TYPE_NOTE,
            status=map_invoice_status(row.get('anulado'), row.get('pagado'), row.get('monto_pagado')),
            issued_on=parse_date(row.get('fecha')),
            created_at=created_at,
            updated_at=updated_at,
            created_by_legacy_id=to_text(row.get('created_by')),
            updated_by_legacy_id=to_text(row.get('updated_by')),
            customer=_customer(row),
            concept=to_text(row.get('concepto')),
            invoice_number=pre_invoice_number(created_at, client_legacy_id, legacy_id),
            amounts={'total': Money(to_float(row.get('total_dolar')), None)},
            line_blob=row.get('factura_det') if self._line_mode == 'blob' else None,
        )

    # withholdings ---------------------------------------------------------------

    def _withholding_query(
        self, spec: EntitySpec, window: SyncWindow | None, ids: list[str] | None, cap: int
    ) -> tuple[str, list[Any]]:
        where, params = self._filter('r.updated_at', 'r.id', window, ids)
        sql = (
            'SELECT r.id AS retencion_id, r.factura_id, f.created_at AS factura_created_at, '
            'r.fecha, r.comprobante, r.url_imagen, LOWER(r.descripcion) AS descripcion, r.tipo, r.anulado, '
            'CAST(r.monto AS DECIMAL(20,8)) AS monto, '
            'CAST(r.base_imponible AS DECIMAL(20,8)) AS base_imponible, '
            'CAST(r.iva_impuesto AS DECIMAL(20,8)) AS iva_impuesto, '
            'CAST(f.tasa_cambio AS DECIMAL(20,8)) AS tasa_cambio, '
            'r.created_at, r.updated_at, r.created_by, r.updated_by '
            'FROM retenciones AS r '
            'LEFT JOIN factura AS f ON f.id=r.factura_id '
            f'WHERE {where} '
            'ORDER BY r.updated_at ASC '
            'LIMIT %s'
        )
        return sql, params + [cap]

    def _withholding_from_row(self, row: dict) -> LegacyWithholding:
        created_at = parse_datetime(row.get('created_at'))
        updated_at = parse_datetime(row.get('updated_at'))
        if created_at is None or updated_at is None:
            raise ExtractionError(f"retencion {row.get('retencion_id')} without created_at/updated_at")
        kind = to_int(row.get('tipo'))
        # islr/im withhold over the taxable base, iva over the tax amount
        base_bs = to_float(row.get('base_imponible')) if kind in (1, 2) else to_float(row.get('iva_impuesto'))
        withheld_bs = to_float(row.get('monto'))
        rate = to_float(row.get('tasa_cambio'))
        return LegacyWithholding(
            legacy_id=to_text(row.get('retencion_id')),
            invoice_legacy_id=to_text(row.get('factura_id')),
            invoice_created_at=parse_datetime(row.get('factura_created_at')),
            withheld_on=parse_date(row.get('fecha')),
            voucher_number=to_text(row.get('comprobante')),
            url_file=to_text(row.get('url_imagen')),
            description=to_text(row.get('descripcion')),
            withheld=Money(withheld_bs / rate if rate else None, withheld_bs),
            taxable_base=Money(base_bs / rate if rate else None, base_bs),
            withholding_type=WITHHOLDING_TYPES.get(kind, 'iva'),
            status=STATUS_VOIDED if to_int(row.get('anulado')) == 1 else STATUS_PROCESSED,
            created_at=created_at,
            updated_at=updated_at,
            created_by_legacy_id=to_text(row.get('created_by')),
            updated_by_legacy_id=to_text(row.get('updated_by')),
        )

    # receipts -------------------------------------------------------------------

    def _receipt_query(
        self, spec: EntitySpec, window: SyncWindow | None, ids: list[str] | None, cap: int
    ) -> tuple[str, list[Any]]:
        where, params = self._filter('rp.created_at', 'rp.id', window, ids)
        voided = STATUS_VOIDED in spec.target_statuses
        settled_clause = '' if voided else 'AND (rp.pendiente_monto2+0)<=0 '
        sql = (
            'SELECT rp.id AS recibo_pago_id, rpu.id AS recibo_pago_user_id, rp.client_id, rp.anulado, rp.forma_pago, '
            'CASE WHEN rpu.id IS NOT NULL THEN rpu.fecha ELSE rp.fecha END AS fecha, '
            'CASE WHEN rpu.id IS NOT NULL THEN rpu.num_recibo ELSE rp.num_recibo END AS referencia, '
            'CASE WHEN rpu.id IS NOT NULL THEN rpu.monto_bs ELSE rp.monto END AS monto_bolivar, '
            'CASE WHEN rpu.id IS NOT NULL THEN rpu.monto ELSE rp.monto2 END AS monto_dolar, '
            'CASE WHEN rpu.id IS NOT NULL THEN rpu.tasa_cambio ELSE rp.tasa_cambio END AS tasa_cambio, '
            'CASE WHEN rpu.id IS NOT NULL THEN rpu.created_at ELSE rp.created_at END AS created_at, '
            'CASE WHEN rpu.id IS NOT NULL THEN rpu.updated_at ELSE rp.updated_at END AS updated_at, '
            # receipts entered by the customer are attributed to the system user
            'CASE WHEN cby.client_id IS NOT NULL THEN 1 ELSE rp.created_by END AS created_by, '
            'CASE WHEN uby.client_id IS NOT NULL THEN 1 ELSE rp.updated_by END AS updated_by, '
            "CASE WHEN rp.procesado='' OR rp.procesado IS NULL THEN rp.pre_factura_id ELSE rp.procesado END AS payment_detail, "
            'CASE WHEN rpu.id IS NOT NULL THEN rpu.url_imagen ELSE rp.url_imagen END AS url_file, '
            'rp.pre_factura_id '
            'FROM recibo_pago AS rp '
            'LEFT JOIN recibo_pago_user AS rpu ON rpu.id=rp.recibo_pago_user_id '
            'LEFT JOIN sf_guard_user AS cby ON cby.id=rp.created_by '
            'LEFT JOIN sf_guard_user AS uby ON uby.id=rp.updated_by '
            f'WHERE {where} AND rp.anulado=%s '
            f'{settled_clause}'
            'ORDER BY rp.created_at ASC '
            'LIMIT %s'
        )
        return sql, params + [1 if voided else 0, cap]

    def _receipt_from_row(self, row: dict) -> LegacyReceipt:
        created_at = parse_datetime(row.get('created_at'))
        updated_at = parse_datetime(row.get('updated_at'))
        if created_at is None or updated_at is None:
            raise ExtractionError(f"recibo_pago {row.get('recibo_pago_id')} without created_at/updated_at")
        pre_invoice = to_text(row.get('pre_factura_id'))
        return LegacyReceipt(
            legacy_id=to_text(row.get('recibo_pago_id')),
            user_receipt_id=to_text(row.get('recibo_pago_user_id')),
            client_legacy_id=to_text(row.get('client_id')),
            status=STATUS_VOIDED if to_int(row.get('anulado')) == 1 else STATUS_PROCESSED,
            paid_on=parse_date(row.get('fecha')),
            reference=to_text(row.get('referencia')),
            payment_method=payment_method_for(row.get('forma_pago')),
            amount=Money(to_float(row.get('monto_dolar')), to_float(row.get('monto_bolivar'))),
            exchange_rate=to_float(row.get('tasa_cambio')),
            created_at=created_at,
            updated_at=updated_at,
            created_by_legacy_id=to_text(row.get('created_by')),
            updated_by_legacy_id=to_text(row.get('updated_by')),
            allocation_detail=to_text(row.get('payment_detail')),
            url_file=to_text(row.get('url_file')),
            pre_invoice_legacy_id=pre_invoice or None,
        )
