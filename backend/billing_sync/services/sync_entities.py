from dataclasses import dataclass

from billing_sync.services.sync_types import STATUS_PAID, STATUS_PARTIAL, STATUS_PROCESSED, STATUS_VOIDED

MAP_USER = 'user'
MAP_CLIENT = 'client'
MAP_SUBSCRIPTION = 'subscription'
MAP_FISCAL_INVOICE = 'fiscal_invoice'
MAP_PRE_INVOICE = 'pre_invoice'
MAP_WITHHOLDING = 'withholding'
MAP_RECEIPT = 'receipt'

INVOICE_TYPE_FISCAL_MACHINE = 'fiscal_maquina'
INVOICE_TYPE_FISCAL_BOOKLET = 'fiscal_talonario'
INVOICE_TYPE_NOTE = 'nota'


@dataclass(frozen=True)
class EntitySpec:
    entity_type: str
    map_entity: str | None
    offset_months: int | None
    row_cap: int
    workers: int
    insert_timeout_seconds: float
    target_statuses: tuple[str, ...] = ()
    # legacy column the window is drawn on
    watermark_field: str = 'updated_at'


ENTITY_SPECS: dict[str, EntitySpec] = {
    'exchange_rate': EntitySpec('exchange_rate', None, None, 1000, 1, 1.0, watermark_field='created_at'),
    'fiscal_invoice': EntitySpec('fiscal_invoice', MAP_FISCAL_INVOICE, 5, 4000, 10, 1.0),
    'pre_invoice_voided': EntitySpec('pre_invoice_voided', MAP_PRE_INVOICE, 5, 4000, 10, 1.0, (STATUS_VOIDED,)),
    'pre_invoice_paid': EntitySpec('pre_invoice_paid', MAP_PRE_INVOICE, 5, 4000, 10, 1.0, (STATUS_PAID, STATUS_PARTIAL)),
    'withholding': EntitySpec('withholding', MAP_WITHHOLDING, 5, 1500, 10, 1.0),
    'receipt_voided': EntitySpec('receipt_voided', MAP_RECEIPT, 8, 3500, 13, 2.0, (STATUS_VOIDED,), 'created_at'),
    'receipt_processed': EntitySpec('receipt_processed', MAP_RECEIPT, 8, 3500, 13, 2.0, (STATUS_PROCESSED,), 'created_at'),
}

SYNC_ENTITY_TYPES = tuple(ENTITY_SPECS.keys())


def entity_spec(entity_type: str) -> EntitySpec:
    key = str(entity_type or '').strip().lower()
    if key not in ENTITY_SPECS:
        raise KeyError(f'unknown sync entity type: {entity_type}')
    return ENTITY_SPECS[key]
