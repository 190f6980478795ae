from billing_sync.models.billing import (
    BankAccount,
    ExchangeRate,
    Invoice,
    InvoiceLine,
    InvoiceWithholding,
    LegacyIdMap,
    PaymentReceipt,
    Subscription,
)
from billing_sync.models.sync import SyncFailedRecord, SyncRun

__all__ = [
    'BankAccount',
    'ExchangeRate',
    'Invoice',
    'InvoiceLine',
    'InvoiceWithholding',
    'LegacyIdMap',
    'PaymentReceipt',
    'Subscription',
    'SyncFailedRecord',
    'SyncRun',
]
