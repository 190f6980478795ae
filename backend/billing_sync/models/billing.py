from datetime import datetime

from sqlalchemy import Column, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint

from billing_sync.db.base import Base


class LegacyIdMap(Base):
    """legacy alternate key -> destination primary key, one row per migrated entity."""

    __tablename__ = 'legacy_id_map'
    __table_args__ = (
        UniqueConstraint('entity_type', 'legacy_id', name='ux_legacy_id_map_entity_legacy'),
        Index('ix_legacy_id_map_internal', 'entity_type', 'internal_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(32), nullable=False)
    legacy_id = Column(String(64), nullable=False)
    internal_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class ExchangeRate(Base):
    __tablename__ = 'exchange_rates'
    __table_args__ = (Index('ix_exchange_rates_currency_created', 'currency', 'created_at'),)

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, nullable=False, default=1)
    currency = Column(String(16), nullable=False, default='bolivar')
    amount = Column(Float, nullable=False)
    created_at = Column(DateTime, nullable=False)
    created_by = Column(Integer, nullable=True)


class Subscription(Base):
    __tablename__ = 'subscriptions'

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, nullable=True, index=True)
    service_name = Column(String(128), nullable=False, default='')
    # "zone/connection type/service type"
    service_type_name = Column(String(128), nullable=False, default='')
    info_json = Column(Text, nullable=False, default='{}')


class BankAccount(Base):
    __tablename__ = 'bank_accounts'
    __table_args__ = (Index('ix_bank_accounts_lookup', 'bank', 'currency', 'payment_method', 'web_name'),)

    id = Column(Integer, primary_key=True, index=True)
    bank = Column(String(64), nullable=False)
    currency = Column(String(16), nullable=False)
    payment_method = Column(String(64), nullable=False)
    web_name = Column(String(128), nullable=False)


class Invoice(Base):
    __tablename__ = 'invoices'
    __table_args__ = (
        Index('ix_invoices_type_updated', 'invoice_type', 'updated_at'),
        Index('ix_invoices_legacy_invoice', 'legacy_invoice_id'),
        Index('ix_invoices_legacy_pre_invoice', 'legacy_pre_invoice_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, nullable=False, default=1)
    client_id = Column(Integer, nullable=False, index=True)
    control_number = Column(String(64), nullable=True)
    invoice_number = Column(String(64), nullable=False)
    issued_on = Column(Date, nullable=True)
    invoice_type = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False)
    credit_days = Column(Integer, nullable=False, default=0)
    subtotal_usd = Column(Float, nullable=False, default=0.0)
    subtotal_ves = Column(Float, nullable=False, default=0.0)
    discount_pct = Column(Float, nullable=False, default=0.0)
    discount_usd = Column(Float, nullable=False, default=0.0)
    discount_ves = Column(Float, nullable=False, default=0.0)
    taxable_base_usd = Column(Float, nullable=False, default=0.0)
    taxable_base_ves = Column(Float, nullable=False, default=0.0)
    vat_pct = Column(Float, nullable=False, default=0.0)
    vat_usd = Column(Float, nullable=False, default=0.0)
    vat_ves = Column(Float, nullable=False, default=0.0)
    igtf_pct = Column(Float, nullable=False, default=0.0)
    igtf_base_usd = Column(Float, nullable=False, default=0.0)
    igtf_base_ves = Column(Float, nullable=False, default=0.0)
    igtf_usd = Column(Float, nullable=False, default=0.0)
    igtf_ves = Column(Float, nullable=False, default=0.0)
    total_usd = Column(Float, nullable=False, default=0.0)
    total_ves = Column(Float, nullable=False, default=0.0)
    exchange_rate = Column(Float, nullable=False, default=0.0)
    legacy_invoice_id = Column(String(64), nullable=True)
    legacy_pre_invoice_id = Column(String(64), nullable=True)
    info_json = Column(Text, nullable=False, default='{}')
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)


class InvoiceLine(Base):
    __tablename__ = 'invoice_lines'

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey('invoices.id'), nullable=False, index=True)
    tax_status = Column(String(16), nullable=False, default='gravable')
    qty = Column(Float, nullable=False, default=0.0)
    unit_price_usd = Column(Float, nullable=False, default=0.0)
    unit_price_ves = Column(Float, nullable=False, default=0.0)
    total_usd = Column(Float, nullable=False, default=0.0)
    total_ves = Column(Float, nullable=False, default=0.0)
    description = Column(Text, nullable=False, default='')
    subscription_id = Column(Integer, nullable=True)
    info_json = Column(Text, nullable=False, default='{}')


class InvoiceWithholding(Base):
    __tablename__ = 'invoice_withholdings'

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey('invoices.id'), nullable=False, index=True)
    withholding_type = Column(String(8), nullable=False)
    withheld_usd = Column(Float, nullable=False, default=0.0)
    withheld_ves = Column(Float, nullable=False, default=0.0)
    taxable_base_usd = Column(Float, nullable=False, default=0.0)
    taxable_base_ves = Column(Float, nullable=False, default=0.0)
    percentage = Column(Float, nullable=False, default=0.0)
    withheld_on = Column(Date, nullable=True)
    voucher_number = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False)
    info_json = Column(Text, nullable=False, default='{}')
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, index=True)
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)


class PaymentReceipt(Base):
    __tablename__ = 'payment_receipts'
    __table_args__ = (Index('ix_payment_receipts_status_created', 'status', 'created_at'),)

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, nullable=False, default=1)
    client_id = Column(Integer, nullable=False, index=True)
    status = Column(String(16), nullable=False)
    paid_on = Column(Date, nullable=True)
    reference = Column(String(128), nullable=True)
    payment_method_id = Column(Integer, ForeignKey('bank_accounts.id'), nullable=False)
    amount_usd = Column(Float, nullable=False, default=0.0)
    amount_ves = Column(Float, nullable=False, default=0.0)
    exchange_rate = Column(Float, nullable=False, default=0.0)
    info_json = Column(Text, nullable=False, default='{}')
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
