"""billing sync destination tables

Revision ID: 0001_billing_sync_init
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = '0001_billing_sync_init'
down_revision = None
branch_labels = None
depends_on = None


def _money(name: str) -> list[sa.Column]:
    return [
        sa.Column(f'{name}_usd', sa.Float(), nullable=False, server_default='0'),
        sa.Column(f'{name}_ves', sa.Float(), nullable=False, server_default='0'),
    ]


def upgrade() -> None:
    op.create_table(
        'legacy_id_map',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('legacy_id', sa.String(length=64), nullable=False),
        sa.Column('internal_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('entity_type', 'legacy_id', name='ux_legacy_id_map_entity_legacy'),
    )
    op.create_index('ix_legacy_id_map_internal', 'legacy_id_map', ['entity_type', 'internal_id'])

    op.create_table(
        'exchange_rates',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('currency', sa.String(length=16), nullable=False, server_default='bolivar'),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_exchange_rates_currency_created', 'exchange_rates', ['currency', 'created_at'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('client_id', sa.Integer(), nullable=True),
        sa.Column('service_name', sa.String(length=128), nullable=False, server_default=''),
        sa.Column('service_type_name', sa.String(length=128), nullable=False, server_default=''),
        sa.Column('info_json', sa.Text(), nullable=False, server_default='{}'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_subscriptions_client_id', 'subscriptions', ['client_id'])

    op.create_table(
        'bank_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('bank', sa.String(length=64), nullable=False),
        sa.Column('currency', sa.String(length=16), nullable=False),
        sa.Column('payment_method', sa.String(length=64), nullable=False),
        sa.Column('web_name', sa.String(length=128), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_bank_accounts_lookup', 'bank_accounts', ['bank', 'currency', 'payment_method', 'web_name'])

    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('control_number', sa.String(length=64), nullable=True),
        sa.Column('invoice_number', sa.String(length=64), nullable=False),
        sa.Column('issued_on', sa.Date(), nullable=True),
        sa.Column('invoice_type', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('credit_days', sa.Integer(), nullable=False, server_default='0'),
        *_money('subtotal'),
        sa.Column('discount_pct', sa.Float(), nullable=False, server_default='0'),
        *_money('discount'),
        *_money('taxable_base'),
        sa.Column('vat_pct', sa.Float(), nullable=False, server_default='0'),
        *_money('vat'),
        sa.Column('igtf_pct', sa.Float(), nullable=False, server_default='0'),
        *_money('igtf_base'),
        *_money('igtf'),
        *_money('total'),
        sa.Column('exchange_rate', sa.Float(), nullable=False, server_default='0'),
        sa.Column('legacy_invoice_id', sa.String(length=64), nullable=True),
        sa.Column('legacy_pre_invoice_id', sa.String(length=64), nullable=True),
        sa.Column('info_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('updated_by', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_invoices_client_id', 'invoices', ['client_id'])
    op.create_index('ix_invoices_type_updated', 'invoices', ['invoice_type', 'updated_at'])
    op.create_index('ix_invoices_legacy_invoice', 'invoices', ['legacy_invoice_id'])
    op.create_index('ix_invoices_legacy_pre_invoice', 'invoices', ['legacy_pre_invoice_id'])

    op.create_table(
        'invoice_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), sa.ForeignKey('invoices.id'), nullable=False),
        sa.Column('tax_status', sa.String(length=16), nullable=False, server_default='gravable'),
        sa.Column('qty', sa.Float(), nullable=False, server_default='0'),
        *_money('unit_price'),
        *_money('total'),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('info_json', sa.Text(), nullable=False, server_default='{}'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_invoice_lines_invoice_id', 'invoice_lines', ['invoice_id'])

    op.create_table(
        'invoice_withholdings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), sa.ForeignKey('invoices.id'), nullable=False),
        sa.Column('withholding_type', sa.String(length=8), nullable=False),
        *_money('withheld'),
        *_money('taxable_base'),
        sa.Column('percentage', sa.Float(), nullable=False, server_default='0'),
        sa.Column('withheld_on', sa.Date(), nullable=True),
        sa.Column('voucher_number', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('info_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('updated_by', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_invoice_withholdings_invoice_id', 'invoice_withholdings', ['invoice_id'])
    op.create_index('ix_invoice_withholdings_updated_at', 'invoice_withholdings', ['updated_at'])

    op.create_table(
        'payment_receipts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('client_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('paid_on', sa.Date(), nullable=True),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.Column('payment_method_id', sa.Integer(), sa.ForeignKey('bank_accounts.id'), nullable=False),
        *_money('amount'),
        sa.Column('exchange_rate', sa.Float(), nullable=False, server_default='0'),
        sa.Column('info_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('updated_by', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_receipts_client_id', 'payment_receipts', ['client_id'])
    op.create_index('ix_payment_receipts_status_created', 'payment_receipts', ['status', 'created_at'])

    op.create_table(
        'sync_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('job_id', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('caller', sa.String(length=32), nullable=False, server_default='cronJob'),
        sa.Column('running', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('stage', sa.String(length=64), nullable=True),
        sa.Column('window_start', sa.DateTime(), nullable=True),
        sa.Column('window_end', sa.DateTime(), nullable=True),
        sa.Column('rows_read', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rows_retried', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rows_inserted', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rows_skipped_migrated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rows_skipped_parent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rows_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_in_flight', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('log_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('duration_sec', sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_sync_runs_job_id', 'sync_runs', ['job_id'], unique=True)
    op.create_index('ix_sync_runs_entity_type', 'sync_runs', ['entity_type'])
    op.create_index('ix_sync_runs_running', 'sync_runs', ['running'])

    op.create_table(
        'sync_failed_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('legacy_id', sa.String(length=64), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('first_failed_at', sa.DateTime(), nullable=False),
        sa.Column('last_failed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('entity_type', 'legacy_id', name='ux_sync_failed_records_entity_legacy'),
    )
    op.create_index('ix_sync_failed_records_entity_type', 'sync_failed_records', ['entity_type'])


def downgrade() -> None:
    op.drop_index('ix_sync_failed_records_entity_type', table_name='sync_failed_records')
    op.drop_table('sync_failed_records')
    op.drop_index('ix_sync_runs_running', table_name='sync_runs')
    op.drop_index('ix_sync_runs_entity_type', table_name='sync_runs')
    op.drop_index('ix_sync_runs_job_id', table_name='sync_runs')
    op.drop_table('sync_runs')
    op.drop_index('ix_payment_receipts_status_created', table_name='payment_receipts')
    op.drop_index('ix_payment_receipts_client_id', table_name='payment_receipts')
    op.drop_table('payment_receipts')
    op.drop_index('ix_invoice_withholdings_updated_at', table_name='invoice_withholdings')
    op.drop_index('ix_invoice_withholdings_invoice_id', table_name='invoice_withholdings')
    op.drop_table('invoice_withholdings')
    op.drop_index('ix_invoice_lines_invoice_id', table_name='invoice_lines')
    op.drop_table('invoice_lines')
    op.drop_index('ix_invoices_legacy_pre_invoice', table_name='invoices')
    op.drop_index('ix_invoices_legacy_invoice', table_name='invoices')
    op.drop_index('ix_invoices_type_updated', table_name='invoices')
    op.drop_index('ix_invoices_client_id', table_name='invoices')
    op.drop_table('invoices')
    op.drop_index('ix_bank_accounts_lookup', table_name='bank_accounts')
    op.drop_table('bank_accounts')
    op.drop_index('ix_subscriptions_client_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_exchange_rates_currency_created', table_name='exchange_rates')
    op.drop_table('exchange_rates')
    op.drop_index('ix_legacy_id_map_internal', table_name='legacy_id_map')
    op.drop_table('legacy_id_map')
