import json
import threading
import unittest
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

from sync_fixtures import (
    FakeSource,
    fiscal_row,
    line_row,
    make_target,
    mapping,
    pre_invoice_row,
    receipt_row,
    seed,
    withholding_row,
)

from billing_sync.core.config import settings
from billing_sync.core.errors import DecodeError, InsertError, ReconcileError, SyncAlreadyRunning, WatermarkError
from billing_sync.models.billing import (
    BankAccount,
    ExchangeRate,
    Invoice,
    InvoiceLine,
    InvoiceWithholding,
    LegacyIdMap,
    PaymentReceipt,
)
from billing_sync.models.sync import SyncFailedRecord, SyncRun
from billing_sync.services import sync_service
from billing_sync.services.cross_reference import CrossReferenceResolver
from billing_sync.services.legacy_extractor import LegacyExtractor, pre_invoice_number
from billing_sync.services.sync_entities import entity_spec
from billing_sync.services.sync_jobs import job_for, parse_allocations
from billing_sync.services.sync_service import SyncService
from billing_sync.services.sync_types import OUTCOME_INSERTED, OUTCOME_SKIPPED_MIGRATED, LegacyReceipt, Money, SyncWindow


def _blob(*entries):
    return '||'.join('üü'.join(str(f) for f in entry) for entry in entries)


def _invoice(**kwargs):
    values = {
        'client_id': 10,
        'invoice_number': 'A1',
        'invoice_type': 'nota',
        'status': 'pagado',
        'created_at': datetime(2024, 2, 1, 10),
        'updated_at': datetime(2024, 2, 1, 10),
    }
    values.update(kwargs)
    return Invoice(**values)


class _SyncCase(unittest.TestCase):
    def setUp(self):
        self.target, self.engine, self._tmp = make_target()
        seed(self.target, mapping('user', '7', 1), mapping('client', '55', 10))
        patcher = patch.object(settings, 'sync_backfill_start', '2024-01-01')
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self.engine.dispose()
        self._tmp.cleanup()

    def run_sync(self, entity_type, source):
        return SyncService.run(entity_type, 'cli', source=source, target=self.target)

    def rows(self, model):
        with self.target.session() as db:
            return db.query(model).order_by(model.id.asc()).all()


class ExchangeRateSyncTests(_SyncCase):
    def test_scaled_rates_are_normalized_and_second_run_is_empty(self):
        legacy = [
            {'valor': Decimal('4000000'), 'created_by': 7, 'created_at': datetime(2024, 1, 2, 10)},
            {'valor': Decimal('36.5'), 'created_by': 99, 'created_at': datetime(2024, 1, 3, 10)},
        ]
        source = FakeSource().add('FROM tasa_cambio', lambda params: [r for r in legacy if r['created_at'] > params[0]])

        first = self.run_sync('exchange_rate', source)
        self.assertEqual(first.inserted, 2)
        rates = self.rows(ExchangeRate)
        self.assertEqual([r.amount for r in rates], [4.0, 36.5])
        self.assertEqual([r.created_by for r in rates], [1, None])

        second = self.run_sync('exchange_rate', source)
        self.assertEqual(second.inserted, 0)
        self.assertEqual(second.window_start, datetime(2024, 1, 3, 10))
        self.assertEqual(len(self.rows(ExchangeRate)), 2)

        runs = SyncService.recent_runs(target=self.target)
        self.assertEqual(len(runs), 2)
        self.assertEqual({r['stage'] for r in runs}, {'completed'})
        self.assertEqual({r['caller'] for r in runs}, {'cli'})


class InvoiceSyncTests(_SyncCase):
    def test_fiscal_invoices_are_inserted_once(self):
        source = (
            FakeSource()
            .add('FROM factura AS f', [fiscal_row('500', '10'), fiscal_row('501', '11')])
            .add('FROM pre_factura_det AS pfd', [line_row('1', '10'), line_row('2', '10'), line_row('3', '11')])
        )
        first = self.run_sync('fiscal_invoice', source)
        self.assertEqual((first.inserted, first.failed), (2, 0))
        self.assertLessEqual(first.max_in_flight, 10)

        invoices = self.rows(Invoice)
        self.assertEqual({i.legacy_invoice_id for i in invoices}, {'500', '501'})
        inv = next(i for i in invoices if i.legacy_invoice_id == '500')
        self.assertEqual((inv.invoice_type, inv.status), ('fiscal_maquina', 'pagado'))
        self.assertEqual((inv.client_id, inv.created_by), (10, 1))
        self.assertEqual((inv.vat_usd, inv.vat_ves, inv.vat_pct), (16.0, 640.0, 16.0))
        info = json.loads(inv.info_json)
        self.assertEqual(info['origen'], 'from_scratch')
        self.assertEqual(info['fact_oldid'], '500')
        self.assertEqual(info['cliente_info']['razon_social'], 'cliente uno')
        lines = [line for line in self.rows(InvoiceLine) if line.invoice_id == inv.id]
        self.assertEqual(len(lines), 2)
        self.assertEqual(lines[0].total_ves, 2000.0)

        second = self.run_sync('fiscal_invoice', source)
        self.assertEqual((second.inserted, second.skipped_migrated), (0, 2))
        self.assertEqual(len(self.rows(Invoice)), 2)
        self.assertEqual(len(self.rows(InvoiceLine)), 3)
        self.assertEqual(len([m for m in self.rows(LegacyIdMap) if m.entity_type == 'fiscal_invoice']), 2)

    def test_blob_transfer_inserts_decoded_lines(self):
        row = fiscal_row('500', '10')
        row['factura_det'] = _blob((1, 10, '', 1, 50, 50, 2000, 2000, 'plan'), (2, 10, '', 1, 50, 50, 2000, 2000, 'tv'))
        source = FakeSource().add('FROM factura AS f', [row])
        with patch.object(settings, 'sync_line_item_transfer', 'blob'):
            summary = self.run_sync('fiscal_invoice', source)
        self.assertEqual(summary.inserted, 1)
        self.assertEqual([line.description for line in self.rows(InvoiceLine)], ['plan', 'tv'])

    def test_malformed_blob_aborts_before_any_insert(self):
        good = fiscal_row('500', '10')
        good['factura_det'] = _blob((1, 10, '', 1, 50, 50, 2000, 2000, 'plan'))
        bad = fiscal_row('501', '11')
        bad['factura_det'] = _blob((3, 11, '', 1, 50, 50, 2000, 2000))
        source = FakeSource().add('FROM factura AS f', [good, bad])
        with patch.object(settings, 'sync_line_item_transfer', 'blob'):
            with self.assertRaises(DecodeError):
                self.run_sync('fiscal_invoice', source)
        self.assertEqual(self.rows(Invoice), [])
        self.assertEqual(self.rows(InvoiceLine), [])
        run = self.rows(SyncRun)[-1]
        self.assertEqual(run.stage, 'failed')
        self.assertFalse(run.running)

    def test_pre_invoice_amounts_use_rate_at_creation(self):
        seed(
            self.target,
            ExchangeRate(currency='bolivar', amount=40.0, created_at=datetime(2024, 1, 31)),
            ExchangeRate(currency='bolivar', amount=50.0, created_at=datetime(2024, 3, 1)),
        )
        line = line_row('1', '900')
        line.update({'price_unit': Decimal('116'), 'price_tot': Decimal('116')})
        source = (
            FakeSource()
            .add('FROM pre_factura AS pf', [pre_invoice_row('900')])
            .add('FROM pre_factura_det AS pfd', [line])
        )
        summary = self.run_sync('pre_invoice_paid', source)
        self.assertEqual(summary.inserted, 1)

        inv = self.rows(Invoice)[0]
        self.assertEqual((inv.invoice_type, inv.status), ('nota', 'pagado'))
        self.assertEqual(inv.invoice_number, pre_invoice_number(datetime(2024, 2, 1, 10), '55', '900'))
        self.assertEqual(inv.legacy_pre_invoice_id, '900')
        self.assertIsNone(inv.legacy_invoice_id)
        self.assertEqual(inv.exchange_rate, 40.0)
        self.assertAlmostEqual(inv.subtotal_usd, 100.0)
        self.assertAlmostEqual(inv.subtotal_ves, 4000.0)
        self.assertAlmostEqual(inv.vat_usd, 16.0)
        self.assertAlmostEqual(inv.vat_ves, 640.0)
        self.assertAlmostEqual(inv.total_ves, 4640.0)
        self.assertEqual((inv.vat_pct, inv.igtf_pct, inv.igtf_usd), (16.0, 0.0, 0.0))
        stored_line = self.rows(InvoiceLine)[0]
        self.assertAlmostEqual(stored_line.total_usd, 100.0)
        self.assertAlmostEqual(stored_line.total_ves, 4000.0)

    def test_missing_rate_fails_record_and_retries_by_id(self):
        source = FakeSource().add('FROM pre_factura AS pf', [pre_invoice_row('900')])
        first = self.run_sync('pre_invoice_paid', source)
        self.assertEqual((first.inserted, first.failed), (0, 1))
        failed = self.rows(SyncFailedRecord)
        self.assertEqual([(f.entity_type, f.legacy_id) for f in failed], [('pre_invoice_paid', '900')])
        self.assertTrue(failed[0].error.startswith('ReconcileError'))

        seed(self.target, ExchangeRate(currency='bolivar', amount=40.0, created_at=datetime(2024, 1, 1)))
        second = self.run_sync('pre_invoice_paid', source)
        self.assertEqual((second.rows_retried, second.rows_read, second.inserted, second.failed), (1, 1, 1, 0))
        self.assertEqual(self.rows(SyncFailedRecord), [])

    def test_voided_pre_invoice_keeps_voided_status(self):
        seed(self.target, ExchangeRate(currency='bolivar', amount=40.0, created_at=datetime(2024, 1, 1)))
        source = FakeSource().add('FROM pre_factura AS pf', [pre_invoice_row('901', voided=True)])
        summary = self.run_sync('pre_invoice_voided', source)
        self.assertEqual(summary.inserted, 1)
        self.assertEqual(self.rows(Invoice)[0].status, 'anulado')


class WithholdingSyncTests(_SyncCase):
    def test_withholding_waits_for_its_invoice(self):
        source = FakeSource().add('FROM retenciones AS r', [withholding_row()])
        first = self.run_sync('withholding', source)
        self.assertEqual((first.inserted, first.skipped_parent), (0, 1))
        self.assertEqual(self.rows(SyncFailedRecord)[0].error, 'parent_missing')

        seed(
            self.target,
            _invoice(id=300, invoice_type='fiscal_maquina', legacy_invoice_id='500'),
            mapping('fiscal_invoice', '500', 300),
        )
        second = self.run_sync('withholding', source)
        self.assertEqual(second.inserted, 1)
        row = self.rows(InvoiceWithholding)[0]
        self.assertEqual((row.invoice_id, row.withholding_type, row.status), (300, 'islr', 'procesado'))
        self.assertEqual(row.percentage, 10.0)
        self.assertEqual((row.withheld_usd, row.withheld_ves), (10.0, 400.0))
        self.assertEqual((row.taxable_base_usd, row.taxable_base_ves), (100.0, 4000.0))
        self.assertEqual(self.rows(SyncFailedRecord), [])


class ReceiptSyncTests(_SyncCase):
    def setUp(self):
        super().setUp()
        seed(self.target, BankAccount(id=3, bank='banesco', currency='bolivar', payment_method='transferencia', web_name='banesco'))

    def test_processed_receipt_skips_until_invoice_exists(self):
        source = FakeSource().add('FROM recibo_pago AS rp', [receipt_row('1200')])
        first = self.run_sync('receipt_processed', source)
        self.assertEqual((first.inserted, first.skipped_parent, first.failed), (0, 1, 0))
        self.assertEqual(self.rows(PaymentReceipt), [])

        seed(self.target, _invoice(id=70, legacy_pre_invoice_id='900'))
        second = self.run_sync('receipt_processed', source)
        self.assertEqual(second.inserted, 1)
        receipt = self.rows(PaymentReceipt)[0]
        self.assertEqual((receipt.status, receipt.payment_method_id, receipt.client_id), ('procesado', 3, 10))
        self.assertEqual((receipt.amount_usd, receipt.amount_ves), (100.0, 4000.0))
        info = json.loads(receipt.info_json)
        self.assertEqual(info['recibo_pago_id'], '1200')
        self.assertEqual(info['payment_detail'], [{'factura_id': 70, 'prefact_oldid': '900', 'monto': [100.0, 4000.0]}])

        third = self.run_sync('receipt_processed', source)
        self.assertEqual((third.inserted, third.skipped_migrated), (0, 1))

    def test_voided_receipt_needs_no_invoice(self):
        source = FakeSource().add('FROM recibo_pago AS rp', [receipt_row('1300', voided=True)])
        summary = self.run_sync('receipt_voided', source)
        self.assertEqual(summary.inserted, 1)
        receipt = self.rows(PaymentReceipt)[0]
        self.assertEqual(receipt.status, 'anulado')
        self.assertEqual(json.loads(receipt.info_json)['payment_detail'], [])

    def test_unknown_payment_method_is_a_record_failure(self):
        row = receipt_row('1400', voided=True)
        row['forma_pago'] = 7
        summary = self.run_sync('receipt_voided', FakeSource().add('FROM recibo_pago AS rp', [row]))
        self.assertEqual((summary.inserted, summary.failed), (0, 1))
        self.assertTrue(self.rows(SyncFailedRecord)[0].error.startswith('PaymentMethodError'))


class _LegacyInvoices:
    """factura rows answering the extractor's window, id and LIMIT filters."""

    def __init__(self, *rows):
        self.rows = {row['factura_id']: row for row in rows}

    def __call__(self, params):
        cap = params[-1]
        ids = [p for p in params[:-1] if isinstance(p, str)]
        bounds = [p for p in params[:-1] if isinstance(p, datetime)]
        if ids:
            found = [self.rows[i] for i in ids if i in self.rows]
            if bounds:
                found = [r for r in found if r['updated_at'] <= bounds[0]]
        else:
            start, end = bounds[0], (bounds[1] if len(bounds) > 1 else None)
            found = [r for r in self.rows.values() if r['updated_at'] >= start and (end is None or r['updated_at'] <= end)]
        return sorted(found, key=lambda r: r['updated_at'])[:cap]


def _invoice_source(table):
    return (
        FakeSource()
        .add('FROM factura AS f', table)
        .add('FROM pre_factura_det AS pfd', lambda params: [line_row(f'{p}1', p) for p in params])
    )


class WindowProgressTests(_SyncCase):
    def test_retry_updated_past_the_window_end_waits_for_its_window(self):
        stuck = dict(fiscal_row('500', '10'), client_id=56)
        early = dict(fiscal_row('501', '11'), updated_at=datetime(2024, 3, 1))
        late = dict(fiscal_row('502', '12'), updated_at=datetime(2024, 9, 1))
        source = _invoice_source(_LegacyInvoices(stuck, early, late))

        first = self.run_sync('fiscal_invoice', source)
        self.assertEqual((first.inserted, first.failed), (1, 1))

        seed(self.target, mapping('client', '56', 11))
        stuck['updated_at'] = datetime(2025, 1, 1)
        second = self.run_sync('fiscal_invoice', source)
        retry_params = [params for sql, params in source.calls if 'f.id IN' in sql][-1]
        self.assertEqual(retry_params, ['500', datetime(2024, 8, 1), 4000])
        self.assertEqual((second.rows_retried, second.inserted, second.failed), (0, 2, 0))
        self.assertEqual({i.legacy_invoice_id for i in self.rows(Invoice)}, {'500', '501', '502'})
        self.assertEqual(self.rows(SyncFailedRecord), [])

        third = self.run_sync('fiscal_invoice', source)
        self.assertEqual((third.inserted, third.skipped_migrated), (0, 1))
        self.assertEqual(third.window_start, datetime(2025, 1, 1))

    def test_empty_window_moves_to_the_next_legacy_record(self):
        late = dict(fiscal_row('502', '12'), updated_at=datetime(2024, 9, 1))
        summary = self.run_sync('fiscal_invoice', _invoice_source(_LegacyInvoices(late)))
        self.assertEqual(summary.inserted, 1)
        self.assertEqual((summary.window_start, summary.window_end), (datetime(2024, 9, 1), datetime(2025, 2, 1)))
        run = self.rows(SyncRun)[0]
        self.assertEqual(run.window_start, datetime(2024, 9, 1))
        self.assertTrue(any('avanzando' in line for line in json.loads(run.log_json)))

    def test_window_stays_put_when_nothing_newer_exists(self):
        source = FakeSource().add('FROM retenciones AS r', [])
        summary = self.run_sync('withholding', source)
        self.assertEqual((summary.rows_read, summary.window_start), (0, datetime(2024, 1, 1)))
        self.assertEqual(source.calls[-1][1], [datetime(2024, 6, 1), 1])


class InsertRaceTests(_SyncCase):
    def _prepared(self):
        source = (
            FakeSource()
            .add('FROM factura AS f', [fiscal_row('500', '10')])
            .add('FROM pre_factura_det AS pfd', [line_row('1', '10')])
        )
        window = SyncWindow('fiscal_invoice', datetime(2024, 1, 1), datetime(2024, 6, 1))
        record = list(LegacyExtractor(source).extract('fiscal_invoice', window))[0]
        job = job_for(entity_spec('fiscal_invoice'), self.target, CrossReferenceResolver(self.target))
        return job, job.prepare(record)

    def test_mapping_registered_after_prepare_skips_the_insert(self):
        job, prepared = self._prepared()
        seed(self.target, mapping('fiscal_invoice', '500', 99))
        self.assertEqual(job.insert(prepared), OUTCOME_SKIPPED_MIGRATED)
        self.assertEqual(self.rows(Invoice), [])
        self.assertEqual(self.rows(InvoiceLine), [])

    def test_concurrent_inserts_of_one_record_write_it_once(self):
        job, prepared = self._prepared()
        barrier = threading.Barrier(2)
        outcomes = []

        def insert():
            barrier.wait()
            try:
                outcomes.append(job.insert(prepared))
            except InsertError:
                outcomes.append('InsertError')

        threads = [threading.Thread(target=insert) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        self.assertEqual(len(outcomes), 2)
        self.assertEqual(outcomes.count(OUTCOME_INSERTED), 1)
        self.assertTrue(set(outcomes) <= {OUTCOME_INSERTED, OUTCOME_SKIPPED_MIGRATED, 'InsertError'})
        invoices = self.rows(Invoice)
        self.assertEqual(len(invoices), 1)
        maps = [m for m in self.rows(LegacyIdMap) if m.entity_type == 'fiscal_invoice']
        self.assertEqual([(m.legacy_id, m.internal_id) for m in maps], [('500', invoices[0].id)])


class AllocationTests(unittest.TestCase):
    def _receipt(self, detail, pre_invoice=None):
        moment = datetime(2024, 2, 3, 12)
        return LegacyReceipt(
            legacy_id='1', user_receipt_id='', client_legacy_id='55', status='procesado', paid_on=None,
            reference='', payment_method='x', amount=Money(100.0, 4000.0), exchange_rate=40.0,
            created_at=moment, updated_at=moment, created_by_legacy_id='7', updated_by_legacy_id='7',
            allocation_detail=detail, url_file='', pre_invoice_legacy_id=pre_invoice,
        )

    def test_single_pre_invoice_takes_the_whole_amount(self):
        self.assertEqual(parse_allocations(self._receipt('900|100;', '900')), [('900', Money(100.0, 4000.0))])

    def test_multiple_allocations_skip_non_positive_and_malformed(self):
        allocations = parse_allocations(self._receipt('900|60;901|40;902|0;bad;'))
        self.assertEqual(allocations, [('900', Money(60.0, 2400.0)), ('901', Money(40.0, 1600.0))])

    def test_non_numeric_allocation_is_an_error(self):
        with self.assertRaises(ReconcileError):
            parse_allocations(self._receipt('900|abc;901|1;902|2'))


class RunLifecycleTests(_SyncCase):
    def test_second_concurrent_run_is_refused(self):
        sync_service._running_by_entity.add('withholding')
        try:
            self.assertTrue(SyncService.is_running('withholding'))
            with self.assertRaises(SyncAlreadyRunning):
                self.run_sync('withholding', FakeSource())
        finally:
            sync_service._running_by_entity.discard('withholding')
        self.assertFalse(SyncService.is_running('withholding'))

    def test_missing_watermark_fails_the_run(self):
        with patch.object(settings, 'sync_backfill_start', None):
            with self.assertRaises(WatermarkError):
                self.run_sync('withholding', FakeSource())
        run = self.rows(SyncRun)[0]
        self.assertEqual(run.stage, 'failed')
        self.assertIn('SYNC_BACKFILL_START', run.error)
        self.assertFalse(SyncService.is_running('withholding'))

    def test_unexpected_errors_close_the_run(self):
        with patch.object(settings, 'sync_line_item_transfer', 'csv'):
            with self.assertRaises(ValueError):
                self.run_sync('withholding', FakeSource())
        run = self.rows(SyncRun)[0]
        self.assertEqual(run.stage, 'failed')
        self.assertFalse(run.running)
        self.assertIsNotNone(run.finished_at)
        self.assertFalse(SyncService.is_running('withholding'))

    def test_stale_running_jobs_are_closed_on_bootstrap(self):
        seed(self.target, SyncRun(job_id='stale', entity_type='withholding', caller='cronJob', running=True, started_at=datetime(2024, 1, 1)))
        self.assertEqual(SyncService.worker_bootstrap_cleanup(self.target), 1)
        run = self.rows(SyncRun)[0]
        self.assertFalse(run.running)
        self.assertEqual(run.error, 'job_interrupted_on_restart')


if __name__ == '__main__':
    unittest.main()
