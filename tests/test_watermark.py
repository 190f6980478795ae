import unittest
from datetime import datetime

from sync_fixtures import make_target, seed

from billing_sync.core.errors import WatermarkError
from billing_sync.models.billing import ExchangeRate, Invoice, PaymentReceipt
from billing_sync.services.sync_types import SyncWindow
from billing_sync.services.watermark import add_months, advance_window, resolve_window


def _invoice(invoice_type, status, updated_at):
    return Invoice(
        client_id=1,
        invoice_number='X1',
        invoice_type=invoice_type,
        status=status,
        created_at=updated_at,
        updated_at=updated_at,
    )


class WatermarkTests(unittest.TestCase):
    def setUp(self):
        self.target, self.engine, self._tmp = make_target()

    def tearDown(self):
        self.engine.dispose()
        self._tmp.cleanup()

    def test_add_months_clamps_to_month_end(self):
        self.assertEqual(add_months(datetime(2024, 1, 31, 8), 1), datetime(2024, 2, 29, 8))
        self.assertEqual(add_months(datetime(2023, 10, 15), 5), datetime(2024, 3, 15))
        self.assertEqual(add_months(datetime(2023, 6, 30), 8), datetime(2024, 2, 29))

    def test_empty_destination_without_backfill_is_fatal(self):
        with self.assertRaises(WatermarkError):
            resolve_window(self.target, 'fiscal_invoice', backfill_start=None)

    def test_backfill_start_opens_the_first_window(self):
        window = resolve_window(self.target, 'fiscal_invoice', backfill_start='2024-01-01')
        self.assertEqual(window.start, datetime(2024, 1, 1))
        self.assertEqual(window.end, datetime(2024, 6, 1))
        self.assertFalse(window.from_watermark)

    def test_window_starts_at_latest_migrated_record(self):
        seed(
            self.target,
            _invoice('fiscal_maquina', 'pagado', datetime(2024, 3, 1, 10)),
            _invoice('fiscal_talonario', 'pendiente', datetime(2024, 4, 2, 9, 30)),
            # pre-invoices never move the fiscal invoice watermark
            _invoice('nota', 'pagado', datetime(2024, 9, 1)),
        )
        window = resolve_window(self.target, 'fiscal_invoice', backfill_start='2020-01-01')
        self.assertEqual(window.start, datetime(2024, 4, 2, 9, 30))
        self.assertEqual(window.end, datetime(2024, 9, 2, 9, 30))
        self.assertTrue(window.from_watermark)

    def test_pre_invoice_watermark_is_per_status_family(self):
        seed(
            self.target,
            _invoice('nota', 'anulado', datetime(2024, 5, 1)),
            _invoice('nota', 'abonado', datetime(2024, 2, 1)),
        )
        self.assertEqual(resolve_window(self.target, 'pre_invoice_voided').start, datetime(2024, 5, 1))
        self.assertEqual(resolve_window(self.target, 'pre_invoice_paid').start, datetime(2024, 2, 1))

    def test_exchange_rate_and_receipt_windows(self):
        seed(
            self.target,
            ExchangeRate(currency='bolivar', amount=36.5, created_at=datetime(2024, 1, 3)),
            PaymentReceipt(
                client_id=1,
                status='procesado',
                payment_method_id=1,
                created_at=datetime(2024, 2, 10),
                updated_at=datetime(2024, 2, 10),
            ),
        )
        rates = resolve_window(self.target, 'exchange_rate')
        self.assertEqual(rates.start, datetime(2024, 1, 3))
        self.assertIsNone(rates.end)
        receipts = resolve_window(self.target, 'receipt_processed')
        self.assertEqual(receipts.end, datetime(2024, 10, 10))
        with self.assertRaises(WatermarkError):
            resolve_window(self.target, 'receipt_voided')

    def test_advanced_window_keeps_the_entity_width(self):
        window = SyncWindow('receipt_voided', datetime(2024, 1, 1), datetime(2024, 9, 1), from_watermark=True)
        moved = advance_window(window, datetime(2024, 10, 31, 8))
        self.assertEqual((moved.start, moved.end), (datetime(2024, 10, 31, 8), datetime(2025, 6, 30, 8)))
        self.assertTrue(moved.from_watermark)
        self.assertEqual(moved.entity_type, 'receipt_voided')


if __name__ == '__main__':
    unittest.main()
