"""Shared helpers for the sync test cases: throwaway SQLite destination and a fake legacy source."""
import os
import sys
import tempfile
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / 'backend'))

os.environ.setdefault('DATABASE_URL', 'sqlite:///./data/test_billing_sync.db')

from sqlalchemy.orm import sessionmaker  # noqa: E402

import billing_sync.models  # noqa: E402,F401
from billing_sync.db.base import Base  # noqa: E402
from billing_sync.db.session import build_engine  # noqa: E402
from billing_sync.models.billing import LegacyIdMap  # noqa: E402
from billing_sync.services.stores import TargetStore  # noqa: E402


class FakeSource:
    """
    SourceStore double. Each rule is (sql substring, rows); rows may be a list or a
    callable receiving the bound params. The first matching rule answers.
    """

    def __init__(self, rules=None):
        self.rules = list(rules or [])
        self.calls = []

    def add(self, needle, rows):
        self.rules.append((needle, rows))
        return self

    def iter_rows(self, sql, params=()):
        self.calls.append((sql, list(params)))
        for needle, rows in self.rules:
            if needle in sql:
                data = rows(list(params)) if callable(rows) else rows
                for row in data:
                    yield dict(row)
                return


def make_target():
    """Fresh destination schema in a temporary SQLite file; returns (target, engine, tmpdir)."""
    tmpdir = tempfile.TemporaryDirectory()
    engine = build_engine(f"sqlite:///{Path(tmpdir.name) / 'target.db'}")
    Base.metadata.create_all(bind=engine)
    target = TargetStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))
    return target, engine, tmpdir


def seed(target, *rows):
    with target.session() as db:
        for row in rows:
            db.add(row)
        db.commit()


def mapping(entity_type, legacy_id, internal_id):
    return LegacyIdMap(entity_type=entity_type, legacy_id=str(legacy_id), internal_id=internal_id)


def fiscal_row(invoice_id, pre_invoice_id):
    return {
        'factura_id': invoice_id,
        'pre_factura_id': pre_invoice_id,
        'client_id': 55,
        'ncontrol': '00-001',
        'fecha': date(2024, 2, 1),
        'subtotal_dolar': Decimal('100'), 'subtotal_bolivar': Decimal('4000'),
        'baseim_dolar': Decimal('100'), 'baseim_bolivar': Decimal('4000'),
        'iva_porc': Decimal('16'),
        'iva_dolar': Decimal('16'), 'iva_bolivar': Decimal('640'),
        'igtf_porc': Decimal('0'),
        'igtf_baseim_dolar': Decimal('0'), 'igtf_baseim_bolivar': Decimal('0'),
        'igtf_monto_dolar': Decimal('0'), 'igtf_monto_bolivar': Decimal('0'),
        'total_dolar': Decimal('116'), 'total_bolivar': Decimal('4640'),
        'tasa_cambio': Decimal('40'),
        'num_fact_fiscal': '00012',
        'num_factura': '77',
        'anulado': 0,
        'pagado': '1',
        'monto_pagado': Decimal('116'),
        'body_json': '{"serial": "Z1"}',
        'created_at': datetime(2024, 2, 1, 9),
        'updated_at': datetime(2024, 2, 1, 9, 30),
        'created_by': 7,
        'updated_by': 7,
        'rsocial': 'cliente uno',
        'docid': 'v123',
        'telf': '0414',
        'direccion': 'caracas',
        'concepto': 'mensualidad',
    }


def line_row(line_id, pre_invoice_id):
    return {
        'id': line_id,
        'pre_factura_id': pre_invoice_id,
        'contrato_det_id': '',
        'qty': 1,
        'price_unit': Decimal('50'),
        'price_tot': Decimal('50'),
        'price_unit_bs': Decimal('2000'),
        'price_tot_bs': Decimal('2000'),
        'descripcion': 'plan hogar',
    }


def withholding_row():
    return {
        'retencion_id': 41,
        'factura_id': 500,
        'factura_created_at': datetime(2024, 2, 1, 9),
        'fecha': date(2024, 2, 5),
        'comprobante': '2024020001',
        'url_imagen': '',
        'descripcion': 'retencion islr',
        'tipo': 1,
        'anulado': 0,
        'monto': Decimal('400'),
        'base_imponible': Decimal('4000'),
        'iva_impuesto': Decimal('640'),
        'tasa_cambio': Decimal('40'),
        'created_at': datetime(2024, 2, 5, 8),
        'updated_at': datetime(2024, 2, 5, 8),
        'created_by': 7,
        'updated_by': 7,
    }


def pre_invoice_row(pre_invoice_id, total='116', voided=False):
    return {
        'pre_factura_id': pre_invoice_id,
        'client_id': 55,
        'fecha': date(2024, 2, 1),
        'total_dolar': Decimal(total),
        'concepto': 'mensualidad febrero',
        'anulado': 1 if voided else 0,
        'pagado': '0' if voided else '1',
        'monto_pagado': Decimal('0') if voided else Decimal(total),
        'created_at': datetime(2024, 2, 1, 10),
        'updated_at': datetime(2024, 2, 2, 11),
        'created_by': 7,
        'updated_by': 7,
        'rsocial': 'cliente uno',
        'docid': 'v123',
        'telf': '0414',
        'direccion': 'caracas',
    }


def receipt_row(receipt_id, pre_invoice_id='900', detail=None, voided=False):
    return {
        'recibo_pago_id': receipt_id,
        'recibo_pago_user_id': None,
        'client_id': 55,
        'anulado': 1 if voided else 0,
        'forma_pago': 2,
        'fecha': date(2024, 2, 3),
        'referencia': 'REF-1',
        'monto_bolivar': Decimal('4000'),
        'monto_dolar': Decimal('100'),
        'tasa_cambio': Decimal('40'),
        'created_at': datetime(2024, 2, 3, 12),
        'updated_at': datetime(2024, 2, 3, 12),
        'created_by': 7,
        'updated_by': 7,
        'payment_detail': detail if detail is not None else f'{pre_invoice_id}|100;',
        'url_file': 'https://files.example/r.png',
        'pre_factura_id': pre_invoice_id,
    }
