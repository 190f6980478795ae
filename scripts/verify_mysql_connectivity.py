#!/usr/bin/env python3
"""
Verifica que el servidor pueda leer la base legacy MySQL antes de sincronizar.
Ejecutar desde la raíz del proyecto: python scripts/verify_mysql_connectivity.py [--json]

Exit 0 = OK, exit 1 = fallo.
"""
from __future__ import annotations

import json
import sys
import time
from pathlib import Path

import mysql.connector

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / 'backend'))

from billing_sync.core.config import settings  # noqa: E402
from billing_sync.services.stores import MysqlSourceStore  # noqa: E402

# tables the extractor reads
LEGACY_TABLES = (
    'tasa_cambio',
    'factura',
    'pre_factura',
    'pre_factura_det',
    'retenciones',
    'recibo_pago',
    'recibo_pago_user',
    'sf_guard_user',
)


def verify_mysql_connectivity(json_output: bool = False) -> int:
    result = {
        'ok': False,
        'mysql_ok': False,
        'message': '',
        'latency_ms': None,
        'missing_tables': [],
        'error': None,
    }

    if not settings.mysql_host or not settings.mysql_user or not settings.mysql_database:
        result['message'] = (
            'MYSQL_HOST, MYSQL_USER y MYSQL_DATABASE son obligatorios en .env. '
            'Copie .env.example a .env y configure las variables.'
        )
        result['error'] = 'MYSQL_CONFIG_INCOMPLETE'
        _print(result, json_output)
        return 1

    store = MysqlSourceStore()
    try:
        started = time.perf_counter()
        store.ping()
        present = {
            str(row.get('table_name') or row.get('TABLE_NAME') or '').lower()
            for row in store.iter_rows(
                'SELECT table_name FROM information_schema.tables WHERE table_schema = %s',
                [settings.mysql_database],
            )
        }
        result['latency_ms'] = int((time.perf_counter() - started) * 1000)
    except mysql.connector.Error as exc:
        result['message'] = str(exc)
        result['error'] = 'MYSQL_CONNECTION_FAILED'
        _print(result, json_output)
        return 1

    result['mysql_ok'] = True
    result['missing_tables'] = [t for t in LEGACY_TABLES if t not in present]
    if result['missing_tables']:
        result['message'] = 'Conexion MySQL OK, pero faltan tablas legacy.'
        result['error'] = 'LEGACY_TABLES_MISSING'
        _print(result, json_output)
        return 1

    result['ok'] = True
    result['message'] = 'Conexion MySQL OK. Listo para sincronizar.'
    _print(result, json_output)
    return 0


def _print(result: dict, json_output: bool) -> None:
    if json_output:
        print(json.dumps(result, ensure_ascii=False, indent=2))
        return
    if result['ok']:
        print(f"[OK] {result['message']} (latencia: {result['latency_ms']} ms)")
        return
    print(f"[ERROR] {result['message']}")
    if result['missing_tables']:
        print(f"  Tablas faltantes: {', '.join(result['missing_tables'])}")
    if result['error'] == 'MYSQL_CONNECTION_FAILED':
        print(f'  Host: {settings.mysql_host}:{settings.mysql_port}, DB: {settings.mysql_database}')
        print('  Sugerencia: Si MySQL está en el host y la app en Docker, use MYSQL_HOST=host.docker.internal')


if __name__ == '__main__':
    json_out = '--json' in sys.argv or '-j' in sys.argv
    sys.exit(verify_mysql_connectivity(json_output=json_out))
