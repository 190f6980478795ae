#!/usr/bin/env python3
"""
Ejecuta una sincronizacion legacy -> destino desde la linea de comandos.

Uso:
  python scripts/run_sync.py fiscal_invoice
  python scripts/run_sync.py --all --json
  python scripts/run_sync.py --runs 20

Exit 0 = OK, exit 1 = alguna sincronizacion fallo.
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / 'backend'))

from billing_sync.core.errors import SyncError  # noqa: E402
from billing_sync.core.logging_config import configure_logging  # noqa: E402
from billing_sync.db.bootstrap import bootstrap_database  # noqa: E402
from billing_sync.services.sync_service import SyncService  # noqa: E402

CLI_CALLER = 'cli'


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Sincronizacion incremental de facturacion legacy')
    parser.add_argument('entity_type', nargs='*', help='Tipos a sincronizar, en el orden dado')
    parser.add_argument('--all', action='store_true', help='Sincroniza todos los tipos en orden de dependencias')
    parser.add_argument('--runs', type=int, default=0, help='Solo lista las ultimas N ejecuciones')
    parser.add_argument('--bootstrap', action='store_true', help='Crea las tablas del destino antes de sincronizar')
    parser.add_argument('--json', action='store_true', help='Salida JSON')
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging()

    if args.runs:
        print(json.dumps(SyncService.recent_runs(limit=args.runs), ensure_ascii=False, indent=2))
        return 0

    entity_types = list(SyncService.entity_types()) if args.all else list(args.entity_type)
    if not entity_types:
        print('[ERROR] Indique al menos un tipo o --all', file=sys.stderr)
        return 1
    unknown = [e for e in entity_types if e not in SyncService.entity_types()]
    if unknown:
        print(f"[ERROR] Tipo desconocido: {', '.join(unknown)}", file=sys.stderr)
        return 1
    if args.bootstrap:
        bootstrap_database()

    results = []
    failed = False
    for entity_type in entity_types:
        try:
            summary = SyncService.run(entity_type, CLI_CALLER)
            results.append({'ok': True, **summary.as_dict()})
        except SyncError as exc:
            failed = True
            results.append({'ok': False, 'entity_type': entity_type, 'error': str(exc)})

    if args.json:
        print(json.dumps(results, ensure_ascii=False, indent=2))
    else:
        for item in results:
            if item['ok']:
                print(
                    f"[OK] {item['entity_type']}: {item['inserted']} insertados, "
                    f"{item['skipped_migrated']} ya migrados, {item['skipped_parent']} sin padre, "
                    f"{item['failed']} fallidos ({item['duration_sec']}s)"
                )
            else:
                print(f"[ERROR] {item['entity_type']}: {item['error']}")
    return 1 if failed else 0


if __name__ == '__main__':
    sys.exit(main())
