#!/usr/bin/env python3
"""
Registra usuarios, clientes y suscripciones del destino en legacy_id_map.

Cada sincronizacion ya hace una pasada incremental (SYNC_REFERENCE_REFRESH). Este
script sirve para la carga inicial o, con --full, para releer filas cuyo info.oldid
se corrigio despues de registradas.

Uso:
  python scripts/load_reference_maps.py
  python scripts/load_reference_maps.py --full --json

Exit 0 = OK, exit 1 = alguna tabla no se pudo leer.
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / 'backend'))

from billing_sync.core.logging_config import configure_logging  # noqa: E402
from billing_sync.db.session import SessionLocal  # noqa: E402
from billing_sync.services.reference_maps import refresh_reference_maps  # noqa: E402
from billing_sync.services.stores import TargetStore  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Carga de mapeos legacy de usuarios, clientes y suscripciones')
    parser.add_argument('--full', action='store_true', help='Relee todas las filas, no solo las nuevas')
    parser.add_argument('--json', action='store_true', help='Salida JSON')
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging()
    added = refresh_reference_maps(TargetStore(SessionLocal), full=args.full)
    if args.json:
        print(json.dumps(added, ensure_ascii=False, indent=2))
    else:
        for entity, count in added.items():
            if count is None:
                print(f'[ERROR] {entity}: tabla no disponible')
            else:
                print(f'[OK] {entity}: {count} mapeos nuevos')
    return 1 if any(count is None for count in added.values()) else 0


if __name__ == '__main__':
    sys.exit(main())
