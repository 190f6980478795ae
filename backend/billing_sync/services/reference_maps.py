"""
Registers destination users, clients and subscriptions in legacy_id_map.

Those rows are created by other tooling and carry their legacy id in a JSON info
column under "oldid". A refresh only scans rows with an id above the highest one
already mapped for that entity; `full=True` rescans the whole table.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_sync.core.config import settings
from billing_sync.models.billing import LegacyIdMap, Subscription
from billing_sync.services.stores import TargetStore
from billing_sync.services.sync_entities import MAP_CLIENT, MAP_SUBSCRIPTION, MAP_USER

logger = logging.getLogger(__name__)

LEGACY_KEY = 'oldid'
REGISTER_BATCH = 500
_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$')


@dataclass(frozen=True)
class ReferenceTable:
    map_entity: str
    table: str
    info_column: str = 'info'


def reference_tables() -> list[ReferenceTable]:
    return [
        ReferenceTable(MAP_USER, settings.sync_user_table),
        ReferenceTable(MAP_CLIENT, settings.sync_client_table),
        ReferenceTable(MAP_SUBSCRIPTION, Subscription.__tablename__, 'info_json'),
    ]


def legacy_key(info: object) -> str | None:
    """'oldid' out of a json/jsonb info value; None when absent or unreadable."""
    if isinstance(info, (bytes, str)):
        try:
            info = json.loads(info)
        except ValueError:
            return None
    if not isinstance(info, dict) or info.get(LEGACY_KEY) is None:
        return None
    key = str(info[LEGACY_KEY]).strip()
    return key or None


def _register(db: Session, map_entity: str, pending: dict[str, int]) -> int:
    known = {
        row[0]
        for row in db.query(LegacyIdMap.legacy_id)
        .filter(LegacyIdMap.entity_type == map_entity, LegacyIdMap.legacy_id.in_(list(pending)))
        .all()
    }
    added = 0
    for key, internal_id in pending.items():
        if key not in known:
            db.add(LegacyIdMap(entity_type=map_entity, legacy_id=key, internal_id=internal_id))
            added += 1
    return added


def refresh_reference_map(db: Session, ref: ReferenceTable, *, full: bool = False) -> int:
    if not _IDENTIFIER.match(ref.table) or not _IDENTIFIER.match(ref.info_column):
        raise ValueError(f'invalid reference table: {ref.table}.{ref.info_column}')
    last_id = 0
    if not full:
        last_id = (
            db.query(func.max(LegacyIdMap.internal_id)).filter(LegacyIdMap.entity_type == ref.map_entity).scalar() or 0
        )
    rows = db.execute(
        text(f'SELECT id, {ref.info_column} AS info FROM {ref.table} WHERE id > :last_id ORDER BY id ASC'),
        {'last_id': int(last_id)},
    ).all()

    added = 0
    pending: dict[str, int] = {}
    for row in rows:
        key = legacy_key(row.info)
        if key is None:
            continue
        # lowest id wins for a duplicated legacy id
        pending.setdefault(key, int(row.id))
        if len(pending) >= REGISTER_BATCH:
            added += _register(db, ref.map_entity, pending)
            pending = {}
    if pending:
        added += _register(db, ref.map_entity, pending)
    db.commit()
    return added


def refresh_reference_maps(target: TargetStore, *, full: bool = False) -> dict[str, int | None]:
    """
    New mappings per entity. None marks a table that could not be read; its
    existing mappings stay in use and unmapped records fail with CrossReferenceError.
    """
    out: dict[str, int | None] = {}
    for ref in reference_tables():
        try:
            with target.session() as db:
                out[ref.map_entity] = refresh_reference_map(db, ref, full=full)
        except SQLAlchemyError as exc:
            logger.warning('[reference:%s] %s not readable: %s', ref.map_entity, ref.table, exc)
            out[ref.map_entity] = None
    return out
