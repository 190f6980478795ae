"""
Legacy alternate key -> destination primary key resolution.

Every migrated entity is registered in legacy_id_map, so user, client, parent and
"already migrated" lookups are indexed equality checks combined into a single
SELECT of scalar subqueries.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_sync.core.errors import CrossReferenceError, PaymentMethodError
from billing_sync.models.billing import BankAccount, ExchangeRate, Invoice, LegacyIdMap, Subscription
from billing_sync.services.parsing import digits_only, to_int
from billing_sync.services.stores import TargetStore
from billing_sync.services.sync_entities import MAP_CLIENT, MAP_SUBSCRIPTION, MAP_USER
from billing_sync.services.sync_types import REF_PROCEED, REF_SKIP_MIGRATED, REF_SKIP_PARENT, CrossReference, SubscriptionSummary

logger = logging.getLogger(__name__)

SPEED_UNIT = 'Mbps'


@dataclass
class AlternateKeys:
    """Legacy keys of one record. None means the lookup is not needed for this entity."""

    map_entity: str | None
    legacy_id: str
    created_by: str | None = None
    updated_by: str | None = None
    client: str | None = None
    parent_entity: str | None = None
    parent: str | None = None
    rate_at: datetime | None = None
    users_required: bool = True


def _mapped(map_entity: str, legacy_id: str):
    return (
        select(LegacyIdMap.internal_id)
        .where(LegacyIdMap.entity_type == map_entity, LegacyIdMap.legacy_id == str(legacy_id))
        .limit(1)
        .scalar_subquery()
    )


def _rate_at(moment: datetime):
    return (
        select(ExchangeRate.amount)
        .where(ExchangeRate.currency == 'bolivar', ExchangeRate.created_at <= moment)
        .order_by(ExchangeRate.created_at.desc(), ExchangeRate.id.desc())
        .limit(1)
        .scalar_subquery()
    )


def is_migrated(db: Session, map_entity: str, legacy_id: str) -> bool:
    found = (
        db.query(LegacyIdMap.id)
        .filter(LegacyIdMap.entity_type == map_entity, LegacyIdMap.legacy_id == str(legacy_id))
        .first()
    )
    return found is not None


def register_mapping(db: Session, map_entity: str, legacy_id: str, internal_id: int) -> LegacyIdMap:
    row = LegacyIdMap(entity_type=map_entity, legacy_id=str(legacy_id), internal_id=int(internal_id))
    db.add(row)
    return row


def mapped_id(db: Session, map_entity: str, legacy_id: str) -> int | None:
    return db.execute(select(_mapped(map_entity, legacy_id).label('internal_id'))).scalar()


def subscription_summary(row: Subscription, legacy_key: str) -> SubscriptionSummary:
    speed = digits_only(row.service_name or '')
    parts = (row.service_type_name or '').split('/')
    parts += [''] * (3 - len(parts))
    return SubscriptionSummary(
        id=int(row.id),
        legacy_id=str(legacy_key),
        speed_value=to_int(speed) if speed else None,
        speed_unit=SPEED_UNIT,
        zone=parts[0],
        connection_type=parts[1],
        service_type=parts[2],
    )


def split_payment_method(method: str) -> tuple[str, str, str, str]:
    """'bank_currency_method_webname' -> parts; dots in the method become underscores."""
    items = str(method or '').split('_')
    if len(items) != 4:
        raise PaymentMethodError(f'payment method incorrect: {method}')
    bank, currency, kind, web_name = items
    return bank, currency, kind.replace('.', '_'), web_name


class CrossReferenceResolver:
    def __init__(self, target: TargetStore) -> None:
        self._target = target
        self._subscriptions: dict[str, SubscriptionSummary | None] = {}
        self._payment_methods: dict[str, int] = {}

    def resolve(self, keys: AlternateKeys) -> CrossReference:
        """
        Resolve every destination id a record needs in one round trip.

        Already-migrated wins over everything else; then missing users/client are a
        CrossReferenceError; then a missing parent skips the record for this run.
        """
        columns = []
        if keys.map_entity:
            columns.append(_mapped(keys.map_entity, keys.legacy_id).label('existing_id'))
        if keys.created_by is not None:
            columns.append(_mapped(MAP_USER, keys.created_by).label('created_by'))
        if keys.updated_by is not None:
            columns.append(_mapped(MAP_USER, keys.updated_by).label('updated_by'))
        if keys.client is not None:
            columns.append(_mapped(MAP_CLIENT, keys.client).label('client_id'))
        if keys.parent_entity and keys.parent is not None:
            columns.append(_mapped(keys.parent_entity, keys.parent).label('parent_id'))
        if keys.rate_at is not None:
            columns.append(_rate_at(keys.rate_at).label('exchange_rate'))
        if not columns:
            return CrossReference(status=REF_PROCEED)

        try:
            with self._target.session() as db:
                row = db.execute(select(*columns)).mappings().one()
        except SQLAlchemyError as exc:
            raise CrossReferenceError(f'cross-reference lookup failed: {exc}', legacy_id=keys.legacy_id) from exc

        ref = CrossReference(
            status=REF_PROCEED,
            created_by=row.get('created_by'),
            updated_by=row.get('updated_by'),
            client_id=row.get('client_id'),
            parent_id=row.get('parent_id'),
            existing_id=row.get('existing_id'),
            exchange_rate=row.get('exchange_rate'),
        )
        if ref.existing_id is not None:
            ref.status = REF_SKIP_MIGRATED
            return ref

        missing = []
        if keys.users_required and keys.created_by is not None and ref.created_by is None:
            missing.append(f'created_by={keys.created_by}')
        if keys.users_required and keys.updated_by is not None and ref.updated_by is None:
            missing.append(f'updated_by={keys.updated_by}')
        if keys.client is not None and ref.client_id is None:
            missing.append(f'client={keys.client}')
        if missing:
            raise CrossReferenceError(f"unmapped legacy ids ({', '.join(missing)})", legacy_id=keys.legacy_id)

        if keys.parent_entity and (keys.parent is None or ref.parent_id is None):
            ref.status = REF_SKIP_PARENT
        return ref

    def subscription(self, legacy_key: str) -> SubscriptionSummary | None:
        """Summary of a migrated subscription; unknown keys resolve to None."""
        key = str(legacy_key or '').strip()
        if not key:
            return None
        if key in self._subscriptions:
            return self._subscriptions[key]
        try:
            with self._target.session() as db:
                row = db.execute(
                    select(Subscription).where(Subscription.id == _mapped(MAP_SUBSCRIPTION, key))
                ).scalars().first()
        except SQLAlchemyError as exc:
            raise CrossReferenceError(f'subscription lookup failed for {key}: {exc}') from exc
        summary = subscription_summary(row, key) if row is not None else None
        self._subscriptions[key] = summary
        return summary

    def payment_method_id(self, method: str) -> int:
        if method in self._payment_methods:
            return self._payment_methods[method]
        bank, currency, kind, web_name = split_payment_method(method)
        try:
            with self._target.session() as db:
                found = (
                    db.query(BankAccount.id)
                    .filter(
                        BankAccount.bank == bank,
                        BankAccount.currency == currency,
                        BankAccount.payment_method == kind,
                        BankAccount.web_name == web_name,
                    )
                    .order_by(BankAccount.id.asc())
                    .first()
                )
        except SQLAlchemyError as exc:
            raise PaymentMethodError(f'bank account lookup failed for {method}: {exc}') from exc
        if found is None:
            raise PaymentMethodError(f'no bank account for payment method {method}')
        self._payment_methods[method] = int(found[0])
        return int(found[0])

    def invoices_for_pre_invoices(self, legacy_pre_invoice_ids: Iterable[str]) -> dict[str, int]:
        ids = sorted({str(i) for i in legacy_pre_invoice_ids if str(i or '').strip()})
        if not ids:
            return {}
        try:
            with self._target.session() as db:
                rows = (
                    db.query(Invoice.legacy_pre_invoice_id, Invoice.id)
                    .filter(Invoice.legacy_pre_invoice_id.in_(ids))
                    .order_by(Invoice.id.asc())
                    .all()
                )
        except SQLAlchemyError as exc:
            raise CrossReferenceError(f'invoice lookup by pre-invoice failed: {exc}') from exc
        out: dict[str, int] = {}
        for legacy_id, invoice_id in rows:
            out.setdefault(str(legacy_id), int(invoice_id))
        return out
