"""
Sync orchestrator: one entity type per invocation.

resolve window -> extract (+ re-extract previously failed ids) -> structural decode
of the whole batch -> per-record prepare inline -> bounded concurrent insert ->
failed-record bookkeeping -> run summary.
"""
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from functools import partial

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_sync.core.config import settings
from billing_sync.core.errors import FatalSyncError, RecordCancelled, RecordError, SyncAlreadyRunning
from billing_sync.core.logging_config import structured_log
from billing_sync.db.session import SessionLocal
from billing_sync.models.sync import SyncFailedRecord, SyncRun
from billing_sync.services.bounded_inserter import BoundedInserter, InsertFailure, InsertReport
from billing_sync.services.cross_reference import CrossReferenceResolver
from billing_sync.services.legacy_extractor import LegacyExtractor
from billing_sync.services.reference_maps import refresh_reference_maps
from billing_sync.services.stores import MysqlSourceStore, SourceStore, TargetStore
from billing_sync.services.sync_entities import SYNC_ENTITY_TYPES, entity_spec
from billing_sync.services.sync_jobs import ExchangeRateJob, job_for
from billing_sync.services.sync_types import (
    OUTCOME_INSERTED,
    OUTCOME_SKIPPED_MIGRATED,
    OUTCOME_SKIPPED_PARENT,
    RunSummary,
    SyncWindow,
)
from billing_sync.services.watermark import advance_window, resolve_window

_state_lock = threading.Lock()
_running_by_entity: set[str] = set()
logger = logging.getLogger(__name__)

FAILURE_LOG_SAMPLE = 20
PARENT_MISSING_ERROR = 'parent_missing'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _persist_sync_run(db: Session, payload: dict) -> None:
    row = db.query(SyncRun).filter(SyncRun.job_id == payload['job_id']).first()
    if row is None:
        row = SyncRun(job_id=payload['job_id'])
        db.add(row)
    for key, value in payload.items():
        if key == 'log':
            row.log_json = json.dumps(value or [], ensure_ascii=False)
        elif hasattr(row, key):
            setattr(row, key, value)
    db.commit()


def _failed_ids(db: Session, entity_type: str, limit: int) -> list[str]:
    if limit <= 0:
        return []
    rows = (
        db.query(SyncFailedRecord.legacy_id)
        .filter(SyncFailedRecord.entity_type == entity_type)
        .order_by(SyncFailedRecord.last_failed_at.asc(), SyncFailedRecord.id.asc())
        .limit(limit)
        .all()
    )
    return [str(r[0]) for r in rows]


def _track_failures(db: Session, entity_type: str, failures: list[InsertFailure], pending_parent: list[str], done: list[str]) -> None:
    now = _utcnow()
    if done:
        (
            db.query(SyncFailedRecord)
            .filter(SyncFailedRecord.entity_type == entity_type, SyncFailedRecord.legacy_id.in_(done))
            .delete(synchronize_session=False)
        )
    errors = {f.legacy_id: f'{f.kind}: {f.error}' for f in failures}
    for legacy_id in pending_parent:
        errors.setdefault(legacy_id, PARENT_MISSING_ERROR)
    if not errors:
        db.commit()
        return
    existing = {
        row.legacy_id: row
        for row in db.query(SyncFailedRecord)
        .filter(SyncFailedRecord.entity_type == entity_type, SyncFailedRecord.legacy_id.in_(list(errors)))
        .all()
    }
    for legacy_id, error in errors.items():
        row = existing.get(legacy_id)
        if row is None:
            db.add(
                SyncFailedRecord(
                    entity_type=entity_type,
                    legacy_id=legacy_id,
                    error=error[:2000],
                    attempts=1,
                    first_failed_at=now,
                    last_failed_at=now,
                )
            )
        else:
            row.error = error[:2000]
            row.attempts = int(row.attempts or 0) + 1
            row.last_failed_at = now
    db.commit()


def _cleanup_stale_running_jobs(target: TargetStore) -> int:
    """
    Runs left running=true by a killed process would otherwise look active forever.
    Mark them as failed.
    """
    with target.session() as db:
        rows = db.query(SyncRun).filter(SyncRun.running.is_(True)).all()
        now = _utcnow()
        for row in rows:
            row.running = False
            row.stage = 'failed'
            row.error = 'job_interrupted_on_restart'
            row.finished_at = now
            if row.started_at:
                row.duration_sec = round((now - row.started_at).total_seconds(), 2)
        db.commit()
        return len(rows)


class _RunContext:
    def __init__(self, target: TargetStore, summary: RunSummary) -> None:
        self.target = target
        self.summary = summary
        self.log: list[str] = []
        self.started = time.monotonic()

    def append_log(self, line: str) -> None:
        self.log.append(line)
        self.log = self.log[-200:]
        logger.info('[sync:%s] %s', self.summary.entity_type, line)

    def persist(self, **fields) -> None:
        s = self.summary
        payload = {
            'job_id': s.job_id,
            'entity_type': s.entity_type,
            'caller': s.caller,
            'window_start': s.window_start,
            'window_end': s.window_end,
            'rows_read': s.rows_read,
            'rows_retried': s.rows_retried,
            'rows_inserted': s.inserted,
            'rows_skipped_migrated': s.skipped_migrated,
            'rows_skipped_parent': s.skipped_parent,
            'rows_failed': s.failed,
            'max_in_flight': s.max_in_flight,
            'log': self.log,
        }
        payload.update(fields)
        try:
            with self.target.session() as db:
                _persist_sync_run(db, payload)
        except SQLAlchemyError as exc:
            logger.error('[sync:%s] could not persist run state: %s', s.entity_type, exc)


class SyncService:
    @staticmethod
    def entity_types() -> tuple[str, ...]:
        return SYNC_ENTITY_TYPES

    @staticmethod
    def is_running(entity_type: str) -> bool:
        with _state_lock:
            return entity_spec(entity_type).entity_type in _running_by_entity

    @staticmethod
    def run(
        entity_type: str,
        caller: str = 'cronJob',
        *,
        source: SourceStore | None = None,
        target: TargetStore | None = None,
    ) -> RunSummary:
        """
        Run one incremental sync for `entity_type`.

        Per-record failures are counted in the summary and never raised. Fatal
        errors (watermark, extraction, malformed line-item blob, exchange-rate
        insert) propagate as FatalSyncError after the run is recorded as failed.
        """
        spec = entity_spec(entity_type)
        with _state_lock:
            if spec.entity_type in _running_by_entity:
                raise SyncAlreadyRunning(f'Ya existe una sincronizacion de {spec.entity_type} en curso')
            _running_by_entity.add(spec.entity_type)
        try:
            return SyncService._run(spec, caller, source or MysqlSourceStore(), target or TargetStore(SessionLocal))
        finally:
            with _state_lock:
                _running_by_entity.discard(spec.entity_type)

    @staticmethod
    def _run(spec, caller: str, source: SourceStore, target: TargetStore) -> RunSummary:
        summary = RunSummary(job_id=str(uuid.uuid4()), entity_type=spec.entity_type, caller=str(caller or 'cronJob'))
        ctx = _RunContext(target, summary)
        ctx.append_log(f'Estado: sincronizacion iniciada ({summary.caller})')
        ctx.persist(running=True, stage='watermark', started_at=_utcnow())
        structured_log('info', 'sync_run_started', job_id=summary.job_id, entity_type=spec.entity_type, caller=summary.caller)

        try:
            window = resolve_window(target, spec.entity_type, backfill_start=settings.sync_backfill_start)
            summary.window_start, summary.window_end = window.start, window.end
            ctx.append_log(f'Ventana: {window.start.isoformat()} -> {window.end.isoformat() if window.end else "*"}')
            ctx.persist(stage='extracting')

            extractor = LegacyExtractor(source, line_item_transfer=settings.sync_line_item_transfer)
            resolver = CrossReferenceResolver(target)
            job = job_for(spec, target, resolver, company_id=settings.sync_company_id)
            if settings.sync_reference_refresh:
                added = refresh_reference_maps(target)
                if any(added.values()):
                    ctx.append_log(f'Mapeos de referencia nuevos: {added}')

            if isinstance(job, ExchangeRateJob):
                rates = list(extractor.extract(spec.entity_type, window))
                summary.rows_read = len(rates)
                ctx.persist(stage='inserting')
                summary.inserted = job.insert_all(rates)
            else:
                SyncService._run_records(spec, ctx, extractor, job, window)
        except FatalSyncError as exc:
            SyncService._finish_failed(ctx, exc)
            raise
        except SQLAlchemyError as exc:
            # destination unavailable outside a per-record insert
            SyncService._finish_failed(ctx, exc)
            raise FatalSyncError(f'destination error during {spec.entity_type} sync: {exc}') from exc
        except Exception as exc:
            SyncService._finish_failed(ctx, exc)
            raise

        summary.duration_sec = round(time.monotonic() - ctx.started, 2)
        ctx.append_log(
            f'there were ({summary.inserted}) {spec.entity_type} records synchronized '
            f'(skipped: {summary.skipped_migrated} migrated, {summary.skipped_parent} parent missing; failed: {summary.failed})'
        )
        ctx.persist(running=False, stage='completed', finished_at=_utcnow(), duration_sec=summary.duration_sec, error=None)
        structured_log('info', 'sync_run_completed', duration_ms=summary.duration_sec * 1000, **summary.as_dict())
        return summary

    @staticmethod
    def _run_records(spec, ctx: _RunContext, extractor: LegacyExtractor, job, window: SyncWindow) -> None:
        summary = ctx.summary
        with ctx.target.session() as db:
            retry_ids = _failed_ids(db, spec.entity_type, int(settings.sync_failed_retry_limit or 0))

        records = []
        seen: set[str] = set()
        for record in extractor.extract_by_ids(spec.entity_type, retry_ids, window):
            seen.add(job.legacy_id(record))
            records.append(record)
        summary.rows_retried = len(records)
        stale = [legacy_id for legacy_id in retry_ids if legacy_id not in seen]
        if stale:
            # not extractable within this window
            with ctx.target.session() as db:
                _track_failures(db, spec.entity_type, [], [], stale)

        window_records = list(extractor.extract(spec.entity_type, window))
        if window.end is not None and not any(getattr(r, spec.watermark_field) > window.start for r in window_records):
            next_start = extractor.next_timestamp(spec.entity_type, window.end)
            if next_start is not None and next_start > window.start:
                window = advance_window(window, next_start)
                summary.window_start, summary.window_end = window.start, window.end
                ctx.append_log(f'Ventana sin registros nuevos, avanzando a {window.start.isoformat()} -> {window.end.isoformat()}')
                window_records = list(extractor.extract(spec.entity_type, window))
        for record in window_records:
            legacy_id = job.legacy_id(record)
            if legacy_id in seen:
                continue
            seen.add(legacy_id)
            records.append(record)
        summary.rows_read = len(records)
        ctx.append_log(f'Extraidos {summary.rows_read} registros ({summary.rows_retried} reintentos)')

        # a malformed blob anywhere aborts before the first insert
        job.validate_batch(records)
        ctx.persist(stage='inserting')

        pending_parent: list[str] = []
        with BoundedInserter(spec.workers, run_timeout_seconds=settings.sync_run_timeout_seconds) as inserter:
            for record in records:
                legacy_id = job.legacy_id(record)
                if inserter.cancelled:
                    inserter.record_failure(legacy_id, RecordCancelled('run cancelled', legacy_id=legacy_id))
                    continue
                try:
                    prepared = job.prepare(record)
                except RecordError as exc:
                    inserter.record_failure(legacy_id, exc)
                    continue
                if isinstance(prepared, str):
                    inserter.record_outcome(legacy_id, prepared)
                    if prepared == OUTCOME_SKIPPED_PARENT:
                        pending_parent.append(legacy_id)
                    continue
                inserter.submit(legacy_id, partial(job.insert, prepared))
            report = inserter.join()

        SyncService._apply_report(ctx, report, records, job, pending_parent)

    @staticmethod
    def _apply_report(ctx: _RunContext, report: InsertReport, records: list, job, pending_parent: list[str]) -> None:
        summary = ctx.summary
        summary.inserted = report.outcomes.get(OUTCOME_INSERTED, 0)
        summary.skipped_migrated = report.outcomes.get(OUTCOME_SKIPPED_MIGRATED, 0)
        summary.skipped_parent = report.outcomes.get(OUTCOME_SKIPPED_PARENT, 0)
        summary.failed = len(report.failed)
        summary.max_in_flight = report.max_in_flight
        summary.errors = [f'{f.legacy_id}: {f.kind}: {f.error}' for f in report.failed]

        failed_or_pending = {f.legacy_id for f in report.failed} | set(pending_parent)
        done = [job.legacy_id(r) for r in records if job.legacy_id(r) not in failed_or_pending]
        try:
            with ctx.target.session() as db:
                _track_failures(db, summary.entity_type, report.failed, pending_parent, done)
        except SQLAlchemyError as exc:
            logger.error('[sync:%s] could not update failed records: %s', summary.entity_type, exc)

        if report.failed:
            structured_log(
                'warning',
                'sync_record_failures',
                job_id=summary.job_id,
                entity_type=summary.entity_type,
                failed=len(report.failed),
                cancelled=report.cancelled,
                sample=summary.errors[:FAILURE_LOG_SAMPLE],
            )

    @staticmethod
    def _finish_failed(ctx: _RunContext, exc: BaseException) -> None:
        summary = ctx.summary
        summary.duration_sec = round(time.monotonic() - ctx.started, 2)
        ctx.append_log(f'Error: {exc}')
        ctx.persist(running=False, stage='failed', finished_at=_utcnow(), duration_sec=summary.duration_sec, error=str(exc)[:2000])
        structured_log(
            'error',
            'sync_run_failed',
            job_id=summary.job_id,
            entity_type=summary.entity_type,
            caller=summary.caller,
            error_type=type(exc).__name__,
            error=str(exc),
            duration_ms=summary.duration_sec * 1000,
        )

    @staticmethod
    def recent_runs(limit: int = 50, entity_type: str | None = None, target: TargetStore | None = None) -> list[dict]:
        capped = max(1, min(500, int(limit or 50)))
        store = target or TargetStore(SessionLocal)
        with store.session() as db:
            q = db.query(SyncRun)
            if entity_type:
                q = q.filter(SyncRun.entity_type == entity_spec(entity_type).entity_type)
            rows = q.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(capped).all()
            return [
                {
                    'job_id': row.job_id,
                    'entity_type': row.entity_type,
                    'caller': row.caller,
                    'running': bool(row.running),
                    'stage': row.stage,
                    'window_start': row.window_start.isoformat() if row.window_start else None,
                    'window_end': row.window_end.isoformat() if row.window_end else None,
                    'rows_read': int(row.rows_read or 0),
                    'rows_retried': int(row.rows_retried or 0),
                    'rows_inserted': int(row.rows_inserted or 0),
                    'rows_skipped_migrated': int(row.rows_skipped_migrated or 0),
                    'rows_skipped_parent': int(row.rows_skipped_parent or 0),
                    'rows_failed': int(row.rows_failed or 0),
                    'max_in_flight': int(row.max_in_flight or 0),
                    'error': row.error,
                    'started_at': row.started_at.isoformat() if row.started_at else None,
                    'finished_at': row.finished_at.isoformat() if row.finished_at else None,
                    'duration_sec': float(row.duration_sec) if row.duration_sec is not None else None,
                }
                for row in rows
            ]

    @staticmethod
    def worker_bootstrap_cleanup(target: TargetStore | None = None) -> int:
        return _cleanup_stale_running_jobs(target or TargetStore(SessionLocal))
