from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text, UniqueConstraint

from billing_sync.db.base import Base


class SyncRun(Base):
    __tablename__ = 'sync_runs'

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String(64), nullable=False, unique=True, index=True)
    entity_type = Column(String(32), nullable=False, index=True)
    caller = Column(String(32), nullable=False, default='cronJob')
    running = Column(Boolean, nullable=False, default=True, index=True)
    stage = Column(String(64), nullable=True)
    window_start = Column(DateTime, nullable=True)
    window_end = Column(DateTime, nullable=True)
    rows_read = Column(Integer, nullable=False, default=0)
    rows_retried = Column(Integer, nullable=False, default=0)
    rows_inserted = Column(Integer, nullable=False, default=0)
    rows_skipped_migrated = Column(Integer, nullable=False, default=0)
    rows_skipped_parent = Column(Integer, nullable=False, default=0)
    rows_failed = Column(Integer, nullable=False, default=0)
    max_in_flight = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    log_json = Column(Text, nullable=False, default='[]')
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)
    duration_sec = Column(Float, nullable=True)


class SyncFailedRecord(Base):
    """Legacy records whose last migration attempt failed; re-extracted by id on later runs."""

    __tablename__ = 'sync_failed_records'
    __table_args__ = (UniqueConstraint('entity_type', 'legacy_id', name='ux_sync_failed_records_entity_legacy'),)

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(32), nullable=False, index=True)
    legacy_id = Column(String(64), nullable=False)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    first_failed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_failed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
