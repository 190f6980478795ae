"""
Database handles handed to every sync component.

SourceStore is the read-only legacy MySQL side, TargetStore wraps the destination
session factory. Both are passed explicitly so tests can swap in fakes or a
throwaway SQLite database.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Protocol, Sequence

import mysql.connector
from sqlalchemy import text as sa_text
from sqlalchemy.orm import Session, sessionmaker

from billing_sync.core.config import settings

logger = logging.getLogger(__name__)


class SourceStore(Protocol):
    def iter_rows(self, sql: str, params: Sequence[Any] = ()) -> Iterator[dict]:
        ...


def mysql_config_from_settings() -> dict:
    return {
        'host': settings.mysql_host,
        'port': int(settings.mysql_port or 3306),
        'user': settings.mysql_user,
        'password': settings.mysql_password,
        'database': settings.mysql_database,
        'ssl_disabled': bool(settings.mysql_ssl_disabled),
        'connection_timeout': max(1, int(settings.mysql_connect_timeout or 20)),
        'consume_results': True,
    }


class MysqlSourceStore:
    def __init__(
        self, config: dict | None = None, batch_size: int | None = None, group_concat_max_len: int | None = None
    ) -> None:
        self._config = dict(config or mysql_config_from_settings())
        self._batch_size = max(100, int(batch_size or settings.sync_fetch_batch_size or 1000))
        if group_concat_max_len is None:
            group_concat_max_len = settings.mysql_group_concat_max_len
        self._group_concat_max_len = max(0, int(group_concat_max_len or 0))

    def iter_rows(self, sql: str, params: Sequence[Any] = ()) -> Iterator[dict]:
        conn = mysql.connector.connect(**self._config)
        try:
            cursor = conn.cursor(dictionary=True)
            try:
                if self._group_concat_max_len:
                    # MySQL truncates GROUP_CONCAT output at this length without raising
                    cursor.execute('SET SESSION group_concat_max_len = %s', (self._group_concat_max_len,))
                cursor.execute(sql, tuple(params))
                while True:
                    batch = cursor.fetchmany(self._batch_size)
                    if not batch:
                        break
                    yield from batch
            finally:
                # connection must not keep pending results before close
                try:
                    conn.consume_results()
                except mysql.connector.Error:
                    pass
                cursor.close()
        finally:
            conn.close()

    def ping(self) -> bool:
        conn = mysql.connector.connect(**{**self._config, 'connection_timeout': 5})
        try:
            cur = conn.cursor()
            cur.execute('SELECT 1')
            cur.fetchone()
            cur.close()
        finally:
            conn.close()
        return True


class TargetStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        bind = session_factory.kw.get('bind')
        self.dialect = bind.dialect.name if bind is not None else ''

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        finally:
            db.close()

    @contextmanager
    def transaction(self, timeout_seconds: float | None = None) -> Iterator[Session]:
        """One unit of work: committed on clean exit, rolled back on any exception."""
        db = self._session_factory()
        try:
            if timeout_seconds and self.dialect == 'postgresql':
                ms = max(1, int(float(timeout_seconds) * 1000))
                db.execute(sa_text(f'SET LOCAL statement_timeout = {ms}'))
                db.execute(sa_text(f'SET LOCAL lock_timeout = {ms}'))
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
