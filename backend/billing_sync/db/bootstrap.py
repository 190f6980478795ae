from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.engine import Engine

import billing_sync.models  # noqa: F401  registers every table on Base.metadata
from billing_sync.db.base import Base
from billing_sync.db.session import engine as default_engine

logger = logging.getLogger(__name__)


def bootstrap_database(bind: Engine | None = None) -> None:
    """Ensure the engine-owned tables exist and the write path answers."""
    target = bind or default_engine
    Base.metadata.create_all(bind=target)
    with target.connect() as conn:
        conn.execute(text('SELECT 1'))
    logger.info('DB bootstrap completed (schema ensured on %s)', target.dialect.name)
