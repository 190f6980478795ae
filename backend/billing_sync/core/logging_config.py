"""
JSON-lines event log shared by the HTTP layer and the sync engine.

Each event is one JSON object per line: level, message and whichever of trace_id,
job_id, entity_type, duration_ms, endpoint the caller knows. Module loggers keep
the plain text format.
"""
from __future__ import annotations

import json
import logging
import sys
from typing import Any

from billing_sync.core.config import settings

EVENT_LOGGER = 'billing_sync.events'
_events = logging.getLogger(EVENT_LOGGER)


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            'ts': self.formatTime(record, '%Y-%m-%dT%H:%M:%S'),
            'level': record.levelname.lower(),
            'message': record.getMessage(),
        }
        payload.update(getattr(record, 'fields', None) or {})
        return json.dumps(payload, ensure_ascii=False, default=str)


def _fields(**kwargs: Any) -> dict[str, Any]:
    out = {k: v for k, v in kwargs.items() if v is not None}
    if 'duration_ms' in out:
        out['duration_ms'] = round(float(out['duration_ms']), 2)
    return out


def structured_log(level: str, message: str, **fields: Any) -> None:
    _events.log(getattr(logging, level.upper(), logging.INFO), message, extra={'fields': _fields(**fields)})


def log_request(request_path: str, method: str, trace_id: str, duration_ms: float, status_code: int) -> None:
    structured_log(
        'info',
        'request',
        trace_id=trace_id,
        duration_ms=duration_ms,
        endpoint=f'{method} {request_path}',
        status_code=status_code,
    )


def configure_logging(level: str = 'INFO') -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    )
    if not any(isinstance(h.formatter, JsonLineFormatter) for h in _events.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonLineFormatter())
        _events.addHandler(handler)
    _events.setLevel(logging.INFO)
    # dev: events are also echoed through the readable root handler
    _events.propagate = settings.app_env == 'dev'
