"""
Throttle for the manual sync triggers.

Each (scope, client, entity type) key keeps the timestamps of its admitted
triggers inside a sliding window. A refused trigger learns how long until the
oldest one leaves the window, which the API returns as Retry-After.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from typing import Callable

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)

ThrottleKey = tuple[str, str, str]


class TriggerThrottle:
    """Process-local; every worker process keeps its own counts."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._admitted: dict[ThrottleKey, deque[float]] = {}
        self._lock = threading.Lock()

    def acquire(self, key: ThrottleKey, limit: int, window_seconds: float) -> float:
        """0.0 when the trigger is admitted, otherwise seconds until a slot frees."""
        window = max(1.0, float(window_seconds))
        limit = max(1, int(limit))
        now = self._clock()
        with self._lock:
            admitted = self._admitted.setdefault(key, deque())
            while admitted and admitted[0] <= now - window:
                admitted.popleft()
            if len(admitted) >= limit:
                return max(0.0, admitted[0] + window - now)
            admitted.append(now)
            return 0.0

    def reset(self) -> None:
        with self._lock:
            self._admitted.clear()


trigger_throttle = TriggerThrottle()


def build_trigger_throttle(scope: str, limit: int, window_seconds: int):
    """FastAPI dependency refusing a trigger with 429 and Retry-After once the entity's window is full."""

    async def _dependency(request: Request):
        client_ip = request.client.host if request.client else 'unknown'
        entity_type = str(request.path_params.get('entity_type', '*'))
        wait = trigger_throttle.acquire((scope, client_ip, entity_type), limit, window_seconds)
        if not wait:
            return
        retry_after = max(1, math.ceil(wait))
        logger.warning('[throttle:%s] %s refused for %s, retry in %ss', scope, entity_type, client_ip, retry_after)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                'error_code': 'RATE_LIMITED',
                'message': f'Demasiadas solicitudes de sincronizacion para {entity_type}',
                'details': {
                    'entity_type': entity_type,
                    'limit': int(limit),
                    'window_seconds': int(window_seconds),
                    'retry_after_seconds': retry_after,
                },
            },
            headers={'Retry-After': str(retry_after)},
        )

    return _dependency
