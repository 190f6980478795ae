import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from billing_sync.core.deps import cron_trigger_throttle, require_cron_credentials
from billing_sync.core.errors import SyncAlreadyRunning, SyncError
from billing_sync.schemas.common import ErrorBody
from billing_sync.schemas.sync import SyncRunOut, SyncRunsOut
from billing_sync.services.sync_entities import SYNC_ENTITY_TYPES
from billing_sync.services.sync_service import SyncService

router = APIRouter()
logger = logging.getLogger(__name__)

REST_CALLER = 'restApi'
ERROR_RESPONSES = {code: {'model': ErrorBody} for code in (401, 404, 409, 429, 500)}


def _known_entity(entity_type: str) -> str:
    normalized = str(entity_type or '').strip().lower()
    if normalized not in SYNC_ENTITY_TYPES:
        raise HTTPException(
            status_code=404,
            detail={
                'error_code': 'SYNC_ENTITY_NOT_FOUND',
                'message': f'Tipo de sincronizacion desconocido: {entity_type}',
                'details': {'allowed': list(SYNC_ENTITY_TYPES)},
            },
        )
    return normalized


@router.get('/sync/runs', response_model=SyncRunsOut, responses=ERROR_RESPONSES)
def sync_runs(
    entity_type: str | None = Query(default=None, min_length=3, max_length=32),
    limit: int = Query(default=50, ge=1, le=500),
    _user: str = Depends(require_cron_credentials),
):
    normalized = _known_entity(entity_type) if entity_type else None
    return {'items': SyncService.recent_runs(limit=limit, entity_type=normalized)}


@router.post('/sync/{entity_type}', response_model=SyncRunOut, responses=ERROR_RESPONSES)
def run_sync(
    entity_type: str,
    _rl=Depends(cron_trigger_throttle),
    _user: str = Depends(require_cron_credentials),
):
    """Run one sync synchronously and return its summary. Per-record failures are only counted."""
    normalized = _known_entity(entity_type)
    try:
        summary = SyncService.run(normalized, REST_CALLER)
    except SyncAlreadyRunning as exc:
        raise HTTPException(
            status_code=409,
            detail={'error_code': 'SYNC_ALREADY_RUNNING', 'message': str(exc), 'details': None},
        )
    except SyncError as exc:
        logger.error('[sync:%s] triggered run failed: %s', normalized, exc)
        raise HTTPException(
            status_code=500,
            detail={'error_code': 'SYNC_FAILED', 'message': 'La sincronizacion fallo', 'details': None},
        )
    return summary.as_dict()
