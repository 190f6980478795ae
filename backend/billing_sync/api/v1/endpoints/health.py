import mysql.connector
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from billing_sync.core.config import settings
from billing_sync.db.session import SessionLocal
from billing_sync.services.stores import MysqlSourceStore

router = APIRouter()

SERVICE_NAME = 'billing-sync-api-v1'


def _check_mysql_ok() -> bool | None:
    """
    Verifica conexión a MySQL (fuente legacy de la sincronizacion).
    Retorna True si OK, False si falla, None si no está configurado.
    """
    if not all(str(v or '').strip() for v in (settings.mysql_host, settings.mysql_user, settings.mysql_database)):
        return None
    try:
        return MysqlSourceStore().ping()
    except mysql.connector.Error:
        return False


@router.get('/health')
def health():
    """
    Health check. 200 with db_ok true when the destination DB is reachable,
    503 otherwise. mysql_ok reports the legacy source (None when not configured).
    """
    db_ok = False
    db = SessionLocal()
    try:
        db.execute(text('SELECT 1'))
        db_ok = True
    except SQLAlchemyError:
        db_ok = False
    finally:
        db.close()
    if not db_ok:
        return JSONResponse(
            status_code=503,
            content={'ok': False, 'service': SERVICE_NAME, 'db_ok': False, 'mysql_ok': None, 'message': 'Database unreachable'},
        )
    return {'ok': True, 'service': SERVICE_NAME, 'db_ok': True, 'mysql_ok': _check_mysql_ok()}
