import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from billing_sync.core.config import settings
from billing_sync.core.rate_limit import build_trigger_throttle

basic_scheme = HTTPBasic(auto_error=False)
cron_trigger_throttle = build_trigger_throttle(
    'cron_sync',
    settings.write_rate_limit,
    settings.write_rate_window_seconds,
)


def require_cron_credentials(credentials: HTTPBasicCredentials | None = Depends(basic_scheme)) -> str:
    """HTTP Basic guard for the sync trigger endpoints; returns the user name."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={'error_code': 'UNAUTHORIZED', 'message': 'Faltan credenciales', 'details': None},
            headers={'WWW-Authenticate': 'Basic'},
        )
    user_ok = secrets.compare_digest(credentials.username.encode('utf-8'), str(settings.cron_basic_user).encode('utf-8'))
    password_ok = secrets.compare_digest(credentials.password.encode('utf-8'), str(settings.cron_basic_password).encode('utf-8'))
    if not (user_ok and password_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={'error_code': 'UNAUTHORIZED', 'message': 'Credenciales invalidas', 'details': None},
            headers={'WWW-Authenticate': 'Basic'},
        )
    return credentials.username
