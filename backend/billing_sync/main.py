import time
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing_sync.api.v1.router import router as v1_router
from billing_sync.core.config import settings
from billing_sync.core.logging_config import configure_logging, log_request, structured_log
from billing_sync.core.prod_check import validate_production_config
from billing_sync.db.bootstrap import bootstrap_database

DEFAULT_ORIGINS = ['http://localhost:8080', 'http://127.0.0.1:8080']


def _allowed_origins() -> list[str]:
    raw = (settings.cors_origins or '').strip()
    if not raw or raw == '*':
        return list(DEFAULT_ORIGINS)
    return [o.strip() for o in raw.split(',') if o.strip()]


def _trace_id(request: Request) -> str:
    return getattr(request.state, 'trace_id', None) or request.headers.get('x-trace-id') or str(uuid.uuid4())


def _error(request: Request, status_code: int, error_code: str, message: str, details=None, headers=None) -> JSONResponse:
    trace_id = _trace_id(request)
    body = {'error_code': error_code, 'message': message, 'details': details, 'trace_id': trace_id}
    return JSONResponse(status_code=status_code, content=body, headers={**(headers or {}), 'x-trace-id': trace_id})


async def trace_and_logging(request: Request, call_next):
    request.state.trace_id = request.headers.get('x-trace-id') or str(uuid.uuid4())
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        structured_log(
            'error',
            'request_failed',
            trace_id=request.state.trace_id,
            duration_ms=(time.perf_counter() - start) * 1000,
            endpoint=f'{request.method} {request.url.path}',
            error=str(exc),
        )
        return _error(request, 500, 'INTERNAL_ERROR', 'Error interno')
    latency = round((time.perf_counter() - start) * 1000, 2)
    log_request(request.url.path, request.method, request.state.trace_id, latency, response.status_code)
    response.headers['x-trace-id'] = request.state.trace_id
    response.headers['x-latency-ms'] = str(latency)
    return response


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, dict) else {'message': str(exc.detail)}
    return _error(
        request,
        exc.status_code,
        str(detail.get('error_code') or 'HTTP_ERROR'),
        str(detail.get('message') or 'HTTP Error'),
        detail.get('details'),
        headers=getattr(exc, 'headers', None),
    )


async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [{'loc': list(e.get('loc', ())), 'msg': e.get('msg'), 'type': e.get('type')} for e in exc.errors()]
    return _error(request, 422, 'INVALID_PAYLOAD', 'Payload invalido', {'errors': errors})


def create_app() -> FastAPI:
    configure_logging()
    if settings.app_env != 'prod' and not settings.db_bootstrap_on_start:
        bootstrap_database()

    application = FastAPI(title=settings.app_name, version='1.0.0')
    application.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=['GET', 'POST'],
        allow_headers=['*'],
    )
    application.middleware('http')(trace_and_logging)
    application.add_exception_handler(StarletteHTTPException, http_exception_handler)
    application.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    application.include_router(v1_router)

    @application.on_event('startup')
    def _startup_checks() -> None:
        validate_production_config()
        if settings.db_bootstrap_on_start:
            bootstrap_database()

    return application


app = create_app()
