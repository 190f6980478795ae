from fastapi import APIRouter

from billing_sync.api.v1.endpoints import cron, health

router = APIRouter(prefix='/api/v1')
router.include_router(health.router, tags=['health'])
router.include_router(cron.router, prefix='/cron', tags=['cron'])
