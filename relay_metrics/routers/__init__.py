# API routers for the relay metrics service

from fastapi import APIRouter

from .metrics import router as metrics_router
from .upload_events import router as upload_events_router
from .webhooks import router as webhooks_router

router = APIRouter()
router.include_router(metrics_router)
router.include_router(upload_events_router)
router.include_router(webhooks_router)
