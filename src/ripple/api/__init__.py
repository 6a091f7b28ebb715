"""API route aggregation.

All routers registered here get mounted in main.py on the public app.
The internal relay endpoint is not part of this router;
it lives on the internal app only.
"""

from fastapi import APIRouter

from ripple.api.events import router as events_router
from ripple.api.health import router as health_router
from ripple.api.notifications import router as notifications_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(events_router, tags=["events"])
api_router.include_router(notifications_router, tags=["notifications"])
