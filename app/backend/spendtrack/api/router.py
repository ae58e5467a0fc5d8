"""Top-level API router."""

from fastapi import APIRouter

from spendtrack.api.routes.admin import router as admin_router
from spendtrack.api.routes.alerts import router as alerts_router
from spendtrack.api.routes.health import router as health_router
from spendtrack.api.routes.projects import router as projects_router
from spendtrack.api.routes.users import router as users_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(projects_router)
api_router.include_router(users_router)
api_router.include_router(alerts_router)
api_router.include_router(admin_router)
