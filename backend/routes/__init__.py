"""FastAPI API endpoints under /api.

Endpoint groups: sessions (CRUD, chat stream, quick start, logbook,
export) and settings (health, collection import/export, user context,
preferences, personas).
"""

from fastapi import APIRouter

from .sessions import router as sessions_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(sessions_router)
