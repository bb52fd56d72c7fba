"""FastAPI endpoints.

HTTP endpoints live under /api (health, settings, buffered chat). The
WebSocket session endpoint is mounted at /ws.
"""

from fastapi import APIRouter

from .chat import router as chat_router
from .session import router as ws_router  # noqa: F401
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(chat_router)
