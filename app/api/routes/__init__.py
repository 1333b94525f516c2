"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.spots import router as spots_router
from app.api.routes.sessions import router as sessions_router
from app.api.routes.handshakes import router as handshakes_router
from app.api.routes.credits import router as credits_router

router = APIRouter()

router.include_router(spots_router, prefix="/spots", tags=["spots"])
router.include_router(sessions_router, prefix="/sessions", tags=["sessions"])
router.include_router(handshakes_router, prefix="/handshakes", tags=["handshakes"])
router.include_router(credits_router, prefix="/credits", tags=["credits"])
