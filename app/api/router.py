from fastapi import APIRouter

from app.api.jobs import router as jobs_router
from app.api.last_wish import router as last_wish_router

# Everything except /health lives under /api and needs a session cookie
api_router = APIRouter(prefix="/api")
api_router.include_router(last_wish_router, tags=["last-wish"])
api_router.include_router(jobs_router, tags=["jobs"])
