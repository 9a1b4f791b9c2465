from fastapi import APIRouter

from pagebridge.api.routes import diagnostics, health, match, sync, tasks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(diagnostics.router, prefix="/diagnostics", tags=["diagnostics"])
api_router.include_router(match.router, prefix="/match", tags=["matching"])
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(tasks.router, prefix="/tasks", tags=["tasks"])
