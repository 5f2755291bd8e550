from fastapi import APIRouter
from pilot.api.v1.endpoints import cleanup, containers, progress, sessions

api_router = APIRouter()

api_router.include_router(sessions.router)
api_router.include_router(containers.router)
api_router.include_router(progress.router)
api_router.include_router(cleanup.router)
