"""
Session API

1. Set up a repository → POST /sessions
2. Poll status → GET /sessions/{session_id}/status
3. Tear down → DELETE /sessions/{session_id}/cleanup
4. Reclaim idle sessions → POST /sessions/cleanup-all
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from pilot.api.deps import get_services
from pilot.core.exceptions import SessionNotFoundError
from pilot.core.logging_config import logger
from pilot.services.service_container import ServiceContainer

router = APIRouter(prefix="/sessions", tags=["Sessions"])


class SetupSessionRequest(BaseModel):
    """Request to clone and run a repository in a new sandbox"""
    repoUrl: str = Field(..., description="GitHub repository URL")
    sessionId: Optional[str] = Field(None, description="Session id to use; generated when omitted")
    background: bool = Field(False, description="Run setup in the background and report via progress stream")


class CleanupAllRequest(BaseModel):
    maxInactivitySeconds: Optional[float] = Field(
        None, description="Override the configured inactivity threshold"
    )


@router.post("")
async def setup_session(
    body: SetupSessionRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Run the full setup, or start it in the background and return the execution id"""
    if body.background:
        return services.orchestrator.start_tracked_setup(body.repoUrl)

    result = await services.orchestrator.setup_repository(body.repoUrl, session_id=body.sessionId)
    return result.to_dict()


@router.get("/{session_id}/status")
async def get_session_status(
    session_id: str,
    services: ServiceContainer = Depends(get_services),
):
    session = services.session_store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.to_status_dict()


@router.delete("/{session_id}/cleanup")
async def cleanup_session(
    session_id: str,
    services: ServiceContainer = Depends(get_services),
):
    try:
        report = await services.orchestrator.cleanup_session(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")

    logger.info(f"[SessionsAPI] Session {session_id} cleaned up")
    return {
        "success": True,
        "message": "Session cleaned up successfully",
        "degraded": report.degraded,
        "report": report.to_dict(),
    }


@router.post("/cleanup-all")
async def cleanup_stale_sessions(
    body: Optional[CleanupAllRequest] = None,
    services: ServiceContainer = Depends(get_services),
):
    max_inactivity = body.maxInactivitySeconds if body else None
    session_ids = await services.orchestrator.cleanup_stale_sessions(max_inactivity)
    logger.info(f"[SessionsAPI] Stale sessions cleaned up: {len(session_ids)}")
    return {"success": True, "cleaned": len(session_ids), "sessionIds": session_ids}
