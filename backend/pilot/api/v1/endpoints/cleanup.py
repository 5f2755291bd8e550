from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from pilot.api.deps import get_services
from pilot.core.logging_config import logger
from pilot.services.service_container import ServiceContainer

router = APIRouter(tags=["Cleanup"])


@router.post("/cleanup")
async def cleanup_orphaned_containers(services: ServiceContainer = Depends(get_services)):
    """Remove every session container, including ones this process no longer tracks"""
    logger.info("[CleanupAPI] Orphan cleanup requested")
    report = await services.orchestrator.reap_orphans()

    if report.fatal:
        failure = report.failures[0]
        return JSONResponse(status_code=500, content={"success": False, "error": failure.error})

    return {
        "success": True,
        "message": "Orphaned containers cleaned up successfully",
        "degraded": report.degraded,
        "report": report.to_dict(),
    }
