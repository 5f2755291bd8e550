"""
Container API - file browsing and picker delivery for a session's sandbox

1. List a directory → GET /container/{session_id}/files?path=
2. Read a file → GET /container/{session_id}/file-content?path=
3. Picker support → GET /container/{session_id}/inject-picker
4. Picker script → POST /container/{session_id}/inject-picker
"""

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from pilot.api.deps import get_services
from pilot.core.config import settings
from pilot.core.exceptions import ResourceNotFoundError
from pilot.core.logging_config import logger
from pilot.modules.picker.picker_support import (
    get_injection_script,
    get_inline_picker_script,
    get_post_message_config,
)
from pilot.schemas.picker import PickerScriptRequest, PickerScriptResponse
from pilot.services.service_container import ServiceContainer

router = APIRouter(prefix="/container", tags=["Container"])


class FileInfo(BaseModel):
    """File information"""
    name: str
    path: str
    type: str  # "file" or "directory"
    size: int


@router.get("/{session_id}/files", response_model=List[FileInfo])
async def list_files(
    session_id: str,
    path: Optional[str] = Query(None, description="Directory to list; defaults to the workspace"),
    services: ServiceContainer = Depends(get_services),
):
    path = path or settings.WORKSPACE_DIR
    logger.info(f"[ContainerAPI] Listing {path} for {session_id}")
    try:
        entries = await services.container_manager.list_directory(session_id, path)
    except ResourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return [FileInfo(**entry.to_dict()) for entry in entries]


@router.get("/{session_id}/file-content", response_class=PlainTextResponse)
async def get_file_content(
    session_id: str,
    path: Optional[str] = Query(None, description="Absolute file path inside the sandbox"),
    services: ServiceContainer = Depends(get_services),
):
    if not path:
        raise HTTPException(status_code=400, detail="Path parameter is required")
    try:
        content = await services.container_manager.read_file(session_id, path)
    except ResourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return PlainTextResponse(content)


@router.get("/{session_id}/inject-picker")
async def get_picker_support(
    session_id: str,
    services: ServiceContainer = Depends(get_services),
):
    session = services.session_store.get_session(session_id)
    if session is None:
        return JSONResponse(status_code=404, content={"supported": False, "reason": "Session not found"})
    if not session.container_id:
        return JSONResponse(status_code=400, content={"supported": False, "reason": "Container not available"})

    result = await services.picker_support.is_supported(session_id, settings.PREVIEW_CONTAINER_PORT)
    if result["supported"]:
        return {
            "supported": True,
            "message": "React component picker is available",
            "details": result["details"],
            "config": get_post_message_config(),
        }
    return {"supported": False, "reason": result["reason"], "details": result["details"]}


@router.post("/{session_id}/inject-picker", response_model=PickerScriptResponse)
async def get_picker_script(
    session_id: str,
    request: Request,
    body: Optional[PickerScriptRequest] = None,
    services: ServiceContainer = Depends(get_services),
):
    if services.session_store.get_session(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")

    inline = body.inline if body else False
    if inline:
        script = get_inline_picker_script()
    else:
        base_url = str(request.base_url).rstrip("/")
        script = get_injection_script(base_url)

    return PickerScriptResponse(
        script=script,
        inline=inline,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
