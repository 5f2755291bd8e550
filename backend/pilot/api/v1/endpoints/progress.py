"""
Experiment progress API

POST /experiment-progress looks up a running execution by input hash so a
repeated request can attach instead of starting over.
GET /experiment-progress/{execution_id} streams newline-delimited
{timestamp, message, type} records: full history first, then live messages,
ending when the execution completes or the client goes away.
"""

import asyncio
import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from pilot.api.deps import get_services
from pilot.core.exceptions import ExecutionNotFoundError
from pilot.core.logging_config import logger
from pilot.services.progress_store import ProgressMessage
from pilot.services.service_container import ServiceContainer

router = APIRouter(prefix="/experiment-progress", tags=["Progress"])

# How often an idle stream re-checks for disconnect or expiry
STREAM_POLL_SECONDS = 1.0


class ProgressLookupRequest(BaseModel):
    inputHash: str = Field(..., description="Dedup key of the triggering input")


def _ndjson(message: ProgressMessage) -> str:
    return json.dumps(message.to_dict()) + "\n"


@router.post("")
async def lookup_execution(
    body: ProgressLookupRequest,
    services: ServiceContainer = Depends(get_services),
):
    return {"executionId": services.progress_store.lookup_by_dedup_key(body.inputHash)}


@router.get("/{execution_id}")
async def stream_progress(
    execution_id: str,
    request: Request,
    services: ServiceContainer = Depends(get_services),
):
    store = services.progress_store
    if not store.exists(execution_id):
        raise ExecutionNotFoundError(execution_id)

    loop = asyncio.get_running_loop()
    queue: "asyncio.Queue[ProgressMessage]" = asyncio.Queue()

    def on_message(message: ProgressMessage) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            queue.put_nowait(message)
        else:
            loop.call_soon_threadsafe(queue.put_nowait, message)

    # No await between the snapshot and the subscription, so nothing is lost
    history = store.get_messages(execution_id)
    unsubscribe = store.subscribe(execution_id, on_message, replay_existing=False)

    async def event_stream():
        try:
            for message in history:
                yield _ndjson(message)

            while True:
                if queue.empty() and (store.is_completed(execution_id) or not store.exists(execution_id)):
                    break
                if await request.is_disconnected():
                    logger.debug(f"[ProgressAPI] Client left stream {execution_id}")
                    break
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=STREAM_POLL_SECONDS)
                except asyncio.TimeoutError:
                    continue
                yield _ndjson(message)
        finally:
            unsubscribe()

    return StreamingResponse(event_stream(), media_type="application/x-ndjson")
