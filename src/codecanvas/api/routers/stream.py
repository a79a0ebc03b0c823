from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional

from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ...services.registry import get_registry
from ...services.stream_session import QueueEventSink, StreamOptions

LOG = logging.getLogger("codecanvas.api")

router = APIRouter(prefix="/chat", tags=["chat"])


class StreamOptionsModel(BaseModel):
    enable_artifact_processing: bool = True
    enable_building: bool = True
    enable_preview: bool = True
    compression: bool = False
    enable_security: bool = True


class ChatStreamRequest(BaseModel):
    prompt: str = Field(default="", description="User message forwarded to the language model")
    history: List[Dict[str, str]] = Field(default_factory=list)
    content: Optional[str] = Field(
        default=None,
        description="Pre-generated model text to replay instead of calling the language model",
    )
    chunk_size: int = Field(default=64, ge=1, le=65536)
    options: StreamOptionsModel = Field(default_factory=StreamOptionsModel)


async def replay_chunks(text: str, chunk_size: int) -> AsyncIterator[str]:
    for start in range(0, len(text), chunk_size):
        yield text[start : start + chunk_size]
        await asyncio.sleep(0)


@router.post("/stream", response_class=StreamingResponse)
async def chat_stream(req: ChatStreamRequest) -> StreamingResponse:
    registry = get_registry()
    orchestrator = registry.orchestrator
    sink = QueueEventSink()
    session = orchestrator.create_session(
        sink, options=StreamOptions(**req.options.model_dump()), prompt=req.prompt or None
    )

    if req.content is not None:
        source = replay_chunks(req.content, req.chunk_size)
    else:
        client = registry.model_client
        source = client.stream(client.build_messages(req.prompt, req.history))
    worker = asyncio.create_task(orchestrator.run(session, source))

    async def event_stream():
        try:
            async for frame in sink.frames():
                yield frame
        finally:
            if not session.terminal:
                LOG.info("client_disconnected", extra={"session_id": session.id})
                sink.disconnect()
            if worker.done() and not worker.cancelled() and worker.exception() is not None:
                LOG.error("stream_worker_failed", extra={"session_id": session.id, "err": str(worker.exception())})

    headers = {
        "Cache-Control": "no-cache, no-transform",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
        "X-Stream-Session-Id": session.id,
    }
    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)
