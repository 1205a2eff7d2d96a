"""Analysis endpoints: stream a "三重一大" analysis, run it to completion, or cancel it."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from src.analysis.dify_client import start_analysis, stop_analysis
from src.analysis.models import AnalysisHandle, ErrorEvent, StreamEvent
from src.analysis.pipeline import run_analysis
from src.api.models import (
    AnalysisRequest,
    AnalysisRunResponse,
    CancelRequest,
    CancelResponse,
    DecisionItem,
    GroupedResultsResponse,
    PersistReportResponse,
)
from src.config import settings
from src.errors import ConfigurationError, FileOwnershipError

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def _validate(request: AnalysisRequest) -> None:
    if not request.file_ids:
        raise HTTPException(status_code=400, detail="fileIds must not be empty")
    if not settings.dify_api_key:
        raise HTTPException(
            status_code=500,
            detail="Analysis is not configured: DIFY_API_KEY is missing.",
        )


async def _event_stream(request: AnalysisRequest) -> AsyncIterator[str]:
    """Forward decoded provider events as SSE lines, starting with a ``start`` event."""
    queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
    yield _sse({"event": "start"})

    handle: AnalysisHandle | None = None
    try:
        # start_analysis cancels its reader itself if we are cancelled while waiting.
        handle = await start_analysis(request.file_ids, request.user_id, queue.put_nowait)
        # Sentinel once the background reader finishes, however it ends.
        handle.future.add_done_callback(lambda _: queue.put_nowait(None))
        while (event := await queue.get()) is not None:
            yield _sse(event.to_dict())
    except ConfigurationError as exc:
        yield _sse(ErrorEvent(message=exc.message).to_dict())
    finally:
        # Client went away: stop reading locally. The provider task keeps
        # running unless /api/analysis/cancel is called.
        if handle is not None and not handle.future.done():
            handle.future.cancel()


@router.post("/api/analysis/stream")
async def stream_analysis_events(request: AnalysisRequest) -> StreamingResponse:
    """Start a streaming analysis and relay its events as ``text/event-stream``."""
    _validate(request)
    logger.info("Streaming analysis of %d file(s) for %s", len(request.file_ids), request.user_id)
    return StreamingResponse(
        _event_stream(request),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/api/analysis/cancel", response_model=CancelResponse)
async def cancel_analysis(request: CancelRequest) -> CancelResponse:
    """Ask the provider to stop a running analysis task (best effort)."""
    success = await stop_analysis(request.task_id, request.user_id)
    return CancelResponse(success=success)


@router.post("/api/projects/{project_id}/analysis", response_model=AnalysisRunResponse)
async def analyse_project_files(project_id: str, request: AnalysisRequest) -> AnalysisRunResponse:
    """Analyse project files to completion, then store and return the grouped items."""
    _validate(request)

    try:
        outcome = await run_analysis(project_id, request.file_ids, request.user_id)
    except ConfigurationError as exc:
        raise HTTPException(status_code=500, detail=exc.message) from exc
    except FileOwnershipError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc

    if outcome.error is not None:
        raise HTTPException(
            status_code=502,
            detail=f"Analysis failed: {outcome.error.message}",
        )

    return AnalysisRunResponse(
        task_id=outcome.task_id,
        results=GroupedResultsResponse.from_groups(outcome.groups),
        persistence=PersistReportResponse.from_report(outcome.report),
        unattributed=[DecisionItem.from_item(i) for i in outcome.unattributed],
    )
