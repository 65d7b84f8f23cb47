# margin_leakage/api/margin.py
"""Margin step endpoints and background pipeline runs."""

import json
import queue
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import StreamingResponse

from ..core.dependencies import get_analysis_service, get_user_id
from ..core.exceptions import SessionError
from ..models.analysis import ErrorResponse, PipelineSession, RunCreateRequest
from ..services.analysis_service import MarginAnalysisService
from ..utils.log_capture import COMPLETE_MARKER, ERROR_PREFIX, PROGRESS_PREFIX

router = APIRouter(prefix="/api/margin", tags=["margin"])

def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"

@router.post("/run", response_model=PipelineSession)
def start_margin_run(
    request: RunCreateRequest,
    user_id: str = Depends(get_user_id),
    service: MarginAnalysisService = Depends(get_analysis_service),
):
    """Start the five-step margin pipeline in the background."""
    return service.start_pipeline(request.fileId, user_id)

@router.get("/run/{run_id}", response_model=PipelineSession)
def get_margin_run(
    run_id: str,
    user_id: str = Depends(get_user_id),
    service: MarginAnalysisService = Depends(get_analysis_service),
):
    session = service.get_session(run_id)
    if not session or session.user_id != user_id:
        raise SessionError(f"Run '{run_id}' not found")
    return session

@router.post("/run/{run_id}/retry", response_model=PipelineSession)
def retry_margin_run(
    run_id: str,
    user_id: str = Depends(get_user_id),
    service: MarginAnalysisService = Depends(get_analysis_service),
):
    """Resume a failed run from its first failed step."""
    return service.retry_pipeline(run_id, user_id)

@router.get("/logs/{run_id}")
async def stream_logs(run_id: str, service: MarginAnalysisService = Depends(get_analysis_service)):
    """Stream pipeline logs using Server-Sent Events."""
    def generate():
        if run_id not in service.log_streams:
            yield _sse({'error': 'Session not found'})
            return

        log_queue = service.log_streams[run_id]
        yield _sse({'type': 'log', 'message': '📡 SSE connection established'})

        while True:
            try:
                message = log_queue.get(timeout=1)

                if message == COMPLETE_MARKER:
                    yield _sse({'type': 'complete', 'message': 'Analysis completed successfully'})
                    break
                elif message.startswith(ERROR_PREFIX):
                    yield _sse({'type': 'error', 'message': message[len(ERROR_PREFIX):]})
                    break
                elif message.startswith(PROGRESS_PREFIX):
                    parts = message.split("__", 3)
                    try:
                        yield _sse({'type': 'progress', 'percentage': int(parts[2]), 'message': parts[3]})
                    except (IndexError, ValueError):
                        yield _sse({'type': 'log', 'message': message})
                else:
                    yield _sse({'type': 'log', 'message': message})

            except queue.Empty:
                yield _sse({'type': 'heartbeat'})
                continue

        # Cleanup
        if service.log_streams.get(run_id) is log_queue:
            del service.log_streams[run_id]

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
    )

@router.post(
    "/{step}",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def run_margin_step(
    step: str,
    fileId: Optional[str] = Query(None),
    body: Optional[Dict[str, Any]] = Body(None),
    user_id: str = Depends(get_user_id),
    service: MarginAnalysisService = Depends(get_analysis_service),
):
    """Run one margin step (pricing, costs, leakage, segments, recommendations) on a stored file."""
    body = body or {}
    file_id = fileId or body.get("fileId")
    if step == "pricing":
        file_id = file_id or body.get("id") or body.get("filename")
    return service.run_step(step, file_id, user_id, body)
