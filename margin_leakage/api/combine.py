# margin_leakage/api/combine.py
"""Session combine endpoint."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..core.dependencies import get_combine_service, get_user_id
from ..models.analysis import CombineRequest
from ..services.combine_service import CombineService

router = APIRouter(prefix="/api", tags=["combine"])

@router.post("/combine")
def combine_session(
    request: CombineRequest,
    user_id: str = Depends(get_user_id),
    service: CombineService = Depends(get_combine_service),
):
    """Combine every file uploaded in a session into one workbook."""
    result = service.combine(request.sessionId, user_id)
    return JSONResponse(
        content={"fileId": result.file_id},
        headers={
            "X-Exec-Time": str(result.exec_time_ms),
            "X-Response-Size": str(result.response_size),
        },
    )
