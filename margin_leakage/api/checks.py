# margin_leakage/api/checks.py
"""Free-form analysis and rule-based data checks."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..core.dependencies import get_analysis_service, get_user_id
from ..models.analysis import AnalyzeRequest, LogicalCheckRequest, OutlierCheckRequest
from ..services.analysis_service import MarginAnalysisService

router = APIRouter(prefix="/api", tags=["checks"])

@router.post("/analyze")
def analyze_file(
    request: Optional[AnalyzeRequest] = None,
    fileId: Optional[str] = Query(None),
    user_id: str = Depends(get_user_id),
    service: MarginAnalysisService = Depends(get_analysis_service),
):
    """Free-form insights over the whole dataset."""
    request = request or AnalyzeRequest()
    return service.analyze(fileId or request.fileId, user_id, request.customPrompt)

@router.post("/run/logical")
def run_logical_checks(
    request: LogicalCheckRequest,
    user_id: str = Depends(get_user_id),
    service: MarginAnalysisService = Depends(get_analysis_service),
):
    """Check rows against business rules such as net_price<=0."""
    return service.run_logical(request.fileId, user_id, request.rules, request.runId)

@router.post("/run/outliers")
def run_outlier_checks(
    request: OutlierCheckRequest,
    user_id: str = Depends(get_user_id),
    service: MarginAnalysisService = Depends(get_analysis_service),
):
    return service.run_outliers(
        request.fileId, user_id, request.column, request.methods, request.thresholds, request.runId
    )
