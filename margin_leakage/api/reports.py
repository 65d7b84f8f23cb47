# margin_leakage/api/reports.py
"""Margin report store, canonical view and Excel download."""

import io

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ..analysis.report_builder import normalize_margin_analysis
from ..analysis.report_excel import build_report_workbook
from ..core.dependencies import get_analysis_service, get_user_id
from ..models.analysis import RunCreateRequest, RunCreateResponse, SaveReportRequest
from ..services.analysis_service import MarginAnalysisService

router = APIRouter(prefix="/api/margin-report", tags=["reports"])

@router.post("", response_model=RunCreateResponse)
def create_run(
    request: RunCreateRequest,
    user_id: str = Depends(get_user_id),
    service: MarginAnalysisService = Depends(get_analysis_service),
):
    """Create a run record for a file."""
    return RunCreateResponse(runId=service.create_run(request.fileId, user_id))

@router.post("/save")
def save_report(
    request: SaveReportRequest,
    user_id: str = Depends(get_user_id),
    service: MarginAnalysisService = Depends(get_analysis_service),
):
    service.save_report(request.runId, user_id, request.analysis)
    return {"success": True}

@router.get("/{run_id}")
def get_report(
    run_id: str,
    user_id: str = Depends(get_user_id),
    service: MarginAnalysisService = Depends(get_analysis_service),
):
    return service.get_report(run_id, user_id)

def _canonical(service: MarginAnalysisService, run_id: str, user_id: str) -> dict:
    report = service.get_report(run_id, user_id)
    analysis = report["analysis"] if isinstance(report["analysis"], dict) else {}
    return normalize_margin_analysis({**analysis, "meta": analysis.get("meta") or report["meta"], "runId": run_id})

@router.get("/{run_id}/view")
def view_report(
    run_id: str,
    user_id: str = Depends(get_user_id),
    service: MarginAnalysisService = Depends(get_analysis_service),
):
    """Canonical loss tables for rendering a saved report."""
    return _canonical(service, run_id, user_id)

@router.get("/{run_id}/download")
def download_report(
    run_id: str,
    user_id: str = Depends(get_user_id),
    service: MarginAnalysisService = Depends(get_analysis_service),
):
    """Download the report as an Excel workbook."""
    xlsx_bytes = build_report_workbook(_canonical(service, run_id, user_id))
    return StreamingResponse(
        io.BytesIO(xlsx_bytes),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="margin_report_{run_id}.xlsx"'}
    )
