# margin_leakage/models/analysis.py
"""Pydantic models for analysis requests and responses."""

from typing import List, Dict, Optional, Any
from pydantic import BaseModel, Field
from datetime import datetime

class CombineRequest(BaseModel):
    """Combine every file uploaded in a session."""
    sessionId: Optional[str] = Field(None, description="Upload session identifier")

class UploadResponse(BaseModel):
    """Stored upload."""
    message: str = Field(..., description="Status message")
    fileId: str = Field(..., description="Blob store identifier")
    filename: str = Field(..., description="Original file name")
    sessionId: str = Field(..., description="Upload session identifier")

class FileSummary(BaseModel):
    """One stored file owned by the caller."""
    id: str = Field(..., description="Blob store identifier")
    filename: Optional[str] = Field(None, description="Stored file name")
    uploadDate: Optional[datetime] = Field(None, description="Upload time")
    contentType: Optional[str] = Field(None, description="Declared content type")

class AnalyzeRequest(BaseModel):
    """Free-form dataset analysis."""
    fileId: Optional[str] = Field(None, description="File to analyze")
    customPrompt: Optional[str] = Field(None, description="Replaces the default analysis instructions")

class LogicalCheckRequest(BaseModel):
    """Rule-based data checks."""
    fileId: Optional[str] = Field(None, description="File to check")
    rules: Optional[List[str]] = Field(None, description="Rules such as net_price<=0")
    runId: Optional[str] = Field(None, description="Run to attach the results to")

class OutlierCheckRequest(BaseModel):
    """Outlier detection on one column."""
    fileId: Optional[str] = Field(None, description="File to check")
    column: Optional[str] = Field(None, description="Column to inspect")
    methods: Optional[List[str]] = Field(None, description="Detection methods")
    thresholds: Optional[Dict[str, float]] = Field(None, description="Method thresholds")
    runId: Optional[str] = Field(None, description="Run to attach the results to")

class RunCreateRequest(BaseModel):
    """Create a run for a file."""
    fileId: Optional[str] = Field(None, description="File the run analyzes")

class RunCreateResponse(BaseModel):
    runId: str = Field(..., description="Generated run identifier")

class SaveReportRequest(BaseModel):
    """Persist the accumulated pipeline result."""
    runId: Optional[str] = Field(None, description="Run identifier")
    analysis: Optional[Any] = Field(None, description="Final report")

class StepState(BaseModel):
    """Progress of one margin step within a background run."""
    status: str = Field("pending", description="pending, loading, success or error")
    summary: Optional[str] = Field(None, description="One-line result summary")
    error: Optional[str] = Field(None, description="Failure message")

class PipelineSession(BaseModel):
    """Background margin pipeline run."""
    run_id: str = Field(..., description="Run identifier")
    file_id: str = Field(..., description="File being analyzed")
    user_id: str = Field(..., description="Owner of the file")
    status: str = Field(..., description="Session status")
    progress: int = Field(0, description="Completed steps as a percentage")
    steps: Dict[str, StepState] = Field(default_factory=dict, description="Per-step state")
    error: Optional[str] = Field(None, description="First step failure")
    created_at: datetime = Field(default_factory=datetime.now, description="Session creation time")

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(..., description="Service status")
    version: str = Field(..., description="API version")
    services: Dict[str, bool] = Field(default_factory=dict, description="Which model backends are configured")
    timestamp: datetime = Field(default_factory=datetime.now, description="Response timestamp")

class ErrorResponse(BaseModel):
    """Error response model."""
    error: str = Field(..., description="Error message")
    details: Optional[str] = Field(None, description="Additional error details")
    type: Optional[str] = Field(None, description="Error type")
