"""
Dehazing API - Pydantic Schemas
================================
Request/Response models for API endpoints.
"""

from pydantic import BaseModel
from typing import List, Optional
from enum import Enum


class JobState(str, Enum):
    """Job processing states."""
    UPLOADED = "uploaded"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# === Response Models ===

class UploadResponse(BaseModel):
    """Response after successful file upload."""
    job_id: str
    filename: str
    size: int


class ProcessRequest(BaseModel):
    """Request to start processing a job."""
    job_id: str


class StatusResponse(BaseModel):
    """Job status response."""
    job_id: str
    state: JobState
    stage: Optional[str] = None
    progress: int = 0
    strategy: Optional[str] = None
    error: Optional[str] = None
    failed_stage: Optional[str] = None


class HealthResponse(BaseModel):
    """Service health and backend capability."""
    status: str
    service: str
    providers: List[str] = []
    accelerated_available: bool = False
    strategy: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standardized error response."""
    error: str
    detail: Optional[str] = None
