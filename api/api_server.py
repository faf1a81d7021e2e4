"""
Dehazing API Server
====================
FastAPI adapter layer that exposes the dehazing pipeline over HTTP.

This module provides HTTP endpoints to:
1. Upload an image (kept in memory)
2. Trigger processing (runs the shared pipeline in the background)
3. Poll job status and progress stage
4. Download the PNG result

The app owns one DehazingPipeline; runs are serialized with an asyncio lock
so the pipeline never sees concurrent calls.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, UploadFile, HTTPException, BackgroundTasks, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from core.errors import DehazingError
from core.pipeline import DehazingPipeline, PipelineConfig, SourceImage

from .schemas import (
    UploadResponse, ProcessRequest, StatusResponse, HealthResponse, JobState
)
from .job_manager import JobManager

logger = logging.getLogger(__name__)

# === Configuration ===
MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
CHUNK_SIZE = 1024 * 1024


# === Helper Functions ===

def validate_file(file: UploadFile) -> None:
    """Validate uploaded file type."""
    if not file.content_type or not file.content_type.startswith("image/"):
        raise HTTPException(
            status_code=400,
            detail=f"Invalid file type: {file.content_type}. Please select an image file"
        )


def download_stem(filename: Optional[str]) -> str:
    """Uploaded file name without extension, reduced to header-safe characters."""
    if not filename:
        return ""
    stem = Path(filename).stem
    return "".join(c if c.isascii() and (c.isalnum() or c in "-_.") else "_" for c in stem)


async def process_job_background(app: FastAPI, job_id: str) -> None:
    """Run the shared pipeline for one job, recording progress on it."""
    job_manager: JobManager = app.state.job_manager
    pipeline: DehazingPipeline = app.state.pipeline

    job = job_manager.get_job(job_id)
    if not job or job.source is None:
        return

    async with app.state.run_lock:
        try:
            result = await pipeline.run(
                job.source,
                on_progress=lambda event: job_manager.record_progress(job_id, event)
            )
        except DehazingError as e:
            logger.warning("[API] Job %s failed: %s", job_id, e)
            job_manager.fail(job_id, str(e), stage=e.stage)
            return

    job_manager.complete(job_id, result)
    logger.info("[API] Job %s completed (%s)", job_id, result.strategy.value)


def create_app(pipeline: Optional[DehazingPipeline] = None) -> FastAPI:
    """Build the API application around a pipeline instance."""
    app = FastAPI(
        title="Dehazing API",
        description="Single image dehazing with accelerated model and fallback transform",
        version="1.0.0"
    )

    # Enable CORS for frontend access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins for local development
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.pipeline = pipeline or DehazingPipeline(PipelineConfig.from_env())
    app.state.job_manager = JobManager()
    app.state.run_lock = asyncio.Lock()

    # === API Endpoints ===

    @app.post("/api/upload", response_model=UploadResponse)
    async def upload_file(request: Request, file: UploadFile = File(...)):
        """
        Upload an image for processing.

        Accepts: any image/* type
        Max size: 10MB

        Returns job_id for tracking.
        """
        validate_file(file)

        chunks = []
        total_size = 0
        while chunk := await file.read(CHUNK_SIZE):
            total_size += len(chunk)
            if total_size > MAX_FILE_SIZE:
                raise HTTPException(
                    status_code=413,
                    detail="File too large. Maximum size: 10MB"
                )
            chunks.append(chunk)

        source = SourceImage(data=b"".join(chunks), media_type=file.content_type)
        job = request.app.state.job_manager.create_job(file.filename, source)

        return UploadResponse(job_id=job.job_id, filename=file.filename, size=source.size)

    @app.post("/api/process", response_model=StatusResponse)
    async def process_file(body: ProcessRequest, request: Request, background_tasks: BackgroundTasks):
        """
        Start processing an uploaded image.

        The processing runs in the background (non-blocking).
        Poll /api/status/{job_id} to check progress.
        """
        job_manager: JobManager = request.app.state.job_manager
        job = job_manager.get_job(body.job_id)

        if not job:
            raise HTTPException(status_code=404, detail="Job not found")

        if job.state not in [JobState.UPLOADED, JobState.FAILED] or job.source is None:
            raise HTTPException(
                status_code=409,
                detail=f"Job cannot be processed in state: {job.state.value}"
            )

        job_manager.queue_job(body.job_id)
        background_tasks.add_task(process_job_background, request.app, body.job_id)

        return StatusResponse(job_id=job.job_id, state=JobState.QUEUED, progress=0)

    @app.get("/api/status/{job_id}", response_model=StatusResponse)
    async def get_status(job_id: str, request: Request):
        """
        Get the current status of a job.

        States: uploaded, queued, processing, completed, failed
        Progress: 0-100
        """
        job = request.app.state.job_manager.get_job(job_id)

        if not job:
            raise HTTPException(status_code=404, detail="Job not found")

        return StatusResponse(
            job_id=job.job_id,
            state=job.state,
            stage=job.stage,
            progress=job.progress,
            strategy=job.result.strategy.value if job.result else None,
            error=job.error,
            failed_stage=job.failed_stage
        )

    @app.get("/api/result/{job_id}")
    async def get_result(job_id: str, request: Request):
        """
        Download the dehazed PNG.

        Only available after job state is 'completed'.
        """
        job = request.app.state.job_manager.get_job(job_id)

        if not job:
            raise HTTPException(status_code=404, detail="Job not found")

        if job.state != JobState.COMPLETED or job.result is None:
            raise HTTPException(
                status_code=400,
                detail=f"Result not ready. Current state: {job.state.value}"
            )

        stem = download_stem(job.filename) or job.job_id
        return Response(
            content=job.result.data,
            media_type=job.result.media_type,
            headers={"Content-Disposition": f'attachment; filename="dehazed_{stem}.png"'}
        )

    @app.delete("/api/jobs/{job_id}", status_code=204)
    async def delete_job(job_id: str, request: Request):
        """Discard a job and release its image data."""
        if request.app.state.job_manager.remove(job_id) is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return Response(status_code=204)

    @app.get("/api/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint."""
        from runtime.ai.ai_inference import get_device_info

        device_info = get_device_info()
        strategy = request.app.state.pipeline.strategy

        return HealthResponse(
            status="ok",
            service="Dehazing API",
            providers=device_info['providers'],
            accelerated_available=device_info['accelerated_available'],
            strategy=strategy.value if strategy else None
        )

    return app


app = create_app()


# === Run Server ===

if __name__ == "__main__":
    import uvicorn

    from logging_utils import configure_logging

    configure_logging()
    uvicorn.run(
        "api.api_server:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
