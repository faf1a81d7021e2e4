"""
Dehazing API - Job Manager
===========================
In-memory job state tracker. Source bytes are released once a job completes;
finished jobs are evicted oldest-first when the tracker is full.
"""

import uuid
from collections import OrderedDict
from typing import Dict, Optional
from dataclasses import dataclass, field
from datetime import datetime

from core.pipeline import ResultArtifact, SourceImage
from core.progress import ProgressEvent

from .schemas import JobState

MAX_JOBS = 100

FINISHED_STATES = (JobState.COMPLETED, JobState.FAILED)


@dataclass
class Job:
    """Represents a processing job."""
    job_id: str
    filename: str
    source: Optional[SourceImage]
    state: JobState = JobState.UPLOADED
    stage: Optional[str] = None
    progress: int = 0
    result: Optional[ResultArtifact] = None
    error: Optional[str] = None
    failed_stage: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)


class JobManager:
    """
    In-memory job state tracker.

    Manages job lifecycle: uploaded → queued → processing → completed | failed

    Args:
        max_jobs: Jobs kept before the oldest finished ones are evicted
    """

    def __init__(self, max_jobs: int = MAX_JOBS):
        self.max_jobs = max_jobs
        self.jobs: Dict[str, Job] = OrderedDict()

    def create_job(self, filename: str, source: SourceImage) -> Job:
        """Create a new job after file upload."""
        job_id = str(uuid.uuid4())
        job = Job(job_id=job_id, filename=filename, source=source)
        self.jobs[job_id] = job
        self._evict()
        return job

    def _evict(self) -> None:
        # Jobs still waiting or running are never dropped
        excess = len(self.jobs) - self.max_jobs
        if excess <= 0:
            return
        finished = [job_id for job_id, job in self.jobs.items() if job.state in FINISHED_STATES]
        for job_id in finished[:excess]:
            del self.jobs[job_id]

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get job by ID."""
        return self.jobs.get(job_id)

    def remove(self, job_id: str) -> Optional[Job]:
        """Forget a job along with its source and result."""
        return self.jobs.pop(job_id, None)

    def queue_job(self, job_id: str) -> Optional[Job]:
        """Queue a job for processing, clearing any previous attempt."""
        job = self.jobs.get(job_id)
        if job:
            job.state = JobState.QUEUED
            job.stage = None
            job.progress = 0
            job.result = None
            job.error = None
            job.failed_stage = None
        return job

    def record_progress(self, job_id: str, event: ProgressEvent) -> Optional[Job]:
        """Apply a pipeline progress event to a job."""
        job = self.jobs.get(job_id)
        if job:
            job.state = JobState.PROCESSING
            job.stage = event.stage
            job.progress = event.progress
        return job

    def complete(self, job_id: str, result: ResultArtifact) -> Optional[Job]:
        job = self.jobs.get(job_id)
        if job:
            job.result = result
            job.source = None
            job.state = JobState.COMPLETED
            job.progress = 100
        return job

    def fail(self, job_id: str, error: str, stage: Optional[str] = None) -> Optional[Job]:
        # The source stays so the job can be retried
        job = self.jobs.get(job_id)
        if job:
            job.state = JobState.FAILED
            job.error = error
            job.failed_stage = stage
        return job
