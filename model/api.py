# model/api.py
from typing import Optional
from pydantic import BaseModel, Field
from model.job import Job, JobStage


class SubmitJobRequest(BaseModel):
    sourceUrl: str = Field(min_length=1)
    name: Optional[str] = None


class SubmitJobResponse(BaseModel):
    jobId: str
    provisionalName: str


class JobSnapshot(BaseModel):
    """Observable state of a job at one instant (status queries + event stream)."""

    jobId: str
    stage: JobStage
    progress: int
    error: Optional[str] = None
    outputRef: Optional[str] = None
    displayName: Optional[str] = None
    retryCount: int = 0
    active: bool = True

    @classmethod
    def of(cls, job: Job) -> "JobSnapshot":
        return cls(
            jobId=job.id,
            stage=job.stage,
            progress=job.progress,
            error=job.error if job.stage == "error" else None,
            outputRef=job.outputRef if job.stage == "done" else None,
            displayName=job.displayName,
            retryCount=job.retryCount,
            active=job.active,
        )


class LibraryItem(BaseModel):
    ref: str
    name: str
    createdAt: Optional[str] = None
    size: Optional[int] = None
    mimeType: Optional[str] = None
    jobId: Optional[str] = None
    displayName: Optional[str] = None
    stage: JobStage = "done"
    progress: int = 100
    active: bool = False
    error: Optional[str] = None


class DeleteResponse(BaseModel):
    ok: bool
    ref: str
