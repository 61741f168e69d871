# controller/job_controller.py
from fastapi import APIRouter, Depends, status
from fastapi.responses import StreamingResponse
from model.api import JobSnapshot, SubmitJobRequest, SubmitJobResponse
from service.job_service import JobService
from util.constants import InternalURIs, MimeTypes
from controller.controller_dependencies import (
    get_current_owner,
    get_job_service,
    rate_limited,
)

job_router = APIRouter(dependencies=rate_limited())


@job_router.post(
    InternalURIs.JOBS,
    response_model=SubmitJobResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_job(
    payload: SubmitJobRequest,
    owner: str = Depends(get_current_owner),
    service: JobService = Depends(get_job_service),
) -> SubmitJobResponse:
    return await service.submit(owner, payload.sourceUrl, payload.name)


@job_router.get(InternalURIs.JOB, response_model=JobSnapshot, response_model_exclude_none=True)
async def get_job(
    job_id: str,
    owner: str = Depends(get_current_owner),
    service: JobService = Depends(get_job_service),
) -> JobSnapshot:
    return await service.get_status(owner, job_id)


@job_router.post(InternalURIs.JOB_CANCEL, response_model=JobSnapshot, response_model_exclude_none=True)
async def cancel_job(
    job_id: str,
    owner: str = Depends(get_current_owner),
    service: JobService = Depends(get_job_service),
) -> JobSnapshot:
    return await service.cancel(owner, job_id)


@job_router.post(InternalURIs.JOB_RETRY, response_model=JobSnapshot, response_model_exclude_none=True)
async def retry_job(
    job_id: str,
    owner: str = Depends(get_current_owner),
    service: JobService = Depends(get_job_service),
) -> JobSnapshot:
    return await service.retry(owner, job_id)


@job_router.get(InternalURIs.JOB_EVENTS)
async def job_events(
    job_id: str,
    owner: str = Depends(get_current_owner),
    service: JobService = Depends(get_job_service),
):
    generator = await service.subscribe(owner, job_id)
    return StreamingResponse(
        generator,
        media_type=MimeTypes.NDJSON,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
