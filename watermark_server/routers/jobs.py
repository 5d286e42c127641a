"""Image job and batch endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, File, HTTPException, Request, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel

from ..errors import UnsupportedTypeError
from ..services.batch_controller import JobStatus
from ..utils.image_utils import ImageFile, get_file_type

logger = logging.getLogger(__name__)

router = APIRouter()


class JobResponse(BaseModel):
    """Image job summary."""
    id: str
    name: str
    status: str
    mime_type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    recovered: Optional[bool] = None
    error: Optional[str] = None


class JobListResponse(BaseModel):
    """All jobs of the session."""
    jobs: List[JobResponse]


class BatchStatusResponse(BaseModel):
    """Batch run progress."""
    processing: bool
    progress: int
    idle: int
    done: int
    error: int


class BatchStartResponse(BaseModel):
    """Batch start acknowledgement."""
    status: str
    jobs: int


def _get_job_or_404(request: Request, job_id: str):
    job = request.app.state.batch_controller.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


# ==================== Jobs ====================

@router.post("/jobs", response_model=JobListResponse)
async def upload_images(request: Request, files: List[UploadFile] = File(...)):
    """Upload images; each becomes an idle job."""
    controller = request.app.state.batch_controller

    images = []
    for upload in files:
        images.append(ImageFile(
            name=upload.filename or "image",
            data=await upload.read(),
            mime_type=upload.content_type or "",
        ))

    try:
        jobs = controller.add_images(images)
    except UnsupportedTypeError as e:
        raise HTTPException(status_code=415, detail=e.message)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return JobListResponse(jobs=[JobResponse(**job.to_dict()) for job in jobs])


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(request: Request):
    """List all jobs in upload order."""
    controller = request.app.state.batch_controller
    return JobListResponse(
        jobs=[JobResponse(**job.to_dict()) for job in controller.list_jobs()])


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, request: Request):
    """Get one job."""
    job = _get_job_or_404(request, job_id)
    return JobResponse(**job.to_dict())


@router.get("/jobs/{job_id}/source")
async def get_job_source(job_id: str, request: Request):
    """Download the uploaded image, for previews."""
    job = _get_job_or_404(request, job_id)
    return Response(
        content=job.source.data,
        media_type=get_file_type(job.source),
    )


@router.get("/jobs/{job_id}/result")
async def get_job_result(job_id: str, request: Request):
    """Download the processed image of a finished job."""
    job = _get_job_or_404(request, job_id)
    if job.status != JobStatus.DONE or job.result is None:
        raise HTTPException(
            status_code=409,
            detail=f"Job {job_id} has no result (status: {job.status.value})")

    return Response(
        content=job.result.data,
        media_type=job.result.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{job.name}"'},
    )


@router.delete("/jobs/{job_id}")
async def delete_job(job_id: str, request: Request):
    """Remove a job and release its data."""
    controller = request.app.state.batch_controller
    try:
        removed = controller.remove_job(job_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if not removed:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return {"status": "removed", "job_id": job_id}


# ==================== Batch ====================

@router.post("/batch", response_model=BatchStartResponse)
async def start_batch(background_tasks: BackgroundTasks, request: Request):
    """Process every idle job in the background."""
    controller = request.app.state.batch_controller
    client = request.app.state.worker_client

    if not client.model_loaded:
        detail = client.last_error or "Model not loaded yet"
        raise HTTPException(status_code=503, detail=detail)
    try:
        controller.schedule()
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))

    idle = controller.counts()[JobStatus.IDLE.value]
    background_tasks.add_task(controller.run_batch)
    logger.info("Batch run scheduled for %d job(s)", idle)
    return BatchStartResponse(status="started", jobs=idle)


@router.get("/batch", response_model=BatchStatusResponse)
async def get_batch_status(request: Request):
    """Get batch progress."""
    controller = request.app.state.batch_controller
    counts = controller.counts()
    return BatchStatusResponse(
        processing=controller.processing,
        progress=controller.progress,
        idle=counts[JobStatus.IDLE.value],
        done=counts[JobStatus.DONE.value],
        error=counts[JobStatus.ERROR.value],
    )
