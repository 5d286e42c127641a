"""Batch processing of uploaded images through the inference worker."""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .worker_client import WorkerClient
from ..errors import error_from_response, is_capacity_error
from ..utils.constants import MAX_FILES, PROCESSING_PRESETS
from ..utils.image_utils import (
    ImageFile,
    NormalizeOptions,
    PixelBuffer,
    file_to_pixel_buffer,
    get_file_type,
    pixel_buffer_to_bytes,
    round_half_up,
)

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Image job status."""
    IDLE = "idle"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


@dataclass
class JobResult:
    """Encoded output of a finished job."""
    data: bytes
    mime_type: str
    width: int
    height: int


@dataclass
class ImageJob:
    """One uploaded image and its progress through the batch."""
    id: str
    source: Optional[ImageFile]
    name: str = ""

    status: JobStatus = JobStatus.IDLE
    result: Optional[JobResult] = None
    error: Optional[str] = None
    # Finished at reduced settings after a capacity error
    recovered: bool = False

    def release(self) -> None:
        """Drop the source and result bytes."""
        self.source = None
        self.result = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
        }
        if self.status == JobStatus.DONE and self.result is not None:
            result["mime_type"] = self.result.mime_type
            result["width"] = self.result.width
            result["height"] = self.result.height
            result["recovered"] = self.recovered
        elif self.status == JobStatus.ERROR:
            result["error"] = self.error
        return result


class BatchController:
    """Owns the job list and drives jobs through the worker one at a time.

    Only this class changes job status. A run takes every IDLE job, in
    upload order, and leaves each one DONE or ERROR; a failing job never
    stops the run.
    """

    def __init__(
        self,
        client: WorkerClient,
        max_jobs: int = MAX_FILES,
        preset: Optional[Dict[str, Any]] = None,
        recovery_preset: Optional[Dict[str, Any]] = None,
        on_progress: Optional[Callable[[int], None]] = None,
        on_job_update: Optional[Callable[[ImageJob], None]] = None
    ):
        """Initialize the controller.

        Args:
            client: Worker client used for inference
            max_jobs: Maximum number of jobs held at once
            preset: Normal processing settings (PROCESSING_PRESETS["SMALL"])
            recovery_preset: Settings for the single retry after a
                capacity error (PROCESSING_PRESETS["MEDIUM"])
            on_progress: Called with the new progress after each job
            on_job_update: Called after every status change
        """
        self._client = client
        self._max_jobs = max_jobs
        self._preset = preset or PROCESSING_PRESETS["SMALL"]
        self._recovery_preset = recovery_preset or PROCESSING_PRESETS["MEDIUM"]
        self._on_progress = on_progress
        self._on_job_update = on_job_update

        self._jobs: Dict[str, ImageJob] = {}
        self._progress = 0
        self._processing = False
        self._scheduled = False

    # ==================== Job list ====================

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def processing(self) -> bool:
        return self._processing

    @property
    def scheduled(self) -> bool:
        return self._scheduled

    def schedule(self) -> None:
        """Reserve the next run before it is started in the background.

        Raises:
            RuntimeError: if a run is already reserved or in progress
        """
        if self._processing or self._scheduled:
            raise RuntimeError("A batch run is already in progress")
        self._scheduled = True

    def add_images(self, files: Iterable[ImageFile]) -> List[ImageJob]:
        """Create IDLE jobs for uploaded files.

        Either every file is accepted or none is. A file without a MIME
        type is treated as PNG.

        Raises:
            UnsupportedTypeError: if any file has an unsupported type
            ValueError: if the job limit would be exceeded
        """
        files = list(files)
        if len(self._jobs) + len(files) > self._max_jobs:
            raise ValueError(
                "Maximum %d images allowed; %d slot(s) remaining"
                % (self._max_jobs, self._max_jobs - len(self._jobs)))

        for file in files:
            get_file_type(file)

        new_jobs = [
            ImageJob(id=str(uuid.uuid4()), source=file, name=file.name)
            for file in files
        ]
        for job in new_jobs:
            self._jobs[job.id] = job
        logger.info("Added %d image(s); %d job(s) total", len(new_jobs), len(self._jobs))
        return new_jobs

    def get_job(self, job_id: str) -> Optional[ImageJob]:
        return self._jobs.get(job_id)

    def list_jobs(self) -> List[ImageJob]:
        return list(self._jobs.values())

    def remove_job(self, job_id: str) -> bool:
        """Remove a job and release its buffers.

        Returns:
            False if no such job exists

        Raises:
            ValueError: if the job is currently processing
        """
        job = self._jobs.get(job_id)
        if job is None:
            return False
        if job.status == JobStatus.PROCESSING:
            raise ValueError("Cannot remove job %s while it is processing" % job_id)

        del self._jobs[job_id]
        job.release()
        logger.info("Removed job %s", job_id)
        return True

    def clear(self) -> None:
        """End the session: release every job."""
        if self._processing:
            raise ValueError("Cannot clear jobs while a batch is running")
        for job in self._jobs.values():
            job.release()
        self._jobs.clear()
        self._progress = 0

    def done_results(self) -> List[Tuple[str, JobResult]]:
        """(original name, result) for every finished job, for export."""
        return [
            (job.name, job.result)
            for job in self._jobs.values()
            if job.status == JobStatus.DONE and job.result is not None
        ]

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return counts

    # ==================== Batch run ====================

    async def run_batch(self) -> None:
        """Process every IDLE job, strictly one after another."""
        if self._processing:
            raise RuntimeError("A batch run is already in progress")
        self._scheduled = False
        if not self._client.model_loaded:
            logger.warning("Batch run skipped: model not loaded")
            return

        snapshot = [job for job in self._jobs.values() if job.status == JobStatus.IDLE]
        total = len(snapshot)
        if total == 0:
            return

        self._processing = True
        self._progress = 0
        logger.info("Starting batch run of %d image(s)", total)
        try:
            for completed, job in enumerate(snapshot, start=1):
                if job.id in self._jobs:
                    await self._process_job(job)
                else:
                    logger.info("Job %s was removed before processing", job.id)
                self._set_progress(round_half_up(completed / total * 100))
        finally:
            self._processing = False

        counts = self.counts()
        logger.info("Batch run finished: %d done, %d error",
                    counts[JobStatus.DONE.value], counts[JobStatus.ERROR.value])

    async def _process_job(self, job: ImageJob) -> None:
        self._set_status(job, JobStatus.PROCESSING)

        try:
            result = await self._attempt(job, self._preset)
        except Exception as e:
            if not is_capacity_error(e):
                self._fail(job, e)
                return

            logger.warning("Capacity error on job %s (%s); retrying at max dimension %d",
                           job.id, e, self._recovery_preset["max_dimension"])
            try:
                result = await self._attempt(job, self._recovery_preset)
            except Exception as retry_error:
                self._fail(job, retry_error)
                return
            job.recovered = True

        job.result = result
        job.error = None
        self._set_status(job, JobStatus.DONE)

    async def _attempt(self, job: ImageJob, preset: Dict[str, Any]) -> JobResult:
        """Normalize, infer and re-encode one job with the given settings."""
        source = job.source
        options = NormalizeOptions(max_dimension=preset["max_dimension"])
        buffer = await asyncio.to_thread(file_to_pixel_buffer, source, options)

        # An in-process worker runs inference inside this call
        future = await asyncio.to_thread(
            self._client.process_image, job.id, buffer, quality=preset["model_quality"])
        response = await asyncio.wrap_future(future)
        if not response.success:
            raise error_from_response(response.error, response.error_type)

        output: PixelBuffer = response.buffer
        mime_type = get_file_type(source)
        data = await asyncio.to_thread(
            pixel_buffer_to_bytes, output, mime_type, preset["quality"])
        return JobResult(data=data, mime_type=mime_type,
                         width=output.width, height=output.height)

    def _fail(self, job: ImageJob, error: Exception) -> None:
        logger.error("Error processing image %s: %s", job.id, error)
        job.result = None
        job.error = str(error) or "Unknown error"
        self._set_status(job, JobStatus.ERROR)

    def _set_status(self, job: ImageJob, status: JobStatus) -> None:
        job.status = status
        if self._on_job_update is not None:
            self._on_job_update(job)

    def _set_progress(self, progress: int) -> None:
        self._progress = progress
        if self._on_progress is not None:
            self._on_progress(progress)
