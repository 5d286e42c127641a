"""Tests for the batch controller.

Tests cover:
- All-or-nothing ingestion and the session file limit
- Job removal and session clearing
- Sequential runs with per-job failures
- Progress notifications
- One-shot recovery from capacity errors, typed or by message
- Run reservation and keeping inference off the event loop
"""

import asyncio
import io
import threading

import pytest
from PIL import Image


@pytest.fixture
def inline_client():
    """WorkerClient with the model loaded in-process."""
    from watermark_server.services.worker_client import WorkerClient
    from watermark_server.services.worker_transport import InlineTransport

    client = WorkerClient(transport_factory=InlineTransport)
    yield client
    client.dispose()


class UnloadedClient:
    """Stands in for a WorkerClient whose model never loaded."""
    model_loaded = False

    def process_image(self, *args, **kwargs):
        raise AssertionError("process_image must not be called")


class ScriptedTransport:
    """Loads instantly and answers each ProcessImage from a list of errors.

    A None entry (or an exhausted list) echoes the input buffer back.
    """

    def __init__(self, on_message, on_error=None, errors=()):
        self.on_message = on_message
        self.errors = list(errors)
        self.requests = []

    def send(self, message):
        from watermark_server.services.messages import (
            LoadModel,
            ModelLoaded,
            ProcessingComplete,
        )

        if isinstance(message, LoadModel):
            self.on_message(ModelLoaded(success=True))
            return

        self.requests.append(message)
        error = self.errors.pop(0) if self.errors else None
        if error is None:
            self.on_message(ProcessingComplete(id=message.id, success=True, buffer=message.buffer))
        else:
            self.on_message(ProcessingComplete(
                id=message.id, success=False, error_message=error, error_type="RuntimeError"))

    def terminate(self):
        pass


def _scripted_client(errors):
    from watermark_server.services.worker_client import WorkerClient

    client = WorkerClient(transport_factory=ScriptedTransport, errors=errors)
    return client, client._transport


def _png_file(make_image_bytes, name="a.png", width=64, height=48):
    from watermark_server.utils.image_utils import ImageFile

    return ImageFile(name=name, data=make_image_bytes(width, height), mime_type="image/png")


class TestIngestion:
    """Test adding and removing jobs."""

    def test_add_images_creates_idle_jobs(self, inline_client, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController, JobStatus

        controller = BatchController(inline_client)
        jobs = controller.add_images([_png_file(make_image_bytes, "a.png"),
                                      _png_file(make_image_bytes, "b.png")])

        assert [job.name for job in jobs] == ["a.png", "b.png"]
        assert all(job.status == JobStatus.IDLE for job in jobs)
        assert jobs[0].id != jobs[1].id
        assert controller.list_jobs() == jobs

    def test_unsupported_type_rejects_whole_upload(self, inline_client, make_image_bytes):
        from watermark_server.errors import UnsupportedTypeError
        from watermark_server.services.batch_controller import BatchController
        from watermark_server.utils.image_utils import ImageFile

        controller = BatchController(inline_client)
        files = [_png_file(make_image_bytes),
                 ImageFile(name="b.gif", data=b"GIF89a", mime_type="image/gif")]
        with pytest.raises(UnsupportedTypeError):
            controller.add_images(files)
        assert controller.list_jobs() == []

    def test_file_limit(self, inline_client, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController

        controller = BatchController(inline_client, max_jobs=2)
        controller.add_images([_png_file(make_image_bytes)])
        with pytest.raises(ValueError):
            controller.add_images([_png_file(make_image_bytes), _png_file(make_image_bytes)])
        assert len(controller.list_jobs()) == 1

    def test_remove_job(self, inline_client, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController

        controller = BatchController(inline_client)
        job, = controller.add_images([_png_file(make_image_bytes)])

        assert controller.remove_job(job.id) is True
        assert job.source is None
        assert controller.get_job(job.id) is None
        assert controller.remove_job(job.id) is False

    def test_processing_job_cannot_be_removed(self, inline_client, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController, JobStatus

        controller = BatchController(inline_client)
        job, = controller.add_images([_png_file(make_image_bytes)])
        job.status = JobStatus.PROCESSING
        with pytest.raises(ValueError):
            controller.remove_job(job.id)

    def test_clear(self, inline_client, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController

        controller = BatchController(inline_client)
        job, = controller.add_images([_png_file(make_image_bytes)])
        controller.clear()
        assert controller.list_jobs() == []
        assert job.source is None


class TestRunBatch:
    """Test batch runs end to end with an in-process worker."""

    def test_all_jobs_done(self, inline_client, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController, JobStatus

        progress = []
        controller = BatchController(inline_client, on_progress=progress.append)
        controller.add_images([_png_file(make_image_bytes, f"{i}.png") for i in range(3)])

        asyncio.run(controller.run_batch())

        assert [job.status for job in controller.list_jobs()] == [JobStatus.DONE] * 3
        assert progress == [33, 67, 100]
        assert controller.progress == 100
        assert controller.processing is False

        job = controller.list_jobs()[0]
        assert job.error is None
        assert job.recovered is False
        assert (job.result.width, job.result.height) == (64, 48)
        assert job.result.mime_type == "image/png"
        with Image.open(io.BytesIO(job.result.data)) as img:
            assert img.format == "PNG"
            assert img.size == (64, 48)

    def test_failure_does_not_stop_run(self, inline_client, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController, JobStatus
        from watermark_server.utils.image_utils import ImageFile

        updates = []
        progress = []
        controller = BatchController(
            inline_client, on_progress=progress.append,
            on_job_update=lambda job: updates.append((job.name, job.status)))
        controller.add_images([
            _png_file(make_image_bytes, "good1.png"),
            ImageFile(name="broken.png", data=b"not an image", mime_type="image/png"),
            _png_file(make_image_bytes, "good2.png"),
        ])

        asyncio.run(controller.run_batch())

        jobs = controller.list_jobs()
        assert [job.status for job in jobs] == [JobStatus.DONE, JobStatus.ERROR, JobStatus.DONE]
        assert jobs[1].error == "Failed to load image"
        assert jobs[1].result is None
        assert updates == [
            ("good1.png", JobStatus.PROCESSING), ("good1.png", JobStatus.DONE),
            ("broken.png", JobStatus.PROCESSING), ("broken.png", JobStatus.ERROR),
            ("good2.png", JobStatus.PROCESSING), ("good2.png", JobStatus.DONE),
        ]
        assert [name for name, _ in controller.done_results()] == ["good1.png", "good2.png"]
        assert progress == [33, 67, 100]

    def test_only_idle_jobs_processed(self, inline_client, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController, JobStatus

        updates = []
        controller = BatchController(inline_client, on_job_update=updates.append)
        controller.add_images([_png_file(make_image_bytes, "a.png")])
        asyncio.run(controller.run_batch())

        controller.add_images([_png_file(make_image_bytes, "b.png")])
        updates.clear()
        asyncio.run(controller.run_batch())

        assert {job.name for job in updates} == {"b.png"}
        assert all(job.status == JobStatus.DONE for job in controller.list_jobs())

    def test_empty_run_is_noop(self, inline_client):
        from watermark_server.services.batch_controller import BatchController

        progress = []
        controller = BatchController(inline_client, on_progress=progress.append)
        asyncio.run(controller.run_batch())
        assert progress == []
        assert controller.progress == 0

    def test_model_not_loaded(self, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController, JobStatus

        controller = BatchController(UnloadedClient())
        job, = controller.add_images([_png_file(make_image_bytes)])
        asyncio.run(controller.run_batch())
        assert job.status == JobStatus.IDLE

    def test_capacity_error_recovers_at_reduced_settings(self, inline_client, make_image_bytes):
        """Low model quality rejects a 1200px image; the retry fits."""
        from watermark_server.services.batch_controller import BatchController, JobStatus
        from watermark_server.utils.constants import MODEL_QUALITY

        preset = {"max_dimension": 4096, "quality": 1.0, "model_quality": MODEL_QUALITY.LOW}
        controller = BatchController(inline_client, preset=preset)
        job, = controller.add_images([_png_file(make_image_bytes, width=1200, height=40)])

        asyncio.run(controller.run_batch())

        assert job.status == JobStatus.DONE
        assert job.recovered is True
        assert (job.result.width, job.result.height) == (1200, 40)

    def test_capacity_error_retried_once(self, inline_client, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController, JobStatus
        from watermark_server.utils.constants import MODEL_QUALITY

        preset = {"max_dimension": 4096, "quality": 1.0, "model_quality": MODEL_QUALITY.LOW}
        recovery = {"max_dimension": 4096, "quality": 1.0, "model_quality": MODEL_QUALITY.LOW}
        controller = BatchController(inline_client, preset=preset, recovery_preset=recovery)
        job, = controller.add_images([_png_file(make_image_bytes, width=1200, height=40)])

        asyncio.run(controller.run_batch())

        assert job.status == JobStatus.ERROR
        assert "texture size" in job.error
        assert job.recovered is False

    def test_recovery_downscales(self, inline_client, make_image_bytes):
        """The retry also lowers the normalization ceiling."""
        from watermark_server.services.batch_controller import BatchController, JobStatus
        from watermark_server.utils.constants import MODEL_QUALITY

        preset = {"max_dimension": 4096, "quality": 1.0, "model_quality": MODEL_QUALITY.LOW}
        recovery = {"max_dimension": 600, "quality": 0.9, "model_quality": MODEL_QUALITY.LOW}
        controller = BatchController(inline_client, preset=preset, recovery_preset=recovery)
        job, = controller.add_images([_png_file(make_image_bytes, width=1200, height=40)])

        asyncio.run(controller.run_batch())

        assert job.status == JobStatus.DONE
        assert (job.result.width, job.result.height) == (600, 20)

    def test_concurrent_run_rejected(self, inline_client, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController

        controller = BatchController(inline_client)
        controller.add_images([_png_file(make_image_bytes)])

        async def run_twice():
            first = asyncio.ensure_future(controller.run_batch())
            await asyncio.sleep(0)
            with pytest.raises(RuntimeError):
                await controller.run_batch()
            await first

        asyncio.run(run_twice())

    def test_run_is_reserved_once(self, inline_client, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController

        controller = BatchController(inline_client)
        controller.add_images([_png_file(make_image_bytes)])

        controller.schedule()
        assert controller.scheduled is True
        with pytest.raises(RuntimeError):
            controller.schedule()

        asyncio.run(controller.run_batch())
        assert controller.scheduled is False
        controller.schedule()

    def test_inference_runs_off_the_event_loop(self, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController, JobStatus
        from watermark_server.services.inference_engine import InferenceEngine
        from watermark_server.services.inference_worker import InferenceWorker
        from watermark_server.services.worker_client import WorkerClient
        from watermark_server.services.worker_transport import InlineTransport

        predict_threads = []

        class RecordingEngine(InferenceEngine):
            def predict(self, model, batch):
                predict_threads.append(threading.get_ident())
                return super().predict(model, batch)

        worker = InferenceWorker(engine=RecordingEngine(device="cpu"))
        client = WorkerClient(
            transport_factory=lambda on_message, on_error=None: InlineTransport(
                on_message, on_error, worker=worker))
        controller = BatchController(client)
        job, = controller.add_images([_png_file(make_image_bytes)])

        async def run():
            loop_thread = threading.get_ident()
            await controller.run_batch()
            return loop_thread

        loop_thread = asyncio.run(run())
        client.dispose()

        assert job.status == JobStatus.DONE
        assert len(predict_threads) == 1
        assert predict_threads[0] != loop_thread


class TestCapacityMessages:
    """Recovery decided from the failure text alone."""

    @pytest.mark.parametrize("message", [
        "WebGL: INVALID_VALUE: texImage2D: no texture",
        "Not enough memory to allocate output buffer",
    ])
    def test_recovers_from_capacity_message(self, make_image_bytes, message):
        from watermark_server.services.batch_controller import BatchController, JobStatus
        from watermark_server.utils.constants import MODEL_QUALITY

        client, transport = _scripted_client([message])
        controller = BatchController(client)
        job, = controller.add_images([_png_file(make_image_bytes)])

        asyncio.run(controller.run_batch())

        assert job.status == JobStatus.DONE
        assert job.recovered is True
        assert [r.quality for r in transport.requests] == [MODEL_QUALITY.HIGH, MODEL_QUALITY.MEDIUM]

    def test_other_failure_not_retried(self, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController, JobStatus

        client, transport = _scripted_client(["kernel crashed"])
        controller = BatchController(client)
        job, = controller.add_images([_png_file(make_image_bytes)])

        asyncio.run(controller.run_batch())

        assert job.status == JobStatus.ERROR
        assert job.error == "kernel crashed"
        assert len(transport.requests) == 1

    def test_second_capacity_failure_is_error(self, make_image_bytes):
        from watermark_server.services.batch_controller import BatchController, JobStatus

        client, transport = _scripted_client(["webgl context lost", "webgl context lost"])
        controller = BatchController(client)
        job, = controller.add_images([_png_file(make_image_bytes)])

        asyncio.run(controller.run_batch())

        assert job.status == JobStatus.ERROR
        assert len(transport.requests) == 2
