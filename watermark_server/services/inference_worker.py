"""Inference worker: owns the loaded model and answers request messages.

The worker is a state machine (UNLOADED -> LOADING -> LOADED, or
LOADING -> LOAD_FAILED) that turns every request into exactly one response.
Failures are reported as failure-flagged responses, never raised to the
sender. `run_worker_process` is the entry point used when the worker runs
in its own process.
"""

import logging
import os
from enum import Enum
from typing import Optional

import numpy as np
import torch

from .inference_engine import InferenceEngine
from .messages import (
    LoadModel,
    ModelLoaded,
    ProcessImage,
    ProcessingComplete,
    WorkerResponse,
)
from ..errors import CapacityError, NotLoadedError, ShapeError
from ..utils.constants import IMAGE_CONFIG, MODEL_QUALITY, QUALITY_MAX_DIMENSION
from ..utils.image_utils import PixelBuffer

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    """Model lifecycle inside one worker."""
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    LOAD_FAILED = "load_failed"


class InferenceWorker:
    """Holds the single model handle for this worker and serves requests."""

    def __init__(
        self,
        engine: Optional[InferenceEngine] = None,
        device: str = "auto",
        model_path: Optional[str] = None
    ):
        self.engine = engine or InferenceEngine(device=device, model_path=model_path)
        self.state = WorkerState.UNLOADED
        self._model: Optional[torch.nn.Module] = None

    @property
    def model_loaded(self) -> bool:
        return self.state is WorkerState.LOADED

    def handle(self, message) -> Optional[WorkerResponse]:
        """Dispatch one request message and return its response."""
        if isinstance(message, LoadModel):
            return self._load_model()
        if isinstance(message, ProcessImage):
            return self._process_image(message)

        logger.warning("Unknown message type: %s",
                       getattr(message, "kind", type(message).__name__))
        return None

    # ==================== Model loading ====================

    def _load_model(self) -> ModelLoaded:
        if self.state is WorkerState.LOADED:
            return ModelLoaded(success=True)
        if self.state is WorkerState.LOAD_FAILED:
            return ModelLoaded(
                success=False,
                error_message="Model failed to load earlier; recreate the worker to retry")

        self.state = WorkerState.LOADING
        try:
            self.engine.ready()
            self._model = self.engine.load_model()
        except Exception as e:
            logger.error("Error loading model in worker: %s", e)
            self._model = None
            self.state = WorkerState.LOAD_FAILED
            return ModelLoaded(success=False, error_message=str(e) or type(e).__name__)

        self.state = WorkerState.LOADED
        logger.info("Model loaded in worker")
        return ModelLoaded(success=True)

    # ==================== Inference ====================

    def _process_image(self, request: ProcessImage) -> ProcessingComplete:
        if self.state is not WorkerState.LOADED:
            error = NotLoadedError()
            return ProcessingComplete(
                id=request.id, success=False,
                error_message=error.message, error_type=type(error).__name__)

        try:
            result = self._run_inference(request.buffer, request.quality)
        except Exception as e:
            logger.error("Error processing image %s in worker: %s", request.id, e)
            return ProcessingComplete(
                id=request.id, success=False,
                error_message=str(e) or "Unknown error", error_type=type(e).__name__)

        return ProcessingComplete(id=request.id, success=True, buffer=result)

    def _validate_dimensions(self, buffer: PixelBuffer, quality: str) -> None:
        min_dim = IMAGE_CONFIG["MIN_DIMENSION"]
        max_dim = QUALITY_MAX_DIMENSION.get(quality, QUALITY_MAX_DIMENSION[MODEL_QUALITY.HIGH])

        if buffer.width < min_dim or buffer.height < min_dim:
            raise ValueError(
                "Image dimensions must be at least %dx%d pixels" % (min_dim, min_dim))
        if buffer.width > max_dim or buffer.height > max_dim:
            raise CapacityError(
                "Image dimensions %dx%d exceed the maximum texture size of %d for %s quality"
                % (buffer.width, buffer.height, max_dim, quality))

    def _run_inference(self, buffer: PixelBuffer, quality: str) -> PixelBuffer:
        """Run the model on one RGBA buffer; alpha passes through unchanged.

        Every tensor created here is tracked and released when the scope
        exits, on success and on failure alike.
        """
        self._validate_dimensions(buffer, quality)
        pixels = buffer.to_array()
        tensors = self.engine.tensors
        device = self.engine.device

        try:
            with tensors.scope():
                rgb = tensors.track(torch.from_numpy(pixels[..., :3].copy()).to(device))
                normalized = tensors.track(rgb.float().div(255.0))
                batched = tensors.track(normalized.permute(2, 0, 1).unsqueeze(0))

                output = tensors.track(self.engine.predict(self._model, batched))
                if tuple(output.shape) != tuple(batched.shape):
                    raise ShapeError(
                        "Model output shape %s does not match input shape %s"
                        % (tuple(output.shape), tuple(batched.shape)))

                clamped = tensors.track(output.clamp(0.0, 1.0))
                scaled = tensors.track(clamped.mul(255.0).round().clamp(0, 255).to(torch.uint8))
                result_rgb = tensors.track(scaled.squeeze(0).permute(1, 2, 0).cpu())

                result = np.empty_like(pixels)
                result[..., :3] = result_rgb.numpy()
                result[..., 3] = pixels[..., 3]
        except torch.cuda.OutOfMemoryError as e:
            raise CapacityError("Device out of memory: %s" % e) from e
        finally:
            self.engine.sweep_if_needed()

        return PixelBuffer.from_array(result)

    def memory(self):
        """Resource accounting for the engine owned by this worker."""
        return self.engine.memory()

    def close(self) -> None:
        self._model = None
        self.engine.dispose()


def run_worker_process(inbox, outbox, device: str = "auto", model_path: Optional[str] = None) -> None:
    """Serve requests from `inbox` until a None sentinel arrives.

    Args:
        inbox: Queue of request messages
        outbox: Queue receiving one response per request
        device: Device to use ("cuda", "mps", "cpu", or "auto")
        model_path: Optional checkpoint for the network
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    worker = InferenceWorker(device=device, model_path=model_path)
    logger.info("Inference worker started (pid %d)", os.getpid())

    try:
        while True:
            message = inbox.get()
            if message is None:
                break
            response = worker.handle(message)
            if response is not None:
                outbox.put(response)
    finally:
        worker.close()
        logger.info("Inference worker stopped (pid %d)", os.getpid())
