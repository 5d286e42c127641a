"""Client-side handle to the inference worker.

Starts the worker, loads the model, tracks readiness and turns the
fire-and-forget message channel into request/response calls. Calls are
matched to responses by request id through a correlation table.
"""

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .messages import LoadModel, ModelLoaded, ProcessImage, ProcessingComplete
from .worker_transport import ProcessTransport
from ..errors import NotReadyError
from ..utils.constants import MODEL_QUALITY
from ..utils.image_utils import PixelBuffer

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Outcome of one process_image call."""
    id: str
    success: bool
    buffer: Optional[PixelBuffer] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


CompletionCallback = Callable[[ProcessResult], None]


class PendingRequests:
    """Correlation table mapping request id to a one-shot completion.

    Each entry is removed the first time it is resolved, so later
    responses with the same id find nothing and are ignored.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[Future, Optional[CompletionCallback]]] = {}

    def register(self, request_id: str, callback: Optional[CompletionCallback] = None) -> Future:
        with self._lock:
            if request_id in self._entries:
                raise ValueError("Request %s is already in flight" % request_id)
            future: Future = Future()
            self._entries[request_id] = (future, callback)
        return future

    def resolve(self, request_id: str, result: ProcessResult) -> bool:
        """Complete a pending request. Returns False if none was waiting."""
        with self._lock:
            entry = self._entries.pop(request_id, None)
        if entry is None:
            return False

        future, callback = entry
        # A caller that cancelled its wait has consumed the entry
        if not future.set_running_or_notify_cancel():
            logger.info("Dropping response for cancelled request %s", request_id)
            return True

        if callback is not None:
            try:
                callback(result)
            except Exception:
                logger.exception("Completion callback failed for request %s", request_id)
        future.set_result(result)
        return True

    def discard(self, request_id: str) -> None:
        with self._lock:
            self._entries.pop(request_id, None)

    def pending_ids(self):
        with self._lock:
            return list(self._entries)

    def clear(self) -> int:
        """Forget every pending request without resolving it."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._entries


class WorkerClient:
    """Orchestration-facing handle to one inference worker.

    Observable state:
    - model_loaded: the worker answered LoadModel with success
    - loading: LoadModel was sent and has not been answered
    - last_error: most recent load or worker failure
    """

    def __init__(
        self,
        transport_factory: Callable = ProcessTransport,
        on_model_loaded: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        **transport_kwargs
    ):
        """Create the worker and immediately ask it to load the model.

        Args:
            transport_factory: Called as factory(on_message, on_error=..., **kwargs)
            on_model_loaded: Called once the model is ready
            on_error: Called with the message of any load or worker error
            **transport_kwargs: Passed through to the transport (device,
                model_path, ...)
        """
        self._on_model_loaded = on_model_loaded
        self._on_error = on_error
        self._pending = PendingRequests()
        self._model_loaded = False
        self._loading = True
        self._last_error: Optional[str] = None
        self._disposed = False
        self._transport = None

        try:
            self._transport = transport_factory(
                self._handle_message, on_error=self._handle_worker_error, **transport_kwargs)
            self._transport.send(LoadModel())
        except Exception as e:
            self._loading = False
            self._report_error(str(e) or "Failed to initialize worker")

    # ==================== State ====================

    @property
    def model_loaded(self) -> bool:
        return self._model_loaded

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_status(self) -> Dict[str, object]:
        return {
            "model_loaded": self._model_loaded,
            "loading": self._loading,
            "error": self._last_error,
            "pending": len(self._pending),
        }

    def reset(self) -> None:
        """Clear the recorded error and the loaded flag."""
        self._last_error = None
        self._model_loaded = False

    # ==================== Calls ====================

    def process_image(
        self,
        image_id: str,
        buffer: PixelBuffer,
        quality: str = MODEL_QUALITY.HIGH,
        on_complete: Optional[CompletionCallback] = None
    ) -> Future:
        """Send one image to the worker.

        Args:
            image_id: Caller-chosen id, unique among in-flight requests
            buffer: Pixels to process
            quality: Model quality preset; lowers the worker's dimension limit
            on_complete: Optional callback, invoked exactly once with the result

        Returns:
            Future resolving to a ProcessResult

        Raises:
            NotReadyError: without contacting the worker, if the model
                cannot take requests yet
        """
        if self._transport is None or self._disposed:
            raise NotReadyError("Worker not initialized")
        if not self._model_loaded:
            raise NotReadyError("Model not loaded yet")

        future = self._pending.register(image_id, on_complete)
        try:
            self._transport.send(ProcessImage(id=image_id, buffer=buffer, quality=quality))
        except Exception:
            self._pending.discard(image_id)
            raise
        return future

    def dispose(self) -> None:
        """Terminate the worker. In-flight calls are never resolved."""
        if self._disposed:
            return
        self._disposed = True
        self._model_loaded = False

        if self._transport is not None:
            self._transport.terminate()
        dropped = self._pending.clear()
        if dropped:
            logger.warning("Worker disposed with %d request(s) in flight", dropped)

    def __enter__(self) -> "WorkerClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    # ==================== Message handling ====================

    def _handle_message(self, message) -> None:
        if isinstance(message, ModelLoaded):
            self._loading = False
            self._model_loaded = message.success
            if message.success:
                logger.info("Model loaded successfully")
                if self._on_model_loaded is not None:
                    try:
                        self._on_model_loaded()
                    except Exception:
                        logger.exception("Model loaded callback failed")
            else:
                self._report_error(message.error_message or "Unknown error")

        elif isinstance(message, ProcessingComplete):
            result = ProcessResult(
                id=message.id,
                success=message.success,
                buffer=message.buffer if message.success else None,
                error=None if message.success else message.error_message,
                error_type=None if message.success else message.error_type,
            )
            if not self._pending.resolve(message.id, result):
                logger.warning("Ignoring response for unknown or completed request %s", message.id)

        else:
            logger.warning("Unknown message type: %s",
                           getattr(message, "kind", type(message).__name__))

    def _handle_worker_error(self, error: str) -> None:
        self._loading = False
        self._model_loaded = False

        # The worker is gone; fail whatever was waiting on it
        for request_id in self._pending.pending_ids():
            self._pending.resolve(request_id, ProcessResult(
                id=request_id, success=False, error=error, error_type="ProcessingError"))

        self._report_error(error)

    def _report_error(self, error: str) -> None:
        self._last_error = error
        logger.error("Inference worker failure: %s", error)
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception:
                logger.exception("Error callback failed")
