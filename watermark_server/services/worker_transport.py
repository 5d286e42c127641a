"""Transports carrying messages between the worker client and the worker.

- ProcessTransport: the worker runs in a spawned child process; requests and
  responses travel over multiprocessing queues and a reader thread hands
  responses to the client.
- InlineTransport: the worker runs in the calling thread; each response is
  delivered before `send` returns, so the caller blocks for the whole
  inference. The batch controller sends from a worker thread for this reason.
  Used for tests and single-process embedding.

Both expose `send(message)` and `terminate()` and report responses through
the `on_message` callback given at construction.
"""

import logging
import multiprocessing as mp
import queue
import threading
from typing import Callable, Optional

from .inference_worker import InferenceWorker, run_worker_process

logger = logging.getLogger(__name__)

MessageHandler = Callable[[object], None]
ErrorHandler = Callable[[str], None]

# Seconds between liveness checks while waiting for responses
POLL_INTERVAL = 0.5


class ProcessTransport:
    """Runs an InferenceWorker in a child process."""

    def __init__(
        self,
        on_message: MessageHandler,
        on_error: Optional[ErrorHandler] = None,
        device: str = "auto",
        model_path: Optional[str] = None,
        start_method: str = "spawn"
    ):
        """Start the worker process and the response reader thread.

        Args:
            on_message: Called with every response message
            on_error: Called once if the worker process dies unexpectedly
            device: Device for the worker ("cuda", "mps", "cpu", or "auto")
            model_path: Optional checkpoint for the network
            start_method: multiprocessing start method
        """
        self._on_message = on_message
        self._on_error = on_error
        self._closed = threading.Event()

        context = mp.get_context(start_method)
        self._inbox = context.Queue()
        self._outbox = context.Queue()
        self._process = context.Process(
            target=run_worker_process,
            args=(self._inbox, self._outbox, device, model_path),
            name="inference-worker",
            daemon=True,
        )
        self._process.start()
        logger.info("Started inference worker process (pid %s)", self._process.pid)

        self._reader = threading.Thread(
            target=self._read_responses, name="inference-worker-reader", daemon=True)
        self._reader.start()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    def is_alive(self) -> bool:
        return self._process.is_alive()

    def _read_responses(self) -> None:
        while not self._closed.is_set():
            try:
                message = self._outbox.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if not self._process.is_alive() and not self._closed.is_set():
                    self._closed.set()
                    error = "Worker error: process exited with code %s" % self._process.exitcode
                    logger.error(error)
                    if self._on_error is not None:
                        try:
                            self._on_error(error)
                        except Exception:
                            logger.exception("Worker error handler failed")
                continue

            if message is None:
                break
            try:
                self._on_message(message)
            except Exception:
                logger.exception("Response handler failed for %s",
                                 getattr(message, "kind", type(message).__name__))

    def send(self, message) -> None:
        if self._closed.is_set():
            raise RuntimeError("Worker has been terminated")
        self._inbox.put(message)

    def terminate(self) -> None:
        """Stop the worker process; responses still in transit are dropped."""
        if self._closed.is_set() and not self._process.is_alive():
            return
        self._closed.set()

        if self._process.is_alive():
            self._process.terminate()
            self._process.join(timeout=5)
        self._inbox.cancel_join_thread()
        self._inbox.close()

        if threading.current_thread() is not self._reader:
            self._reader.join(timeout=POLL_INTERVAL * 4)
        self._outbox.close()
        logger.info("Inference worker process terminated (exit code %s)", self._process.exitcode)


class InlineTransport:
    """Runs an InferenceWorker synchronously in the caller's thread."""

    def __init__(
        self,
        on_message: MessageHandler,
        on_error: Optional[ErrorHandler] = None,
        worker: Optional[InferenceWorker] = None,
        device: str = "cpu",
        model_path: Optional[str] = None
    ):
        self._on_message = on_message
        self._on_error = on_error
        self.worker = worker or InferenceWorker(device=device, model_path=model_path)
        self._closed = False

    def send(self, message) -> None:
        if self._closed:
            raise RuntimeError("Worker has been terminated")
        response = self.worker.handle(message)
        if response is not None:
            self._on_message(response)

    def terminate(self) -> None:
        if not self._closed:
            self._closed = True
            self.worker.close()
