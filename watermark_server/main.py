"""Main entry point for the watermark removal server."""

import logging
from contextlib import asynccontextmanager
from typing import Callable

import uvicorn
from fastapi import FastAPI

from . import __version__
from .routers import health, jobs
from .services.worker_transport import ProcessTransport

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(transport_factory: Callable = ProcessTransport, **transport_kwargs) -> FastAPI:
    """Build the application.

    Args:
        transport_factory: How the inference worker is reached; the default
            runs it in a child process
        **transport_kwargs: Worker options such as device and model_path
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting Watermark Removal Server...")
        from .services.gpu_manager import get_gpu_manager
        gpu_manager = get_gpu_manager()
        app.state.gpu_manager = gpu_manager
        gpu_manager.log_memory_status("Server process: ")

        # The worker loads the model in the background; requests check readiness
        from .services.worker_client import WorkerClient
        worker_client = WorkerClient(transport_factory=transport_factory, **transport_kwargs)
        app.state.worker_client = worker_client

        from .services.batch_controller import BatchController
        batch_controller = BatchController(client=worker_client)
        app.state.batch_controller = batch_controller

        yield

        logger.info("Shutting down Watermark Removal Server...")
        if not batch_controller.processing:
            batch_controller.clear()
        worker_client.dispose()

    app = FastAPI(
        title="Watermark Removal Server",
        description="Batch image watermark removal with background inference",
        version=__version__,
        lifespan=lifespan
    )

    # Include routers
    app.include_router(health.router, prefix="/api/v1", tags=["health"])
    app.include_router(jobs.router, prefix="/api/v1", tags=["jobs"])
    return app


app = create_app()


def run():
    """Run the server.

    Passes the app object directly to uvicorn instead of an import string.
    Using a string causes uvicorn to spawn a subprocess on Windows, which
    breaks Ctrl+C signal handling.
    """
    import argparse
    parser = argparse.ArgumentParser(description="Watermark Removal Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8765, help="Port to bind to")
    parser.add_argument("--device", default="auto", choices=["auto", "cuda", "mps", "cpu"],
                        help="Device for the inference worker")
    parser.add_argument("--model-path", default=None,
                        help="Optional state_dict checkpoint for the network")
    args = parser.parse_args()

    uvicorn.run(
        create_app(device=args.device, model_path=args.model_path),
        host=args.host,
        port=args.port,
        log_level="info"
    )


if __name__ == "__main__":
    run()
