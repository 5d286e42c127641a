"""Health check endpoints."""

import logging

from fastapi import APIRouter, Request

from .. import __version__

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health status."""
    client = request.app.state.worker_client
    return {
        "status": "healthy" if client.last_error is None else "degraded",
        "version": __version__,
        "model_loaded": client.model_loaded,
    }


@router.get("/gpu")
async def gpu_info(request: Request):
    """Get compute device information for this server process.

    The model itself lives in the worker process; this reports the device
    that process was configured to pick.
    """
    gpu_manager = request.app.state.gpu_manager
    return gpu_manager.get_info()


@router.get("/worker")
async def worker_status(request: Request):
    """Get inference worker status."""
    client = request.app.state.worker_client
    return client.get_status()
