"""Shared fixtures for watermark_server tests.

This module provides pytest fixtures for:
- Synthetic images encoded as PNG/JPEG/WEBP bytes
- RGBA pixel buffers
- Test client for FastAPI endpoints (in-process worker)
- Device availability checks
"""

import io
from typing import Callable

import numpy as np
import pytest
from PIL import Image

# Import test client only when available
try:
    from fastapi.testclient import TestClient
    FASTAPI_AVAILABLE = True
except ImportError:
    FASTAPI_AVAILABLE = False


def encode_image(array: np.ndarray, fmt: str = "PNG") -> bytes:
    """Encode an (H, W, C) uint8 array as image bytes."""
    img = Image.fromarray(array)
    if fmt == "JPEG" and img.mode == "RGBA":
        img = img.convert("RGB")
    output = io.BytesIO()
    img.save(output, format=fmt)
    return output.getvalue()


@pytest.fixture
def make_image_bytes() -> Callable[..., bytes]:
    """Factory for synthetic images.

    Returns:
        Function (width, height, fmt="PNG", alpha=255) -> encoded bytes.
        The image has a gradient background and a semi-transparent
        "watermark" band across the middle.
    """
    def _make(width: int, height: int, fmt: str = "PNG", alpha: int = 255) -> bytes:
        rng = np.random.default_rng(42)
        img = np.zeros((height, width, 4), dtype=np.uint8)
        img[..., 0] = np.linspace(0, 255, width, dtype=np.uint8)[None, :]
        img[..., 1] = np.linspace(255, 0, height, dtype=np.uint8)[:, None]
        img[..., 2] = rng.integers(50, 200, (height, width), dtype=np.uint8)
        img[..., 3] = alpha

        band = slice(height // 3, max(height // 3 + 1, 2 * height // 3))
        img[band, :, :3] = 230
        return encode_image(img, fmt)

    return _make


@pytest.fixture
def png_bytes(make_image_bytes) -> bytes:
    """A 64x48 PNG."""
    return make_image_bytes(64, 48)


@pytest.fixture
def rgba_buffer():
    """A 40x36 PixelBuffer with a varying alpha channel."""
    from watermark_server.utils.image_utils import PixelBuffer

    rng = np.random.default_rng(7)
    pixels = rng.integers(0, 256, (36, 40, 4), dtype=np.uint8)
    pixels[..., 3] = np.arange(40, dtype=np.uint8)[None, :] * 6
    return PixelBuffer.from_array(pixels)


@pytest.fixture
def api_client():
    """FastAPI test client running the worker in-process.

    Uses context manager to invoke the lifespan (worker client, controller).
    """
    if not FASTAPI_AVAILABLE:
        pytest.skip("FastAPI test client not available")

    from watermark_server.main import create_app
    from watermark_server.services.worker_transport import InlineTransport

    app = create_app(transport_factory=InlineTransport)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def gpu_available() -> bool:
    """Check if GPU (CUDA or MPS) is available.

    Returns:
        True if GPU is available, False otherwise
    """
    try:
        import torch
        if torch.cuda.is_available():
            return True
        if hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
            return True
        return False
    except ImportError:
        return False


@pytest.fixture
def skip_without_gpu(gpu_available):
    """Skip test if no GPU is available."""
    if not gpu_available:
        pytest.skip("GPU not available")


@pytest.fixture
def skip_without_cuda():
    """Skip test if CUDA is not available."""
    try:
        import torch
        if not torch.cuda.is_available():
            pytest.skip("CUDA not available")
    except ImportError:
        pytest.skip("PyTorch not available")
