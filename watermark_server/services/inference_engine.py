"""Inference engine for the watermark removal worker.

Supports:
- CUDA, Apple MPS, and CPU backends via GPUManager
- A small convolutional placeholder network (3 -> 16 -> 8 -> 3 channels)
- Optional state_dict checkpoint loading
- Transient tensor accounting so every call can be checked for leaks
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Any, Iterator, Optional

import torch
import torch.nn as nn

from .gpu_manager import GPUManager

logger = logging.getLogger(__name__)


class WatermarkRemovalNet(nn.Module):
    """Demonstration network; output has the same shape as the input.

    Not a real inpainting model. A production deployment would swap in a
    trained architecture with the same (N, 3, H, W) -> (N, 3, H, W) contract.
    """

    def __init__(self):
        super().__init__()
        self.conv1 = nn.Conv2d(3, 16, kernel_size=3, padding=1)
        self.conv2 = nn.Conv2d(16, 8, kernel_size=3, padding=1)
        self.out = nn.Conv2d(8, 3, kernel_size=3, padding=1)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = torch.relu(self.conv1(x))
        x = torch.relu(self.conv2(x))
        return torch.sigmoid(self.out(x))


class TensorTracker:
    """Holds references to transient tensors until they are released.

    Tensors created inside `scope()` are dropped when the scope exits,
    whichever way it exits.
    """

    def __init__(self):
        self._live: Dict[int, torch.Tensor] = {}

    def track(self, tensor: torch.Tensor) -> torch.Tensor:
        self._live[id(tensor)] = tensor
        return tensor

    def release(self, tensor: torch.Tensor) -> None:
        self._live.pop(id(tensor), None)

    @contextmanager
    def scope(self) -> Iterator["TensorTracker"]:
        outer = set(self._live)
        try:
            yield self
        finally:
            for key in [k for k in self._live if k not in outer]:
                del self._live[key]

    @property
    def num_tensors(self) -> int:
        return len(self._live)

    @property
    def num_bytes(self) -> int:
        return sum(t.element_size() * t.nelement() for t in self._live.values())


class InferenceEngine:
    """Owns the compute backend and runs the network.

    The loaded model is returned to the caller, which keeps the only
    reference; the engine itself holds no model state.
    """

    def __init__(
        self,
        device: str = "auto",
        model_path: Optional[str] = None,
        seed: Optional[int] = 0
    ):
        """Initialize the engine. The backend is selected in `ready()`.

        Args:
            device: Device to use ("cuda", "mps", "cpu", or "auto")
            model_path: Optional state_dict checkpoint for the network
            seed: Seed for the random initial weights when no checkpoint
                is given (None leaves torch's RNG alone)
        """
        self._requested_device = device
        self.model_path = model_path
        self.seed = seed
        self.gpu_manager: Optional[GPUManager] = None
        self.tensors = TensorTracker()

    @property
    def device(self) -> torch.device:
        if self.gpu_manager is None:
            raise RuntimeError("Inference engine is not ready")
        return self.gpu_manager.device

    def ready(self) -> None:
        """Select the compute backend."""
        if self.gpu_manager is None:
            self.set_backend(self._requested_device)

    def set_backend(self, device: str) -> None:
        """Switch the compute backend ("auto", "cuda", "mps" or "cpu")."""
        self.gpu_manager = GPUManager(device=device)
        self._requested_device = device
        logger.info("Inference backend set to %s", self.gpu_manager.device_type)

    def load_model(self) -> nn.Module:
        """Build the network, load weights if configured, move to device."""
        self.ready()

        if self.seed is not None:
            torch.manual_seed(self.seed)
        model = WatermarkRemovalNet()

        if self.model_path:
            checkpoint = Path(self.model_path)
            if not checkpoint.exists():
                raise FileNotFoundError("No model found at %s" % checkpoint)
            logger.info("Loading model weights from %s", checkpoint)
            model.load_state_dict(
                torch.load(checkpoint, map_location=self.device, weights_only=True)
            )

        model = model.to(self.device)
        model.eval()
        logger.info("Model ready on %s (%d parameters)",
                    self.gpu_manager.device_type,
                    sum(p.numel() for p in model.parameters()))
        return model

    def predict(self, model: nn.Module, batch: torch.Tensor) -> torch.Tensor:
        """Run the network on an (N, 3, H, W) batch of values in [0, 1]."""
        with torch.no_grad():
            return model(batch)

    def memory(self) -> Dict[str, Any]:
        """Transient tensor counts plus device memory info."""
        info: Dict[str, Any] = {
            "num_tensors": self.tensors.num_tensors,
            "num_bytes": self.tensors.num_bytes,
        }
        if self.gpu_manager is not None:
            info.update(self.gpu_manager.get_memory_info())
        return info

    def sweep_if_needed(self) -> None:
        """Clear the allocator cache when device memory is running high."""
        if self.gpu_manager is not None and self.gpu_manager.needs_cleanup():
            self.gpu_manager.log_memory_status(prefix="Before sweep: ")
            self.gpu_manager.clear_cache()

    def dispose(self) -> None:
        if self.gpu_manager is not None:
            self.gpu_manager.clear_cache()
