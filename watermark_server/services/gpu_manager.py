"""Compute device selection and memory accounting for the inference worker.

Provides:
- Device detection (CUDA > MPS > CPU priority) with an explicit override
- Memory usage reporting used to decide when to sweep the allocator cache
- Cache clearing after inference calls
"""

import logging
from typing import Dict, Any, Optional

import torch

logger = logging.getLogger(__name__)

# Allocated share of device memory above which a cache sweep is forced
CLEANUP_THRESHOLD_PERCENT = 80.0


class GPUManager:
    """Picks the compute backend and reports its memory usage.

    Priority when device is "auto": CUDA > MPS > CPU
    """

    def __init__(self, device: str = "auto"):
        """Initialize the manager.

        Args:
            device: "auto", "cuda", "mps" or "cpu"
        """
        self._device_type: str = "cpu"
        self._device_name: str = "CPU"
        self._memory_mb: int = 0

        if device == "auto":
            self._detect_device()
        else:
            self._use_device(device)

    def _detect_device(self) -> None:
        if torch.cuda.is_available():
            self._use_device("cuda")
        elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            self._use_device("mps")
        else:
            self._use_device("cpu")

    def _use_device(self, device_type: str) -> None:
        if device_type not in ("cuda", "mps", "cpu"):
            raise ValueError("Unknown device type: %s" % device_type)

        self._device_type = device_type
        if device_type == "cuda":
            self._device_name = torch.cuda.get_device_name(0)
            props = torch.cuda.get_device_properties(0)
            self._memory_mb = props.total_memory // (1024 * 1024)
            logger.info("Using CUDA GPU: %s (%d MB)", self._device_name, self._memory_mb)
        elif device_type == "mps":
            self._device_name = "Apple Silicon (MPS)"
            logger.info("Using Apple MPS device")
        else:
            self._device_name = "CPU"
            logger.info("Using CPU backend")

    @property
    def device_type(self) -> str:
        """Device type string ('cuda', 'mps', or 'cpu')."""
        return self._device_type

    @property
    def device(self) -> torch.device:
        return torch.device(self._device_type)

    def is_available(self) -> bool:
        """Check if a GPU backend (CUDA or MPS) is in use."""
        return self._device_type != "cpu"

    def get_device_name(self) -> str:
        return self._device_name

    def get_memory_info(self) -> Dict[str, Any]:
        """Get current device memory usage.

        Returns:
            Dict with "device" plus, on CUDA, allocated_mb, reserved_mb,
            total_mb and utilization_percent
        """
        if self._device_type == "cuda":
            allocated = torch.cuda.memory_allocated()
            return {
                "device": "cuda",
                "allocated_mb": allocated / (1024 ** 2),
                "reserved_mb": torch.cuda.memory_reserved() / (1024 ** 2),
                "total_mb": self._memory_mb,
                "utilization_percent": (
                    100 * allocated / (self._memory_mb * 1024 ** 2)
                ) if self._memory_mb > 0 else 0.0
            }

        if self._device_type == "mps":
            info: Dict[str, Any] = {"device": "mps"}
            if hasattr(torch.mps, "current_allocated_memory"):
                info["allocated_mb"] = torch.mps.current_allocated_memory() / (1024 ** 2)
            return info

        return {"device": "cpu", "info": "Using system RAM"}

    def needs_cleanup(self, threshold_percent: float = CLEANUP_THRESHOLD_PERCENT) -> bool:
        """Check whether allocated device memory is above the sweep threshold."""
        info = self.get_memory_info()
        return info.get("utilization_percent", 0.0) > threshold_percent

    def clear_cache(self) -> None:
        """Release cached allocator blocks. Safe on any device type."""
        try:
            if self._device_type == "cuda":
                torch.cuda.empty_cache()
                logger.debug("Cleared CUDA memory cache")
            elif self._device_type == "mps" and hasattr(torch.mps, "empty_cache"):
                torch.mps.empty_cache()
                logger.debug("Cleared MPS memory cache")
        except RuntimeError as e:
            logger.warning("Failed to clear GPU cache: %s", e)

    def get_info(self) -> Dict[str, Any]:
        """Device summary for status responses."""
        info = {
            "available": self.is_available(),
            "device_type": self._device_type,
            "name": self._device_name,
        }
        if self._device_type == "cuda":
            info["cuda_version"] = torch.version.cuda
            info.update(self.get_memory_info())
        return info

    def log_memory_status(self, prefix: str = "") -> None:
        if self._device_type == "cuda":
            mem_info = self.get_memory_info()
            logger.info(
                "%sGPU Memory: %.1fMB allocated / %.0fMB total (%.1f%%)",
                prefix,
                mem_info.get("allocated_mb", 0),
                mem_info.get("total_mb", 0),
                mem_info.get("utilization_percent", 0),
            )
        else:
            logger.info("%sUsing %s", prefix, self._device_name)


_gpu_manager_instance: Optional[GPUManager] = None


def get_gpu_manager() -> GPUManager:
    """Get or create the shared GPUManager for this process."""
    global _gpu_manager_instance
    if _gpu_manager_instance is None:
        _gpu_manager_instance = GPUManager()
    return _gpu_manager_instance
