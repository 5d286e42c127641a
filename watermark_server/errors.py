"""Exception types shared by the normalizer, the worker and the batch controller.

Worker-side exceptions never cross the process boundary; the worker sends the
class name alongside the message so the orchestrating side can rebuild the
matching type with `error_from_response`.
"""

from typing import Optional


class WatermarkServerError(Exception):
    """Base exception for the watermark server."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnsupportedTypeError(WatermarkServerError):
    """Raised when a MIME type is not in the supported allow-list."""


class DecodeError(WatermarkServerError):
    """Raised when the input bytes are not a decodable image."""


class MemoryLimitError(WatermarkServerError):
    """Raised when an image would need more memory than the configured ceiling."""


class NotLoadedError(WatermarkServerError):
    """Raised inside the worker when inference is requested before the model loads."""

    def __init__(self, message: str = "Model not loaded"):
        super().__init__(message)


class NotReadyError(WatermarkServerError):
    """Raised by the worker client when no request can be sent yet."""


class CapacityError(WatermarkServerError):
    """Raised when the compute device cannot hold the requested input."""


class ShapeError(WatermarkServerError):
    """Raised when the engine output shape does not match its input."""


class ProcessingError(WatermarkServerError):
    """Catch-all wrapping a lower-level failure, message preserved."""


_ERROR_TYPES = {
    cls.__name__: cls
    for cls in (
        UnsupportedTypeError,
        DecodeError,
        MemoryLimitError,
        NotLoadedError,
        NotReadyError,
        CapacityError,
        ShapeError,
        ProcessingError,
    )
}

# Substrings that mark a failure as a device capacity problem when the
# engine does not raise a structured CapacityError.
CAPACITY_MARKERS = ("texture size", "webgl", "memory")


def error_from_response(message: Optional[str], error_type: Optional[str] = None) -> WatermarkServerError:
    """Rebuild a typed exception from a failed worker response."""
    cls = _ERROR_TYPES.get(error_type or "", ProcessingError)
    return cls(message or "Unknown error")


def is_capacity_error(error: BaseException) -> bool:
    """Check whether a failure looks like hardware resource exhaustion."""
    if isinstance(error, CapacityError):
        return True
    text = str(error).lower()
    return any(marker in text for marker in CAPACITY_MARKERS)
