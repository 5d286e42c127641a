"""Image decoding, validation and resizing.

Turns uploaded image bytes into RGBA pixel buffers that fit the device
limits, and encodes processed buffers back into image files.

Resize policy:
- No downscale when the larger side already fits the ceiling
- Otherwise the larger side becomes the ceiling and the aspect ratio is kept
- Both sides are floored to even numbers for tensor packing
- Large reductions go through a 2x intermediate to limit resampling artifacts
"""

import io
import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np
from PIL import Image

from .constants import IMAGE_CONFIG, SUPPORTED_TYPES
from ..errors import (
    DecodeError,
    MemoryLimitError,
    ProcessingError,
    UnsupportedTypeError,
)

logger = logging.getLogger(__name__)

RESAMPLE = Image.Resampling.LANCZOS

_PIL_FORMATS = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}


@dataclass(frozen=True)
class ImageDimensions:
    """Width and height of an image in pixels."""
    width: int
    height: int


@dataclass
class ImageFile:
    """An uploaded image: original name, raw bytes and declared MIME type."""
    name: str
    data: bytes
    mime_type: str = ""


@dataclass
class NormalizeOptions:
    """Options for `file_to_pixel_buffer`."""
    max_dimension: Optional[int] = None


@dataclass
class PixelBuffer:
    """RGBA pixels, row-major, 4 bytes per pixel."""
    width: int
    height: int
    data: bytes

    def __post_init__(self):
        if self.width < 0 or self.height < 0:
            raise ValueError(
                "Invalid buffer dimensions: %dx%d" % (self.width, self.height))
        expected = self.width * self.height * 4
        if len(self.data) != expected:
            raise ValueError(
                "Buffer size mismatch: expected %d bytes (%d x %d x 4) but got %d bytes"
                % (expected, self.width, self.height, len(self.data)))

    @classmethod
    def from_array(cls, array: np.ndarray) -> "PixelBuffer":
        """Build a buffer from an (H, W, 4) uint8 array."""
        if array.ndim != 3 or array.shape[2] != 4:
            raise ValueError("Expected an (H, W, 4) array, got shape %s" % (array.shape,))
        array = np.ascontiguousarray(array, dtype=np.uint8)
        return cls(width=array.shape[1], height=array.shape[0], data=array.tobytes())

    def to_array(self) -> np.ndarray:
        """View the buffer as an (H, W, 4) uint8 array."""
        return np.frombuffer(self.data, dtype=np.uint8).reshape(self.height, self.width, 4)

    @property
    def dimensions(self) -> ImageDimensions:
        return ImageDimensions(self.width, self.height)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up."""
    return int(math.floor(value + 0.5))


# ==================== Validation ====================

def validate_image_type(mime_type: str) -> None:
    """Check a MIME type against the supported list.

    Raises:
        UnsupportedTypeError: if the type is empty or not supported
    """
    if not mime_type or not isinstance(mime_type, str):
        raise UnsupportedTypeError("Invalid image type: type must be a non-empty string")
    if mime_type not in SUPPORTED_TYPES:
        raise UnsupportedTypeError(
            "Unsupported image type: %s. Supported types are: %s"
            % (mime_type, ", ".join(SUPPORTED_TYPES)))


def validate_image_dimensions(width: int, height: int) -> None:
    """Check dimensions against the device limits.

    Raises:
        ValueError: if the dimensions are not finite or out of range
    """
    if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in (width, height)):
        raise ValueError("Invalid image dimensions: width and height must be finite numbers")
    min_dim = IMAGE_CONFIG["MIN_DIMENSION"]
    max_dim = IMAGE_CONFIG["WEBGL_MAX_DIMENSION"]
    if width < min_dim or height < min_dim:
        raise ValueError(
            "Image dimensions must be at least %dx%d pixels" % (min_dim, min_dim))
    if width > max_dim or height > max_dim:
        raise ValueError(
            "Image dimensions must not exceed %dx%d pixels" % (max_dim, max_dim))


def estimate_memory_usage(width: int, height: int) -> int:
    """Bytes needed to hold the image as RGBA."""
    return width * height * 4


def get_file_type(file: ImageFile) -> str:
    """Return the file's MIME type, defaulting to PNG when missing."""
    mime_type = file.mime_type or "image/png"
    validate_image_type(mime_type)
    return mime_type


def get_image_dimensions(
    file: ImageFile,
    max_memory: int = IMAGE_CONFIG["MAX_MEMORY_USAGE"]
) -> ImageDimensions:
    """Read image dimensions from the header without decoding the pixels.

    Args:
        file: Image to inspect
        max_memory: Largest RGBA footprint accepted, in bytes

    Raises:
        DecodeError: if the bytes are not an image
        MemoryLimitError: if the decoded image would exceed max_memory
    """
    try:
        with Image.open(io.BytesIO(file.data)) as img:
            width, height = img.size
    except Image.DecompressionBombError as e:
        raise MemoryLimitError("Image requires too much memory to process") from e
    except OSError as e:
        raise DecodeError("Failed to load image") from e

    if estimate_memory_usage(width, height) > max_memory:
        raise MemoryLimitError("Image requires too much memory to process")
    return ImageDimensions(width, height)


# ==================== Resizing ====================

def calculate_optimal_dimensions(width: int, height: int, max_dimension: int) -> ImageDimensions:
    """Fit (width, height) inside max_dimension, keeping aspect ratio.

    The result is always floored to even numbers, even when no downscale
    is needed.
    """
    aspect_ratio = width / height
    new_width, new_height = width, height

    if width > height:
        if width > max_dimension:
            new_width = max_dimension
            new_height = round_half_up(max_dimension / aspect_ratio)
    else:
        if height > max_dimension:
            new_height = max_dimension
            new_width = round_half_up(max_dimension * aspect_ratio)

    new_width = max(2, (new_width // 2) * 2)
    new_height = max(2, (new_height // 2) * 2)
    return ImageDimensions(new_width, new_height)


def requires_special_handling(width: int, height: int) -> bool:
    """Check whether an image is large enough to risk device limits."""
    half_max = IMAGE_CONFIG["WEBGL_MAX_DIMENSION"] // 2
    if width > half_max or height > half_max:
        return True
    if estimate_memory_usage(width, height) > IMAGE_CONFIG["MAX_MEMORY_USAGE"] // 2:
        return True
    return width * height > half_max ** 2


def get_safe_dimensions(width: int, height: int) -> ImageDimensions:
    """Dimensions that fit a quarter of the texture limit."""
    return calculate_optimal_dimensions(
        width, height, IMAGE_CONFIG["WEBGL_MAX_DIMENSION"] // 4)


def resize_image_with_steps(img: Image.Image, target_width: int, target_height: int) -> Image.Image:
    """Resize, going through a 2x intermediate when the reduction is large."""
    intermediate_size = (min(img.width, target_width * 2),
                         min(img.height, target_height * 2))
    intermediate = None
    try:
        source = img
        if intermediate_size != img.size:
            intermediate = img.resize(intermediate_size, RESAMPLE)
            source = intermediate
        return source.resize((target_width, target_height), RESAMPLE)
    finally:
        if intermediate is not None:
            intermediate.close()


# ==================== Decode / encode ====================

def _open_rgba(data: bytes) -> Image.Image:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return img.convert("RGBA")
    except Image.DecompressionBombError as e:
        raise MemoryLimitError("Image requires too much memory to process") from e
    except OSError as e:
        raise DecodeError("Failed to load image") from e


def image_to_pixel_buffer(img: Image.Image) -> PixelBuffer:
    """Copy a PIL image into a PixelBuffer."""
    if img.mode != "RGBA":
        rgba = img.convert("RGBA")
        try:
            return PixelBuffer.from_array(np.asarray(rgba))
        finally:
            rgba.close()
    return PixelBuffer.from_array(np.asarray(img))


def pixel_buffer_to_image(buffer: PixelBuffer) -> Image.Image:
    """Wrap a PixelBuffer as an RGBA PIL image."""
    return Image.fromarray(buffer.to_array())


def file_to_pixel_buffer(file: ImageFile, options: Optional[NormalizeOptions] = None) -> PixelBuffer:
    """Decode an image file into a PixelBuffer within the dimension ceiling.

    Args:
        file: Uploaded image
        options: Optional overrides; max_dimension replaces the default
            ceiling of half the texture limit

    Raises:
        UnsupportedTypeError, DecodeError, MemoryLimitError: unchanged
        ProcessingError: wrapping any other failure
    """
    options = options or NormalizeOptions()
    try:
        get_file_type(file)
        dimensions = get_image_dimensions(file)

        max_dim = options.max_dimension or IMAGE_CONFIG["WEBGL_MAX_DIMENSION"] // 2
        target = calculate_optimal_dimensions(dimensions.width, dimensions.height, max_dim)

        img = _open_rgba(file.data)
        try:
            if (target.width, target.height) != img.size:
                logger.info("Resizing image from %dx%d to %dx%d",
                            img.width, img.height, target.width, target.height)
                resized = resize_image_with_steps(img, target.width, target.height)
                try:
                    return image_to_pixel_buffer(resized)
                finally:
                    resized.close()
            return image_to_pixel_buffer(img)
        finally:
            img.close()

    except (UnsupportedTypeError, DecodeError, MemoryLimitError):
        raise
    except Exception as e:
        raise ProcessingError("Failed to process image: %s" % e) from e


def bytes_to_pixel_buffer(data: bytes) -> PixelBuffer:
    """Decode image bytes into a PixelBuffer at full size."""
    img = _open_rgba(data)
    try:
        return image_to_pixel_buffer(img)
    finally:
        img.close()


def pixel_buffer_to_bytes(
    buffer: PixelBuffer,
    mime_type: str = "image/png",
    quality: float = 1.0
) -> bytes:
    """Encode a PixelBuffer as an image file.

    Args:
        buffer: Pixels to encode
        mime_type: Output type; unsupported types fall back to PNG
        quality: 0-1, used by JPEG and WEBP (WEBP is lossless at 1.0)

    Returns:
        Encoded image bytes
    """
    mime_type = mime_type or "image/png"
    try:
        validate_image_type(mime_type)
    except UnsupportedTypeError:
        logger.warning("Invalid image type: %s, defaulting to PNG", mime_type)
        mime_type = "image/png"

    pil_quality = max(1, min(100, round_half_up(quality * 100)))
    output = io.BytesIO()
    img = pixel_buffer_to_image(buffer)
    try:
        fmt = _PIL_FORMATS[mime_type]
        if fmt == "JPEG":
            rgb = img.convert("RGB")
            try:
                rgb.save(output, format="JPEG", quality=pil_quality)
            finally:
                rgb.close()
        elif fmt == "WEBP":
            img.save(output, format="WEBP", quality=pil_quality, lossless=quality >= 1.0)
        else:
            img.save(output, format="PNG")
    finally:
        img.close()
    return output.getvalue()
