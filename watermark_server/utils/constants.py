"""Shared image-processing constants."""

# Accepted input MIME types
SUPPORTED_TYPES = ("image/jpeg", "image/png", "image/webp")

IMAGE_CONFIG = {
    "MAX_DIMENSION": 4096,
    "MIN_DIMENSION": 32,
    "DEFAULT_QUALITY": 0.8,
    "SUPPORTED_TYPES": SUPPORTED_TYPES,
    # Largest texture side assumed safe across devices
    "WEBGL_MAX_DIMENSION": 8192,
    "MAX_MEMORY_USAGE": 1024 * 1024 * 1024,  # 1GB
}

# Maximum images held by one batch session
MAX_FILES = 50


class MODEL_QUALITY:
    """Model quality presets sent along with inference requests."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Worker-side dimension ceiling for each model quality
QUALITY_MAX_DIMENSION = {
    MODEL_QUALITY.HIGH: IMAGE_CONFIG["MAX_DIMENSION"],
    MODEL_QUALITY.MEDIUM: IMAGE_CONFIG["MAX_DIMENSION"] // 2,
    MODEL_QUALITY.LOW: IMAGE_CONFIG["MAX_DIMENSION"] // 4,
}

PROCESSING_PRESETS = {
    "SMALL": {
        "max_dimension": IMAGE_CONFIG["WEBGL_MAX_DIMENSION"] // 2,
        "quality": 1.0,
        "model_quality": MODEL_QUALITY.HIGH,
    },
    "MEDIUM": {
        "max_dimension": IMAGE_CONFIG["WEBGL_MAX_DIMENSION"] // 4,
        "quality": 0.9,
        "model_quality": MODEL_QUALITY.MEDIUM,
    },
    "LARGE": {
        "max_dimension": IMAGE_CONFIG["WEBGL_MAX_DIMENSION"] // 8,
        "quality": 0.8,
        "model_quality": MODEL_QUALITY.LOW,
    },
}
