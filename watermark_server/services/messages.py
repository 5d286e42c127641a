"""Messages exchanged with the inference worker.

| Direction | Kind               | Fields                                        |
|-----------|--------------------|-----------------------------------------------|
| -> worker | LoadModel          |                                               |
| <- worker | ModelLoaded        | success, error_message                        |
| -> worker | ProcessImage       | id, buffer, quality                           |
| <- worker | ProcessingComplete | id, success, buffer, error_message, error_type |

All messages are plain dataclasses so they pickle across a process queue
and can equally be passed by direct call.
"""

from dataclasses import dataclass
from typing import ClassVar, Optional, Union

from ..utils.constants import MODEL_QUALITY
from ..utils.image_utils import PixelBuffer


@dataclass
class LoadModel:
    kind: ClassVar[str] = "LoadModel"


@dataclass
class ModelLoaded:
    success: bool
    error_message: Optional[str] = None

    kind: ClassVar[str] = "ModelLoaded"


@dataclass
class ProcessImage:
    id: str
    buffer: PixelBuffer
    quality: str = MODEL_QUALITY.HIGH

    kind: ClassVar[str] = "ProcessImage"


@dataclass
class ProcessingComplete:
    id: str
    success: bool
    buffer: Optional[PixelBuffer] = None
    error_message: Optional[str] = None
    # Exception class name raised inside the worker
    error_type: Optional[str] = None

    kind: ClassVar[str] = "ProcessingComplete"


WorkerRequest = Union[LoadModel, ProcessImage]
WorkerResponse = Union[ModelLoaded, ProcessingComplete]
