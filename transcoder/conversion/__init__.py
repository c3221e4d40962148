from .codec import Codec, PillowCodec
from .models import (
    BatchResult,
    ConversionOptions,
    ErrorInfo,
    OutputFormat,
    ResizeMode,
    WorkItem,
    WorkItemStatus,
)

__all__ = [
    "BatchResult",
    "Codec",
    "ConversionOptions",
    "ErrorInfo",
    "OutputFormat",
    "PillowCodec",
    "ResizeMode",
    "WorkItem",
    "WorkItemStatus",
]
