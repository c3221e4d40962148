"""Conversion options, work items and batch results."""
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import Any, Mapping, Optional

from transcoder.config import DEFAULT_FORMAT, DEFAULT_QUALITY, FORMAT_EXTENSIONS, FORMAT_MIME_TYPES, MAX_DIMENSION
from transcoder.errors import FailureReason, StateTransitionError, ValidationError


class OutputFormat(str, Enum):
    WEBP = "webp"
    JPEG = "jpeg"
    PNG = "png"
    AVIF = "avif"

    @property
    def extension(self) -> str:
        return FORMAT_EXTENSIONS[self.value]

    @property
    def mime_type(self) -> str:
        return FORMAT_MIME_TYPES[self.value]


class ResizeMode(str, Enum):
    FIT = "fit"
    CROP = "crop"


class WorkItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


_DEFAULT_QUALITY = {
    OutputFormat.AVIF: 75,
    OutputFormat.JPEG: 85,
    OutputFormat.PNG: 100,
    OutputFormat.WEBP: 80,
}


def default_quality(fmt: OutputFormat) -> int:
    return _DEFAULT_QUALITY.get(OutputFormat(fmt), DEFAULT_QUALITY)


def _parse_format(value: Any) -> OutputFormat:
    if isinstance(value, OutputFormat):
        return value
    name = str(value or "").strip().lower().lstrip(".")
    if name == "jpg":
        name = "jpeg"
    try:
        return OutputFormat(name)
    except ValueError:
        raise ValidationError(f"Unsupported output format: {value!r}") from None


def _parse_dimension(name: str, value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got {value!r}") from None
    if number != value and not isinstance(value, str):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if not 1 <= number <= MAX_DIMENSION:
        raise ValidationError(f"{name} must be between 1 and {MAX_DIMENSION} pixels, got {number}")
    return number


@dataclass(frozen=True)
class ConversionOptions:
    """Encode parameters for one item. Quality is clamped into [1, 100]."""

    format: OutputFormat = DEFAULT_FORMAT
    quality: int = DEFAULT_QUALITY
    width: Optional[int] = None
    height: Optional[int] = None
    maintain_aspect_ratio: bool = True
    resize_mode: ResizeMode = ResizeMode.FIT

    def __post_init__(self):
        object.__setattr__(self, "format", _parse_format(self.format))
        if not isinstance(self.resize_mode, ResizeMode):
            try:
                object.__setattr__(self, "resize_mode", ResizeMode(str(self.resize_mode).strip().lower()))
            except ValueError:
                raise ValidationError(f"Unsupported resize mode: {self.resize_mode!r}") from None
        if isinstance(self.quality, bool) or not isinstance(self.quality, (int, float)):
            raise ValidationError(f"quality must be a number, got {self.quality!r}")
        object.__setattr__(self, "quality", max(1, min(100, int(round(self.quality)))))
        object.__setattr__(self, "width", _parse_dimension("width", self.width))
        object.__setattr__(self, "height", _parse_dimension("height", self.height))

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ConversionOptions":
        """Build options from loosely typed input (query params, JSON bodies)."""
        data = dict(data or {})
        fmt = _parse_format(data.get("format") or DEFAULT_FORMAT)
        quality = data.get("quality")
        if quality is None or quality == "":
            quality = default_quality(fmt)
        elif isinstance(quality, str):
            try:
                quality = float(quality)
            except ValueError:
                raise ValidationError(f"quality must be a number, got {quality!r}") from None
        aspect = data.get("maintain_aspect_ratio", True)
        if isinstance(aspect, str):
            aspect = aspect.strip().lower() not in ("0", "false", "no", "off")
        return cls(
            format=fmt,
            quality=quality,
            width=data.get("width"),
            height=data.get("height"),
            maintain_aspect_ratio=bool(aspect),
            resize_mode=data.get("resize_mode") or ResizeMode.FIT,
        )

    def to_dict(self) -> dict:
        return {
            "format": self.format.value,
            "quality": self.quality,
            "width": self.width,
            "height": self.height,
            "maintain_aspect_ratio": self.maintain_aspect_ratio,
            "resize_mode": self.resize_mode.value,
        }


def output_filename(original_name: str, fmt: OutputFormat) -> str:
    """Strip the original extension and append the one for fmt."""
    stem = PurePath(original_name or "image").stem or "image"
    return f"{stem}{OutputFormat(fmt).extension}"


@dataclass(frozen=True)
class ErrorInfo:
    reason: FailureReason
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {"reason": self.reason.value, "message": self.message}


class WorkItem:
    """One image's trip through the pipeline.

    Status moves pending -> processing -> done | error, and error -> pending on
    retry. Leaving processing requires the token handed out by claim(), so only
    the worker that dispatched the item can settle it.
    """

    def __init__(self, original_name: str, source_bytes: bytes, options: ConversionOptions):
        self.id = uuid.uuid4().hex
        self._original_name = original_name
        self._original_size = len(source_bytes)
        self.options = options
        self.status = WorkItemStatus.PENDING
        self.source_bytes: Optional[bytes] = source_bytes
        self.result_bytes: Optional[bytes] = None
        self.error: Optional[ErrorInfo] = None
        self.preview_handle: Optional[str] = None
        self.result_preview_handle: Optional[str] = None
        self.progress: float = 0.0
        self.attempts = 0
        self._owner: Optional[object] = None

    @property
    def original_name(self) -> str:
        return self._original_name

    @property
    def original_size(self) -> int:
        return self._original_size

    @property
    def result_size(self) -> Optional[int]:
        return len(self.result_bytes) if self.result_bytes is not None else None

    @property
    def output_name(self) -> str:
        return output_filename(self._original_name, self.options.format)

    def _require(self, *allowed: WorkItemStatus) -> None:
        if self.status not in allowed:
            expected = "|".join(s.value for s in allowed)
            raise StateTransitionError(f"Item {self.id} is {self.status.value}, expected {expected}")

    def _check_owner(self, token: object) -> None:
        self._require(WorkItemStatus.PROCESSING)
        if token is None or token is not self._owner:
            raise StateTransitionError(f"Item {self.id} is owned by another worker")

    def claim(self) -> object:
        """pending -> processing. Returns the owner token for settling the item."""
        self._require(WorkItemStatus.PENDING)
        if self.source_bytes is None:
            raise StateTransitionError(f"Item {self.id} has no source bytes")
        self._owner = object()
        self.status = WorkItemStatus.PROCESSING
        self.progress = 0.0
        self.attempts += 1
        return self._owner

    def complete(self, token: object, result: bytes) -> None:
        self._check_owner(token)
        self.result_bytes = result
        self.error = None
        self.status = WorkItemStatus.DONE
        self.progress = 100.0
        self._owner = None

    def fail(self, token: object, error: ErrorInfo) -> None:
        self._check_owner(token)
        self.result_bytes = None
        self.error = error
        self.status = WorkItemStatus.ERROR
        self.progress = 100.0
        self._owner = None

    def revert(self, token: object) -> None:
        """processing -> pending after cancellation; nothing is attached."""
        self._check_owner(token)
        self.result_bytes = None
        self.status = WorkItemStatus.PENDING
        self.progress = 0.0
        self._owner = None

    def reset(self) -> None:
        """error -> pending, for retry."""
        self._require(WorkItemStatus.ERROR)
        self.error = None
        self.status = WorkItemStatus.PENDING
        self.progress = 0.0

    def release_source(self) -> None:
        self.source_bytes = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "original_name": self._original_name,
            "original_size": self._original_size,
            "output_name": self.output_name,
            "status": self.status.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "options": self.options.to_dict(),
            "result_size": self.result_size,
            "error": self.error.to_dict() if self.error else None,
            "preview_handle": self.preview_handle,
            "result_preview_handle": self.result_preview_handle,
        }

    def __repr__(self) -> str:
        return f"WorkItem(id={self.id[:8]}, name={self._original_name!r}, status={self.status.value})"


@dataclass
class BatchResult:
    """Outcome of a scheduling run."""

    succeeded: list[WorkItem] = field(default_factory=list)
    failed: list[WorkItem] = field(default_factory=list)
    cancelled: list[WorkItem] = field(default_factory=list)

    @classmethod
    def from_items(cls, items) -> "BatchResult":
        result = cls()
        for item in items:
            if item.status == WorkItemStatus.DONE:
                result.succeeded.append(item)
            elif item.status == WorkItemStatus.ERROR:
                result.failed.append(item)
            elif item.status == WorkItemStatus.PENDING:
                result.cancelled.append(item)
        return result

    @property
    def done_ids(self) -> list[str]:
        return [i.id for i in self.succeeded]

    @property
    def failed_ids(self) -> list[str]:
        return [i.id for i in self.failed]

    def merge(self, other: "BatchResult") -> "BatchResult":
        """Combine two runs; an item's latest outcome wins."""
        latest: dict[str, WorkItem] = {}
        for item in self.succeeded + self.failed + self.cancelled + other.succeeded + other.failed + other.cancelled:
            latest[item.id] = item
        return BatchResult.from_items(latest.values())

    def summary(self) -> dict:
        return {
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "cancelled": len(self.cancelled),
            "items": [i.to_dict() for i in self.succeeded + self.failed + self.cancelled],
            "failures": [
                {"id": i.id, "filename": i.original_name, **(i.error.to_dict() if i.error else {})}
                for i in self.failed
            ],
        }
