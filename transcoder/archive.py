"""Archive export: collect done outputs and pack them into a zip."""
import io
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePath, PurePosixPath
from typing import Callable, Iterable, Optional, Protocol, Union

from transcoder.config import ARCHIVE_COMPRESSLEVEL
from transcoder.conversion.models import BatchResult, WorkItem, WorkItemStatus
from transcoder.errors import ArchiveError, NothingToExportError, ResourceError

logger = logging.getLogger("transcoder.archive")

Entry = tuple[str, bytes]


class Packer(Protocol):
    def pack(self, entries: list[Entry]) -> bytes:
        """Bundle (name, bytes) pairs into one archive or raise ArchiveError."""
        ...


class ZipPacker:
    def __init__(self, compresslevel: int = ARCHIVE_COMPRESSLEVEL):
        self.compresslevel = compresslevel

    def pack(self, entries: list[Entry]) -> bytes:
        buf = io.BytesIO()
        try:
            with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED, compresslevel=self.compresslevel) as zf:
                for name, data in entries:
                    zf.writestr(name, data)
        except (OSError, ValueError, zipfile.BadZipFile) as e:
            raise ArchiveError(f"Failed to create zip: {e}") from e
        return buf.getvalue()


@dataclass
class FailedImage:
    item_id: str
    filename: str
    error: str

    def to_dict(self) -> dict:
        return {"id": self.item_id, "filename": self.filename, "error": self.error}


@dataclass
class ExportResult:
    archive: bytes
    entries: list[str] = field(default_factory=list)
    failed_images: list[FailedImage] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.archive)

    def summary(self) -> dict:
        return {
            "entries": list(self.entries),
            "successful_images": len(self.entries),
            "failed_images": [f.to_dict() for f in self.failed_images],
            "archive_size": self.size,
        }


def _sanitize_name(name: str) -> str:
    """Safe file name for zip (no path separators, no empty)."""
    s = "".join(c for c in PurePath(name).name if c.isalnum() or c in "._- ").strip() or "file"
    return s[:128]


def unique_name(name: str, taken: set[str]) -> str:
    """First use keeps the name; later collisions become stem-1.ext, stem-2.ext, ..."""
    if name not in taken:
        return name
    path = PurePosixPath(name)
    n = 1
    while True:
        candidate = path.with_name(f"{path.stem}-{n}{path.suffix}").as_posix()
        if candidate not in taken:
            return candidate
        n += 1


def _result_bytes(item: WorkItem) -> bytes:
    if item.result_bytes is None:
        raise ResourceError(f"No result bytes for {item.id}")
    return item.result_bytes


class ArchiveExporter:
    """Builds (filename, bytes) entries from done items and hands them to a packer."""

    def __init__(
        self,
        packer: Optional[Packer] = None,
        fetch: Optional[Callable[[WorkItem], bytes]] = None,
        folder_structure: str = "flat",
    ):
        self.packer = packer if packer is not None else ZipPacker()
        self.fetch = fetch or _result_bytes
        if folder_structure not in ("flat", "by_format"):
            logger.warning("Unknown folder_structure %s, using flat", folder_structure)
            folder_structure = "flat"
        self.folder_structure = folder_structure

    def _arcname(self, item: WorkItem) -> str:
        name = _sanitize_name(item.output_name)
        if self.folder_structure == "by_format":
            return f"{item.options.format.value}/{name}"
        return name

    def collect(
        self,
        source: Union[BatchResult, Iterable[WorkItem]],
        selected_ids: Optional[Iterable[str]] = None,
    ) -> tuple[list[Entry], list[FailedImage]]:
        items = source.succeeded if isinstance(source, BatchResult) else list(source)
        wanted = set(selected_ids) if selected_ids is not None else None
        entries: list[Entry] = []
        failed: list[FailedImage] = []
        taken: set[str] = set()
        for item in items:
            if item.status != WorkItemStatus.DONE:
                continue
            if wanted is not None and item.id not in wanted:
                continue
            try:
                data = self.fetch(item)
            except Exception as e:
                logger.warning("Failed to add %s to archive: %s", item.original_name, e)
                failed.append(FailedImage(item.id, item.output_name, str(e) or type(e).__name__))
                continue
            name = unique_name(self._arcname(item), taken)
            taken.add(name)
            entries.append((name, data))
        return entries, failed

    def export(
        self,
        source: Union[BatchResult, Iterable[WorkItem]],
        selected_ids: Optional[Iterable[str]] = None,
    ) -> ExportResult:
        """Pack every fetchable done item; items whose bytes cannot be fetched are reported, not fatal."""
        entries, failed = self.collect(source, selected_ids)
        if not entries:
            raise NothingToExportError("No outputs to export")
        try:
            archive = self.packer.pack(entries)
        except ArchiveError:
            raise
        except Exception as e:
            logger.exception("Packing %s entries failed", len(entries))
            raise ArchiveError(f"Failed to create archive: {e}") from e
        logger.info(
            "Created archive with %s entries (%s failed, structure=%s, %s bytes)",
            len(entries), len(failed), self.folder_structure, len(archive),
        )
        return ExportResult(archive=archive, entries=[n for n, _ in entries], failed_images=failed)
