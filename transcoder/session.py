"""Batch session: the items of one user's batch plus the tracker, retry set and scheduler serving them."""
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional

from transcoder.archive import ArchiveExporter, ExportResult
from transcoder.config import MAX_CONCURRENCY, MAX_WORKERS
from transcoder.conversion.codec import Codec, PillowCodec
from transcoder.conversion.models import BatchResult, ConversionOptions, WorkItem, WorkItemStatus
from transcoder.errors import ResourceError, StateTransitionError, ValidationError
from transcoder.resources import ResourceTracker
from transcoder.retry import RetryCoordinator
from transcoder.scheduler import ProgressCallback, Scheduler

logger = logging.getLogger("transcoder.session")

_INPUT_MIME = {
    ".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".png": "image/png",
    ".gif": "image/gif", ".webp": "image/webp", ".avif": "image/avif",
    ".bmp": "image/bmp", ".tiff": "image/tiff", ".tif": "image/tiff",
}


def _input_mime(name: str) -> str:
    dot = name.rfind(".")
    return _INPUT_MIME.get(name[dot:].lower() if dot >= 0 else "", "application/octet-stream")


class BatchSession:
    """Owns the work items of one batch. Construct at session start, close() at the end."""

    def __init__(
        self,
        codec: Optional[Codec] = None,
        scheduler: Optional[Scheduler] = None,
        tracker: Optional[ResourceTracker] = None,
        default_options: Optional[ConversionOptions] = None,
        concurrency_limit: Optional[int] = None,
        exporter: Optional[ArchiveExporter] = None,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.tracker = tracker if tracker is not None else ResourceTracker()
        if scheduler is None:
            scheduler = Scheduler(codec if codec is not None else PillowCodec(), tracker=self.tracker)
        self.scheduler = scheduler
        self.default_options = default_options or ConversionOptions()
        self.concurrency_limit = concurrency_limit
        self.exporter = exporter if exporter is not None else ArchiveExporter()
        self._items: dict[str, WorkItem] = {}
        self.retry = RetryCoordinator(self._items.get)
        self._running = False

    @property
    def items(self) -> list[WorkItem]:
        return list(self._items.values())

    def get(self, item_id: str) -> Optional[WorkItem]:
        return self._items.get(item_id)

    def __len__(self) -> int:
        return len(self._items)

    def add(self, name: str, data: bytes, options: Optional[ConversionOptions] = None) -> WorkItem:
        if not data:
            raise ValidationError(f"{name or 'file'} is empty")
        item = WorkItem(name, data, options or self.default_options)
        item.preview_handle = self.tracker.create(data, _input_mime(name)).handle_id
        self._items[item.id] = item
        logger.debug("Added %s as %s (%s bytes)", name, item.id, item.original_size)
        return item

    def set_options(self, item_id: str, options: ConversionOptions) -> WorkItem:
        item = self._require(item_id)
        if item.status not in (WorkItemStatus.PENDING, WorkItemStatus.ERROR):
            raise StateTransitionError(f"Cannot change options of a {item.status.value} item")
        item.options = options
        return item

    def set_default_options(self, options: ConversionOptions, apply_to_pending: bool = True) -> None:
        self.default_options = options
        if apply_to_pending:
            for item in self._items.values():
                if item.status == WorkItemStatus.PENDING:
                    item.options = options

    async def process(
        self,
        concurrency_limit: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        """Run every pending item; failures join the retry set. One run per session at a time."""
        self._begin_run()
        try:
            pending = [i for i in self._items.values() if i.status == WorkItemStatus.PENDING]
            result = await self.scheduler.submit(
                pending,
                concurrency_limit=concurrency_limit or self.concurrency_limit,
                on_progress=on_progress,
            )
        finally:
            self._running = False
        self.retry.add_failures(result.failed)
        for item in result.succeeded:
            self.retry.discard(item.id)
        return result

    async def retry_failed(
        self,
        concurrency_limit: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        self._begin_run()
        try:
            return await self.retry.retry_all(
                self.scheduler,
                concurrency_limit=concurrency_limit or self.concurrency_limit,
                on_progress=on_progress,
            )
        finally:
            self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _begin_run(self) -> None:
        if self._running:
            raise StateTransitionError(f"Session {self.session_id} is already processing")
        self._running = True

    def cancel(self, item_id: str) -> bool:
        self._require(item_id)
        return self.scheduler.cancel(item_id)

    def cancel_all(self) -> int:
        return self.scheduler.cancel_all()

    def result(self) -> BatchResult:
        """Cumulative view over every item currently in the session."""
        return BatchResult.from_items(self._items.values())

    def export(self, selected_ids: Optional[Iterable[str]] = None) -> ExportResult:
        return self.exporter.export(self.result(), selected_ids=selected_ids)

    def read_preview(self, handle_id: str):
        return self.tracker.read(handle_id)

    def remove(self, item_id: str) -> WorkItem:
        item = self._require(item_id)
        if item.status == WorkItemStatus.PROCESSING:
            raise StateTransitionError(f"Item {item_id} is processing; cancel it first")
        self.scheduler.withdraw(item_id)
        del self._items[item_id]
        self.retry.discard(item_id)
        self._release_handles(item)
        item.release_source()
        item.result_bytes = None
        return item

    def clear(self) -> int:
        """Drop every item and release every tracked handle."""
        if any(i.status == WorkItemStatus.PROCESSING for i in self._items.values()):
            raise StateTransitionError("Batch is still processing; cancel it first")
        count = len(self._items)
        for item in self._items.values():
            self.scheduler.withdraw(item.id)
            item.preview_handle = None
            item.result_preview_handle = None
            item.release_source()
            item.result_bytes = None
        self._items.clear()
        self.retry.clear()
        self.tracker.release_all()
        logger.info("Cleared session %s (%s items)", self.session_id, count)
        return count

    def close(self) -> None:
        """Tear down: cancel in-flight work and release everything, whatever the item states."""
        self.cancel_all()
        for item in self._items.values():
            item.preview_handle = None
            item.result_preview_handle = None
        self._items.clear()
        self.retry.clear()
        self.tracker.release_all()

    def _release_handles(self, item: WorkItem) -> None:
        for attr in ("preview_handle", "result_preview_handle"):
            handle_id = getattr(item, attr)
            if handle_id is None:
                continue
            setattr(item, attr, None)
            try:
                self.tracker.release(handle_id)
            except ResourceError:
                logger.exception("Could not release %s of item %s", attr, item.id)

    def _require(self, item_id: str) -> WorkItem:
        item = self._items.get(item_id)
        if item is None:
            raise KeyError(item_id)
        return item


class SessionRegistry:
    """Live batch sessions by id."""

    def __init__(
        self,
        codec: Optional[Codec] = None,
        max_concurrency: int = MAX_CONCURRENCY,
        max_workers: int = MAX_WORKERS,
    ):
        self.codec = codec if codec is not None else PillowCodec()
        self.max_concurrency = max_concurrency
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="codec")
        self._sessions: dict[str, BatchSession] = {}

    def create(self, **kwargs) -> BatchSession:
        tracker = ResourceTracker()
        scheduler = Scheduler(self.codec, tracker=tracker, max_concurrency=self.max_concurrency, executor=self._executor)
        session = BatchSession(scheduler=scheduler, tracker=tracker, **kwargs)
        self._sessions[session.session_id] = session
        logger.info("Session %s created", session.session_id)
        return session

    def get(self, session_id: str) -> Optional[BatchSession]:
        return self._sessions.get(session_id)

    def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        logger.info("Session %s closed", session_id)
        return True

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.close(session_id)
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __len__(self) -> int:
        return len(self._sessions)


# Singleton
_session_registry: Optional[SessionRegistry] = None


def get_session_registry() -> SessionRegistry:
    global _session_registry
    if _session_registry is None:
        _session_registry = SessionRegistry()
    return _session_registry


def shutdown_session_registry() -> None:
    global _session_registry
    if _session_registry is not None:
        _session_registry.close_all()
        _session_registry = None
