"""Bounded-concurrency scheduler for codec calls.

Items are pulled from a queue into a fixed-size set of in-flight tasks; when
the set is full the scheduler waits for any task to settle before admitting
the next item. Codec calls run in a thread pool so the event loop stays free.
"""
import asyncio
import logging
from collections import deque
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, Iterable, Optional

from transcoder.config import MAX_CONCURRENCY, MAX_WORKERS
from transcoder.conversion.codec import Codec
from transcoder.conversion.models import BatchResult, ErrorInfo, WorkItem, WorkItemStatus
from transcoder.errors import CodecError, FailureReason, ItemCancelledError, ResourceError, ValidationError
from transcoder.resources import ResourceTracker

logger = logging.getLogger("transcoder.scheduler")

ProgressCallback = Callable[[str, float], None]


class _Run:
    """State of one submit() call."""

    def __init__(self, items: list[WorkItem]):
        self.queue = deque(items)
        self.halted = False


class Scheduler:
    """Runs codec calls for work items with at most N in flight."""

    def __init__(
        self,
        codec: Codec,
        tracker: Optional[ResourceTracker] = None,
        max_concurrency: int = MAX_CONCURRENCY,
        executor: Optional[Executor] = None,
    ):
        if max_concurrency < 1:
            raise ValidationError("max_concurrency must be at least 1")
        self.codec = codec
        self.tracker = tracker
        self.max_concurrency = max_concurrency
        self._executor = executor or ThreadPoolExecutor(max_workers=MAX_WORKERS, thread_name_prefix="codec")
        self._owns_executor = executor is None
        self._in_flight: dict[str, asyncio.Task] = {}
        self._cancel_requested: set[str] = set()
        self._runs: set[_Run] = set()
        self.peak_in_flight = 0
        logger.info("Scheduler initialized with max_concurrency=%s", max_concurrency)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def is_processing(self, item_id: str) -> bool:
        return item_id in self._in_flight

    async def submit(
        self,
        items: Iterable[WorkItem],
        concurrency_limit: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        """Process pending items and return once every dispatched item has settled."""
        items = list(items)
        limit = self.max_concurrency if concurrency_limit is None else concurrency_limit
        if limit < 1:
            raise ValidationError("concurrency_limit must be at least 1")
        not_pending = [i for i in items if i.status != WorkItemStatus.PENDING]
        if not_pending:
            raise ValidationError(
                f"Only pending items can be submitted; got {', '.join(f'{i.id}={i.status.value}' for i in not_pending)}"
            )
        if len({i.id for i in items}) != len(items):
            raise ValidationError("The same item was submitted twice")
        if not items:
            return BatchResult()

        run = _Run(items)
        self._runs.add(run)
        active: set[asyncio.Task] = set()
        logger.info("Submitting %s items (limit=%s)", len(items), limit)
        try:
            while run.queue or active:
                while run.queue and not run.halted and len(active) < limit:
                    item = run.queue.popleft()
                    if item.status != WorkItemStatus.PENDING:
                        # picked up by another run since this one was queued
                        logger.info("Skipping %s: already %s", item.id, item.status.value)
                        continue
                    active.add(self._dispatch(item, on_progress))
                if run.halted:
                    run.queue.clear()
                if not active:
                    break
                _, active = await asyncio.wait(active, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            for task in active:
                self._cancel_task(task)
            if active:
                await asyncio.gather(*active, return_exceptions=True)
            raise
        finally:
            self._runs.discard(run)

        result = BatchResult.from_items(items)
        logger.info(
            "Run finished: %s succeeded, %s failed, %s left pending",
            len(result.succeeded), len(result.failed), len(result.cancelled),
        )
        return result

    def cancel(self, item_id: str) -> bool:
        """Cancel one in-flight item; it returns to pending. False if not in flight."""
        task = self._in_flight.get(item_id)
        if task is None or task.done():
            return False
        self._cancel_requested.add(item_id)
        task.cancel()
        logger.info("Cancel requested for %s", item_id)
        return True

    def cancel_all(self) -> int:
        """Cancel every in-flight item and stop active runs from dispatching more."""
        for run in self._runs:
            run.halted = True
        cancelled = 0
        for item_id in list(self._in_flight):
            if self.cancel(item_id):
                cancelled += 1
        logger.info("Cancelled %s in-flight items", cancelled)
        return cancelled

    def withdraw(self, item_id: str) -> bool:
        """Take a not-yet-dispatched item out of every active run's queue."""
        found = False
        for run in self._runs:
            for item in list(run.queue):
                if item.id == item_id:
                    run.queue.remove(item)
                    found = True
        return found

    def _cancel_task(self, task: asyncio.Task) -> None:
        for item_id, t in self._in_flight.items():
            if t is task:
                self._cancel_requested.add(item_id)
        task.cancel()

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def _dispatch(self, item: WorkItem, on_progress: Optional[ProgressCallback]) -> asyncio.Task:
        # claimed before the task starts: every in-flight entry is a processing item
        token = item.claim()
        task = asyncio.create_task(self._process(item, token, on_progress), name=f"encode-{item.id[:8]}")
        task.add_done_callback(lambda t: self._settle(item, token, t))
        self._in_flight[item.id] = task
        self.peak_in_flight = max(self.peak_in_flight, len(self._in_flight))
        return task

    def _settle(self, item: WorkItem, token: object, task: asyncio.Task) -> None:
        if self._in_flight.get(item.id) is task:
            del self._in_flight[item.id]
        self._cancel_requested.discard(item.id)
        # A task cancelled before it ever ran never reached its own handler
        if task.cancelled() and item.status == WorkItemStatus.PROCESSING:
            item.revert(token)
            logger.info("Item %s (%s) cancelled before dispatch, back to pending", item.id, item.original_name)

    async def _process(self, item: WorkItem, token: object, on_progress: Optional[ProgressCallback]) -> None:
        self._notify(on_progress, item.id, 0.0)
        loop = asyncio.get_running_loop()
        try:
            try:
                encoded = await loop.run_in_executor(self._executor, self.codec.encode, item.source_bytes, item.options)
            except asyncio.CancelledError:
                if item.id not in self._cancel_requested:
                    raise
                raise ItemCancelledError(item.id) from None
        except ItemCancelledError:
            item.revert(token)
            logger.info("Item %s (%s) cancelled, back to pending", item.id, item.original_name)
            self._notify(on_progress, item.id, 0.0)
            return
        except CodecError as e:
            item.fail(token, ErrorInfo(e.reason, e.message))
            logger.warning("Codec failed for %s (%s): %s", item.original_name, item.id, e)
        except Exception as e:
            item.fail(token, ErrorInfo(FailureReason.UNKNOWN, str(e) or type(e).__name__))
            logger.exception("Unexpected failure processing %s (%s)", item.original_name, item.id)
        else:
            item.complete(token, encoded)
            item.release_source()
            self._attach_preview(item)
        self._notify(on_progress, item.id, 100.0)

    def _attach_preview(self, item: WorkItem) -> None:
        if self.tracker is None or item.result_bytes is None:
            return
        if item.result_preview_handle is not None:
            try:
                self.tracker.release(item.result_preview_handle)
            except ResourceError:
                logger.exception("Stale result preview for %s", item.id)
        handle = self.tracker.create(item.result_bytes, item.options.format.mime_type)
        item.result_preview_handle = handle.handle_id

    @staticmethod
    def _notify(on_progress: Optional[ProgressCallback], item_id: str, progress: float) -> None:
        if on_progress is None:
            return
        try:
            on_progress(item_id, progress)
        except Exception:
            logger.exception("Progress callback failed for %s", item_id)
