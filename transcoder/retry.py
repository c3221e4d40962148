"""Retry set for failed work items, keyed by item id."""
import logging
from typing import Callable, Iterable, Optional, Union

from transcoder.conversion.models import BatchResult, WorkItem, WorkItemStatus
from transcoder.scheduler import ProgressCallback, Scheduler

logger = logging.getLogger("transcoder.retry")


class RetryCoordinator:
    """Remembers failed item ids across runs and resubmits exactly that subset."""

    def __init__(self, lookup: Callable[[str], Optional[WorkItem]]):
        self._lookup = lookup
        # dict keeps insertion order and rejects duplicates
        self._ids: dict[str, None] = {}

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._ids

    def add_failures(self, items: Iterable[Union[WorkItem, str]]) -> int:
        """Append ids not already tracked. Returns how many were added."""
        added = 0
        for entry in items:
            item_id = entry.id if isinstance(entry, WorkItem) else entry
            if item_id not in self._ids:
                self._ids[item_id] = None
                added += 1
        return added

    def discard(self, item_id: str) -> None:
        self._ids.pop(item_id, None)

    def clear(self) -> None:
        """Forget every tracked id. Item state is left alone."""
        self._ids.clear()

    async def retry_all(
        self,
        scheduler: Scheduler,
        concurrency_limit: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        """Reset tracked items to pending and run them again with their own options."""
        if not self._ids:
            return BatchResult()

        to_run: list[WorkItem] = []
        for item_id in list(self._ids):
            item = self._lookup(item_id)
            if item is None:
                logger.info("Dropping %s from retry set: item no longer exists", item_id)
                self.discard(item_id)
                continue
            if item.status == WorkItemStatus.ERROR:
                item.reset()
                to_run.append(item)
            elif item.status == WorkItemStatus.PENDING:
                # left pending by an earlier cancellation
                to_run.append(item)
            elif item.status == WorkItemStatus.DONE:
                self.discard(item_id)
            else:
                logger.info("Skipping %s on retry: already processing", item_id)

        if not to_run:
            return BatchResult()

        logger.info("Retrying %s failed items", len(to_run))
        result = await scheduler.submit(to_run, concurrency_limit=concurrency_limit, on_progress=on_progress)
        for item in result.succeeded:
            self.discard(item.id)
        return result
