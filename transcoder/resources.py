"""Preview handle registry.

A preview handle is an ephemeral reference to in-memory image bytes that can
be served for display without re-reading the source. Handles are owned by the
tracker; work items only keep the handle id.
"""
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Union

from transcoder.errors import ResourceError

logger = logging.getLogger("transcoder.resources")


@dataclass(eq=False)
class PreviewHandle:
    handle_id: str
    data: bytes = field(repr=False)
    media_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)


HandleRef = Union[PreviewHandle, str]


def _handle_id(handle: HandleRef) -> str:
    return handle.handle_id if isinstance(handle, PreviewHandle) else handle


class ResourceTracker:
    """Tracks preview handles and guarantees each one is released once."""

    def __init__(self):
        self._handles: dict[str, PreviewHandle] = {}
        self._lock = threading.Lock()

    def create(self, data: bytes, media_type: str = "application/octet-stream") -> PreviewHandle:
        handle = PreviewHandle(handle_id=f"preview:{uuid.uuid4().hex}", data=data, media_type=media_type)
        self.track(handle)
        return handle

    def track(self, handle: PreviewHandle) -> None:
        """Register a handle. Tracking the same handle again is a no-op."""
        with self._lock:
            if handle.handle_id in self._handles:
                return
            self._handles[handle.handle_id] = handle
        logger.debug("Tracking %s (%s bytes)", handle.handle_id, handle.size)

    def is_tracked(self, handle: HandleRef) -> bool:
        with self._lock:
            return _handle_id(handle) in self._handles

    def read(self, handle: HandleRef) -> PreviewHandle:
        handle_id = _handle_id(handle)
        with self._lock:
            found = self._handles.get(handle_id)
        if found is None:
            raise ResourceError(f"Handle {handle_id} is not tracked (never created or already released)")
        return found

    def release(self, handle: HandleRef) -> None:
        handle_id = _handle_id(handle)
        with self._lock:
            found = self._handles.pop(handle_id, None)
        if found is None:
            raise ResourceError(f"Cannot release {handle_id}: not tracked")
        found.data = b""
        logger.debug("Released %s", handle_id)

    def release_all(self) -> int:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.data = b""
        if handles:
            logger.info("Released %s preview handles", len(handles))
        return len(handles)

    @property
    def outstanding(self) -> int:
        with self._lock:
            return len(self._handles)

    def __len__(self) -> int:
        return self.outstanding
