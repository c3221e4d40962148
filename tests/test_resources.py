"""ResourceTracker handle bookkeeping."""

import threading

import pytest

from transcoder.errors import ResourceError
from transcoder.resources import PreviewHandle, ResourceTracker


def test_create_tracks_handle(tracker):
    handle = tracker.create(b"abc", "image/png")
    assert tracker.is_tracked(handle)
    assert tracker.read(handle.handle_id).data == b"abc"
    assert tracker.outstanding == 1


def test_duplicate_track_is_noop(tracker):
    handle = PreviewHandle("preview:x", b"abc")
    tracker.track(handle)
    tracker.track(handle)
    assert tracker.outstanding == 1
    tracker.release(handle)
    assert tracker.outstanding == 0


def test_double_release_raises(tracker):
    handle = tracker.create(b"abc")
    tracker.release(handle)
    with pytest.raises(ResourceError):
        tracker.release(handle)


def test_read_after_release_raises(tracker):
    handle = tracker.create(b"abc")
    tracker.release(handle.handle_id)
    with pytest.raises(ResourceError):
        tracker.read(handle.handle_id)
    assert handle.data == b""


def test_release_all_leaves_nothing_outstanding(tracker):
    handles = [tracker.create(bytes([i])) for i in range(10)]
    tracker.release(handles[3])
    assert tracker.release_all() == 9
    assert tracker.outstanding == 0
    assert tracker.release_all() == 0


def test_concurrent_create_and_release_is_consistent():
    tracker = ResourceTracker()
    errors = []

    def worker():
        try:
            for _ in range(200):
                tracker.release(tracker.create(b"x"))
        except ResourceError as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert tracker.outstanding == 0
