"""BatchSession: item lifecycle end to end and handle release."""

import asyncio

import pytest

from tests.fakes import EchoCodec, FlakyCodec, GatedCodec, wait_until
from transcoder.conversion.models import ConversionOptions, WorkItemStatus
from transcoder.errors import ResourceError, StateTransitionError, ValidationError
from transcoder.resources import ResourceTracker
from transcoder.session import BatchSession, SessionRegistry


@pytest.fixture
def make_session(make_scheduler, tracker):
    def _make(codec, **kwargs):
        return BatchSession(scheduler=make_scheduler(codec), tracker=tracker, **kwargs)

    return _make


def test_add_creates_input_preview(make_session, tracker):
    session = make_session(EchoCodec())
    item = session.add("cat.png", b"\x89PNG...")
    handle = tracker.read(item.preview_handle)
    assert handle.media_type == "image/png"
    assert item.options == session.default_options


def test_add_rejects_empty_file(make_session):
    with pytest.raises(ValidationError):
        make_session(EchoCodec()).add("empty.png", b"")


@pytest.mark.asyncio
async def test_process_then_remove_releases_both_handles(make_session, tracker):
    session = make_session(EchoCodec(delay_per_byte=0))
    item = session.add("a.png", b"abc")
    result = await session.process()
    assert result.done_ids == [item.id]
    assert tracker.outstanding == 2

    input_handle, output_handle = item.preview_handle, item.result_preview_handle
    session.remove(item.id)

    assert tracker.outstanding == 0
    assert item.preview_handle is None and item.result_preview_handle is None
    for handle_id in (input_handle, output_handle):
        with pytest.raises(ResourceError):
            tracker.read(handle_id)
    with pytest.raises(KeyError):
        session.remove(item.id)


@pytest.mark.asyncio
async def test_failures_feed_retry_set(make_session):
    codec = FlakyCodec(fail_on={b"bad"})
    session = make_session(codec)
    good = session.add("good.png", b"good")
    bad = session.add("bad.png", b"bad")

    await session.process()
    assert session.retry.ids == [bad.id]
    assert good.status == WorkItemStatus.DONE

    codec.fail_on.clear()
    result = await session.retry_failed()
    assert result.done_ids == [bad.id]
    assert len(session.retry) == 0
    assert len(session.result().succeeded) == 2


@pytest.mark.asyncio
async def test_remove_discards_from_retry_set(make_session, tracker):
    session = make_session(FlakyCodec(fail_on={b"bad"}))
    bad = session.add("bad.png", b"bad")
    await session.process()
    session.remove(bad.id)
    assert bad.id not in session.retry
    assert tracker.outstanding == 0


@pytest.mark.asyncio
async def test_clear_releases_everything(make_session, tracker):
    session = make_session(FlakyCodec(fail_on={b"b"}))
    for name, data in (("a.png", b"a"), ("b.png", b"b"), ("c.png", b"c")):
        session.add(name, data)
    await session.process()
    session.add("late.png", b"late")

    assert session.clear() == 4
    assert tracker.outstanding == 0
    assert len(session) == 0
    assert len(session.retry) == 0


@pytest.mark.asyncio
async def test_processing_item_cannot_be_removed(make_session):
    codec = GatedCodec()
    session = make_session(codec)
    item = session.add("a.png", b"a")
    run = asyncio.create_task(session.process())
    try:
        await wait_until(lambda: item.status == WorkItemStatus.PROCESSING)
        with pytest.raises(StateTransitionError):
            session.remove(item.id)
        with pytest.raises(StateTransitionError):
            session.clear()
        assert session.cancel(item.id) is True
        await run
    finally:
        codec.gate.set()
    assert item.status == WorkItemStatus.PENDING
    session.remove(item.id)


@pytest.mark.asyncio
async def test_cancelled_item_is_processed_next_time(make_session):
    codec = GatedCodec()
    session = make_session(codec)
    item = session.add("a.png", b"a")
    run = asyncio.create_task(session.process())
    await wait_until(lambda: item.status == WorkItemStatus.PROCESSING)
    session.cancel_all()
    result = await run
    assert result.cancelled == [item]

    codec.gate.set()
    result = await session.process()
    assert result.done_ids == [item.id]


@pytest.mark.asyncio
async def test_per_item_options_override_default(make_session):
    session = make_session(EchoCodec(delay_per_byte=0), default_options=ConversionOptions(format="webp"))
    override = ConversionOptions(format="jpeg", quality=60)
    a = session.add("a.png", b"a")
    b = session.add("b.png", b"b", override)
    assert a.output_name == "a.webp"
    assert b.output_name == "b.jpg"

    session.set_options(a.id, override)
    await session.process()
    with pytest.raises(StateTransitionError):
        session.set_options(a.id, ConversionOptions())


@pytest.mark.asyncio
async def test_export_from_session(make_session):
    session = make_session(EchoCodec(delay_per_byte=0))
    session.add("a.png", b"a")
    session.add("b.png", b"b")
    await session.process()
    export = session.export()
    assert sorted(export.entries) == ["a.webp", "b.webp"]


def test_registry_lifecycle():
    registry = SessionRegistry(codec=EchoCodec(delay_per_byte=0), max_workers=2)
    try:
        session = registry.create()
        session.add("a.png", b"a")
        assert registry.get(session.session_id) is session
        assert registry.close(session.session_id) is True
        assert registry.get(session.session_id) is None
        assert session.tracker.outstanding == 0
        assert registry.close(session.session_id) is False
    finally:
        registry.close_all()


def test_session_keeps_injected_empty_tracker(make_scheduler):
    tracker = ResourceTracker()
    session = BatchSession(scheduler=make_scheduler(EchoCodec()), tracker=tracker)
    assert session.tracker is tracker


@pytest.mark.asyncio
async def test_registry_session_shares_tracker_with_scheduler():
    registry = SessionRegistry(codec=EchoCodec(delay_per_byte=0), max_workers=2)
    try:
        session = registry.create()
        assert session.scheduler.tracker is session.tracker
        item = session.add("a.png", b"abc")
        await session.process()

        assert session.read_preview(item.result_preview_handle).data == b"encoded:abc"
        assert session.tracker.outstanding == 2
        session.clear()
        assert session.tracker.outstanding == 0
    finally:
        registry.close_all()


@pytest.mark.asyncio
async def test_overlapping_process_is_refused(make_session):
    codec = GatedCodec()
    session = make_session(codec, concurrency_limit=2)
    items = [session.add(f"{n}.png", bytes([n])) for n in range(6)]
    first = asyncio.create_task(session.process())
    try:
        await wait_until(lambda: len(codec.started) == 2)
        assert session.running
        with pytest.raises(StateTransitionError):
            await session.process()
        with pytest.raises(StateTransitionError):
            await session.retry_failed()
    finally:
        codec.gate.set()
    result = await first

    assert len(result.succeeded) == 6
    assert all(i.status == WorkItemStatus.DONE for i in items)
    assert not session.running
    assert (await session.process()).succeeded == []
