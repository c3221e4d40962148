"""Retry set bookkeeping and resubmission."""

from unittest.mock import AsyncMock

import pytest

from tests.fakes import FlakyCodec
from transcoder.conversion.models import ConversionOptions, WorkItem, WorkItemStatus
from transcoder.retry import RetryCoordinator


def _registry(items):
    by_id = {i.id: i for i in items}
    return by_id, RetryCoordinator(by_id.get)


def test_add_failures_keeps_order_and_skips_duplicates():
    items = [WorkItem(f"{n}.png", b"x", ConversionOptions()) for n in "abc"]
    _, retry = _registry(items)
    assert retry.add_failures([items[2], items[0]]) == 2
    assert retry.add_failures([items[0].id, items[1]]) == 1
    assert retry.ids == [items[2].id, items[0].id, items[1].id]


def test_clear_does_not_touch_items():
    item = WorkItem("a.png", b"x", ConversionOptions())
    item.fail(item.claim(), None)
    _, retry = _registry([item])
    retry.add_failures([item])
    retry.clear()
    assert len(retry) == 0
    assert item.status == WorkItemStatus.ERROR


@pytest.mark.asyncio
async def test_retry_empty_set_is_noop():
    _, retry = _registry([])
    scheduler = AsyncMock()
    result = await retry.retry_all(scheduler)
    scheduler.submit.assert_not_called()
    assert result.succeeded == [] and result.failed == []


@pytest.mark.asyncio
async def test_failed_items_retried_until_success(make_scheduler):
    """Items 1 and 3 fail, then succeed on retry; the retry set ends empty."""
    payloads = [b"p0", b"p1", b"p2", b"p3", b"p4"]
    codec = FlakyCodec(fail_on={b"p1", b"p3"})
    scheduler = make_scheduler(codec)
    options = ConversionOptions(format="png", quality=42)
    items = [WorkItem(f"img{i}.png", data, options) for i, data in enumerate(payloads)]
    _, retry = _registry(items)

    first = await scheduler.submit(items)
    retry.add_failures(first.failed)
    assert retry.ids == [items[1].id, items[3].id]

    codec.fail_on.clear()
    second = await retry.retry_all(scheduler)

    assert set(second.done_ids) == {items[1].id, items[3].id}
    assert len(retry) == 0
    cumulative = first.merge(second)
    assert len(cumulative.succeeded) == 5
    for item in (items[1], items[3]):
        assert item.status == WorkItemStatus.DONE
        assert item.error is None
        assert item.options is options
        assert item.attempts == 2


@pytest.mark.asyncio
async def test_still_failing_items_stay_in_set(make_scheduler):
    codec = FlakyCodec(fail_on={b"bad"})
    scheduler = make_scheduler(codec)
    item = WorkItem("bad.png", b"bad", ConversionOptions())
    _, retry = _registry([item])
    retry.add_failures((await scheduler.submit([item])).failed)

    result = await retry.retry_all(scheduler)

    assert result.failed_ids == [item.id]
    assert retry.ids == [item.id]
    assert item.status == WorkItemStatus.ERROR


@pytest.mark.asyncio
async def test_removed_items_are_dropped(make_scheduler):
    item = WorkItem("gone.png", b"x", ConversionOptions())
    by_id, retry = _registry([item])
    retry.add_failures([item])
    del by_id[item.id]
    scheduler = AsyncMock()

    await retry.retry_all(scheduler)

    scheduler.submit.assert_not_called()
    assert len(retry) == 0
