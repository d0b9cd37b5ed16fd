from __future__ import annotations

import asyncio
import sqlite3
from datetime import date, datetime, timezone

from tixr_etl.core.models import EventRecord, EventStatus, OrderLine, SalesSummary


def _lines(n: int, event_id: int = 1):
    return [
        OrderLine(event_id=event_id, order_name=f"O{i}", order_sale_id="S", order_category="GA",
                  order_quantity=1, order_serials=[f"X{i}"], order_gross=10)
        for i in range(n)
    ]


def test_applying_same_page_twice_is_idempotent(store):
    async def scenario():
        first = await store.insert_orders(_lines(5))
        second = await store.insert_orders(_lines(5))
        return first, second, await store.count_orders(1)

    first, second, count = asyncio.run(scenario())
    assert first.inserted == 5
    assert second.inserted == 0 and second.skipped == 5
    assert count == 5


def test_duplicates_inside_one_payload_are_skipped(store):
    lines = _lines(2) + _lines(1)
    result = asyncio.run(store.insert_orders(lines))
    assert result.inserted == 2
    assert result.skipped == 1


def test_failed_batch_does_not_roll_back_other_batches(store, monkeypatch):
    original = store._insert_chunk
    calls = []

    def flaky(chunk):
        calls.append(len(chunk))
        if len(calls) == 2:
            raise sqlite3.OperationalError("database is locked")
        return original(chunk)

    monkeypatch.setattr(store, "_insert_chunk", flaky)

    async def scenario():
        result = await store.insert_orders(_lines(5))
        return result, await store.count_orders(1)

    result, count = asyncio.run(scenario())
    assert calls == [2, 2, 1]
    assert result.failed_batches == 1 and result.failed_rows == 2
    assert result.inserted == 3
    assert count == 3


def test_forced_delete_clears_event_lines_only(store):
    async def scenario():
        await store.insert_orders(_lines(3, event_id=1))
        await store.insert_orders([OrderLine(event_id=2, order_name="Z", order_sale_id="S")])
        deleted = await store.delete_orders(1)
        return deleted, await store.count_orders(1), await store.count_orders(2)

    assert asyncio.run(scenario()) == (3, 0, 1)


def test_iter_orders_reads_every_page(store):
    async def scenario():
        await store.insert_orders(_lines(5))
        return [l async for l in store.iter_orders(1, page_size=2)]

    lines = asyncio.run(scenario())
    assert [l.order_name for l in lines] == ["O0", "O1", "O2", "O3", "O4"]
    assert lines[0].order_serials == ["X0"]


def test_event_upsert_keeps_order_sync_stamp(store):
    stamp = datetime(2025, 3, 2, 1, tzinfo=timezone.utc)
    record = EventRecord(event_id=9, event_name="Bicep", event_date=date(2025, 3, 1), event_artist="Bicep")

    async def scenario():
        await store.upsert_events([record])
        await store.stamp_order_sync(9, stamp)
        await store.upsert_events([record.model_copy(update={"event_name": "Bicep (live)",
                                                             "event_status": EventStatus.PAST})])
        return await store.get_event(9)

    event = asyncio.run(scenario())
    assert event.event_name == "Bicep (live)"
    assert event.event_status == EventStatus.PAST
    assert event.event_order_updated == stamp


def test_upcoming_events_sorted_and_limited(store):
    records = [
        EventRecord(event_id=1, event_name="Passé", event_date=date(2025, 1, 1)),
        EventRecord(event_id=2, event_name="Loin", event_date=date(2025, 6, 1)),
        EventRecord(event_id=3, event_name="Proche", event_date=date(2025, 3, 1)),
    ]

    async def scenario():
        await store.upsert_events(records)
        return await store.upcoming_events(date(2025, 2, 1)), await store.upcoming_events(date(2025, 2, 1), 1)

    upcoming, limited = asyncio.run(scenario())
    assert [e.event_id for e in upcoming] == [3, 2]
    assert [e.event_id for e in limited] == [3]


def test_sales_zero_buckets_round_trip_as_zero(store):
    async def scenario():
        await store.upsert_sales(SalesSummary(event_id=4, sales_total_ga=3, sales_gross=30))
        await store.upsert_sales(SalesSummary(event_id=4))
        return await store.get_sales(4)

    summary = asyncio.run(scenario())
    assert summary == SalesSummary(event_id=4)
    assert not summary.has_sales


def test_distinct_artists(store):
    records = [
        EventRecord(event_id=1, event_name="a", event_date=date(2025, 1, 1), event_artist="Bicep"),
        EventRecord(event_id=2, event_name="b", event_date=date(2025, 1, 2), event_artist="Bicep"),
        EventRecord(event_id=3, event_name="c", event_date=date(2025, 1, 3)),
    ]

    async def scenario():
        await store.upsert_events(records)
        return await store.distinct_artists()

    assert asyncio.run(scenario()) == ["Bicep"]


def test_forced_delete_clears_order_sync_stamp(store):
    record = EventRecord(event_id=9, event_name="Bicep", event_date=date(2025, 3, 1))

    async def scenario():
        await store.upsert_events([record])
        await store.insert_orders(_lines(2, event_id=9))
        await store.stamp_order_sync(9, datetime(2025, 3, 2, 1, tzinfo=timezone.utc))
        await store.delete_orders(9)
        return await store.get_event(9)

    assert asyncio.run(scenario()).event_order_updated is None
