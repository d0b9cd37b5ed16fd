from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from tixr_etl.core.freshness import event_status, needs_update, parse_timestamp, to_venue_date
from tixr_etl.core.models import EventStatus

D = date(2025, 3, 1)
BOUNDARY = datetime(2025, 3, 2, tzinfo=timezone.utc)


def test_sync_exactly_at_day_after_does_not_need_update():
    assert needs_update(D, BOUNDARY) is False


def test_sync_one_microsecond_before_boundary_needs_update():
    assert needs_update(D, BOUNDARY - timedelta(microseconds=1)) is True


def test_missing_or_garbage_timestamp_needs_update():
    assert needs_update(D, None) is True
    assert needs_update(D, "") is True
    assert needs_update(D, "hier soir") is True


def test_iso_strings_are_accepted_and_naive_means_utc():
    assert needs_update("2025-03-01", "2025-03-02T00:00:00Z") is False
    assert needs_update("2025-03-01", "2025-03-01T23:59:59") is True
    assert parse_timestamp("2025-03-02T00:00:00") == BOUNDARY


def test_epoch_milliseconds_are_parsed():
    assert parse_timestamp(1740873600000) == BOUNDARY
    assert parse_timestamp("1740873600000") == BOUNDARY


def test_event_status_flips_after_settle_point():
    assert event_status(D, BOUNDARY) == EventStatus.LIVE
    assert event_status(D, BOUNDARY + timedelta(seconds=1)) == EventStatus.PAST


def test_venue_date_uses_montreal_calendar_day():
    # 00:30 UTC le 2 mars = 19:30 le 1er mars à Montréal
    assert to_venue_date("2025-03-02T00:30:00Z") == D
    assert to_venue_date(None) is None
