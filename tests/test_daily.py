"""Tests for daily usage aggregation."""

import os
import time
from datetime import date, datetime, timedelta

import pytest

from conftest import (
    GEMINI_FLASH,
    SONNET,
    metadata_item,
    metadata_records,
    step_item,
    step_records,
)

from usage_telemetry.daily import (
    UNKNOWN_DATE,
    aggregate_by_day,
    cache_efficiency,
    filter_by_modified_date,
    window_start,
)
from usage_telemetry.sessions import SessionSummary


def _local_day(iso: str) -> str:
    return datetime.fromisoformat(iso.replace("Z", "+00:00")).astimezone().strftime("%Y-%m-%d")


def _noon(day: date) -> str:
    """Naive local-noon timestamp, so the local date is unambiguous."""
    return datetime(day.year, day.month, day.day, 12, 0, 0).isoformat()


class TestCacheEfficiency:
    def test_rounds_half_up(self):
        assert cache_efficiency(100, 20) == 17
        assert cache_efficiency(1, 1) == 50
        # 1/8 = 12.5% rounds to 13, not banker's 12
        assert cache_efficiency(7, 1) == 13

    def test_zero_observed(self):
        assert cache_efficiency(0, 0) == 0

    def test_all_cached(self):
        assert cache_efficiency(0, 10) == 100


class TestAggregateByDay:
    def test_one_bucket_per_day(self):
        today = date(2026, 1, 22)
        result = aggregate_by_day([], [], day_count=8, today=today)

        assert len(result) == 8
        assert result[0].date == "2026-01-22"
        assert result[-1].date == "2026-01-15"
        assert all(not day.models for day in result)

    def test_session_start_dates_record(self):
        today = date(2026, 1, 22)
        metadata = metadata_records(
            metadata_item(GEMINI_FLASH, 10, 1, 0, created_at="2026-01-20T10:53:04Z")
        )
        result = aggregate_by_day(metadata, day_count=8, today=today)

        by_date = {d.date: d for d in result}
        bucket = by_date[_local_day("2026-01-20T10:53:04Z")]
        assert bucket.models["Gemini 3 Flash"].calls == 1
        assert bucket.totals.input_tokens == 10

    def test_timestamp_preferred_over_session_start(self):
        today = date(2026, 1, 22)
        metadata = metadata_records(
            metadata_item(
                timestamp=_noon(date(2026, 1, 21)),
                created_at=_noon(date(2026, 1, 18)),
                input_tokens=5,
            )
        )
        by_date = {d.date: d for d in aggregate_by_day(metadata, today=today)}
        assert by_date["2026-01-21"].totals.input_tokens == 5
        assert by_date["2026-01-18"].totals.input_tokens == 0

    def test_metadata_without_either_date_is_unknown(self):
        today = date(2026, 1, 22)
        metadata = metadata_records(
            metadata_item(input_tokens=4),
            metadata_item(input_tokens=1, timestamp="garbage", created_at="also garbage"),
        )
        by_date = {d.date: d for d in aggregate_by_day(metadata, today=today)}
        assert by_date[UNKNOWN_DATE].totals.input_tokens == 5
        assert by_date[UNKNOWN_DATE].models["Gemini 3 Flash"].calls == 2
        assert sum(d.totals.input_tokens for d in by_date.values()) == 5

    def test_cache_efficiency_per_day(self):
        today = date(2026, 1, 22)
        metadata = metadata_records(
            metadata_item(input_tokens=100, cache_read_tokens=20, timestamp=_noon(today))
        )
        result = aggregate_by_day(metadata, today=today)
        assert result[0].date == "2026-01-22"
        assert result[0].cache_efficiency == 17

    def test_undated_records_go_to_unknown_bucket_last(self):
        today = date(2026, 1, 22)
        metadata = metadata_records(metadata_item(SONNET, input_tokens=3))
        steps = step_records(step_item(GEMINI_FLASH, input_tokens=2))
        result = aggregate_by_day(metadata, steps, day_count=3, today=today)

        assert [d.date for d in result] == ["2026-01-22", "2026-01-21", "2026-01-20", UNKNOWN_DATE]
        unknown = result[-1]
        assert unknown.models["Claude Sonnet 4.5"].calls == 1
        assert unknown.models["Gemini 3 Flash"].calls == 1
        assert unknown.totals.input_tokens == 5

    def test_unknown_bucket_omitted_when_empty(self):
        result = aggregate_by_day([], [], day_count=2, today=date(2026, 1, 22))
        assert UNKNOWN_DATE not in [d.date for d in result]

    def test_records_outside_window_skipped(self):
        today = date(2026, 1, 22)
        metadata = metadata_records(
            metadata_item(input_tokens=9, timestamp=_noon(today - timedelta(days=30)))
        )
        result = aggregate_by_day(metadata, day_count=8, today=today)
        assert sum(d.totals.input_tokens for d in result) == 0

    def test_steps_dated_by_created_at(self):
        today = date(2026, 1, 22)
        steps = step_records(
            step_item(input_tokens=6, created_at=_noon(date(2026, 1, 21))),
            {"type": "CORTEX_STEP_TYPE_USER_INPUT", "metadata": {"createdAt": _noon(today)}},
        )
        by_date = {d.date: d for d in aggregate_by_day([], steps, today=today)}
        assert by_date["2026-01-21"].models["Gemini 3 Flash"].input_tokens == 6
        assert not by_date["2026-01-22"].models

    def test_idempotent(self):
        today = date(2026, 1, 22)
        metadata = metadata_records(
            metadata_item(input_tokens=10, timestamp=_noon(today)),
            metadata_item(input_tokens=20),
        )
        steps = step_records(step_item(output_tokens=3, created_at=_noon(today)))
        first = [d.to_dict() for d in aggregate_by_day(metadata, steps, today=today)]
        second = [d.to_dict() for d in aggregate_by_day(metadata, steps, today=today)]
        assert first == second

    def test_day_totals_match_models(self):
        today = date(2026, 1, 22)
        metadata = metadata_records(
            metadata_item(GEMINI_FLASH, 10, 2, 1, timestamp=_noon(today)),
            metadata_item(SONNET, 20, 4, 3, timestamp=_noon(today)),
        )
        day = aggregate_by_day(metadata, today=today)[0]
        assert day.totals.input_tokens == sum(m.input_tokens for m in day.models.values())
        assert day.totals.output_tokens == sum(m.output_tokens for m in day.models.values())
        assert day.totals.cache_read_tokens == sum(
            m.cache_read_tokens for m in day.models.values()
        )


@pytest.fixture
def berlin_time():
    """Run under a local zone with DST (switches 2026-03-29 and 2026-10-25)."""
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")
    previous = os.environ.get("TZ")
    os.environ["TZ"] = "Europe/Berlin"
    time.tzset()
    yield
    if previous is None:
        del os.environ["TZ"]
    else:
        os.environ["TZ"] = previous
    time.tzset()


class TestFilterByModifiedDate:
    def test_window_start_across_spring_forward(self, berlin_time):
        start = window_start(8, datetime(2026, 4, 2, 12, 0).astimezone())
        assert start.date() == date(2026, 3, 26)
        assert (start.hour, start.minute) == (0, 0)
        assert start.utcoffset() == timedelta(hours=1)

    def test_window_start_across_fall_back(self, berlin_time):
        start = window_start(8, datetime(2026, 10, 29, 12, 0).astimezone())
        assert start.date() == date(2026, 10, 22)
        assert (start.hour, start.minute) == (0, 0)
        assert start.utcoffset() == timedelta(hours=2)

    def test_fall_back_keeps_sessions_after_midnight(self, berlin_time):
        now = datetime(2026, 10, 29, 12, 0).astimezone()
        sessions = [
            # 00:30 local on the oldest day, in summer time
            SessionSummary("early", last_modified="2026-10-21T22:30:00Z"),
            # 23:30 local the day before the window
            SessionSummary("outside", last_modified="2026-10-21T21:30:00Z"),
        ]
        kept = filter_by_modified_date(sessions, 8, now)
        assert [s.session_id for s in kept] == ["early"]

    def test_window_start_is_local_midnight(self):
        now = datetime(2026, 1, 22, 15, 30).astimezone()
        start = window_start(8, now)
        assert start.date() == date(2026, 1, 15)
        assert (start.hour, start.minute, start.second) == (0, 0, 0)

    def test_filters_old_and_unparsable(self):
        now = datetime(2026, 1, 22, 15, 30).astimezone()
        sessions = [
            SessionSummary("recent", last_modified=_noon(date(2026, 1, 21))),
            SessionSummary("edge", last_modified=datetime(2026, 1, 15, 0, 0, 1).isoformat()),
            SessionSummary("old", last_modified=_noon(date(2026, 1, 1))),
            SessionSummary("broken", last_modified="yesterday"),
        ]
        kept = filter_by_modified_date(sessions, 8, now)
        assert [s.session_id for s in kept] == ["recent", "edge"]
