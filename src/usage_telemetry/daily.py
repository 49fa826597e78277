"""Daily token usage buckets for the historical report.

Pure computation, no I/O. Dates are local calendar dates so a record made
late in the evening is not pushed into the next UTC day.
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta

from usage_telemetry import catalog
from usage_telemetry.records import (
    MetadataRecord,
    StepRecord,
    UsageFields,
    local_date,
    parse_timestamp,
)

UNKNOWN_DATE = "Unknown Date"
DEFAULT_DAY_COUNT = 8


@dataclass
class DailyModelUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    calls: int = 0


@dataclass
class TokenTotals:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0


@dataclass
class DailyModelStats:
    """Usage for one calendar day (or the unknown-date bucket)."""

    date: str
    models: dict[str, DailyModelUsage] = field(default_factory=dict)
    totals: TokenTotals = field(default_factory=TokenTotals)
    cache_efficiency: int = 0  # percent, 0-100

    def add(self, usage: UsageFields) -> None:
        name = catalog.display_name(usage.model)
        model = self.models.setdefault(name, DailyModelUsage())
        model.input_tokens += usage.input_tokens
        model.output_tokens += usage.output_tokens
        model.cache_read_tokens += usage.cache_read_tokens
        model.calls += 1

        self.totals.input_tokens += usage.input_tokens
        self.totals.output_tokens += usage.output_tokens
        self.totals.cache_read_tokens += usage.cache_read_tokens

    def to_dict(self) -> dict:
        return asdict(self)


def cache_efficiency(input_tokens: int, cache_read_tokens: int) -> int:
    """Whole percent of observed input served from cache, rounded half up."""
    observed = input_tokens + cache_read_tokens
    if observed == 0:
        return 0
    return math.floor(cache_read_tokens / observed * 100 + 0.5)


def window_start(day_count: int, now: datetime | None = None) -> datetime:
    """Local midnight of the oldest day in a window of ``day_count`` days.

    The offset is resolved for that day, not carried over from ``now``, so the
    cutoff stays at midnight when the window spans a DST change.
    """
    today = (now or datetime.now()).astimezone().date()
    oldest = today - timedelta(days=day_count - 1)
    return datetime.combine(oldest, time.min).astimezone()


def filter_by_modified_date(sessions: list, day_count: int, now: datetime | None = None) -> list:
    """Keep sessions last modified on or after the start of the window.

    Sessions without a parsable ``last_modified`` are dropped.
    """
    cutoff = window_start(day_count, now)
    kept = []
    for session in sessions:
        modified = parse_timestamp(session.last_modified)
        if modified is not None and modified >= cutoff:
            kept.append(session)
    return kept


def _metadata_date(record: MetadataRecord) -> str | None:
    for candidate in (record.timestamp, record.session_start):
        resolved = local_date(candidate)
        if resolved:
            return resolved
    return None


def aggregate_by_day(
    metadata: list[MetadataRecord],
    steps: list[StepRecord] | None = None,
    day_count: int = DEFAULT_DAY_COUNT,
    today: date | None = None,
) -> list[DailyModelStats]:
    """Bucket usage into one entry per local calendar day, newest first.

    Args:
        metadata: Metadata records; dated by record timestamp, then session
            start
        steps: Step records; dated by their own creation time only
        day_count: Days in the window, today included
        today: Override for the current local date

    Returns:
        One DailyModelStats per day in the window, plus a trailing
        "Unknown Date" bucket when any undated usage was seen. Records dated
        outside the window are skipped.
    """
    today = today or datetime.now().date()
    buckets: dict[str, DailyModelStats] = {}
    for offset in range(day_count):
        day = (today - timedelta(days=offset)).strftime("%Y-%m-%d")
        buckets[day] = DailyModelStats(date=day)
    buckets[UNKNOWN_DATE] = DailyModelStats(date=UNKNOWN_DATE)

    for record in metadata:
        bucket = buckets.get(_metadata_date(record) or UNKNOWN_DATE)
        if bucket is not None:
            bucket.add(record.usage)

    for step in steps or []:
        if step.usage is None:
            continue
        bucket = buckets.get(local_date(step.created_at) or UNKNOWN_DATE)
        if bucket is not None:
            bucket.add(step.usage)

    if not buckets[UNKNOWN_DATE].models:
        del buckets[UNKNOWN_DATE]

    result = list(buckets.values())
    for day in result:
        day.cache_efficiency = cache_efficiency(
            day.totals.input_tokens, day.totals.cache_read_tokens
        )

    # Unknown Date always sorts last
    dated = sorted(
        (d for d in result if d.date != UNKNOWN_DATE), key=lambda d: d.date, reverse=True
    )
    return dated + [d for d in result if d.date == UNKNOWN_DATE]
