"""Calendar period arithmetic for the trend cube.

Everything here is pure: no module state is mutated and no I/O happens, so the
functions can be called from any number of requests at once.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Iterable, NamedTuple, Optional, Sequence


# Python weekday numbering, 0 is Monday.
WEEK_START = 0
# A Monday; bi-weekly blocks are counted from here.
BI_WEEKLY_EPOCH = date(2001, 1, 1)
ONE_DAY = timedelta(days=1)
# 0401-01-01 starts a year, a week and a bi-weekly block, so the period
# starts of supported dates are supported too. Neighbouring periods of the
# upper bound still fit before date.max.
MIN_SUPPORTED_DATE = date(401, 1, 1)
MAX_SUPPORTED_DATE = date(9997, 12, 31)


class Granularity(str, Enum):
    weekly = "WEEKLY"
    bi_weekly = "BI_WEEKLY"
    monthly = "MONTHLY"
    quarterly = "QUARTERLY"
    bi_annual = "BI_ANNUAL"
    annual = "ANNUAL"


ALL_GRANULARITIES: tuple[Granularity, ...] = tuple(Granularity)

MONTH_SPANS: dict[Granularity, int] = {
    Granularity.monthly: 1,
    Granularity.quarterly: 3,
    Granularity.bi_annual: 6,
    Granularity.annual: 12,
}


class PeriodKey(NamedTuple):
    granularity: Granularity
    start: date


@dataclass(frozen=True)
class Period:
    granularity: Granularity
    start: date
    end: date

    @property
    def key(self) -> PeriodKey:
        return PeriodKey(self.granularity, self.start)

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def following(self) -> "Period":
        return _aligned_period(self.end + ONE_DAY, self.granularity)


def month_start(day: date) -> date:
    return day.replace(day=1)


def month_end(day: date) -> date:
    first = day.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def add_months(day: date, count: int) -> date:
    index = day.year * 12 + (day.month - 1) + count
    year, month_zero = divmod(index, 12)
    target = date(year, month_zero + 1, 1)
    return target.replace(day=min(day.day, month_end(target).day))


def check_supported(day: date) -> date:
    if not MIN_SUPPORTED_DATE <= day <= MAX_SUPPORTED_DATE:
        raise ValueError(
            f"Date outside supported range {MIN_SUPPORTED_DATE}..{MAX_SUPPORTED_DATE}: {day}"
        )
    return day


def week_start(day: date, first_weekday: int = WEEK_START) -> date:
    return day - timedelta(days=(day.weekday() - first_weekday) % 7)


def period_for(day: date, granularity: Granularity) -> Period:
    """Return the period anchored on ``day`` for ``granularity``.

    Weekly, bi-weekly and monthly periods are the aligned periods enclosing
    the day. Quarterly, bi-annual and annual periods start on the first of the
    day's month and run forward 3, 6 or 12 months to the end of the last one.
    """
    check_supported(day)
    span = MONTH_SPANS.get(granularity)
    if span is None or granularity == Granularity.monthly:
        return containing_period(day, granularity)
    start = month_start(day)
    return Period(granularity, start, month_end(add_months(start, span - 1)))


def containing_period(day: date, granularity: Granularity) -> Period:
    """Return the calendar-aligned bucket that holds ``day``.

    These are the periods cube rows are stored under: periods of one
    granularity never overlap and tile the calendar without gaps.
    """
    check_supported(day)
    return _aligned_period(day, granularity)


def _aligned_period(day: date, granularity: Granularity) -> Period:
    if granularity == Granularity.weekly:
        start = week_start(day)
        return Period(granularity, start, start + timedelta(days=6))
    if granularity == Granularity.bi_weekly:
        blocks = (day - BI_WEEKLY_EPOCH).days // 14
        start = BI_WEEKLY_EPOCH + timedelta(days=14 * blocks)
        return Period(granularity, start, start + timedelta(days=13))
    span = MONTH_SPANS[granularity]
    first_month = (day.month - 1) // span * span + 1
    start = date(day.year, first_month, 1)
    return Period(granularity, start, month_end(add_months(start, span - 1)))


def periods_between(start: date, end: date, granularity: Granularity) -> list[Period]:
    if start > end:
        raise ValueError("Start date must be before end date")
    check_supported(end)
    periods: list[Period] = []
    current = containing_period(start, granularity)
    while current.start <= end:
        periods.append(current)
        current = current.following()
    return periods


def _periods_holding_dates(
    candidates: Sequence[Period], sorted_dates: Sequence[date]
) -> list[Period]:
    kept: list[Period] = []
    i = 0
    for period in candidates:
        while i < len(sorted_dates) and sorted_dates[i] < period.start:
            i += 1
        if i < len(sorted_dates) and sorted_dates[i] <= period.end:
            kept.append(period)
    return kept


def distinct_periods(
    dates: Iterable[date],
    granularities: Sequence[Granularity] = ALL_GRANULARITIES,
) -> list[Period]:
    """Minimal set of aligned periods covering ``dates``.

    The span between the earliest and latest date is enumerated once per
    granularity, so repeated dates cost nothing beyond the de-duplication.
    """
    unique = sorted(set(dates))
    if not unique:
        return []
    first, last = unique[0], unique[-1]
    result: list[Period] = []
    for granularity in granularities:
        candidates = periods_between(first, last, granularity)
        result.extend(_periods_holding_dates(candidates, unique))
    return result


def period_index(
    dates: Iterable[date], periods: Iterable[Period]
) -> dict[date, list[Period]]:
    """Map each date to the periods (one per granularity) that contain it."""
    unique = sorted(set(dates))
    index: dict[date, list[Period]] = {day: [] for day in unique}
    by_granularity: dict[Granularity, list[Period]] = {}
    for period in periods:
        by_granularity.setdefault(period.granularity, []).append(period)
    for same_granularity in by_granularity.values():
        same_granularity.sort(key=lambda p: p.start)
        j = 0
        for day in unique:
            while j < len(same_granularity) and same_granularity[j].end < day:
                j += 1
            if j < len(same_granularity) and same_granularity[j].start <= day:
                index[day].append(same_granularity[j])
    return index


def lookback_range(
    granularity: Granularity,
    count: int,
    *,
    today: Optional[date] = None,
) -> tuple[date, date]:
    """Date range spanning the current period and the ``count - 1`` before it."""
    if count < 1:
        raise ValueError("Period count must be at least 1")
    today = today or date.today()
    current = containing_period(today, granularity)
    if granularity == Granularity.weekly:
        start = current.start - timedelta(days=7 * (count - 1))
    elif granularity == Granularity.bi_weekly:
        start = current.start - timedelta(days=14 * (count - 1))
    else:
        start = add_months(current.start, -MONTH_SPANS[granularity] * (count - 1))
    return start, today


def parse_granularities(names: Iterable[str]) -> tuple[Granularity, ...]:
    parsed: list[Granularity] = []
    for name in names:
        try:
            granularity = Granularity(name.strip().upper())
        except ValueError as exc:
            raise ValueError(f"Unknown granularity: {name}") from exc
        if granularity not in parsed:
            parsed.append(granularity)
    return tuple(parsed)
