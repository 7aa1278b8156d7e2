from datetime import date
from typing import Iterable, Sequence

from deltas import TransactionDelta
from periods import (
    ALL_GRANULARITIES,
    Granularity,
    PeriodKey,
    distinct_periods,
    period_index,
)


def collect_dates(deltas: Iterable[TransactionDelta]) -> set[date]:
    dates: set[date] = set()
    for delta in deltas:
        dates.update(delta.relevant_dates())
    return dates


def group_deltas_by_period(
    deltas: Sequence[TransactionDelta],
    granularities: Sequence[Granularity] = ALL_GRANULARITIES,
) -> dict[PeriodKey, list[TransactionDelta]]:
    """File every delta under each period its old and new dates fall into.

    Periods are computed once for the distinct dates of the whole batch, so a
    thousand deltas sharing one day cost one period lookup, not a thousand.
    A delta whose old and new dates differ but share a period appears twice
    in that bucket; the aggregator applies each delta object once per bucket.
    """
    if not deltas:
        return {}

    dates = collect_dates(deltas)
    periods = distinct_periods(dates, granularities)
    lookup = period_index(dates, periods)

    groups: dict[PeriodKey, list[TransactionDelta]] = {}
    for delta in deltas:
        for day in delta.relevant_dates():
            for period in lookup.get(day, ()):
                groups.setdefault(period.key, []).append(delta)
    return groups


def expected_occurrences(
    deltas: Iterable[TransactionDelta],
    granularities: Sequence[Granularity] = ALL_GRANULARITIES,
) -> int:
    return len(granularities) * sum(len(d.relevant_dates()) for d in deltas)
