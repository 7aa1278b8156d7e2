from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterator, Mapping, Optional, Sequence

from sqlalchemy import delete, func, insert, inspect, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from deltas import BulkUpdateMetadata, DimensionKey, TransactionDelta
from models import CubeRow, Transaction, TransactionType, utcnow
from periods import Granularity, Period, PeriodKey, containing_period, periods_between


logger = logging.getLogger(__name__)

UPSERT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}

BUCKET_COLUMNS = (
    "tenant_id",
    "period_type",
    "period_start",
    "account_id",
    "category_key",
    "transaction_type",
    "is_recurring",
)


@dataclass(frozen=True)
class Adjustment:
    amount_cents: int = 0
    count: int = 0

    def __add__(self, other: Adjustment) -> Adjustment:
        return Adjustment(
            self.amount_cents + other.amount_cents, self.count + other.count
        )

    @property
    def is_zero(self) -> bool:
        return self.amount_cents == 0 and self.count == 0


def compute_adjustments(
    period: Period, deltas: Sequence[TransactionDelta]
) -> dict[DimensionKey, Adjustment]:
    """Net signed change per dimension tuple for one period bucket.

    Old values dated inside the period are subtracted, new values dated
    inside it are added. A delta listed more than once in the bucket is
    counted once.
    """
    totals: dict[DimensionKey, Adjustment] = {}
    seen: set[int] = set()
    for delta in deltas:
        if id(delta) in seen:
            continue
        seen.add(id(delta))
        old, new = delta.old_values, delta.new_values
        if old is not None and period.contains(old.date):
            key = old.dimension
            totals[key] = totals.get(key, Adjustment()) + Adjustment(
                -old.amount_cents, -1
            )
        if new is not None and period.contains(new.date):
            key = new.dimension
            totals[key] = totals.get(key, Adjustment()) + Adjustment(
                new.amount_cents, 1
            )
    return {key: adj for key, adj in totals.items() if not adj.is_zero}


def _lock_order(item: tuple[DimensionKey, Adjustment]) -> tuple:
    key = item[0]
    return (key.account_id, key.category_id or 0, key.type.value, key.is_recurring)


def _day_chunks(start: date, end: date, days: int) -> Iterator[tuple[date, date]]:
    current = start
    while current <= end:
        chunk_end = min(end, current + timedelta(days=days - 1))
        yield current, chunk_end
        current = chunk_end + timedelta(days=1)


class CubeAggregator:
    def __init__(
        self,
        session: Session,
        tenant_id: str,
        granularities: Sequence[Granularity],
        chunk_days: int = 92,
    ) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self.granularities = tuple(granularities)
        self.chunk_days = chunk_days

    # Incremental path

    def apply_groups(
        self, groups: Mapping[PeriodKey, Sequence[TransactionDelta]]
    ) -> int:
        written = 0
        for key in sorted(groups, key=lambda k: (k.granularity.value, k.start)):
            period = containing_period(key.start, key.granularity)
            written += self.apply_bucket(period, groups[key])
        self.expire_cached_rows()
        return written

    def apply_bucket(self, period: Period, deltas: Sequence[TransactionDelta]) -> int:
        adjustments = compute_adjustments(period, deltas)
        for dimension, adjustment in sorted(adjustments.items(), key=_lock_order):
            self._upsert(self._row_values(period, dimension, adjustment))
        if adjustments:
            self._prune_empty(period)
        return len(adjustments)

    def _row_values(
        self, period: Period, dimension: DimensionKey, adjustment: Adjustment
    ) -> dict[str, object]:
        now = utcnow()
        return {
            "tenant_id": self.tenant_id,
            "period_type": period.granularity,
            "period_start": period.start,
            "period_end": period.end,
            "account_id": dimension.account_id,
            "category_id": dimension.category_id,
            "category_key": dimension.category_id or 0,
            "transaction_type": dimension.type,
            "is_recurring": dimension.is_recurring,
            "amount_sum_cents": adjustment.amount_cents,
            "transaction_count": adjustment.count,
            "created_at": now,
            "updated_at": now,
        }

    def _dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    def _upsert(self, values: dict[str, object]) -> None:
        make_insert = UPSERT_INSERTS.get(self._dialect_name())
        if make_insert is None:
            self._read_modify_write(values)
            return
        stmt = make_insert(CubeRow).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(BUCKET_COLUMNS),
            set_={
                "amount_sum_cents": CubeRow.amount_sum_cents
                + stmt.excluded.amount_sum_cents,
                "transaction_count": CubeRow.transaction_count
                + stmt.excluded.transaction_count,
                "period_end": stmt.excluded.period_end,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        self.session.execute(stmt)

    def _read_modify_write(self, values: dict[str, object]) -> None:
        criteria = [getattr(CubeRow, column) == values[column] for column in BUCKET_COLUMNS]
        for attempt in (1, 2):
            try:
                with self.session.begin_nested():
                    row = self.session.scalar(
                        select(CubeRow)
                        .where(*criteria)
                        .with_for_update()
                        .execution_options(populate_existing=True)
                    )
                    if row is None:
                        self.session.add(CubeRow(**values))
                    else:
                        row.amount_sum_cents += values["amount_sum_cents"]
                        row.transaction_count += values["transaction_count"]
                        row.updated_at = values["updated_at"]
                    self.session.flush()
                return
            except IntegrityError:
                if attempt == 2:
                    raise
                logger.info(
                    f"cube_upsert_conflict: tenant={self.tenant_id} "
                    f"period_start={values['period_start']} retrying=1"
                )

    def _prune_empty(self, period: Period) -> None:
        self.delete_rows(
            CubeRow.tenant_id == self.tenant_id,
            CubeRow.period_type == period.granularity,
            CubeRow.period_start == period.start,
            CubeRow.transaction_count == 0,
        )

    def delete_rows(self, *criteria) -> int:
        """Delete the cube rows matching ``criteria``.

        Matching rows already loaded in the session are refreshed to their
        final stored values and detached, so callers holding them can still
        read them.
        """
        doomed = set(self.session.scalars(select(CubeRow.id).where(*criteria)))
        if not doomed:
            return 0
        for obj in list(self.session.identity_map.values()):
            if isinstance(obj, CubeRow) and inspect(obj).identity[0] in doomed:
                self.session.refresh(obj)
                self.session.expunge(obj)
        self.session.execute(
            delete(CubeRow)
            .where(*criteria)
            .execution_options(synchronize_session=False)
        )
        return len(doomed)

    def expire_cached_rows(self) -> None:
        for obj in list(self.session.identity_map.values()):
            if isinstance(obj, CubeRow):
                self.session.expire(obj)

    # Bulk path

    def apply_bulk_metadata(self, metadata: BulkUpdateMetadata) -> int:
        if metadata.tenant_id != self.tenant_id:
            raise ValueError("Bulk metadata belongs to a different tenant")
        if not metadata.affected_transaction_ids:
            return 0
        date_range = metadata.date_range or self._date_span_for_ids(
            metadata.affected_transaction_ids
        )
        if date_range is None:
            return 0
        fields = ",".join(change.field_name for change in metadata.changed_fields)
        logger.info(
            f"cube_bulk_metadata: tenant={self.tenant_id} "
            f"transactions={len(metadata.affected_transaction_ids)} fields={fields or '-'}"
        )
        return self.regenerate_range(*date_range)

    def _date_span_for_ids(self, ids: Sequence[int]) -> Optional[tuple[date, date]]:
        self.session.flush()
        row = self.session.execute(
            select(func.min(Transaction.date), func.max(Transaction.date)).where(
                Transaction.tenant_id == self.tenant_id, Transaction.id.in_(ids)
            )
        ).one()
        if row[0] is None:
            return None
        return row[0], row[1]

    # Regeneration

    def regenerate_range(
        self, start: date, end: date, account_id: Optional[int] = None
    ) -> int:
        """Rebuild every stored period overlapping ``[start, end]`` from the ledger.

        Whole periods are rebuilt, so the scanned range widens to the
        boundaries of the outermost periods. The ledger is read in chunks of
        ``chunk_days`` days and periods are written as soon as they close.
        With ``account_id`` only that account's rows are rebuilt.
        """
        if start > end:
            raise ValueError("Start date must be before end date")
        if not self.granularities:
            return 0
        self.session.flush()

        coverage: dict[Granularity, tuple[date, date]] = {}
        for granularity in self.granularities:
            periods = periods_between(start, end, granularity)
            coverage[granularity] = (periods[0].start, periods[-1].end)
            criteria = [
                CubeRow.tenant_id == self.tenant_id,
                CubeRow.period_type == granularity,
                CubeRow.period_start.between(periods[0].start, periods[-1].start),
            ]
            if account_id is not None:
                criteria.append(CubeRow.account_id == account_id)
            self.delete_rows(*criteria)

        scan_start = min(c[0] for c in coverage.values())
        scan_end = max(c[1] for c in coverage.values())
        pending: dict[tuple[Period, DimensionKey], Adjustment] = {}
        written = 0
        for chunk_start, chunk_end in _day_chunks(scan_start, scan_end, self.chunk_days):
            for day, dimension, adjustment in self._daily_totals(chunk_start, chunk_end, account_id):
                for granularity, (cover_start, cover_end) in coverage.items():
                    if not cover_start <= day <= cover_end:
                        continue
                    key = (containing_period(day, granularity), dimension)
                    pending[key] = pending.get(key, Adjustment()) + adjustment
            written += self._write_closed(pending, chunk_end)
        written += self._write_closed(pending, None)

        self.expire_cached_rows()
        logger.info(
            f"cube_regenerate: tenant={self.tenant_id} start={start} end={end} "
            f"scanned={scan_start}..{scan_end} rows={written}"
        )
        return written

    def _daily_totals(
        self, start: date, end: date, account_id: Optional[int] = None
    ) -> Iterator[tuple[date, DimensionKey, Adjustment]]:
        stmt = (
            select(
                Transaction.date,
                Transaction.account_id,
                Transaction.category_id,
                Transaction.type,
                Transaction.is_recurring,
                func.sum(Transaction.amount_cents).label("amount_cents"),
                func.count(Transaction.id).label("transaction_count"),
            )
            .where(
                Transaction.tenant_id == self.tenant_id,
                Transaction.date.between(start, end),
            )
            .group_by(
                Transaction.date,
                Transaction.account_id,
                Transaction.category_id,
                Transaction.type,
                Transaction.is_recurring,
            )
            .order_by(Transaction.date)
        )
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        for row in self.session.execute(stmt):
            dimension = DimensionKey(
                row.account_id,
                row.category_id,
                TransactionType(row.type),
                bool(row.is_recurring),
            )
            yield row.date, dimension, Adjustment(
                int(row.amount_cents or 0), int(row.transaction_count)
            )

    def _write_closed(
        self,
        pending: dict[tuple[Period, DimensionKey], Adjustment],
        through: Optional[date],
    ) -> int:
        closed = [
            key for key in pending if through is None or key[0].end <= through
        ]
        rows = []
        for key in closed:
            adjustment = pending.pop(key)
            if adjustment.count:
                rows.append(self._row_values(key[0], key[1], adjustment))
        if rows:
            self.session.execute(insert(CubeRow), rows)
        return len(rows)
