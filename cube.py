"""Keeps the ``financial_cube`` table in step with the transaction ledger.

The service never commits. Whoever mutates the ledger calls into it inside
the same database transaction and commits (or rolls back) both together.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from aggregator import CubeAggregator
from config import Settings, get_settings
from deltas import (
    BulkUpdateMetadata,
    CubeRelevantFields,
    DanglingReferenceError,
    Operation,
    TransactionDelta,
    delete_delta,
    insert_delta,
)
from grouping import collect_dates, group_deltas_by_period
from models import Account, Category, CubeRow, Transaction, TransactionType
from periods import (
    Granularity,
    Period,
    containing_period,
    parse_granularities,
    periods_between,
)


logger = logging.getLogger(__name__)

ROLLUP_BASES: dict[Granularity, Granularity] = {
    Granularity.bi_weekly: Granularity.weekly,
    Granularity.monthly: Granularity.monthly,
    Granularity.quarterly: Granularity.monthly,
    Granularity.bi_annual: Granularity.monthly,
    Granularity.annual: Granularity.monthly,
    Granularity.weekly: Granularity.weekly,
}

TOTALS_COLUMNS = {
    "category": CubeRow.category_id,
    "account": CubeRow.account_id,
    "type": CubeRow.transaction_type,
    "recurring": CubeRow.is_recurring,
}


def get_current_tenant_id() -> str:
    return get_settings().default_tenant


@dataclass
class PopulateResult:
    periods_processed: int
    rows_written: int
    elapsed_seconds: float


@dataclass
class CubeStatistics:
    total_rows: int
    rows_by_granularity: dict[Granularity, int] = field(default_factory=dict)
    earliest_period: Optional[date] = None
    latest_period: Optional[date] = None
    account_count: int = 0
    category_count: int = 0
    last_updated: Optional[datetime] = None


@dataclass
class TrendPoint:
    period: Period
    account_id: int
    category_id: Optional[int]
    transaction_type: TransactionType
    is_recurring: bool
    amount_cents: int
    transaction_count: int


@dataclass
class DimensionTotal:
    period_start: date
    value: object
    amount_cents: int
    transaction_count: int


@dataclass
class Discrepancy:
    period: Period
    cube_amount_cents: int
    ledger_amount_cents: int
    cube_count: int
    ledger_count: int


class CubeService:
    def __init__(
        self,
        session: Session,
        tenant_id: Optional[str] = None,
        granularities: Optional[Sequence[Granularity]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.session = session
        self.tenant_id = tenant_id or get_current_tenant_id()
        if granularities is None:
            granularities = parse_granularities(settings.granularities)
        self.granularities: tuple[Granularity, ...] = tuple(granularities)
        self.bulk_threshold = settings.bulk_regeneration_threshold
        self.aggregator = CubeAggregator(
            session,
            self.tenant_id,
            self.granularities,
            chunk_days=settings.regeneration_chunk_days,
        )

    # Single-transaction entry points

    def add_transaction(
        self, fields: CubeRelevantFields, transaction_id: Optional[int] = None
    ) -> int:
        return self.apply_deltas([insert_delta(transaction_id, self.tenant_id, fields)])

    def update_transaction(self, delta: TransactionDelta) -> int:
        if delta.operation != Operation.update:
            raise ValueError(f"Expected an UPDATE delta, got {delta.operation.value}")
        return self.apply_deltas([delta])

    def remove_transaction(
        self, fields: CubeRelevantFields, transaction_id: Optional[int] = None
    ) -> int:
        return self.apply_deltas([delete_delta(transaction_id, self.tenant_id, fields)])

    def apply_deltas(self, deltas: Sequence[TransactionDelta]) -> int:
        """Apply a batch of ledger changes that are already written to the ledger.

        Small batches are applied bucket by bucket. Batches of
        ``bulk_regeneration_threshold`` deltas or more rebuild the range they
        touch from the ledger instead.
        """
        deltas = [delta for delta in deltas if not delta.is_empty]
        if not deltas:
            return 0
        for delta in deltas:
            if delta.tenant_id != self.tenant_id:
                raise ValueError(
                    f"Delta for tenant {delta.tenant_id} passed to cube of tenant {self.tenant_id}"
                )
        self._check_references(
            values for delta in deltas for values in (delta.old_values, delta.new_values)
        )

        if len(deltas) >= self.bulk_threshold:
            dates = collect_dates(deltas)
            logger.info(
                f"cube_apply: tenant={self.tenant_id} deltas={len(deltas)} mode=regenerate"
            )
            return self.aggregator.regenerate_range(min(dates), max(dates))

        groups = group_deltas_by_period(deltas, self.granularities)
        written = self.aggregator.apply_groups(groups)
        logger.info(
            f"cube_apply: tenant={self.tenant_id} deltas={len(deltas)} "
            f"buckets={len(groups)} rows={written}"
        )
        return written

    # Bulk entry points

    def bulk_create_transactions(self, fields_list: Sequence[CubeRelevantFields]) -> int:
        return self._regenerate_for(fields_list)

    def bulk_update_transactions(
        self,
        old_fields: Sequence[CubeRelevantFields],
        new_fields: Sequence[CubeRelevantFields],
    ) -> int:
        return self._regenerate_for([*old_fields, *new_fields])

    def bulk_delete_transactions(self, fields_list: Sequence[CubeRelevantFields]) -> int:
        return self._regenerate_for(fields_list)

    def update_with_bulk_metadata(self, metadata: BulkUpdateMetadata) -> int:
        return self.aggregator.apply_bulk_metadata(metadata)

    def regenerate_cube_for_date_range(self, start: date, end: date) -> int:
        return self.aggregator.regenerate_range(start, end)

    def _regenerate_for(self, fields_list: Sequence[CubeRelevantFields]) -> int:
        if not fields_list:
            return 0
        self._check_references(fields_list)
        dates = [fields.date for fields in fields_list]
        return self.aggregator.regenerate_range(min(dates), max(dates))

    def _check_references(self, values: Iterable[Optional[CubeRelevantFields]]) -> None:
        account_ids: set[int] = set()
        category_ids: set[int] = set()
        for fields in values:
            if fields is None:
                continue
            account_ids.add(fields.account_id)
            if fields.category_id is not None:
                category_ids.add(fields.category_id)
        if account_ids:
            known = set(
                self.session.scalars(
                    select(Account.id).where(
                        Account.tenant_id == self.tenant_id, Account.id.in_(account_ids)
                    )
                )
            )
            missing = sorted(account_ids - known)
            if missing:
                raise DanglingReferenceError(f"Unknown account ids: {missing}")
        if category_ids:
            known = set(
                self.session.scalars(
                    select(Category.id).where(
                        Category.tenant_id == self.tenant_id,
                        Category.id.in_(category_ids),
                    )
                )
            )
            missing = sorted(category_ids - known)
            if missing:
                raise DanglingReferenceError(f"Unknown category ids: {missing}")

    # Maintenance

    def populate_historical_data(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        clear_existing: bool = False,
        account_id: Optional[int] = None,
    ) -> PopulateResult:
        """Rebuild the cube from the ledger between ``start`` and ``end``.

        ``start`` defaults to the earliest ledger date and ``end`` to today.
        With ``account_id`` the earliest-date lookup, the clear and the
        rebuild are all limited to that account.
        """
        started = time.perf_counter()
        self.session.flush()
        if account_id is not None and self.session.scalar(
            select(Account.id).where(
                Account.tenant_id == self.tenant_id, Account.id == account_id
            )
        ) is None:
            raise DanglingReferenceError(f"Unknown account ids: [{account_id}]")
        if start is None:
            stmt = select(func.min(Transaction.date)).where(
                Transaction.tenant_id == self.tenant_id
            )
            if account_id is not None:
                stmt = stmt.where(Transaction.account_id == account_id)
            start = self.session.scalar(stmt)
        end = end or date.today()
        if clear_existing:
            self.clear_all(account_id)
        if start is None or start > end:
            return PopulateResult(0, 0, time.perf_counter() - started)

        written = self.aggregator.regenerate_range(start, end, account_id)
        processed = sum(len(periods_between(start, end, g)) for g in self.granularities)
        result = PopulateResult(processed, written, time.perf_counter() - started)
        logger.info(
            f"cube_populate: tenant={self.tenant_id} account={account_id or 'all'} "
            f"start={start} end={end} "
            f"periods={processed} rows={written} elapsed={result.elapsed_seconds:.2f}s"
        )
        return result

    def clear_all(self, account_id: Optional[int] = None) -> int:
        criteria = [CubeRow.tenant_id == self.tenant_id]
        if account_id is not None:
            criteria.append(CubeRow.account_id == account_id)
        removed = self.aggregator.delete_rows(*criteria)
        logger.info(
            f"cube_clear: tenant={self.tenant_id} account={account_id or 'all'} rows={removed}"
        )
        return removed

    def statistics(self) -> CubeStatistics:
        by_granularity = {
            Granularity(period_type): count
            for period_type, count in self.session.execute(
                select(CubeRow.period_type, func.count(CubeRow.id))
                .where(CubeRow.tenant_id == self.tenant_id)
                .group_by(CubeRow.period_type)
            )
        }
        summary = self.session.execute(
            select(
                func.min(CubeRow.period_start),
                func.max(CubeRow.period_start),
                func.count(func.distinct(CubeRow.account_id)),
                func.count(func.distinct(CubeRow.category_id)),
                func.max(CubeRow.updated_at),
            ).where(CubeRow.tenant_id == self.tenant_id)
        ).one()
        return CubeStatistics(
            total_rows=sum(by_granularity.values()),
            rows_by_granularity=by_granularity,
            earliest_period=summary[0],
            latest_period=summary[1],
            account_count=summary[2] or 0,
            category_count=summary[3] or 0,
            last_updated=summary[4],
        )

    # Reads

    def rows(
        self,
        granularity: Optional[Granularity] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[CubeRow]:
        stmt = select(CubeRow).where(CubeRow.tenant_id == self.tenant_id)
        if granularity is not None:
            stmt = stmt.where(CubeRow.period_type == granularity)
        if start is not None:
            stmt = stmt.where(CubeRow.period_start >= start)
        if end is not None:
            stmt = stmt.where(CubeRow.period_start <= end)
        stmt = stmt.order_by(
            CubeRow.period_type,
            CubeRow.period_start,
            CubeRow.account_id,
            CubeRow.category_key,
            CubeRow.transaction_type,
            CubeRow.is_recurring,
        ).execution_options(populate_existing=True)
        return list(self.session.scalars(stmt))

    def trends(
        self,
        granularity: Granularity,
        start: Optional[date] = None,
        end: Optional[date] = None,
        transaction_type: Optional[TransactionType] = None,
        category_ids: Optional[Sequence[int]] = None,
        account_ids: Optional[Sequence[int]] = None,
        is_recurring: Optional[bool] = None,
    ) -> list[TrendPoint]:
        """Per-period totals for ``granularity``.

        Granularities that are not stored are summed up from the stored one
        they tile: weeks for bi-weekly, months for everything month based.
        """
        source = granularity
        if granularity not in self.granularities:
            source = ROLLUP_BASES[granularity]
            if source not in self.granularities:
                raise ValueError(
                    f"Cannot build {granularity.value} trends without {source.value} rows"
                )
        if start is not None:
            start = containing_period(start, granularity).start

        stmt = select(CubeRow).where(
            CubeRow.tenant_id == self.tenant_id, CubeRow.period_type == source
        )
        if start is not None:
            stmt = stmt.where(CubeRow.period_start >= start)
        if end is not None:
            stmt = stmt.where(CubeRow.period_start <= end)
        if transaction_type is not None:
            stmt = stmt.where(CubeRow.transaction_type == transaction_type)
        if category_ids:
            stmt = stmt.where(CubeRow.category_id.in_(category_ids))
        if account_ids:
            stmt = stmt.where(CubeRow.account_id.in_(account_ids))
        if is_recurring is not None:
            stmt = stmt.where(CubeRow.is_recurring == is_recurring)
        stmt = stmt.execution_options(populate_existing=True)

        points: dict[tuple, TrendPoint] = {}
        for row in self.session.scalars(stmt):
            period = containing_period(row.period_start, granularity)
            key = (
                period.start,
                row.account_id,
                row.category_key,
                TransactionType(row.transaction_type).value,
                row.is_recurring,
            )
            point = points.get(key)
            if point is None:
                points[key] = TrendPoint(
                    period=period,
                    account_id=row.account_id,
                    category_id=row.category_id,
                    transaction_type=TransactionType(row.transaction_type),
                    is_recurring=row.is_recurring,
                    amount_cents=row.amount_sum_cents,
                    transaction_count=row.transaction_count,
                )
            else:
                point.amount_cents += row.amount_sum_cents
                point.transaction_count += row.transaction_count
        return [points[key] for key in sorted(points)]

    def totals_by(
        self,
        dimension: str,
        granularity: Granularity = Granularity.monthly,
        start: Optional[date] = None,
        end: Optional[date] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[DimensionTotal]:
        column = TOTALS_COLUMNS.get(dimension)
        if column is None:
            raise ValueError(f"Unknown dimension: {dimension}")
        if granularity not in self.granularities:
            raise ValueError(f"{granularity.value} rows are not stored")
        stmt = (
            select(
                CubeRow.period_start,
                column,
                func.sum(CubeRow.amount_sum_cents),
                func.sum(CubeRow.transaction_count),
            )
            .where(CubeRow.tenant_id == self.tenant_id, CubeRow.period_type == granularity)
            .group_by(CubeRow.period_start, column)
            .order_by(CubeRow.period_start, column)
        )
        if start is not None:
            stmt = stmt.where(CubeRow.period_start >= start)
        if end is not None:
            stmt = stmt.where(CubeRow.period_start <= end)
        if transaction_type is not None:
            stmt = stmt.where(CubeRow.transaction_type == transaction_type)
        return [
            DimensionTotal(period_start, value, int(amount or 0), int(count or 0))
            for period_start, value, amount, count in self.session.execute(stmt)
        ]

    def verify(self, start: date, end: date) -> list[Discrepancy]:
        """Compare every stored period overlapping the range against the ledger."""
        self.session.flush()
        discrepancies: list[Discrepancy] = []
        for granularity in self.granularities:
            periods = periods_between(start, end, granularity)
            cube_totals = {
                period_start: (int(amount or 0), int(count or 0))
                for period_start, amount, count in self.session.execute(
                    select(
                        CubeRow.period_start,
                        func.sum(CubeRow.amount_sum_cents),
                        func.sum(CubeRow.transaction_count),
                    )
                    .where(
                        CubeRow.tenant_id == self.tenant_id,
                        CubeRow.period_type == granularity,
                        CubeRow.period_start.between(periods[0].start, periods[-1].start),
                    )
                    .group_by(CubeRow.period_start)
                )
            }
            ledger_totals: dict[date, tuple[int, int]] = {}
            for day, amount, count in self.session.execute(
                select(
                    Transaction.date,
                    func.sum(Transaction.amount_cents),
                    func.count(Transaction.id),
                )
                .where(
                    Transaction.tenant_id == self.tenant_id,
                    Transaction.date.between(periods[0].start, periods[-1].end),
                )
                .group_by(Transaction.date)
            ):
                period_start = containing_period(day, granularity).start
                total, seen = ledger_totals.get(period_start, (0, 0))
                ledger_totals[period_start] = (total + int(amount or 0), seen + int(count))

            for period in periods:
                cube = cube_totals.get(period.start, (0, 0))
                ledger = ledger_totals.get(period.start, (0, 0))
                if cube != ledger:
                    discrepancies.append(
                        Discrepancy(period, cube[0], ledger[0], cube[1], ledger[1])
                    )
        if discrepancies:
            logger.warning(
                f"cube_verify: tenant={self.tenant_id} start={start} end={end} "
                f"discrepancies={len(discrepancies)}"
            )
        return discrepancies
