from datetime import date, timedelta

import pytest
from sqlalchemy import create_engine, delete
from sqlalchemy.orm import sessionmaker

from config import Settings
from cube import CubeService
from database import Base
from deltas import (
    BulkMetadataAmbiguous,
    CubeRelevantFields,
    DanglingReferenceError,
    build_bulk_metadata,
    insert_delta,
    update_delta,
)
from models import Account, Category, CubeRow, Transaction, TransactionType
from periods import Granularity


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite+pysqlite:///:memory:",
        timezone="UTC",
        granularities=("WEEKLY", "MONTHLY"),
        bulk_regeneration_threshold=500,
        regeneration_chunk_days=31,
        log_level="INFO",
        default_tenant="t1",
    )
    values.update(overrides)
    return Settings(**values)


def seed(session, tenant_id: str = "t1"):
    account = Account(tenant_id=tenant_id, name="Checking")
    groceries = Category(tenant_id=tenant_id, name="Groceries", type=TransactionType.expense)
    rent = Category(tenant_id=tenant_id, name="Rent", type=TransactionType.expense)
    session.add_all([account, groceries, rent])
    session.commit()
    return account, groceries, rent


def add_ledger(session, fields: CubeRelevantFields, tenant_id: str = "t1") -> Transaction:
    txn = Transaction(
        tenant_id=tenant_id,
        account_id=fields.account_id,
        category_id=fields.category_id,
        amount_cents=fields.amount_cents,
        date=fields.date,
        type=fields.type,
        is_recurring=fields.is_recurring,
    )
    session.add(txn)
    session.flush()
    return txn


def snapshot(cube: CubeService) -> list[tuple]:
    return [
        (
            row.period_type.value,
            row.period_start,
            row.account_id,
            row.category_id,
            row.transaction_type.value,
            row.is_recurring,
            row.amount_sum_cents,
            row.transaction_count,
        )
        for row in cube.rows()
    ]


def test_insert_update_delete_round_trip() -> None:
    session = make_session()
    account, groceries, _ = seed(session)
    cube = CubeService(session, "t1", settings=make_settings())

    original = CubeRelevantFields(
        account_id=account.id,
        category_id=groceries.id,
        amount_cents=10_000,
        date=date(2025, 8, 15),
        type=TransactionType.expense,
    )
    cube.add_transaction(original, 1)
    (august,) = cube.rows(Granularity.monthly)
    assert august.period_start == date(2025, 8, 1)
    assert (august.amount_sum_cents, august.transaction_count) == (10_000, 1)

    updated = CubeRelevantFields(**{**original.__dict__, "amount_cents": 15_000})
    cube.update_transaction(update_delta(1, "t1", original, updated))
    (august,) = cube.rows(Granularity.monthly)
    assert (august.amount_sum_cents, august.transaction_count) == (15_000, 1)

    cube.remove_transaction(updated, 1)
    assert cube.rows() == []


def test_incremental_matches_regeneration() -> None:
    session = make_session()
    account, groceries, rent = seed(session)
    cube = CubeService(session, "t1", settings=make_settings())

    start = date(2025, 1, 1)
    created = []
    for i in range(60):
        fields = CubeRelevantFields(
            account_id=account.id,
            category_id=groceries.id if i % 3 else None,
            amount_cents=1_000 + i * 37,
            date=start + timedelta(days=i * 3),
            type=TransactionType.expense,
            is_recurring=i % 5 == 0,
        )
        txn = add_ledger(session, fields)
        cube.add_transaction(fields, txn.id)
        created.append((txn, fields))

    for txn, old in created[::4]:
        new = CubeRelevantFields(
            account_id=old.account_id,
            category_id=rent.id,
            amount_cents=old.amount_cents + 500,
            date=old.date + timedelta(days=20),
            type=old.type,
            is_recurring=old.is_recurring,
        )
        txn.category_id = new.category_id
        txn.amount_cents = new.amount_cents
        txn.date = new.date
        session.flush()
        cube.update_transaction(update_delta(txn.id, "t1", old, new))

    for txn, old in created[1::7]:
        if txn.category_id == rent.id:
            continue
        session.delete(txn)
        session.flush()
        cube.remove_transaction(old, txn.id)

    incremental = snapshot(cube)
    assert cube.verify(date(2025, 1, 1), date(2025, 12, 31)) == []

    cube.clear_all()
    cube.populate_historical_data(end=date(2025, 12, 31))
    assert snapshot(cube) == incremental


def test_regeneration_is_idempotent() -> None:
    session = make_session()
    account, groceries, _ = seed(session)
    cube = CubeService(session, "t1", settings=make_settings(regeneration_chunk_days=5))
    for day in (date(2025, 3, 30), date(2025, 3, 31), date(2025, 4, 1), date(2025, 4, 14)):
        add_ledger(
            session,
            CubeRelevantFields(account.id, groceries.id, 2_000, day, TransactionType.expense),
        )

    cube.regenerate_cube_for_date_range(date(2025, 3, 1), date(2025, 4, 30))
    first = snapshot(cube)
    cube.regenerate_cube_for_date_range(date(2025, 3, 1), date(2025, 4, 30))

    assert snapshot(cube) == first
    march = [r for r in cube.rows(Granularity.monthly) if r.period_start == date(2025, 3, 1)]
    assert march[0].amount_sum_cents == 4_000


def test_large_batch_regenerates_instead_of_applying_deltas() -> None:
    session = make_session()
    account, groceries, _ = seed(session)
    cube = CubeService(session, "t1", settings=make_settings(bulk_regeneration_threshold=3))

    deltas = []
    for i in range(5):
        fields = CubeRelevantFields(
            account.id, groceries.id, 100, date(2025, 6, 2 + i), TransactionType.expense
        )
        txn = add_ledger(session, fields)
        deltas.append(insert_delta(txn.id, "t1", fields))
    cube.apply_deltas(deltas)

    (june,) = cube.rows(Granularity.monthly)
    assert (june.amount_sum_cents, june.transaction_count) == (500, 5)


def test_conservation_detects_drift() -> None:
    session = make_session()
    account, groceries, _ = seed(session)
    cube = CubeService(session, "t1", settings=make_settings())
    fields = CubeRelevantFields(
        account.id, groceries.id, 4_200, date(2025, 5, 5), TransactionType.expense
    )
    add_ledger(session, fields)
    cube.add_transaction(fields)
    assert cube.verify(date(2025, 5, 1), date(2025, 5, 31)) == []

    session.execute(delete(Transaction))
    drift = cube.verify(date(2025, 5, 1), date(2025, 5, 31))

    assert {d.period.granularity for d in drift} == {Granularity.weekly, Granularity.monthly}
    assert all(d.cube_amount_cents == 4_200 and d.ledger_amount_cents == 0 for d in drift)


def test_dangling_references_are_rejected() -> None:
    session = make_session()
    account, _, _ = seed(session)
    cube = CubeService(session, "t1", settings=make_settings())

    with pytest.raises(DanglingReferenceError):
        cube.add_transaction(
            CubeRelevantFields(account.id, 999, 100, date(2025, 1, 1), TransactionType.expense)
        )
    with pytest.raises(DanglingReferenceError):
        cube.add_transaction(
            CubeRelevantFields(999, None, 100, date(2025, 1, 1), TransactionType.expense)
        )
    assert cube.rows() == []


def test_accounts_of_other_tenants_are_dangling() -> None:
    session = make_session()
    account, _, _ = seed(session, "t2")
    cube = CubeService(session, "t1", settings=make_settings())

    with pytest.raises(DanglingReferenceError):
        cube.add_transaction(
            CubeRelevantFields(account.id, None, 100, date(2025, 1, 1), TransactionType.income)
        )


def test_delta_for_other_tenant_is_rejected() -> None:
    session = make_session()
    account, _, _ = seed(session)
    cube = CubeService(session, "t1", settings=make_settings())
    fields = CubeRelevantFields(account.id, None, 100, date(2025, 1, 1), TransactionType.income)

    with pytest.raises(ValueError, match="tenant"):
        cube.apply_deltas([insert_delta(1, "t2", fields)])


def test_bulk_metadata_regenerates_affected_range() -> None:
    session = make_session()
    account, groceries, rent = seed(session)
    cube = CubeService(session, "t1", settings=make_settings())
    rows = []
    for day in (date(2025, 2, 3), date(2025, 2, 17)):
        fields = CubeRelevantFields(account.id, groceries.id, 700, day, TransactionType.expense)
        txn = add_ledger(session, fields)
        cube.add_transaction(fields, txn.id)
        rows.append((txn, fields))

    metadata = build_bulk_metadata(
        "t1", [(txn.id, fields) for txn, fields in rows], {"category_id": rent.id}
    )
    for txn, _ in rows:
        txn.category_id = rent.id
    session.flush()
    cube.update_with_bulk_metadata(metadata)

    (february,) = cube.rows(Granularity.monthly)
    assert february.category_id == rent.id
    assert (february.amount_sum_cents, february.transaction_count) == (1_400, 2)


def test_bulk_metadata_with_mixed_categories_fails_fast() -> None:
    session = make_session()
    account, groceries, rent = seed(session)
    rows = [
        (1, CubeRelevantFields(account.id, groceries.id, 1, date(2025, 2, 3), TransactionType.expense)),
        (2, CubeRelevantFields(account.id, rent.id, 1, date(2025, 2, 4), TransactionType.expense)),
    ]

    with pytest.raises(BulkMetadataAmbiguous):
        build_bulk_metadata("t1", rows, {"category_id": None})


def test_statistics_and_clear() -> None:
    session = make_session()
    account, groceries, _ = seed(session)
    cube = CubeService(session, "t1", settings=make_settings())
    for day in (date(2025, 1, 6), date(2025, 2, 10)):
        fields = CubeRelevantFields(account.id, groceries.id, 100, day, TransactionType.expense)
        add_ledger(session, fields)
        cube.add_transaction(fields)

    stats = cube.statistics()
    assert stats.total_rows == 4
    assert stats.rows_by_granularity == {Granularity.weekly: 2, Granularity.monthly: 2}
    assert stats.earliest_period == date(2025, 1, 1)
    assert stats.latest_period == date(2025, 2, 10)
    assert stats.account_count == 1
    assert stats.category_count == 1
    assert stats.last_updated is not None

    assert cube.clear_all() == 4
    assert cube.statistics().total_rows == 0


def test_populate_from_empty_ledger() -> None:
    session = make_session()
    cube = CubeService(session, "t1", settings=make_settings())

    result = cube.populate_historical_data()

    assert (result.periods_processed, result.rows_written) == (0, 0)


def test_quarterly_trends_roll_up_from_months() -> None:
    session = make_session()
    account, groceries, _ = seed(session)
    cube = CubeService(session, "t1", settings=make_settings())
    for day, amount in ((date(2025, 7, 4), 100), (date(2025, 8, 9), 200), (date(2025, 10, 1), 400)):
        fields = CubeRelevantFields(account.id, groceries.id, amount, day, TransactionType.expense)
        add_ledger(session, fields)
        cube.add_transaction(fields)

    points = cube.trends(Granularity.quarterly, start=date(2025, 8, 1))

    assert [(p.period.start, p.amount_cents, p.transaction_count) for p in points] == [
        (date(2025, 7, 1), 300, 2),
        (date(2025, 10, 1), 400, 1),
    ]


def test_trends_filters_and_totals_by_category() -> None:
    session = make_session()
    account, groceries, rent = seed(session)
    cube = CubeService(session, "t1", settings=make_settings())
    for category, amount in ((groceries, 120), (rent, 900), (groceries, 80)):
        fields = CubeRelevantFields(
            account.id, category.id, amount, date(2025, 3, 12), TransactionType.expense
        )
        add_ledger(session, fields)
        cube.add_transaction(fields)

    points = cube.trends(Granularity.monthly, category_ids=[groceries.id])
    assert [(p.category_id, p.amount_cents) for p in points] == [(groceries.id, 200)]

    totals = cube.totals_by("category", Granularity.monthly)
    assert {(t.value, t.amount_cents) for t in totals} == {(groceries.id, 200), (rent.id, 900)}

    with pytest.raises(ValueError):
        cube.totals_by("merchant")


def test_trends_need_a_stored_base() -> None:
    session = make_session()
    cube = CubeService(session, "t1", granularities=(Granularity.weekly,), settings=make_settings())

    with pytest.raises(ValueError):
        cube.trends(Granularity.annual)
    assert cube.trends(Granularity.bi_weekly) == []


def test_rows_reflect_cube_writes_in_same_session() -> None:
    session = make_session()
    account, groceries, _ = seed(session)
    cube = CubeService(session, "t1", settings=make_settings())
    fields = CubeRelevantFields(account.id, groceries.id, 100, date(2025, 4, 1), TransactionType.expense)

    cube.add_transaction(fields)
    (row,) = cube.rows(Granularity.monthly)
    cube.add_transaction(fields)

    assert row.transaction_count == 2
    assert isinstance(row, CubeRow)


def test_populate_for_one_account_leaves_others_alone() -> None:
    session = make_session()
    checking, groceries, _ = seed(session)
    savings = Account(tenant_id="t1", name="Savings")
    session.add(savings)
    session.commit()
    cube = CubeService(session, "t1", settings=make_settings(granularities=("MONTHLY",)))
    for account, day in ((checking, date(2025, 1, 10)), (savings, date(2025, 3, 5))):
        fields = CubeRelevantFields(account.id, groceries.id, 100, day, TransactionType.expense)
        add_ledger(session, fields)
        cube.add_transaction(fields)
    session.execute(
        delete(CubeRow)
        .where(CubeRow.account_id == savings.id)
        .execution_options(synchronize_session=False)
    )

    result = cube.populate_historical_data(
        end=date(2025, 3, 31), clear_existing=True, account_id=savings.id
    )

    assert result.periods_processed == 1
    assert [(row.account_id, row.period_start) for row in cube.rows()] == [
        (checking.id, date(2025, 1, 1)),
        (savings.id, date(2025, 3, 1)),
    ]
    assert cube.verify(date(2025, 1, 1), date(2025, 3, 31)) == []
    assert cube.clear_all(account_id=checking.id) == 1
    assert [row.account_id for row in cube.rows()] == [savings.id]


def test_populate_for_unknown_account_is_rejected() -> None:
    session = make_session()
    seed(session)
    cube = CubeService(session, "t1", settings=make_settings())

    with pytest.raises(DanglingReferenceError):
        cube.populate_historical_data(account_id=9999)


def test_dates_past_supported_range_are_rejected() -> None:
    session = make_session()
    account, _, _ = seed(session)
    cube = CubeService(session, "t1", settings=make_settings())

    with pytest.raises(ValueError, match="outside supported range"):
        cube.add_transaction(
            CubeRelevantFields(account.id, None, 100, date.max, TransactionType.expense)
        )
    assert cube.rows() == []


def test_rows_held_across_a_delete_stay_readable() -> None:
    session = make_session()
    account, groceries, _ = seed(session)
    cube = CubeService(session, "t1", settings=make_settings())
    fields = CubeRelevantFields(account.id, groceries.id, 100, date(2025, 4, 1), TransactionType.expense)
    cube.add_transaction(fields, 1)
    held = cube.rows(Granularity.monthly)[0]

    cube.remove_transaction(fields, 1)

    assert cube.rows() == []
    assert held.transaction_count == 0
    assert held.period_start == date(2025, 4, 1)
