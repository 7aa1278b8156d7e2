from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import cube_admin
from database import Base


def make_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @contextmanager
    def factory():
        session = SessionLocal()
        try:
            yield session
            session.commit()
        finally:
            session.close()

    return factory


def test_import_populate_and_verify(tmp_path, capsys) -> None:
    factory = make_factory()
    ledger = tmp_path / "ledger.csv"
    ledger.write_text(
        "Date,Account,Type,Amount,Category,Recurring,Description\n"
        "2025-03-01,Checking,expense,12.50,Groceries,no,Market\n"
        "2025-04-11,Checking,income,900,Salary,yes,Payroll\n",
        encoding="utf-8",
    )

    assert cube_admin.main(["--tenant", "t1", "import", str(ledger)], factory) == 0
    assert cube_admin.main(["--tenant", "t1", "populate", "--clear", "--end", "2025-04-30"], factory) == 0
    assert (
        cube_admin.main(
            ["--tenant", "t1", "verify", "--start", "2025-03-01", "--end", "2025-04-30"],
            factory,
        )
        == 0
    )
    output = capsys.readouterr().out
    assert "imported=2" in output
    assert output.strip().endswith("ok")

    exported = tmp_path / "cube.csv"
    assert (
        cube_admin.main(
            ["--tenant", "t1", "export", "--granularity", "monthly", "--output", str(exported)],
            factory,
        )
        == 0
    )
    lines = exported.read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("Granularity,PeriodStart")
    assert len(lines) == 3
    assert "Groceries" in lines[1]


def test_value_errors_exit_with_code_two(capsys) -> None:
    factory = make_factory()

    code = cube_admin.main(
        ["--tenant", "t1", "rebuild", "--start", "2025-05-01", "--end", "2025-04-01"],
        factory,
    )

    assert code == 2
    assert "Start date must be before end date" in capsys.readouterr().err


def test_populate_single_account(tmp_path, capsys) -> None:
    factory = make_factory()
    ledger = tmp_path / "ledger.csv"
    ledger.write_text(
        "Date,Account,Type,Amount,Category,Recurring,Description\n"
        "2025-03-01,Checking,expense,12.50,Groceries,no,Market\n"
        "2025-04-11,Savings,income,900,Salary,yes,Payroll\n",
        encoding="utf-8",
    )
    assert cube_admin.main(["--tenant", "t1", "import", str(ledger)], factory) == 0

    code = cube_admin.main(
        ["--tenant", "t1", "populate", "--clear", "--account", "1", "--end", "2025-04-30"],
        factory,
    )

    assert code == 0
    assert "periods=" in capsys.readouterr().out
    assert cube_admin.main(["--tenant", "t1", "populate", "--account", "99"], factory) == 2
