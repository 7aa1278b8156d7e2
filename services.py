from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from csv_utils import parse_ledger_csv
from cube import CubeService, get_current_tenant_id
from deltas import CubeRelevantFields, update_delta
from models import Account, Category, Transaction, TransactionType
from schemas import AccountIn, CategoryIn, TransactionIn, TransactionUpdateIn


logger = logging.getLogger(__name__)


class AccountService:
    def __init__(self, session: Session, tenant_id: Optional[str] = None) -> None:
        self.session = session
        self.tenant_id = tenant_id or get_current_tenant_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.tenant_id == self.tenant_id)
            .order_by(Account.name)
        )
        return list(self.session.scalars(stmt))

    def find_by_name(self, name: str) -> Optional[Account]:
        return self.session.scalar(
            select(Account).where(
                Account.tenant_id == self.tenant_id,
                func.lower(Account.name) == name.strip().lower(),
            )
        )

    def add(self, data: AccountIn) -> Account:
        """Stage a new account in the current transaction without committing."""
        clean_name = data.name.strip()
        if self.find_by_name(clean_name):
            raise ValueError("Account already exists")
        account = Account(tenant_id=self.tenant_id, name=clean_name)
        self.session.add(account)
        self.session.flush()
        return account

    def create(self, data: AccountIn) -> Account:
        account = self.add(data)
        self.session.commit()
        self.session.refresh(account)
        return account


class CategoryService:
    def __init__(self, session: Session, tenant_id: Optional[str] = None) -> None:
        self.session = session
        self.tenant_id = tenant_id or get_current_tenant_id()

    def list_all(self, type_filter: Optional[TransactionType] = None) -> list[Category]:
        stmt = select(Category).where(Category.tenant_id == self.tenant_id)
        if type_filter:
            stmt = stmt.where(Category.type == type_filter)
        return list(self.session.scalars(stmt.order_by(Category.type, Category.name)))

    def find(self, name: str, type_: TransactionType) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.tenant_id == self.tenant_id,
                Category.type == type_,
                func.lower(Category.name) == name.strip().lower(),
            )
        )

    def add(self, data: CategoryIn) -> Category:
        clean_name = data.name.strip()
        if self.find(clean_name, data.type):
            raise ValueError("Category already exists")
        category = Category(tenant_id=self.tenant_id, name=clean_name, type=data.type)
        self.session.add(category)
        self.session.flush()
        return category

    def create(self, data: CategoryIn) -> Category:
        category = self.add(data)
        self.session.commit()
        self.session.refresh(category)
        return category


class TransactionService:
    """Ledger writes. Each public mutation commits once, together with the
    matching cube update, or rolls both back."""

    def __init__(
        self,
        session: Session,
        tenant_id: Optional[str] = None,
        cube: Optional[CubeService] = None,
    ) -> None:
        self.session = session
        self.tenant_id = tenant_id or get_current_tenant_id()
        self.cube = cube or CubeService(session, self.tenant_id)
        if self.cube.tenant_id != self.tenant_id:
            raise ValueError("Cube service belongs to a different tenant")

    @contextmanager
    def _atomic(self) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def _validate(
        self, account_id: int, category_id: Optional[int], type_: TransactionType
    ) -> None:
        account = self.session.get(Account, account_id)
        if not account or account.tenant_id != self.tenant_id:
            raise ValueError("Account not found")
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category or category.tenant_id != self.tenant_id:
            raise ValueError("Category not found")
        if category.type != type_:
            raise ValueError("Category type mismatch")

    def _build(self, data: TransactionIn) -> Transaction:
        self._validate(data.account_id, data.category_id, data.type)
        return Transaction(
            tenant_id=self.tenant_id,
            account_id=data.account_id,
            category_id=data.category_id,
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            is_recurring=data.is_recurring,
            description=data.description.strip(),
        )

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.tenant_id == self.tenant_id,
                Transaction.id == transaction_id,
            )
        )
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def _get_many(self, transaction_ids: Sequence[int]) -> list[Transaction]:
        ids = set(transaction_ids)
        txns = list(
            self.session.scalars(
                select(Transaction)
                .where(Transaction.tenant_id == self.tenant_id, Transaction.id.in_(ids))
                .order_by(Transaction.id)
            )
        )
        if len(txns) != len(ids):
            missing = sorted(ids - {txn.id for txn in txns})
            raise ValueError(f"Transactions not found: {missing}")
        return txns

    def list_range(self, start, end) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.tenant_id == self.tenant_id,
                Transaction.date.between(start, end),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt))

    def create(self, data: TransactionIn) -> Transaction:
        with self._atomic():
            txn = self._build(data)
            self.session.add(txn)
            self.session.flush()
            self.cube.add_transaction(CubeRelevantFields.from_transaction(txn), txn.id)
        self.session.refresh(txn)
        return txn

    @staticmethod
    def _changes(data: TransactionUpdateIn) -> dict[str, object]:
        changes = data.model_dump(exclude_unset=True)
        if "description" in changes and changes["description"] is None:
            changes["description"] = ""
        for required in ("account_id", "date", "type", "amount_cents", "is_recurring"):
            if required in changes and changes[required] is None:
                raise ValueError(f"{required} cannot be empty")
        return changes

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> Transaction:
        changes = self._changes(data)
        with self._atomic():
            txn = self.get(transaction_id)
            old_values = CubeRelevantFields.from_transaction(txn)
            self._validate(
                changes.get("account_id", txn.account_id),
                changes.get("category_id", txn.category_id),
                changes.get("type", txn.type),
            )
            for name, value in changes.items():
                setattr(txn, name, value)
            self.session.flush()
            new_values = CubeRelevantFields.from_transaction(txn)
            if new_values != old_values:
                self.cube.update_transaction(
                    update_delta(txn.id, self.tenant_id, old_values, new_values)
                )
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        with self._atomic():
            txn = self.get(transaction_id)
            old_values = CubeRelevantFields.from_transaction(txn)
            self.session.delete(txn)
            self.session.flush()
            self.cube.remove_transaction(old_values, transaction_id)

    def bulk_create(self, items: Sequence[TransactionIn]) -> list[Transaction]:
        if not items:
            return []
        with self._atomic():
            txns = self._insert_many(items)
        return txns

    def _insert_many(self, items: Sequence[TransactionIn]) -> list[Transaction]:
        txns = [self._build(item) for item in items]
        self.session.add_all(txns)
        self.session.flush()
        self.cube.bulk_create_transactions(
            [CubeRelevantFields.from_transaction(txn) for txn in txns]
        )
        logger.info(f"ledger_bulk_create: tenant={self.tenant_id} count={len(txns)}")
        return txns

    def bulk_update(self, transaction_ids: Sequence[int], data: TransactionUpdateIn) -> int:
        changes = self._changes(data)
        if not transaction_ids or not changes:
            return 0
        with self._atomic():
            txns = self._get_many(transaction_ids)
            old_fields = [CubeRelevantFields.from_transaction(txn) for txn in txns]
            for txn in txns:
                self._validate(
                    changes.get("account_id", txn.account_id),
                    changes.get("category_id", txn.category_id),
                    changes.get("type", txn.type),
                )
                for name, value in changes.items():
                    setattr(txn, name, value)
            self.session.flush()
            new_fields = [CubeRelevantFields.from_transaction(txn) for txn in txns]
            self.cube.bulk_update_transactions(old_fields, new_fields)
        logger.info(
            f"ledger_bulk_update: tenant={self.tenant_id} count={len(txns)} "
            f"fields={','.join(sorted(changes))}"
        )
        return len(txns)

    def bulk_delete(self, transaction_ids: Sequence[int]) -> int:
        if not transaction_ids:
            return 0
        with self._atomic():
            txns = self._get_many(transaction_ids)
            old_fields = [CubeRelevantFields.from_transaction(txn) for txn in txns]
            for txn in txns:
                self.session.delete(txn)
            self.session.flush()
            self.cube.bulk_delete_transactions(old_fields)
        logger.info(f"ledger_bulk_delete: tenant={self.tenant_id} count={len(txns)}")
        return len(txns)

    def import_csv(self, content: str, *, create_missing: bool = True) -> tuple[int, list[str]]:
        """Import ledger rows from CSV. Returns the number of rows imported and
        the per-row errors; nothing is written when any row fails."""
        rows, errors = parse_ledger_csv(content)
        if errors:
            return 0, errors
        accounts = AccountService(self.session, self.tenant_id)
        categories = CategoryService(self.session, self.tenant_id)
        items: list[TransactionIn] = []
        try:
            for idx, row in enumerate(rows, start=1):
                try:
                    item = self._import_row(row, accounts, categories, create_missing)
                except ValueError as exc:
                    errors.append(f"Row {idx}: {exc}")
                    continue
                items.append(item)
            if errors:
                self.session.rollback()
                return 0, errors
            created = self._insert_many(items) if items else []
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return len(created), []

    def _import_row(
        self,
        row,
        accounts: AccountService,
        categories: CategoryService,
        create_missing: bool,
    ) -> TransactionIn:
        account = accounts.find_by_name(row.account)
        if account is None:
            if not create_missing:
                raise ValueError(f"Unknown account {row.account}")
            account = accounts.add(AccountIn(name=row.account))
        category_id = None
        if row.category:
            category = categories.find(row.category, row.type)
            if category is None:
                if not create_missing:
                    raise ValueError(f"Unknown category {row.category}")
                category = categories.add(CategoryIn(name=row.category, type=row.type))
            category_id = category.id
        return TransactionIn(
            account_id=account.id,
            category_id=category_id,
            date=row.date,
            type=row.type,
            amount_cents=row.amount_cents,
            is_recurring=row.is_recurring,
            description=row.description,
        )
