from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Mapping, NamedTuple, Optional, Sequence

from models import Transaction, TransactionType, utcnow


CUBE_FIELDS = ("account_id", "category_id", "amount_cents", "date", "type", "is_recurring")


class DeltaShapeError(ValueError):
    pass


class DanglingReferenceError(ValueError):
    pass


class BulkMetadataAmbiguous(ValueError):
    pass


class Operation(str, Enum):
    insert = "INSERT"
    update = "UPDATE"
    delete = "DELETE"


class DimensionKey(NamedTuple):
    account_id: int
    category_id: Optional[int]
    type: TransactionType
    is_recurring: bool


@dataclass(frozen=True)
class CubeRelevantFields:
    """The slice of a ledger transaction the cube aggregates over."""

    account_id: int
    category_id: Optional[int]
    amount_cents: int
    date: date
    type: TransactionType
    is_recurring: bool = False

    @classmethod
    def from_transaction(cls, txn: Transaction) -> CubeRelevantFields:
        return cls(
            account_id=txn.account_id,
            category_id=txn.category_id,
            amount_cents=txn.amount_cents,
            date=txn.date,
            type=TransactionType(txn.type),
            is_recurring=bool(txn.is_recurring),
        )

    @property
    def dimension(self) -> DimensionKey:
        return DimensionKey(self.account_id, self.category_id, self.type, self.is_recurring)


@dataclass(frozen=True, eq=False)
class TransactionDelta:
    transaction_id: Optional[int]
    operation: Operation
    tenant_id: str
    old_values: Optional[CubeRelevantFields] = None
    new_values: Optional[CubeRelevantFields] = None
    timestamp: datetime = field(default_factory=utcnow)
    user_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.is_empty:
            return
        has_old = self.old_values is not None
        has_new = self.new_values is not None
        expected = {
            Operation.insert: (False, True),
            Operation.update: (True, True),
            Operation.delete: (True, False),
        }[self.operation]
        if (has_old, has_new) != expected:
            raise DeltaShapeError(
                f"{self.operation.value} delta for transaction {self.transaction_id} "
                f"has old_values={has_old} new_values={has_new}"
            )

    @property
    def is_empty(self) -> bool:
        return self.old_values is None and self.new_values is None

    def relevant_dates(self) -> tuple[date, ...]:
        dates: list[date] = []
        for values in (self.old_values, self.new_values):
            if values is not None and values.date not in dates:
                dates.append(values.date)
        return tuple(dates)


def insert_delta(
    transaction_id: Optional[int],
    tenant_id: str,
    new_values: CubeRelevantFields,
    user_id: Optional[str] = None,
) -> TransactionDelta:
    return TransactionDelta(
        transaction_id=transaction_id,
        operation=Operation.insert,
        tenant_id=tenant_id,
        new_values=new_values,
        user_id=user_id,
    )


def update_delta(
    transaction_id: Optional[int],
    tenant_id: str,
    old_values: CubeRelevantFields,
    new_values: CubeRelevantFields,
    user_id: Optional[str] = None,
) -> TransactionDelta:
    return TransactionDelta(
        transaction_id=transaction_id,
        operation=Operation.update,
        tenant_id=tenant_id,
        old_values=old_values,
        new_values=new_values,
        user_id=user_id,
    )


def delete_delta(
    transaction_id: Optional[int],
    tenant_id: str,
    old_values: CubeRelevantFields,
    user_id: Optional[str] = None,
) -> TransactionDelta:
    return TransactionDelta(
        transaction_id=transaction_id,
        operation=Operation.delete,
        tenant_id=tenant_id,
        old_values=old_values,
        user_id=user_id,
    )


class FieldChange(NamedTuple):
    field_name: str
    old_value: object
    new_value: object


def changed_fields(
    old: CubeRelevantFields, new: CubeRelevantFields
) -> list[FieldChange]:
    changes: list[FieldChange] = []
    for name in CUBE_FIELDS:
        before = getattr(old, name)
        after = getattr(new, name)
        if before != after:
            changes.append(FieldChange(name, before, after))
    return changes


@dataclass(frozen=True)
class BulkUpdateMetadata:
    """Compact description of one change applied identically to many rows."""

    tenant_id: str
    affected_transaction_ids: tuple[int, ...]
    changed_fields: tuple[FieldChange, ...]
    date_range: Optional[tuple[date, date]] = None


def build_bulk_metadata(
    tenant_id: str,
    rows: Sequence[tuple[int, CubeRelevantFields]],
    updates: Mapping[str, object],
) -> BulkUpdateMetadata:
    """Describe setting ``updates`` on every row of ``rows``.

    Every changed field must have one old value shared by the whole batch;
    anything else cannot be expressed as a single old/new pair and is
    rejected rather than approximated.
    """
    unknown = sorted(set(updates) - set(CUBE_FIELDS))
    if unknown:
        raise ValueError(f"Not a cube field: {', '.join(unknown)}")
    if "date" in updates:
        raise BulkMetadataAmbiguous(
            "Date changes cannot be described as bulk metadata; "
            "apply per-row deltas or regenerate the affected range instead"
        )

    changes: list[FieldChange] = []
    for name, new_value in updates.items():
        old_values = {getattr(fields, name) for _, fields in rows}
        if len(old_values) > 1:
            raise BulkMetadataAmbiguous(
                f"Field {name} has {len(old_values)} distinct old values across "
                f"{len(rows)} transactions; apply per-row deltas or regenerate "
                "the affected range instead"
            )
        if old_values and old_values != {new_value}:
            changes.append(FieldChange(name, old_values.pop(), new_value))

    date_range = None
    if rows:
        dates = [fields.date for _, fields in rows]
        date_range = (min(dates), max(dates))
    return BulkUpdateMetadata(
        tenant_id=tenant_id,
        affected_transaction_ids=tuple(txn_id for txn_id, _ in rows),
        changed_fields=tuple(changes),
        date_range=date_range,
    )
