from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from periods import Granularity


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"
    transfer = "TRANSFER"


def _by_value(enum_cls):
    return [member.value for member in enum_cls]


TRANSACTION_TYPE_ENUM = SAEnum(
    TransactionType, name="transactiontype", values_callable=_by_value
)
GRANULARITY_ENUM = SAEnum(Granularity, name="granularity", values_callable=_by_value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_account_tenant_name"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        TRANSACTION_TYPE_ENUM, nullable=False
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "type", "name", name="uq_category_tenant_type_name"
        ),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        TRANSACTION_TYPE_ENUM, nullable=False
    )
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_tenant_date", "tenant_id", "date"),
        Index("ix_transactions_tenant_account_date", "tenant_id", "account_id", "date"),
        Index(
            "ix_transactions_tenant_category_date", "tenant_id", "category_id", "date"
        ),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class CubeRow(Base, TimestampMixin):
    """One pre-aggregated bucket of the financial trend cube.

    ``category_key`` mirrors ``category_id`` with NULL folded to 0 so the
    bucket key stays unique for uncategorized transactions as well.
    """

    __tablename__ = "financial_cube"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_type: Mapped[Granularity] = mapped_column(GRANULARITY_ENUM, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(Integer)
    category_key: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_type: Mapped[TransactionType] = mapped_column(
        TRANSACTION_TYPE_ENUM, nullable=False
    )
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    amount_sum_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "period_type",
            "period_start",
            "account_id",
            "category_key",
            "transaction_type",
            "is_recurring",
            name="uq_financial_cube_bucket",
        ),
        Index("ix_financial_cube_tenant_period", "tenant_id", "period_type", "period_start"),
        Index(
            "ix_financial_cube_tenant_category_period",
            "tenant_id",
            "category_id",
            "period_start",
        ),
        Index(
            "ix_financial_cube_tenant_account_period",
            "tenant_id",
            "account_id",
            "period_start",
        ),
        Index("ix_financial_cube_updated_at", "updated_at"),
    )
