"""ledger and financial cube

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPES = ("INCOME", "EXPENSE", "TRANSFER")
GRANULARITIES = ("WEEKLY", "BI_WEEKLY", "MONTHLY", "QUARTERLY", "BI_ANNUAL", "ANNUAL")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "name", name="uq_account_tenant_name"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum(*TRANSACTION_TYPES, name="transactiontype"), nullable=False
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id", "type", "name", name="uq_category_tenant_type_name"
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "type",
            sa.Enum(*TRANSACTION_TYPES, name="transactiontype", create_type=False),
            nullable=False,
        ),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_tenant_date", "transactions", ["tenant_id", "date"])
    op.create_index(
        "ix_transactions_tenant_account_date",
        "transactions",
        ["tenant_id", "account_id", "date"],
    )
    op.create_index(
        "ix_transactions_tenant_category_date",
        "transactions",
        ["tenant_id", "category_id", "date"],
    )

    op.create_table(
        "financial_cube",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column(
            "period_type", sa.Enum(*GRANULARITIES, name="granularity"), nullable=False
        ),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("category_id", sa.Integer()),
        sa.Column("category_key", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "transaction_type",
            sa.Enum(*TRANSACTION_TYPES, name="transactiontype", create_type=False),
            nullable=False,
        ),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("amount_sum_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("transaction_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id",
            "period_type",
            "period_start",
            "account_id",
            "category_key",
            "transaction_type",
            "is_recurring",
            name="uq_financial_cube_bucket",
        ),
    )
    op.create_index(
        "ix_financial_cube_tenant_period",
        "financial_cube",
        ["tenant_id", "period_type", "period_start"],
    )
    op.create_index(
        "ix_financial_cube_tenant_category_period",
        "financial_cube",
        ["tenant_id", "category_id", "period_start"],
    )
    op.create_index(
        "ix_financial_cube_tenant_account_period",
        "financial_cube",
        ["tenant_id", "account_id", "period_start"],
    )
    op.create_index("ix_financial_cube_updated_at", "financial_cube", ["updated_at"])


def downgrade():
    op.drop_table("financial_cube")
    op.drop_index("ix_transactions_tenant_category_date", table_name="transactions")
    op.drop_index("ix_transactions_tenant_account_date", table_name="transactions")
    op.drop_index("ix_transactions_tenant_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_table("accounts")
    sa.Enum(name="granularity").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="transactiontype").drop(op.get_bind(), checkfirst=True)
