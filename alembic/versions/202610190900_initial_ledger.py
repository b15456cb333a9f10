"""initial ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(18, 4)


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("currency", sa.String(length=10), nullable=False),
        sa.Column("initial_balance", MONEY, nullable=False, server_default="0"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "neutral", name="flowtype"),
            nullable=False,
        ),
        sa.Column(
            "parent_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
    )

    op.create_table(
        "payees",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False, unique=True),
        sa.Column(
            "default_category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column("default_payment_type", sa.Integer()),
    )

    op.create_table(
        "export_manifests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("payee", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column("payment_type", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("memo", sa.Text(), nullable=False, server_default=""),
        sa.Column("transfer_id", sa.String(length=64)),
        sa.Column("exported", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "export_manifest_id",
            sa.Integer(),
            sa.ForeignKey("export_manifests.id", ondelete="SET NULL"),
        ),
    )
    op.create_index("ix_transactions_account", "transactions", ["account_id"])
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index("ix_transactions_transfer", "transactions", ["transfer_id"])


def downgrade():
    op.drop_index("ix_transactions_transfer", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_index("ix_transactions_account", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("export_manifests")
    op.drop_table("payees")
    op.drop_table("categories")
    op.drop_table("accounts")
