"""add app settings

Revision ID: 202610190930
Revises: 202610190900
Create Date: 2026-10-19 09:30:00.000000

"""

from datetime import datetime

from alembic import op
import sqlalchemy as sa


revision = "202610190930"
down_revision = "202610190900"
branch_labels = None
depends_on = None


def upgrade():
    settings = op.create_table(
        "app_settings",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.bulk_insert(
        settings,
        [{"key": "allow_registration", "value": "false", "updated_at": datetime.utcnow()}],
    )


def downgrade():
    op.drop_table("app_settings")
