"""create transactions table

Revision ID: 003_create_transactions
Revises: 002_create_accounts
Create Date: 2026-10-01 00:02:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "003_create_transactions"
down_revision: Union[str, None] = "002_create_accounts"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "transactions",
        # id de Monzo: clave del upsert de sync y webhooks
        sa.Column("id", sa.String(100), nullable=False),
        # Sin FK a accounts: un webhook puede llegar antes que el sync de la cuenta
        sa.Column("account_id", sa.String(100), nullable=False),
        # Unidades menores con signo (peniques)
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("merchant", sa.String(100), nullable=True),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("created", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("settled", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_transactions_account_created",
        "transactions",
        ["account_id", "created"],
    )


def downgrade() -> None:
    op.drop_index("ix_transactions_account_created", table_name="transactions")
    op.drop_table("transactions")
