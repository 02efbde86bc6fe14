"""create tokens table

Revision ID: 001_create_tokens
Revises:
Create Date: 2026-10-01 00:00:00.000000
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_create_tokens"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "tokens",
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("expiry_time", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("token_type", sa.String(20), nullable=False),
        # Tokens OAuth cifrados con AES-256-GCM, NUNCA en texto plano
        sa.Column("access_token_encrypted", sa.Text(), nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )
    # El scheduler de refresco filtra por expiry_time en cada tick
    op.create_index("ix_tokens_expiry_time", "tokens", ["expiry_time"])


def downgrade() -> None:
    op.drop_index("ix_tokens_expiry_time", table_name="tokens")
    op.drop_table("tokens")
