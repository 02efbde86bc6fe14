"""
Modelo: accounts — cuentas de Monzo de cada usuario autorizado.
"""

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base


class Account(Base):
    __tablename__ = "accounts"

    __table_args__ = (
        sa.Index("ix_accounts_user_id", "user_id"),
    )

    # ID de Monzo, e.g. "acc_00009..."
    id: Mapped[str] = mapped_column(sa.String(100), primary_key=True)
    user_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    description: Mapped[str] = mapped_column(sa.Text, nullable=False)
    created: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)
