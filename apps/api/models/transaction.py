"""
Modelo: transactions — movimientos de Monzo, clave = ID de Monzo.
"""

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base


class Transaction(Base):
    __tablename__ = "transactions"

    __table_args__ = (
        sa.Index("ix_transactions_account_created", "account_id", "created"),
    )

    # ID de Monzo, e.g. "tx_00009..."
    id: Mapped[str] = mapped_column(sa.String(100), primary_key=True)
    # Sin FK: un webhook puede llegar antes de que la cuenta se haya sincronizado
    account_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    # Unidades menores con signo (peniques). NUNCA float
    amount: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(sa.String(3), nullable=False)
    description: Mapped[str] = mapped_column(sa.Text, nullable=False)
    notes: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="")
    merchant: Mapped[str | None] = mapped_column(sa.String(100), nullable=True)
    category: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    created: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)
    settled: Mapped[datetime | None] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)
