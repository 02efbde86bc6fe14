"""
Modelo: tokens — credenciales OAuth de Monzo, una fila por usuario.
"""

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base


class Token(Base):
    __tablename__ = "tokens"

    __table_args__ = (
        sa.Index("ix_tokens_expiry_time", "expiry_time"),
    )

    # user_id de Monzo, e.g. "user_00009..."
    user_id: Mapped[str] = mapped_column(sa.String(100), primary_key=True)
    expiry_time: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)
    token_type: Mapped[str] = mapped_column(sa.String(20), nullable=False)
    # Cifrados con AES-256-GCM, NUNCA en texto plano
    access_token_encrypted: Mapped[str] = mapped_column(sa.Text, nullable=False)
    refresh_token_encrypted: Mapped[str] = mapped_column(sa.Text, nullable=False)
