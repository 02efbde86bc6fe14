"""
Modelos SQLAlchemy. Importar aquí para que Alembic los detecte en autogenerate.
"""

from models.account import Account
from models.base import Base
from models.token import Token
from models.transaction import Transaction

__all__ = [
    "Account",
    "Base",
    "Token",
    "Transaction",
]
