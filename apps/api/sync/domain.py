"""
Tipos de dominio del motor de sincronización.
Independientes de SQLAlchemy: el Store convierte entre estas clases y las filas ORM.
Todas las fechas son datetime con tz UTC.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sync.monzo_client import TokenResponse


@dataclass
class Token:
    user_id: str
    expiry_time: datetime
    token_type: str
    access_token: str
    refresh_token: str

    def __repr__(self) -> str:
        # Sin access_token / refresh_token: los repr acaban en los logs
        return f"Token(user_id={self.user_id!r}, expiry_time={self.expiry_time.isoformat()})"

    @classmethod
    def from_response(cls, response: "TokenResponse", now: datetime | None = None) -> "Token":
        """Token a partir de la respuesta de /oauth2/token: expiry_time = ahora + expires_in."""
        now = now or datetime.now(timezone.utc)
        return cls(
            user_id=response.user_id,
            expiry_time=now + timedelta(seconds=response.expires_in),
            token_type=response.token_type,
            access_token=response.access_token,
            refresh_token=response.refresh_token,
        )


@dataclass
class Account:
    id: str
    user_id: str
    description: str
    created: datetime


@dataclass
class Transaction:
    id: str
    account_id: str
    amount: int
    currency: str
    description: str
    notes: str
    merchant: str | None
    category: str
    created: datetime
    settled: datetime | None
