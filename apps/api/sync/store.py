"""
Store: persistencia de tokens, cuentas y transacciones.

Reglas:
- Upserts por clave primaria con INSERT ... ON CONFLICT DO UPDATE reemplazando
  todas las columnas no clave (last-write-wins, idempotente).
- Cada operación abre su propia sesión: el pool del engine se comparte entre
  la API, los bucles del scheduler y los jobs en background.
- access_token / refresh_token se cifran al escribir y se descifran al leer.
- Cualquier SQLAlchemyError se envuelve en StoreError.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import Insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.security import TokenCipher
from models.account import Account as AccountRow
from models.token import Token as TokenRow
from models.transaction import Transaction as TransactionRow
from sync.domain import Account, Token, Transaction

logger = structlog.get_logger(__name__)


class StoreError(Exception):
    """Fallo de persistencia (conexión, constraint, SQL)."""


class Store(Protocol):
    """Capacidad de persistencia que consume el motor de sincronización."""

    async def upsert_token(self, token: Token) -> None: ...

    async def upsert_account(self, account: Account) -> None: ...

    async def upsert_transaction(self, transaction: Transaction) -> int: ...

    async def account_ids_for_user(self, user_id: str) -> list[str]: ...

    async def all_tokens(self) -> list[Token]: ...

    async def tokens_expiring_before(self, moment: datetime) -> list[Token]: ...

    async def get_token(self, user_id: str) -> Token | None: ...

    async def transactions_for_accounts(
        self, account_ids: Sequence[str], offset: int = 0, limit: int | None = None
    ) -> list[Transaction]: ...

    async def count_transactions_for_accounts(self, account_ids: Sequence[str]) -> int: ...


# ---------------------------------------------------------------------------
# Sentencias de upsert
# ---------------------------------------------------------------------------


def _upsert_statement(table, values: dict, key: str) -> Insert:
    """INSERT ... ON CONFLICT (key) DO UPDATE SET <todas las columnas no clave> = EXCLUDED.*"""
    stmt = pg_insert(table).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=[key],
        set_={column: stmt.excluded[column] for column in values if column != key},
    )


def token_upsert_statement(token: Token, cipher: TokenCipher) -> Insert:
    return _upsert_statement(
        TokenRow,
        {
            "user_id": token.user_id,
            "expiry_time": token.expiry_time,
            "token_type": token.token_type,
            "access_token_encrypted": cipher.encrypt(token.access_token),
            "refresh_token_encrypted": cipher.encrypt(token.refresh_token),
        },
        key="user_id",
    )


def account_upsert_statement(account: Account) -> Insert:
    return _upsert_statement(
        AccountRow,
        {
            "id": account.id,
            "user_id": account.user_id,
            "description": account.description,
            "created": account.created,
        },
        key="id",
    )


def transaction_upsert_statement(transaction: Transaction) -> Insert:
    return _upsert_statement(
        TransactionRow,
        {
            "id": transaction.id,
            "account_id": transaction.account_id,
            "amount": transaction.amount,
            "currency": transaction.currency,
            "description": transaction.description,
            "notes": transaction.notes,
            "merchant": transaction.merchant,
            "category": transaction.category,
            "created": transaction.created,
            "settled": transaction.settled,
        },
        key="id",
    )


# ---------------------------------------------------------------------------
# Implementación SQLAlchemy (PostgreSQL)
# ---------------------------------------------------------------------------


class SqlAlchemyStore:
    """
    Store sobre SQLAlchemy async.

    Uso:
        store = SqlAlchemyStore(AsyncSessionLocal, TokenCipher(settings.ENCRYPTION_KEY))
        await store.upsert_token(token)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], cipher: TokenCipher) -> None:
        self._session_factory = session_factory
        self._cipher = cipher

    async def _execute_write(self, stmt, operation: str) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            logger.error("store.write_failed", operation=operation, error=type(exc).__name__)
            raise StoreError(f"{operation}: {type(exc).__name__}") from exc

    async def _fetch_all(self, stmt, operation: str) -> list:
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            logger.error("store.read_failed", operation=operation, error=type(exc).__name__)
            raise StoreError(f"{operation}: {type(exc).__name__}") from exc

    def _to_token(self, row: TokenRow) -> Token:
        try:
            access_token = self._cipher.decrypt(row.access_token_encrypted)
            refresh_token = self._cipher.decrypt(row.refresh_token_encrypted)
        except ValueError as exc:
            raise StoreError(f"Token ilegible para user_id={row.user_id}: {exc}") from exc
        return Token(
            user_id=row.user_id,
            expiry_time=row.expiry_time,
            token_type=row.token_type,
            access_token=access_token,
            refresh_token=refresh_token,
        )

    def _to_tokens(self, rows: list[TokenRow]) -> list[Token]:
        """Descarta (y loguea) los tokens que no se pueden descifrar en vez de abortar el listado."""
        tokens = []
        for row in rows:
            try:
                tokens.append(self._to_token(row))
            except StoreError as exc:
                logger.error("store.token_unreadable", user_id=row.user_id, error=str(exc))
        return tokens

    @staticmethod
    def _to_transaction(row: TransactionRow) -> Transaction:
        return Transaction(
            id=row.id,
            account_id=row.account_id,
            amount=row.amount,
            currency=row.currency,
            description=row.description,
            notes=row.notes,
            merchant=row.merchant,
            category=row.category,
            created=row.created,
            settled=row.settled,
        )

    # -----------------------------------------------------------------------
    # Escrituras
    # -----------------------------------------------------------------------

    async def upsert_token(self, token: Token) -> None:
        await self._execute_write(token_upsert_statement(token, self._cipher), "upsert_token")

    async def upsert_account(self, account: Account) -> None:
        await self._execute_write(account_upsert_statement(account), "upsert_account")

    async def upsert_transaction(self, transaction: Transaction) -> int:
        """Devuelve las filas afectadas (1 tanto en insert como en update)."""
        return await self._execute_write(transaction_upsert_statement(transaction), "upsert_transaction")

    # -----------------------------------------------------------------------
    # Lecturas
    # -----------------------------------------------------------------------

    async def account_ids_for_user(self, user_id: str) -> list[str]:
        return await self._fetch_all(
            select(AccountRow.id).where(AccountRow.user_id == user_id).order_by(AccountRow.id),
            "account_ids_for_user",
        )

    async def all_tokens(self) -> list[Token]:
        rows = await self._fetch_all(select(TokenRow).order_by(TokenRow.user_id), "all_tokens")
        return self._to_tokens(rows)

    async def tokens_expiring_before(self, moment: datetime) -> list[Token]:
        rows = await self._fetch_all(
            select(TokenRow).where(TokenRow.expiry_time < moment).order_by(TokenRow.expiry_time),
            "tokens_expiring_before",
        )
        return self._to_tokens(rows)

    async def get_token(self, user_id: str) -> Token | None:
        rows = await self._fetch_all(select(TokenRow).where(TokenRow.user_id == user_id), "get_token")
        return self._to_token(rows[0]) if rows else None

    async def transactions_for_accounts(
        self, account_ids: Sequence[str], offset: int = 0, limit: int | None = None
    ) -> list[Transaction]:
        if not account_ids:
            return []
        stmt = (
            select(TransactionRow)
            .where(TransactionRow.account_id.in_(list(account_ids)))
            .order_by(TransactionRow.created.desc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = await self._fetch_all(stmt, "transactions_for_accounts")
        return [self._to_transaction(row) for row in rows]

    async def count_transactions_for_accounts(self, account_ids: Sequence[str]) -> int:
        if not account_ids:
            return 0
        stmt = select(func.count()).select_from(TransactionRow).where(
            TransactionRow.account_id.in_(list(account_ids))
        )
        counts = await self._fetch_all(stmt, "count_transactions_for_accounts")
        return int(counts[0]) if counts else 0
