"""
Cliente HTTP para la API REST de Monzo.

Reglas:
- Sin estado por usuario: el access_token se pasa en cada llamada (Bearer)
- Un único httpx.AsyncClient compartido (pool de conexiones) con timeout por petición
- Timeout / error de red / HTTP >= 400 → MonzoTransportError; JSON o esquema inválido → MonzoDecodeError
- Paginación de transacciones hacia atrás con cursor `before` (ver iter_transaction_pages)
- NUNCA loguear access_token, refresh_token ni client_secret
"""

from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

logger = structlog.get_logger(__name__)

TRANSACTIONS_PAGE_LIMIT: int = 100
DEFAULT_MAX_PAGES: int = 1000

_ModelT = TypeVar("_ModelT", bound=BaseModel)


# ---------------------------------------------------------------------------
# Excepciones
# ---------------------------------------------------------------------------


class MonzoAPIError(Exception):
    """Base de todos los errores del proveedor."""


class MonzoTransportError(MonzoAPIError):
    """Fallo de red, timeout o respuesta HTTP con status de error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message if status_code is None else f"{message} (HTTP {status_code})")


class MonzoRejectedError(MonzoTransportError):
    """
    403 al pedir transacciones con `before` anterior a lo que Monzo permite consultar.
    No es un fallo real: la paginación lo trata como fin del historial.
    """


class MonzoDecodeError(MonzoAPIError):
    """Cuerpo de respuesta no decodificable o que no cumple el esquema esperado."""


# ---------------------------------------------------------------------------
# Esquemas de respuesta
# ---------------------------------------------------------------------------


class _MonzoModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TokenResponse(_MonzoModel):
    access_token: str
    expires_in: int
    refresh_token: str
    token_type: str
    user_id: str

    def __repr__(self) -> str:
        return f"TokenResponse(user_id={self.user_id!r}, expires_in={self.expires_in})"


class AccountResponse(_MonzoModel):
    id: str
    description: str
    created: str


def merchant_id(value: Any) -> str | None:
    """Monzo devuelve el merchant como ID (listados) u objeto expandido (webhooks)."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("id"), str):
        return value["id"]
    raise ValueError("merchant debe ser un ID, un objeto con `id` o null")


class TransactionResponse(_MonzoModel):
    id: str
    amount: int
    created: str = ""
    currency: str
    description: str
    notes: str = ""
    is_load: bool = False
    settled: str = ""
    category: str = ""
    merchant: str | None = None

    @field_validator("merchant", mode="before")
    @classmethod
    def collapse_merchant(cls, v: Any) -> str | None:
        return merchant_id(v)

    @field_validator("settled", "notes", "created", mode="before")
    @classmethod
    def null_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class WebhookResponse(_MonzoModel):
    id: str
    account_id: str
    url: str


class _AccountsEnvelope(_MonzoModel):
    accounts: list[AccountResponse]


class _TransactionsEnvelope(_MonzoModel):
    transactions: list[TransactionResponse]


class _WebhooksEnvelope(_MonzoModel):
    webhooks: list[WebhookResponse]


def format_cursor(moment: datetime) -> str:
    """RFC 3339 en UTC, formato aceptado por el parámetro `before`."""
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Cliente principal
# ---------------------------------------------------------------------------


class MonzoClient:
    """
    Cliente asíncrono para la API de Monzo.

    Uso:
        async with MonzoClient() as client:
            accounts = await client.list_accounts(access_token)

    El http_client es inyectable para facilitar tests unitarios.
    """

    def __init__(
        self,
        base_url: str = "https://api.monzo.com",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout),
        )

    async def __aenter__(self) -> "MonzoClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # -----------------------------------------------------------------------
    # Request base
    # -----------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: str | None = None,
        params: list[tuple[str, str]] | dict[str, str] | None = None,
        data: dict[str, str] | None = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None
        try:
            response = await self._client.request(
                method, path, params=params, data=data, headers=headers
            )
        except httpx.TimeoutException as exc:
            logger.warning("monzo.timeout", method=method, path=path)
            raise MonzoTransportError(f"Timeout en {method} {path}") from exc
        except httpx.HTTPError as exc:
            logger.warning("monzo.network_error", method=method, path=path, error=type(exc).__name__)
            raise MonzoTransportError(f"Error de red en {method} {path}: {type(exc).__name__}") from exc

        logger.debug("monzo.response", method=method, path=path, status=response.status_code)
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, method: str, path: str) -> None:
        if response.status_code >= 400:
            logger.warning("monzo.http_error", method=method, path=path, status=response.status_code)
            raise MonzoTransportError(f"Monzo rechazó {method} {path}", response.status_code)

    @staticmethod
    def _decode(response: httpx.Response, model: type[_ModelT], path: str) -> _ModelT:
        try:
            return model.model_validate(response.json())
        except ValueError as exc:
            # ValidationError es subclase de ValueError; json() inválido también lanza ValueError
            kind = "schema" if isinstance(exc, ValidationError) else "json"
            logger.warning("monzo.decode_error", path=path, kind=kind)
            raise MonzoDecodeError(f"Respuesta inválida de {path} ({kind})") from exc

    # -----------------------------------------------------------------------
    # OAuth
    # -----------------------------------------------------------------------

    async def _token_request(self, form: dict[str, str]) -> TokenResponse:
        response = await self._request("POST", "/oauth2/token", data=form)
        self._raise_for_status(response, "POST", "/oauth2/token")
        return self._decode(response, TokenResponse, "/oauth2/token")

    async def exchange_auth_code(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        code: str,
    ) -> TokenResponse:
        """POST /oauth2/token con grant_type=authorization_code."""
        logger.info("monzo.exchange_auth_code")
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            }
        )

    async def refresh_access_token(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
    ) -> TokenResponse:
        """POST /oauth2/token con grant_type=refresh_token."""
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
            }
        )

    # -----------------------------------------------------------------------
    # Cuentas
    # -----------------------------------------------------------------------

    async def list_accounts(self, access_token: str) -> list[AccountResponse]:
        """GET /accounts — cuentas del usuario dueño del token."""
        response = await self._request("GET", "/accounts", access_token=access_token)
        self._raise_for_status(response, "GET", "/accounts")
        return self._decode(response, _AccountsEnvelope, "/accounts").accounts

    # -----------------------------------------------------------------------
    # Transacciones
    # -----------------------------------------------------------------------

    async def list_transactions(
        self,
        access_token: str,
        account_id: str,
        before: str | None = None,
        limit: int = TRANSACTIONS_PAGE_LIMIT,
    ) -> list[TransactionResponse]:
        """
        GET /transactions — una página de hasta `limit` transacciones.
        Monzo responde 403 si `before` es anterior a lo que el token puede consultar:
        en ese caso se lanza MonzoRejectedError para que la paginación termine limpiamente.
        """
        params = [("account_id", account_id), ("limit", str(limit))]
        if before is not None:
            params.append(("before", before))

        response = await self._request("GET", "/transactions", access_token=access_token, params=params)

        if before is not None and response.status_code == 403:
            raise MonzoRejectedError("Cursor fuera del rango consultable", 403)

        self._raise_for_status(response, "GET", "/transactions")
        return self._decode(response, _TransactionsEnvelope, "/transactions").transactions

    async def iter_transaction_pages(
        self,
        access_token: str,
        account_id: str,
        max_pages: int = DEFAULT_MAX_PAGES,
        now: datetime | None = None,
    ) -> AsyncIterator[list[TransactionResponse]]:
        """
        Recorre el historial completo de una cuenta hacia atrás.

        - Cursor inicial: ahora + 1 día (la primera petición no filtra en la práctica)
        - Siguiente cursor: `created` del primer elemento de la página recibida.
          Si viene vacío se elimina el cursor (petición sin `before`).
        - Termina con página vacía, página incompleta (< límite) o 403 con cursor.
        - max_pages acota el número de peticiones si el cursor no avanza.
        Cualquier otro error se propaga al caller.
        """
        start = now or datetime.now(timezone.utc)
        before: str | None = format_cursor(start + timedelta(days=1))
        log = logger.bind(account_id=account_id)

        for _ in range(max_pages):
            try:
                batch = await self.list_transactions(access_token, account_id, before=before)
            except MonzoRejectedError:
                log.info("monzo.pagination_cursor_rejected", before=before)
                return

            if not batch:
                return
            yield batch
            if len(batch) < TRANSACTIONS_PAGE_LIMIT:
                return

            before = batch[0].created or None

        log.warning("monzo.pagination_limit_reached", max_pages=max_pages)

    async def list_all_transactions(
        self,
        access_token: str,
        account_id: str,
        max_pages: int = DEFAULT_MAX_PAGES,
        now: datetime | None = None,
    ) -> list[TransactionResponse]:
        """Concatena todas las páginas en orden de descarga."""
        transactions: list[TransactionResponse] = []
        async for batch in self.iter_transaction_pages(
            access_token, account_id, max_pages=max_pages, now=now
        ):
            transactions.extend(batch)
        return transactions

    # -----------------------------------------------------------------------
    # Webhooks
    # -----------------------------------------------------------------------

    async def list_webhooks(self, access_token: str, account_id: str) -> list[WebhookResponse]:
        """GET /webhooks?account_id=..."""
        response = await self._request(
            "GET", "/webhooks", access_token=access_token, params={"account_id": account_id}
        )
        self._raise_for_status(response, "GET", "/webhooks")
        return self._decode(response, _WebhooksEnvelope, "/webhooks").webhooks

    async def register_webhook(self, access_token: str, account_id: str, url: str) -> None:
        """POST /webhooks — suscribe `url` a los eventos de la cuenta."""
        logger.info("monzo.register_webhook", account_id=account_id, url=url)
        response = await self._request(
            "POST",
            "/webhooks",
            access_token=access_token,
            data={"account_id": account_id, "url": url},
        )
        self._raise_for_status(response, "POST", "/webhooks")

    async def delete_webhook(self, access_token: str, webhook_id: str) -> None:
        """DELETE /webhooks/{id}"""
        logger.info("monzo.delete_webhook", webhook_id=webhook_id)
        path = f"/webhooks/{webhook_id}"
        response = await self._request("DELETE", path, access_token=access_token)
        self._raise_for_status(response, "DELETE", path)
