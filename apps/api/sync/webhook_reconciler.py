"""
Reconciliación de webhooks de Monzo.

La colección de webhooks de Monzo es la fuente de verdad: no se guarda copia local,
se reconcilia desde cero en cada ciclo para tolerar cambios hechos fuera del sistema.
"""

import enum

import structlog

from sync.monzo_client import MonzoClient, WebhookResponse

logger = structlog.get_logger(__name__)


class WebhookAction(str, enum.Enum):
    CREATED = "created"
    REPLACED = "replaced"
    UNCHANGED = "unchanged"


async def reconcile_webhook(
    client: MonzoClient,
    access_token: str,
    account_id: str,
    desired_url: str,
) -> WebhookAction:
    """
    Deja exactamente un webhook apuntando a `desired_url` para la cuenta.
    - Sin webhook → crear
    - Webhook con otra URL → borrar y crear
    - Webhook con la misma URL → nada
    Los errores de Monzo se propagan al caller.
    """
    existing = await client.list_webhooks(access_token, account_id)

    # Indexado por cuenta: si Monzo devolviera varios, gana el último
    by_account: dict[str, WebhookResponse] = {webhook.account_id: webhook for webhook in existing}
    current = by_account.get(account_id)

    if current is None:
        await client.register_webhook(access_token, account_id, desired_url)
        logger.info("webhooks.created", account_id=account_id, url=desired_url)
        return WebhookAction.CREATED

    if current.url != desired_url:
        logger.info(
            "webhooks.url_mismatch",
            account_id=account_id,
            webhook_id=current.id,
            existing_url=current.url,
            desired_url=desired_url,
        )
        await client.delete_webhook(access_token, current.id)
        await client.register_webhook(access_token, account_id, desired_url)
        return WebhookAction.REPLACED

    logger.debug("webhooks.unchanged", account_id=account_id, webhook_id=current.id)
    return WebhookAction.UNCHANGED
