from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.api.dependencies import get_adapter_factory, get_session
from esim_reseller.models.order import WebhookPayload
from esim_reseller.services.fulfillment import AdapterFactory
from esim_reseller.services.reconciliation import handle_webhook

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/esim")
async def esim_webhook(
    payload: WebhookPayload,
    session: AsyncSession = Depends(get_session),
    get_adapter: AdapterFactory = Depends(get_adapter_factory),
) -> dict[str, bool]:
    """Supplier notification. Always acknowledged so the supplier stops resending."""
    changed = await handle_webhook(session, payload, get_adapter=get_adapter)
    return {"success": True, "changed": changed}
