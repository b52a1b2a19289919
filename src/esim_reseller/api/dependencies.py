from collections.abc import AsyncGenerator

from fastapi import Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.config import settings
from esim_reseller.services.fulfillment import AdapterFactory
from esim_reseller.services.payments import RazorpayGateway, StripeGateway
from esim_reseller.suppliers import registry


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """One database session per request."""
    async with request.app.state.database.session() as session:
        yield session


async def get_agent_id(
    x_agent_id: str | None = Header(
        None, alias=settings.agent_id_header, description="Authenticated agent id"
    ),
) -> str:
    """Agent identity forwarded by the upstream auth gateway."""
    if not x_agent_id or not x_agent_id.strip():
        raise HTTPException(
            status_code=401,
            detail=f"Missing agent identity. Include it in the {settings.agent_id_header} header.",
        )
    return x_agent_id.strip()


def get_adapter_factory() -> AdapterFactory:
    return registry.get_adapter


def get_stripe_gateway() -> StripeGateway:
    return StripeGateway.from_settings(settings)


async def get_razorpay_gateway() -> AsyncGenerator[RazorpayGateway, None]:
    gateway = RazorpayGateway.from_settings(settings)
    try:
        yield gateway
    finally:
        await gateway.close()
