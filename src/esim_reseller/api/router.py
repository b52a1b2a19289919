from fastapi import APIRouter

from esim_reseller.api.admin_pricing import router as admin_pricing_router
from esim_reseller.api.esims import router as esims_router
from esim_reseller.api.orders import router as orders_router
from esim_reseller.api.payments import router as payments_router
from esim_reseller.api.pricing import router as pricing_router
from esim_reseller.api.topups import router as topups_router
from esim_reseller.api.wallet import router as wallet_router
from esim_reseller.api.webhooks import router as webhooks_router

api_router = APIRouter()

# Note: Health router is mounted in main.py without auth requirement
api_router.include_router(wallet_router)
api_router.include_router(payments_router)
api_router.include_router(pricing_router)
api_router.include_router(orders_router)
api_router.include_router(topups_router)
api_router.include_router(esims_router)
api_router.include_router(webhooks_router)
api_router.include_router(admin_pricing_router)
