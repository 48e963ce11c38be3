from fastapi import APIRouter

# Public: listings, availability
from slotrent.api.v1.public.listings import router as listings_router

# Public: reservations & recurring bookings
from slotrent.api.v1.public.reservations import router as reservations_router
from slotrent.api.v1.public.subscriptions import router as subscriptions_router

# Public: user profile & notifications
from slotrent.api.v1.public.me import router as me_router

# Gateway callbacks
from slotrent.api.v1.public.webhooks import router as webhooks_router

# Owner
from slotrent.api.v1.owner.payouts import router as owner_payouts_router

# Admin
from slotrent.api.v1.admin.commission import router as commission_router
from slotrent.api.v1.admin.operations import router as operations_router

api_router = APIRouter()

# --- Public: listings & availability ---
api_router.include_router(listings_router)

# --- Public: reservations ---
api_router.include_router(reservations_router)
api_router.include_router(subscriptions_router)

# --- Public: profile & notifications ---
api_router.include_router(me_router)

# --- Webhooks ---
api_router.include_router(webhooks_router)

# --- Owner ---
api_router.include_router(owner_payouts_router)

# --- Admin ---
api_router.include_router(commission_router)
api_router.include_router(operations_router)
