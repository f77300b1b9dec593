from fastapi import APIRouter
from imaginaryverse.modules.subscriptions import api as subscriptions

router = APIRouter()
router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
