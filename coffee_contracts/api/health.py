from fastapi import APIRouter

from coffee_contracts.core.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/config/public")
async def public_config() -> dict:
    """Public platform configuration (commission, currency, deadlines)."""
    return {
        "platform_commission_percent": str(settings.platform_commission_percent),
        "default_currency": settings.default_currency,
        "seller_response_hours": settings.seller_response_hours,
        "payment_methods": ["bank_transfer", "online_payment"],
    }
