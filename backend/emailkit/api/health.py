"""
Health check endpoint.
Verifies database connectivity and reports billing state.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from emailkit.database import get_db
from emailkit.services.payment_gateway import PaymentGateway, get_payment_gateway

router = APIRouter()


@router.get("")
async def health_check(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Health check endpoint.
    The service is unhealthy only when the database is unreachable; a
    disabled payment gateway is reported but never fails the check.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "payment_gateway": gateway.status()["mode"],
    }

    try:
        await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except SQLAlchemyError as e:
        health_status["database"] = f"error: {str(e)}"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status
