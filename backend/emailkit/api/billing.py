"""
Billing endpoints.
Payment gateway status, credit balance and credit purchase.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from emailkit.auth.dependencies import get_current_owner
from emailkit.exceptions import GatewayUnavailable
from emailkit.schemas.billing import BalanceResponse, BillingStatusResponse, PurchaseRequest, PurchaseResponse
from emailkit.services.payment_gateway import PaymentGateway, get_payment_gateway
from emailkit.services.usage_reporting import usage_reporter

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/status", response_model=BillingStatusResponse)
async def get_billing_status(
    gateway: PaymentGateway = Depends(get_payment_gateway),
    owner_id: str = Depends(get_current_owner),
):
    """Which payment mode is active and whether usage reporting runs in this process."""
    return BillingStatusResponse(payment=gateway.status(), reporting=usage_reporter.status())


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    gateway: PaymentGateway = Depends(get_payment_gateway),
    owner_id: str = Depends(get_current_owner),
):
    """
    Credit balance of the authenticated owner.
    Returns only `enabled: false` when credit billing is off.
    """
    if not gateway.is_enabled():
        return BalanceResponse(enabled=False)

    try:
        balance = await gateway.get_balance(owner_id)
    except GatewayUnavailable as e:
        logger.warning(f"Balance lookup failed for {owner_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable"
        )

    if balance is None:
        return BalanceResponse(enabled=False)

    return BalanceResponse(
        enabled=True,
        available=float(balance.available),
        pending=float(balance.pending),
        total=float(balance.total),
        payment_link=gateway.payment_link(owner_id),
    )


@router.post("/purchase", response_model=PurchaseResponse)
async def purchase_credits(
    request: PurchaseRequest,
    gateway: PaymentGateway = Depends(get_payment_gateway),
    owner_id: str = Depends(get_current_owner),
):
    """Start a hosted checkout for buying credits."""
    session = await gateway.create_credit_purchase_session(
        owner_id,
        credit_amount=request.credit_amount,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    if not session:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Credit purchase is not available"
        )
    return PurchaseResponse(**session)
