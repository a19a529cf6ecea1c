"""
Credit check for billable routes.

`credit_check(estimator)` builds a FastAPI dependency that estimates the
request's cost from its JSON body and rejects it with HTTP 402 before any
work is done when the owner's balance is too low.
"""
from decimal import Decimal
from typing import Any, Callable, Dict

from fastapi import Depends, Request
from fastapi.responses import JSONResponse

from emailkit.auth.dependencies import get_current_owner
from emailkit.exceptions import InsufficientCredits
from emailkit.services.credit_gate import CreditGate, GateDecision
from emailkit.services.payment_gateway import PaymentGateway, get_payment_gateway


Estimator = Callable[[Dict[str, Any]], Decimal]


def credit_check(estimator: Estimator, skip_for_preview: bool = True):
    """
    Build a dependency enforcing the owner can afford the request.

    Args:
        estimator: Maps the JSON request body to estimated credits
        skip_for_preview: Let requests with `"preview": true` through unchecked

    Returns:
        Dependency returning the GateDecision (raises InsufficientCredits on deny)
    """

    async def dependency(
        request: Request,
        owner_id: str = Depends(get_current_owner),
        gateway: PaymentGateway = Depends(get_payment_gateway),
    ) -> GateDecision:
        try:
            payload = await request.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        preview = skip_for_preview and bool(payload.get("preview"))
        return await CreditGate(gateway).enforce(owner_id, estimator(payload), preview=preview)

    return dependency


async def insufficient_credits_handler(request: Request, exc: InsufficientCredits) -> JSONResponse:
    """Render a denied credit check as 402 Payment Required."""
    return JSONResponse(status_code=402, content=exc.to_dict())
