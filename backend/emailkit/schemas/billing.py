"""
Pydantic schemas for billing endpoints.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class BillingStatusResponse(BaseModel):
    """Payment gateway and usage reporter status."""
    payment: Dict[str, Any]
    reporting: Dict[str, Any]


class BalanceResponse(BaseModel):
    """Credit balance; only `enabled` is set when billing is off."""
    enabled: bool
    available: Optional[float] = None
    pending: Optional[float] = None
    total: Optional[float] = None
    payment_link: Optional[str] = None


class PurchaseRequest(BaseModel):
    """Schema for starting a credit purchase."""
    credit_amount: int = Field(..., gt=0, description="Number of credits to buy")
    success_url: str = Field(..., description="Redirect after successful payment")
    cancel_url: str = Field(..., description="Redirect after cancelled payment")


class PurchaseResponse(BaseModel):
    """Hosted checkout session."""
    session_id: str
    url: str
