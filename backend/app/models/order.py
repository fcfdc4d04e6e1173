"""
Pydantic models for the inbound order webhook.

Models:
  OrderFields          — canonical, validated order fields resolved from any
                         supported payload shape
  CreatedOrder         — the id / order_number pair returned by the store
  OrderWebhookResponse — success body of POST /api/webhook-orders
  ErrorResponse        — body of every rejection
  RateLimitResetRequest — body of the admin reset endpoint
"""

from typing import Optional
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Canonical order fields
# ---------------------------------------------------------------------------

class OrderFields(BaseModel):
    """
    Order data after field resolution, sanitization and validation.

    client_phone is already normalized (digits with an optional leading "+")
    and is the dedup key for clients. total_amount is always set: either the
    caller-supplied positive total or unit_price * quantity.
    """

    client_name: Optional[str] = None
    client_phone: str
    client_city: Optional[str] = None
    client_address: Optional[str] = None

    product_name: str
    quantity: int = Field(default=1, ge=1, le=10000)
    unit_price: float = Field(default=0.0, ge=0)
    total_amount: float = Field(default=0.0, ge=0)

    notes: Optional[str] = None
    external_order_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Store results and responses
# ---------------------------------------------------------------------------

class CreatedOrder(BaseModel):
    """The order row fields echoed back to the caller."""
    model_config = {"extra": "ignore", "coerce_numbers_to_str": True}

    id: str
    order_number: Optional[str] = None


class OrderWebhookResponse(BaseModel):
    model_config = {"coerce_numbers_to_str": True}

    success: bool = True
    message: str = "Order created successfully"
    order: CreatedOrder
    client_id: str
    external_order_id: Optional[str] = None
    notification_triggered: bool = False


class ErrorResponse(BaseModel):
    success: bool = False
    error: str


# ---------------------------------------------------------------------------
# Admin request bodies
# ---------------------------------------------------------------------------

class RateLimitResetRequest(BaseModel):
    """
    Request body for POST /rate-limits/reset.

    limiter defaults to the public webhook limiter; "api" and "auth" are the
    other registered limiters.
    """
    identifier: str
    limiter: str = "webhook"
