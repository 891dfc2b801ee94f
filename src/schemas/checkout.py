"""Checkout Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, HttpUrl


# Checkout session / order status literal type
CheckoutStatus = Literal["open", "confirmed", "succeeded", "failed", "expired"]


class CheckoutSessionCreate(BaseModel):
    """Schema for creating a checkout session via POST /checkout/session."""

    model_config = ConfigDict(from_attributes=True)

    success_url: HttpUrl = Field(description="URL to redirect after successful checkout")
    cancel_url: HttpUrl | None = Field(default=None, description="URL to return to if checkout is abandoned")
    metadata: dict[str, str | int | bool] | None = Field(
        default=None, description="Extra metadata attached to the session"
    )
    customer_email: str | None = Field(default=None, max_length=255, description="Pre-fill customer email")
    customer_name: str | None = Field(default=None, max_length=255, description="Pre-fill customer name")
    is_business_customer: bool | None = Field(default=None, description="Purchasing as a business")
    customer_billing_name: str | None = Field(default=None, max_length=255, description="Billing name")
    customer_tax_id: str | None = Field(default=None, max_length=64, description="Tax ID (e.g. VAT number)")
    discount_id: str | None = Field(default=None, description="Provider coupon to apply")
    discount_code: str | None = Field(default=None, description="Promotion code entered by the shopper")
    allow_discount_codes: bool | None = Field(default=None, description="Let the shopper enter codes")
    require_billing_address: bool | None = Field(default=None, description="Collect full billing address")


class CheckoutSessionResponse(BaseModel):
    """Descriptor of a provider-hosted checkout session."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(description="Provider checkout session ID")
    url: str | None = Field(default=None, description="Hosted checkout URL")
    client_secret: str | None = Field(default=None, description="Client secret for embedded checkout")
    amount: int = Field(description="Amount before tax and discounts, in cents")
    tax_amount: int = Field(default=0, description="Tax in cents")
    total_amount: int = Field(description="Total in cents")
    currency: str = Field(description="Currency code")
    status: CheckoutStatus = Field(description="Session status")
    expires_at: datetime | None = Field(default=None, description="Session expiry")


class CheckoutSuccessRequest(BaseModel):
    """Schema for the success page reporting a finished session."""

    model_config = ConfigDict(from_attributes=True)

    checkout_session_id: str = Field(min_length=1, description="Provider checkout session ID")


class CheckoutCompletionResponse(BaseModel):
    """Acknowledgement returned after recording a checkout outcome."""

    model_config = ConfigDict(from_attributes=True)

    success: bool = Field(description="Whether the order was recorded")
    status: CheckoutStatus = Field(description="Final session status")
    order_id: str | None = Field(default=None, description="Local order ID")
