from decimal import Decimal
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class StripeSessionRequest(BaseModel):
    order_id: UUID


class StripeSessionResponse(BaseModel):
    session_id: str
    checkout_url: str


class StripeVerifyRequest(BaseModel):
    session_id: str = Field(min_length=1)


class RazorpayOrderRequest(BaseModel):
    order_id: UUID


class RazorpayOrderResponse(BaseModel):
    razorpay_order_id: str
    amount: int
    currency: str
    receipt: str
    key_id: str | None = None


class RazorpayCallback(BaseModel):
    gateway: Literal["razorpay"]
    order_id: UUID
    payment_status: str
    razorpay_order_id: str | None = None
    razorpay_payment_id: str | None = None
    razorpay_signature: str | None = None


class StripeCallback(BaseModel):
    gateway: Literal["stripe"]
    order_id: UUID
    payment_status: str
    session_id: str | None = None


PaymentCallback = Annotated[Union[RazorpayCallback, StripeCallback], Field(discriminator="gateway")]


class PaymentConfirmationResult(BaseModel):
    message: str
    order_id: UUID | None = None
    already_processed: bool = False


class WebhookAck(BaseModel):
    received: bool = True
    type: str | None = None
    message: str | None = None


class RazorpayPaymentNotes(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    order_id: str | None = Field(default=None, alias="orderId")


class RazorpayPaymentEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    amount: int
    currency: str
    status: str
    method: str | None = None
    order_id: str | None = None
    created_at: int | None = None
    notes: RazorpayPaymentNotes | list = RazorpayPaymentNotes()


class RazorpayPaymentWrapper(BaseModel):
    entity: RazorpayPaymentEntity


class RazorpayWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payment: RazorpayPaymentWrapper | None = None


class RazorpayWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    created_at: int | None = None
    payload: RazorpayWebhookPayload = RazorpayWebhookPayload()


class PaymentConfirmation(BaseModel):
    """Provider-verified facts about a captured payment."""

    provider: Literal["stripe", "razorpay"]
    transaction_id: str | None = None
    payment_method: str | None = None
    amount: Decimal
    currency: str
    status: str
    paid_at_epoch: int | None = None
