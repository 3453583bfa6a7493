"""Pydantic schemas for request/response validation."""
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional


class ProductResponse(BaseModel):
    """Schema for product response."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    slug: Optional[str] = None
    price_regular: Decimal
    price_offer: Optional[Decimal] = None
    effective_price: Decimal
    image_url: Optional[str] = None
    stock: int


# Cart

class AddToCartRequest(BaseModel):
    """Schema for add to cart request."""
    product_id: int
    quantity: int = Field(1, ge=1)


class UpdateCartItemRequest(BaseModel):
    """Quantities of zero or less remove the line."""
    quantity: int


class CartLineResponse(BaseModel):
    """One cart line with the product data it was priced from."""
    key: str
    product_id: int
    name: Optional[str] = None
    slug: Optional[str] = None
    image_url: Optional[str] = None
    unit_price: Decimal
    quantity: int
    subtotal: Decimal
    stock: Optional[int] = None


class CartResponse(BaseModel):
    """Schema for cart response."""
    owner: str
    user_id: Optional[str] = None
    guest_cart_id: Optional[str] = None
    items: List[CartLineResponse]
    total_items: int
    total_price: Decimal
    item_count: int


class MergeItemResult(BaseModel):
    product_id: int
    quantity: int
    status: str
    reason: Optional[str] = None


class MergeResponse(BaseModel):
    """Per-item outcome of merging a guest cart into the user's cart."""
    merged: int
    failed: int
    results: List[MergeItemResult]
    cart: CartResponse


class StockIssue(BaseModel):
    product_id: int
    name: Optional[str] = None
    requested: int
    available: int


class CartValidationResponse(BaseModel):
    valid: bool
    errors: List[StockIssue]


# Orders

class CheckoutLine(BaseModel):
    """Cart line submitted at checkout. Prices are taken from the catalog."""
    product_id: int
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(BaseModel):
    """
    Checkout submission.

    Fields are optional at parse time so the order service can report the
    first missing required field by name.
    """
    user_id: Optional[str] = None
    cart_items: Optional[List[CheckoutLine]] = None
    total: Optional[Decimal] = Field(None, max_digits=12, decimal_places=2)
    payment_method: Optional[str] = None
    payment_status: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None

    billing_name: Optional[str] = None
    billing_phone: Optional[str] = None
    billing_email: Optional[str] = None
    billing_address: Optional[str] = None
    billing_city: Optional[str] = None
    billing_district: Optional[str] = None
    billing_country: Optional[str] = None
    billing_postal: Optional[str] = None

    shipping_name: Optional[str] = None
    shipping_phone: Optional[str] = None
    shipping_email: Optional[str] = None
    shipping_address: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_district: Optional[str] = None
    shipping_country: Optional[str] = None
    shipping_postal: Optional[str] = None


class OrderResponse(BaseModel):
    """Schema for order response."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str] = None
    cart_items: List[Dict[str, Any]]
    total: Decimal
    purpose: Optional[str] = None
    payment_method: str
    payment_status: str
    payment_channel: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_date: Optional[datetime] = None

    billing_name: Optional[str] = None
    billing_phone: Optional[str] = None
    billing_email: Optional[str] = None
    billing_address: Optional[str] = None
    billing_city: Optional[str] = None
    billing_district: Optional[str] = None
    billing_country: Optional[str] = None
    billing_postal: Optional[str] = None

    shipping_name: Optional[str] = None
    shipping_phone: Optional[str] = None
    shipping_email: Optional[str] = None
    shipping_address: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_district: Optional[str] = None
    shipping_country: Optional[str] = None
    shipping_postal: Optional[str] = None

    status: str
    notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class OrderSummaryResponse(BaseModel):
    """Order history entry."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    total: Decimal
    status: str
    payment_status: str
    created_at: datetime


class OrdersListResponse(BaseModel):
    """Schema for orders list response."""
    orders: List[OrderSummaryResponse]


class AdminOrdersListResponse(BaseModel):
    orders: List[OrderResponse]


class OrderStatusUpdateRequest(BaseModel):
    status: Optional[str] = None
    payment_status: Optional[str] = None


# Payments

class InitiatePaymentRequest(BaseModel):
    """Schema for payment initiation. Presence is checked by the payment service."""
    user_id: Optional[str] = None
    order_id: Optional[str] = None
    amount: Optional[Decimal] = Field(None, max_digits=12, decimal_places=2)
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    purpose: Optional[str] = None


class InitiatePaymentResponse(BaseModel):
    redirectURL: str
    correlationId: str
    paymentID: str
    orderId: str


class PaymentCallbackRequest(BaseModel):
    """Body posted by the gateway after the customer leaves its checkout page."""
    paymentID: Optional[str] = None
    status: Optional[str] = None
    transactionStatus: Optional[str] = None
    merchantInvoiceNumber: Optional[str] = None


class GatewayAck(BaseModel):
    """Status code/message pair returned to the gateway."""
    statusCode: int
    statusMessage: str


class PaymentStatusResponse(BaseModel):
    correlationId: str
    order_id: str
    payment_status: str
    status: str
    payment_channel: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_date: Optional[datetime] = None
