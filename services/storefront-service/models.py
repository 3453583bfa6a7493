"""Database models for the storefront service."""
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation every column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_order_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """Customer or staff account. Owned by the auth provider, mirrored here."""
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    name = Column(String)
    phone = Column(String, index=True)
    email = Column(String, index=True)
    role = Column(String, default="customer")  # customer | admin | manager
    created_at = Column(DateTime, default=utcnow)


class Product(Base):
    """Product model."""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, index=True)
    slug = Column(String, unique=True)
    price_regular = Column(Numeric(12, 2), nullable=False)
    price_offer = Column(Numeric(12, 2), nullable=True)
    image_url = Column(String, nullable=True)
    stock = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class CartItem(Base):
    """Server-side cart line for an authenticated user."""
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_cart_items_user_product"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    quantity = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Order(Base):
    """
    Order model.

    ``cart_items`` is a snapshot taken at checkout and never rewritten.
    Payment session fields are filled in by the payment service.
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_order_id)
    user_id = Column(String(64), index=True, nullable=True)
    cart_items = Column(JSON, nullable=False)
    total = Column(Numeric(12, 2), nullable=False)
    purpose = Column(String, default="order")

    payment_method = Column(String, nullable=False)
    payment_status = Column(String, default="pending", nullable=False)
    payment_channel = Column(String)
    payment_transaction_id = Column(String(32), unique=True, index=True, nullable=True)
    payment_amount = Column(Numeric(12, 2))
    payment_date = Column(DateTime)
    payment_reference = Column(String)
    gateway_payment_id = Column(String)
    gateway_redirect_url = Column(Text)
    gateway_trx_id = Column(String)

    billing_name = Column(String)
    billing_phone = Column(String)
    billing_email = Column(String)
    billing_address = Column(String)
    billing_city = Column(String)
    billing_district = Column(String)
    billing_country = Column(String)
    billing_postal = Column(String)

    shipping_name = Column(String)
    shipping_phone = Column(String)
    shipping_email = Column(String)
    shipping_address = Column(String)
    shipping_city = Column(String)
    shipping_district = Column(String)
    shipping_country = Column(String)
    shipping_postal = Column(String)

    status = Column(String, default="pending", nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class GatewayToken(Base):
    """Shared payment gateway token, one row per provider."""
    __tablename__ = "gateway_tokens"

    id = Column(Integer, primary_key=True)
    provider = Column(String, unique=True, nullable=False)
    auth_token = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
