"""Dependency injection for services."""
import re
from typing import Optional
import httpx
import redis.asyncio as aioredis
from fastapi import Depends, Header, Request

from auth import get_optional_user_id
from errors import ValidationError
from services.cart_service import CartOwner, CartService
from services.gateway_client import BkashGatewayClient
from services.guest_cart_store import GuestCartStore
from services.order_service import OrderService
from services.payment_service import PaymentService
from services.token_cache import TokenCache

GUEST_CART_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,64}$")


def get_async_redis(request: Request) -> aioredis.Redis:
    """Get async Redis client from app state."""
    return request.app.state.async_redis_client


def get_http_client(request: Request) -> httpx.AsyncClient:
    """Get HTTP client from app state."""
    return request.app.state.http_client


def get_guest_cart_store(redis_client: aioredis.Redis = Depends(get_async_redis)) -> GuestCartStore:
    return GuestCartStore(redis_client)


def get_cart_service(guest_store: GuestCartStore = Depends(get_guest_cart_store)) -> CartService:
    """Get cart service instance."""
    return CartService(guest_store)


def get_order_service() -> OrderService:
    """Get order service instance."""
    return OrderService()


def get_gateway_client(http_client: httpx.AsyncClient = Depends(get_http_client)) -> BkashGatewayClient:
    """Get payment gateway client."""
    return BkashGatewayClient(http_client)


def get_token_cache(request: Request) -> TokenCache:
    """Get the process-wide gateway token cache."""
    return request.app.state.token_cache


def get_payment_service(
    gateway: BkashGatewayClient = Depends(get_gateway_client),
    token_cache: TokenCache = Depends(get_token_cache),
    order_service: OrderService = Depends(get_order_service)
) -> PaymentService:
    """Get payment orchestrator."""
    return PaymentService(gateway, token_cache, order_service)


def get_guest_cart_id(x_guest_cart_id: Optional[str] = Header(None)) -> Optional[str]:
    """Guest cart id held by the client device, if sent."""
    if x_guest_cart_id is None:
        return None
    if not GUEST_CART_ID_PATTERN.match(x_guest_cart_id):
        raise ValidationError("X-Guest-Cart-Id", "Malformed guest cart id")
    return x_guest_cart_id


def get_cart_owner(
    user_id: Optional[str] = Depends(get_optional_user_id),
    guest_cart_id: Optional[str] = Depends(get_guest_cart_id)
) -> CartOwner:
    """
    Resolve whose cart a request works on.

    A signed-in user always gets the server cart; otherwise the request
    must carry a guest cart id.
    """
    if user_id is not None:
        return CartOwner(user_id=user_id)
    if guest_cart_id is None:
        raise ValidationError(
            "X-Guest-Cart-Id",
            "Sign in or send an X-Guest-Cart-Id header",
            public_message="Guest cart id required"
        )
    return CartOwner(guest_cart_id=guest_cart_id)
