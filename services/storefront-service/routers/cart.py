"""Cart API router."""
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from schemas import (
    AddToCartRequest,
    CartResponse,
    CartValidationResponse,
    MergeResponse,
    UpdateCartItemRequest,
)
from auth import get_current_user_id
from dependencies import get_cart_owner, get_cart_service, get_guest_cart_id
from errors import ValidationError
from services.cart_service import CartOwner, CartService

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("", response_model=CartResponse)
async def get_cart(
    db: Session = Depends(get_db),
    owner: CartOwner = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    """Get the caller's cart, signed in or guest."""
    return await cart_service.get_cart(db, owner)


@router.post("/items", response_model=CartResponse)
async def add_to_cart(
    request: AddToCartRequest,
    db: Session = Depends(get_db),
    owner: CartOwner = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    """Add a product to the cart; an existing line is incremented."""
    return await cart_service.add_item(db, owner, request.product_id, request.quantity)


@router.patch("/items/{item_key}", response_model=CartResponse)
async def update_cart_item(
    item_key: str,
    request: UpdateCartItemRequest,
    db: Session = Depends(get_db),
    owner: CartOwner = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    """Set a line's quantity. Zero or less removes it."""
    return await cart_service.update_quantity(db, owner, item_key, request.quantity)


@router.delete("/items/{item_key}", response_model=CartResponse)
async def remove_cart_item(
    item_key: str,
    db: Session = Depends(get_db),
    owner: CartOwner = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    return await cart_service.remove_item(db, owner, item_key)


@router.delete("", response_model=CartResponse)
async def clear_cart(
    db: Session = Depends(get_db),
    owner: CartOwner = Depends(get_cart_owner),
    cart_service: CartService = Depends(get_cart_service)
):
    return await cart_service.clear(db, owner)


@router.post("/merge", response_model=MergeResponse)
async def merge_guest_cart(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    guest_cart_id: Optional[str] = Depends(get_guest_cart_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """
    Merge the device's guest cart into the signed-in user's cart.

    Called right after sign-in. Lines that fail stay in the guest cart and
    are listed in ``results``.
    """
    if guest_cart_id is None:
        raise ValidationError("X-Guest-Cart-Id", public_message="Guest cart id required")
    return await cart_service.merge_guest_into_user(db, user_id, guest_cart_id)


@router.get("/validate", response_model=CartValidationResponse)
async def validate_cart(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    cart_service: CartService = Depends(get_cart_service)
):
    """Check the signed-in user's cart against current stock."""
    return cart_service.validate_stock(db, user_id)
