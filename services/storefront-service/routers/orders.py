"""Orders API router."""
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db
from schemas import CreateOrderRequest, OrderResponse, OrdersListResponse
from auth import get_current_user_id, get_optional_user_id
from dependencies import get_order_service
from services.order_service import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderResponse, status_code=201)
async def create_order(
    request: CreateOrderRequest,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_optional_user_id),
    order_service: OrderService = Depends(get_order_service)
):
    """
    Place an order from the checkout form.

    Guests may order without signing in; a signed-in session always owns
    the order it creates.
    """
    return order_service.create_order(db, request, session_user_id=user_id)


@router.get("/mine", response_model=OrdersListResponse)
async def get_my_orders(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    order_service: OrderService = Depends(get_order_service)
):
    """Get the signed-in user's orders - requires authentication."""
    orders = order_service.list_orders_for_user(db, user_id)
    return {"orders": orders}


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    order_service: OrderService = Depends(get_order_service)
):
    """Get one order, as shown on the order confirmation page."""
    return order_service.get_order_by_id(db, order_id)
