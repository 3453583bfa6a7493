"""Admin order management router."""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from database import get_db
from schemas import AdminOrdersListResponse, OrderResponse, OrderStatusUpdateRequest
from auth import require_staff
from dependencies import get_order_service
from models import User
from services.order_service import OrderService

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/orders", response_model=AdminOrdersListResponse)
async def list_orders(
    status: Optional[str] = Query(None),
    payment_status: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Order id, billing name, email or phone"),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
    staff: User = Depends(require_staff),
    order_service: OrderService = Depends(get_order_service)
):
    """List orders for the admin panel - requires admin or manager role."""
    orders = order_service.list_orders(
        db,
        status=status,
        payment_status=payment_status,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return {"orders": orders}


@router.patch("/orders/{order_id}", response_model=OrderResponse)
async def update_order_status(
    order_id: str,
    request: OrderStatusUpdateRequest,
    db: Session = Depends(get_db),
    staff: User = Depends(require_staff),
    order_service: OrderService = Depends(get_order_service)
):
    """Manually move an order's fulfilment or payment status."""
    return order_service.transition_status(
        db,
        order_id,
        status=request.status,
        payment_status=request.payment_status,
        actor_id=staff.id,
    )
