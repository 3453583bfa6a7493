"""Order management service."""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from opentelemetry import trace

from errors import (
    DataStoreError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from models import Order, Product, User, utcnow
from monitoring import (
    orders_created_counter,
    order_total_histogram,
    order_status_overrides_counter,
    stock_reservation_failures_counter,
)
from schemas import CreateOrderRequest
from services.cart_service import effective_price

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

REQUIRED_ORDER_FIELDS = (
    "cart_items", "total", "payment_method", "payment_status",
    "billing_name", "billing_phone", "billing_address", "billing_city",
    "billing_district", "billing_country", "billing_postal",
    "shipping_name", "shipping_phone", "shipping_address", "shipping_city",
    "shipping_district", "shipping_country", "shipping_postal",
)

ADDRESS_FIELDS = (
    "billing_name", "billing_phone", "billing_email", "billing_address", "billing_city",
    "billing_district", "billing_country", "billing_postal",
    "shipping_name", "shipping_phone", "shipping_email", "shipping_address", "shipping_city",
    "shipping_district", "shipping_country", "shipping_postal",
)

PAYMENT_METHODS = ("cod", "bkash", "nagad", "bank")
CASH_PAYMENT_METHODS = ("cod",)

PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
PAYMENT_TRANSITIONS = {
    "pending": ("paid", "failed"),
    "paid": ("refunded",),
    "failed": (),
    "refunded": (),
}

# Fulfilment statuses only move forward; cancellation is the one exit
ORDER_STATUS_RANK = {
    "pending": 0,
    "paid": 1,
    "processing": 2,
    "shipped": 3,
    "delivered": 4,
    "completed": 4,
}
ORDER_STATUSES = tuple(ORDER_STATUS_RANK) + ("cancelled",)

SORTABLE_COLUMNS = {"created_at": Order.created_at, "total": Order.total}


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT)


def can_transition_status(current: str, new: str) -> bool:
    if current == "cancelled":
        return False
    if new == "cancelled":
        return ORDER_STATUS_RANK.get(current, 0) < ORDER_STATUS_RANK["delivered"]
    return ORDER_STATUS_RANK[new] > ORDER_STATUS_RANK.get(current, 0)


def can_transition_payment(current: str, new: str) -> bool:
    return new in PAYMENT_TRANSITIONS.get(current, ())


class OrderService:
    """Service for creating and reading orders."""

    def __init__(self):
        self.tracer = trace.get_tracer(__name__)

    # Commands

    def create_order(
        self,
        db: Session,
        payload: CreateOrderRequest,
        session_user_id: Optional[str] = None
    ) -> Order:
        """
        Turn a checkout submission into an order.

        Prices are snapshotted from the catalog, the submitted total must
        match them, and stock for every line is reserved in the same
        transaction as the insert. Nothing is written unless all of that
        succeeds.

        Args:
            db: Database session
            payload: Checkout submission
            session_user_id: User of the authenticated session, if any

        Returns:
            The persisted order

        Raises:
            ValidationError: Missing field, unknown product or total mismatch
            InsufficientStockError: A line asks for more than is in stock
            DataStoreError: The insert failed
        """
        for field in REQUIRED_ORDER_FIELDS:
            if not getattr(payload, field):
                raise ValidationError(field, public_message="Failed to create order")

        if payload.payment_method not in PAYMENT_METHODS:
            raise ValidationError(
                "payment_method",
                f"Unsupported payment method: {payload.payment_method}",
                public_message="Failed to create order",
            )
        # Paid/shipped states are only reachable through the payment callback
        # or the admin panel
        if (payload.payment_status or "pending") != "pending":
            raise ValidationError(
                "payment_status",
                "New orders must start with payment_status 'pending'",
                public_message="Failed to create order",
            )
        if (payload.status or "pending") != "pending":
            raise ValidationError(
                "status",
                "New orders must start with status 'pending'",
                public_message="Failed to create order",
            )

        user_id = session_user_id or payload.user_id or None

        span = trace.get_current_span()
        span.set_attribute("payment.method", payload.payment_method)
        span.set_attribute("order.guest", user_id is None)

        quantities: Dict[int, int] = {}
        for line in payload.cart_items:
            quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity

        try:
            snapshot, computed_total = self._price_lines(db, quantities)

            submitted_total = to_money(payload.total)
            if submitted_total != computed_total:
                raise ValidationError(
                    "total",
                    f"Total {submitted_total} does not match cart items ({computed_total})",
                    public_message="Failed to create order",
                )

            self._reserve_stock(db, quantities)

            order = Order(
                user_id=user_id,
                cart_items=snapshot,
                total=computed_total,
                purpose="order",
                payment_method=payload.payment_method,
                payment_status="pending",
                payment_channel=payload.payment_method,
                status="pending",
                notes=payload.notes,
                **{field: getattr(payload, field) for field in ADDRESS_FIELDS},
            )

            with self.tracer.start_as_current_span("db.transaction.create_order") as db_span:
                db_span.set_attribute("db.operation", "INSERT")
                db_span.set_attribute("db.table", "orders")
                db.add(order)
                db.commit()
                db.refresh(order)
                db_span.set_attribute("order.id", order.id)
        except (ValidationError, InsufficientStockError):
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to create order", extra={
                "user_id": user_id,
                "payment_method": payload.payment_method,
                "error": str(e)
            })
            raise DataStoreError(f"Failed to create order: {e}", public_message="Failed to create order")

        orders_created_counter.add(1, {"payment_method": order.payment_method})
        order_total_histogram.record(float(order.total), {"payment_method": order.payment_method})

        logger.info("Order created", extra={
            "order_id": order.id,
            "user_id": user_id,
            "total": str(order.total),
            "payment_method": order.payment_method,
            "item_count": len(snapshot)
        })
        return order

    def _price_lines(self, db: Session, quantities: Dict[int, int]):
        snapshot = []
        total = Decimal("0.00")
        for product_id in sorted(quantities):
            product = db.get(Product, product_id)
            if product is None:
                raise ValidationError(
                    "cart_items",
                    f"Unknown product in cart: {product_id}",
                    public_message="Failed to create order",
                )
            quantity = quantities[product_id]
            unit_price = to_money(effective_price(product.price_regular, product.price_offer))
            line_total = unit_price * quantity
            total += line_total
            snapshot.append({
                "product_id": product.id,
                "name": product.name,
                "slug": product.slug,
                "image_url": product.image_url,
                "quantity": quantity,
                "unit_price": str(unit_price),
                "line_total": str(line_total),
            })
        return snapshot, total

    def _reserve_stock(self, db: Session, quantities: Dict[int, int]) -> None:
        # Rows are locked in product id order so concurrent checkouts cannot deadlock
        for product_id in sorted(quantities):
            quantity = quantities[product_id]
            with self.tracer.start_as_current_span("db.query.reserve_stock") as db_span:
                db_span.set_attribute("db.operation", "UPDATE")
                db_span.set_attribute("db.table", "products")
                db_span.set_attribute("product.id", product_id)

                rowcount = (
                    db.query(Product)
                    .filter(Product.id == product_id, Product.stock >= quantity)
                    .update({Product.stock: Product.stock - quantity}, synchronize_session=False)
                )
                db_span.set_attribute("db.rows_affected", rowcount)

            if rowcount == 0:
                stock_reservation_failures_counter.add(1, {"product_id": str(product_id)})
                logger.warning("Stock reservation failed", extra={
                    "product_id": product_id,
                    "requested": quantity
                })
                raise InsufficientStockError(product_id, quantity)

    def _release_stock(self, db: Session, order: Order) -> None:
        for line in order.cart_items or []:
            if line.get("product_id") is None:
                continue
            db.query(Product).filter(Product.id == line["product_id"]).update(
                {Product.stock: Product.stock + int(line["quantity"])},
                synchronize_session=False
            )

    def create_payment_only_order(
        self,
        db: Session,
        user: User,
        amount: Decimal,
        purpose: str,
        payment_channel: str,
        payer_name: Optional[str] = None,
        payer_email: Optional[str] = None,
        payer_phone: Optional[str] = None
    ) -> Order:
        """
        Create an order that carries a direct payment with no cart behind it.

        The order holds a single synthetic line for the amount so its total
        still equals the sum of its lines.
        """
        amount = to_money(amount)
        order = Order(
            user_id=user.id,
            cart_items=[{
                "product_id": None,
                "name": "Direct payment",
                "quantity": 1,
                "unit_price": str(amount),
                "line_total": str(amount),
            }],
            total=amount,
            purpose=purpose,
            payment_method=payment_channel,
            payment_status="pending",
            payment_channel=payment_channel,
            status="pending",
            billing_name=payer_name or user.name,
            billing_email=payer_email or user.email,
            billing_phone=payer_phone or user.phone,
        )
        try:
            db.add(order)
            db.commit()
            db.refresh(order)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to create payment order", extra={"user_id": user.id, "error": str(e)})
            raise DataStoreError(f"Failed to create payment order: {e}")

        logger.info("Payment-only order created", extra={
            "order_id": order.id,
            "user_id": user.id,
            "purpose": purpose,
            "amount": str(amount)
        })
        return order

    def transition_status(
        self,
        db: Session,
        order_id: str,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Order:
        """
        Manually move an order forward, as done from the admin panel.

        Fulfilment status only moves forward, or to ``cancelled`` before
        delivery (which puts reserved stock back). Payment status follows
        ``pending -> paid | failed`` and ``paid -> refunded``. The update
        is conditional on the statuses read, so a concurrent change makes
        it fail instead of being overwritten.
        """
        if status is None and payment_status is None:
            raise ValidationError("status", "Nothing to update")
        if status is not None and status not in ORDER_STATUSES:
            raise ValidationError("status", f"Unknown order status: {status}")
        if payment_status is not None and payment_status not in PAYMENT_STATUSES:
            raise ValidationError("payment_status", f"Unknown payment status: {payment_status}")

        order = self.get_order_by_id(db, order_id)
        current_status = order.status
        current_payment = order.payment_status

        updates: Dict[Any, Any] = {Order.updated_at: utcnow()}
        if status is not None and status != current_status:
            if not can_transition_status(current_status, status):
                raise InvalidTransitionError(f"Cannot move order {order_id} from {current_status} to {status}")
            updates[Order.status] = status
            if status == "cancelled" and current_payment == "pending" and payment_status is None:
                # A cancelled order can no longer be paid
                payment_status = "failed"
        if payment_status is not None and payment_status != current_payment:
            if not can_transition_payment(current_payment, payment_status):
                raise InvalidTransitionError(
                    f"Cannot move payment of order {order_id} from {current_payment} to {payment_status}"
                )
            updates[Order.payment_status] = payment_status
            if payment_status == "paid" and order.payment_date is None:
                updates[Order.payment_date] = utcnow()

        if len(updates) == 1:
            return order

        try:
            rowcount = (
                db.query(Order)
                .filter(
                    Order.id == order_id,
                    Order.status == current_status,
                    Order.payment_status == current_payment,
                )
                .update(updates, synchronize_session=False)
            )
            if rowcount == 0:
                db.rollback()
                raise InvalidTransitionError(f"Order {order_id} was modified concurrently")
            if updates.get(Order.status) == "cancelled":
                self._release_stock(db, order)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to update order status", extra={"order_id": order_id, "error": str(e)})
            raise DataStoreError(f"Failed to update order {order_id}: {e}")

        db.refresh(order)
        order_status_overrides_counter.add(1, {
            "status": order.status,
            "payment_status": order.payment_status
        })
        logger.info("Order status overridden", extra={
            "order_id": order_id,
            "actor_id": actor_id,
            "status": f"{current_status}->{order.status}",
            "payment_status": f"{current_payment}->{order.payment_status}"
        })
        return order

    # Queries

    def get_order_by_id(self, db: Session, order_id: str) -> Order:
        """
        Get one order.

        Raises:
            NotFoundError: If no order has this id
        """
        order = db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def list_orders_for_user(self, db: Session, user_id: str) -> List[Order]:
        """
        Get all orders for a user, newest first.

        Args:
            db: Database session
            user_id: User of the authenticated session

        Returns:
            List of orders
        """
        with self.tracer.start_as_current_span("db.query.get_user_orders") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("user.id", user_id)

            orders = (
                db.query(Order)
                .filter(Order.user_id == user_id)
                .order_by(Order.created_at.desc())
                .all()
            )

            db_span.set_attribute("db.rows_returned", len(orders))
            return orders

    def list_orders(
        self,
        db: Session,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc"
    ) -> List[Order]:
        """Admin order listing with filters and sorting."""
        query = db.query(Order)

        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                Order.id.ilike(pattern),
                Order.billing_name.ilike(pattern),
                Order.billing_email.ilike(pattern),
                Order.billing_phone.ilike(pattern),
            ))
        if status:
            query = query.filter(Order.status == status)
        if payment_status:
            query = query.filter(Order.payment_status == payment_status)

        column = SORTABLE_COLUMNS.get(sort_by)
        if column is None:
            raise ValidationError("sort_by", f"Cannot sort by {sort_by}")
        query = query.order_by(column.asc() if sort_order == "asc" else column.desc())

        return query.all()
