"""Payment orchestration between orders and the payment gateway."""
import httpx
import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional
from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from opentelemetry import trace

from config import PAYMENT_CURRENCY, PUBLIC_BASE_URL
from errors import (
    AmountMismatchError,
    DataStoreError,
    GatewayError,
    NotFoundError,
    PaymentStateError,
    ValidationError,
)
from models import Order, User, utcnow
from monitoring import payment_callbacks_counter, payment_initiations_counter
from schemas import InitiatePaymentRequest, PaymentCallbackRequest
from services.gateway_client import BkashGatewayClient, is_success
from services.order_service import CASH_PAYMENT_METHODS, OrderService
from services.token_cache import TokenCache

logger = logging.getLogger(__name__)

PAYMENT_PURPOSES = ("order", "other")
MIN_AMOUNT = Decimal("1")


def new_transaction_id() -> str:
    """Correlation id sent to the gateway as the merchant invoice number."""
    return uuid.uuid4().hex[:10]


def ack(status_code: int, message: str) -> Dict[str, Any]:
    return {"statusCode": status_code, "statusMessage": message}


class PaymentService:
    """
    Drives an order's payment through the gateway.

    An order moves from a requested session to an active one (session id and
    redirect URL stored) and then to paid or failed once the gateway callback
    has been reconciled. Every write is conditional on ``payment_status``
    still being ``pending``, so duplicate or concurrent callbacks cannot
    apply twice.
    """

    def __init__(
        self,
        gateway: BkashGatewayClient,
        token_cache: TokenCache,
        order_service: OrderService,
        callback_url: str = f"{PUBLIC_BASE_URL}/payments/callback",
        currency: str = PAYMENT_CURRENCY,
        channel: str = "bkash"
    ):
        self.gateway = gateway
        self.token_cache = token_cache
        self.order_service = order_service
        self.callback_url = callback_url
        self.currency = currency
        self.channel = channel
        self.tracer = trace.get_tracer(__name__)

    async def _token(self, db: Session) -> str:
        return await self.token_cache.get_token(db, self.gateway.grant_token)

    # Initiation

    async def initiate_payment(self, db: Session, request: InitiatePaymentRequest) -> Dict[str, str]:
        """
        Open a gateway session for an order, creating a payment-only order
        when no ``order_id`` is given.

        Returns:
            ``{redirectURL, correlationId, paymentID, orderId}``

        Raises:
            ValidationError: Missing or invalid field
            NotFoundError: Unknown user or order
            AmountMismatchError: Amount differs from the order total
            PaymentStateError: Order is not awaiting online payment
            GatewayError: Gateway rejected the session or was unreachable
        """
        for field in ("amount", "email", "name", "user_id", "purpose"):
            if not getattr(request, field):
                raise ValidationError(field, public_message="amount, email, name, user_id, purpose required")
        if request.purpose not in PAYMENT_PURPOSES:
            raise ValidationError("purpose", f"Unsupported payment purpose: {request.purpose}")
        amount = Decimal(request.amount)
        if amount < MIN_AMOUNT:
            raise ValidationError("amount", "Amount must be at least 1", public_message="Minimum amount is 1")

        user = db.get(User, request.user_id)
        if user is None:
            raise NotFoundError("User", request.user_id)

        span = trace.get_current_span()
        span.set_attribute("payment.channel", self.channel)
        span.set_attribute("payment.purpose", request.purpose)

        if request.order_id:
            order = self.order_service.get_order_by_id(db, request.order_id)
            if order.user_id and order.user_id != user.id:
                raise NotFoundError("Order", request.order_id)
            if amount != order.total:
                payment_initiations_counter.add(1, {"outcome": "amount_mismatch"})
                logger.warning("Payment amount does not match order total", extra={
                    "order_id": order.id,
                    "expected": str(order.total),
                    "provided": str(amount)
                })
                raise AmountMismatchError(order.id, order.total, amount)
            if order.payment_status != "pending":
                raise PaymentStateError(f"Order {order.id} has payment status {order.payment_status}")
            if order.status == "cancelled":
                payment_initiations_counter.add(1, {"outcome": "order_cancelled"})
                raise PaymentStateError(f"Order {order.id} is cancelled", public_message="This order has been cancelled")
            if order.payment_method in CASH_PAYMENT_METHODS:
                raise PaymentStateError(
                    f"Order {order.id} is paid with {order.payment_method}",
                    public_message="This order is not paid online"
                )
            if order.payment_transaction_id and order.gateway_redirect_url:
                payment_initiations_counter.add(1, {"outcome": "existing_session"})
                logger.info("Returning existing payment session", extra={
                    "order_id": order.id,
                    "transaction_id": order.payment_transaction_id
                })
                return self._session_response(order)
        else:
            order = self.order_service.create_payment_only_order(
                db,
                user,
                amount,
                request.purpose,
                self.channel,
                payer_name=request.name,
                payer_email=request.email,
                payer_phone=request.phone,
            )

        transaction_id = new_transaction_id()
        span.set_attribute("payment.transaction_id", transaction_id)
        span.set_attribute("order.id", order.id)

        try:
            token = await self._token(db)
            response = await self.gateway.create_payment(
                token,
                amount,
                self.currency,
                transaction_id,
                self.callback_url,
                payer_reference=request.phone,
            )
        except httpx.HTTPError as e:
            payment_initiations_counter.add(1, {"outcome": "gateway_unavailable"})
            logger.error("Payment gateway unavailable during initiation", extra={
                "order_id": order.id,
                "transaction_id": transaction_id,
                "error": str(e)
            })
            raise GatewayError("Payment gateway is unavailable, please try again")

        if not is_success(response):
            message = response.get("statusMessage") or "Payment Failed"
            self._mark_failed(db, order.id)
            payment_initiations_counter.add(1, {"outcome": "gateway_rejected"})
            logger.warning("Payment gateway rejected session", extra={
                "order_id": order.id,
                "transaction_id": transaction_id,
                "status_code": response.get("statusCode"),
                "status_message": message
            })
            raise GatewayError(message, status_code=response.get("statusCode"))

        payment_id = response.get("paymentID")
        redirect_url = response.get("bkashURL")
        try:
            rowcount = (
                db.query(Order)
                .filter(
                    Order.id == order.id,
                    Order.payment_status == "pending",
                    Order.status != "cancelled",
                    Order.payment_transaction_id.is_(None),
                )
                .update({
                    Order.payment_transaction_id: transaction_id,
                    Order.payment_reference: transaction_id,
                    Order.payment_channel: self.channel,
                    Order.payment_amount: amount,
                    Order.gateway_payment_id: payment_id,
                    Order.gateway_redirect_url: redirect_url,
                    Order.updated_at: utcnow(),
                }, synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to store payment session", extra={
                "order_id": order.id,
                "transaction_id": transaction_id,
                "error": str(e)
            })
            raise DataStoreError(f"Failed to store payment session for order {order.id}: {e}")

        db.refresh(order)
        if rowcount == 0:
            # A concurrent initiation stored its session first
            if order.payment_status == "pending" and order.status != "cancelled" and order.gateway_redirect_url:
                payment_initiations_counter.add(1, {"outcome": "existing_session"})
                return self._session_response(order)
            raise PaymentStateError(
                f"Order {order.id} has status {order.status} and payment status {order.payment_status}"
            )

        payment_initiations_counter.add(1, {"outcome": "session_created"})
        logger.info("Payment session created", extra={
            "order_id": order.id,
            "transaction_id": transaction_id,
            "payment_id": payment_id,
            "amount": str(amount)
        })
        return self._session_response(order)

    def _session_response(self, order: Order) -> Dict[str, str]:
        return {
            "redirectURL": order.gateway_redirect_url,
            "correlationId": order.payment_transaction_id,
            "paymentID": order.gateway_payment_id,
            "orderId": order.id,
        }

    # Callback

    async def handle_callback(self, db: Session, callback: PaymentCallbackRequest) -> Dict[str, Any]:
        """
        Reconcile a gateway callback with its order.

        Returns a ``{statusCode, statusMessage}`` pair; the HTTP status of
        the response mirrors ``statusCode``.
        """
        if not callback.paymentID:
            payment_callbacks_counter.add(1, {"outcome": "invalid"})
            return ack(400, "paymentID required")

        order = None
        if callback.merchantInvoiceNumber:
            order = (
                db.query(Order)
                .filter(Order.payment_transaction_id == callback.merchantInvoiceNumber)
                .first()
            )
        if order is None:
            payment_callbacks_counter.add(1, {"outcome": "not_found"})
            logger.warning("Callback for unknown payment", extra={
                "payment_id": callback.paymentID,
                "merchant_invoice_number": callback.merchantInvoiceNumber
            })
            return ack(404, "Payment record not found")

        if order.gateway_payment_id and order.gateway_payment_id != callback.paymentID:
            payment_callbacks_counter.add(1, {"outcome": "mismatch"})
            logger.warning("Callback paymentID does not match stored session", extra={
                "order_id": order.id,
                "payment_id": callback.paymentID
            })
            return ack(400, "paymentID does not match payment session")

        if order.payment_status != "pending":
            payment_callbacks_counter.add(1, {"outcome": "duplicate"})
            logger.info("Callback for already processed payment", extra={
                "order_id": order.id,
                "payment_status": order.payment_status
            })
            return ack(200, "Payment already processed")

        if order.status == "cancelled":
            self._mark_failed(db, order.id)
            payment_callbacks_counter.add(1, {"outcome": "order_cancelled"})
            logger.warning("Callback for cancelled order", extra={
                "order_id": order.id,
                "payment_id": callback.paymentID
            })
            return ack(409, "Order has been cancelled")

        status = (callback.status or "").lower()
        if status in ("cancel", "failure"):
            self._mark_failed(db, order.id)
            payment_callbacks_counter.add(1, {"outcome": status})
            logger.info("Payment not completed by customer", extra={
                "order_id": order.id,
                "callback_status": status
            })
            return ack(400, "Payment cancelled" if status == "cancel" else "Payment failed")

        with self.tracer.start_as_current_span("payment.execute") as span:
            span.set_attribute("order.id", order.id)
            span.set_attribute("payment.transaction_id", order.payment_transaction_id)
            try:
                token = await self._token(db)
                result = await self.gateway.execute_payment(token, order.gateway_payment_id or callback.paymentID)
            except (httpx.HTTPError, GatewayError) as e:
                self._mark_failed(db, order.id)
                payment_callbacks_counter.add(1, {"outcome": "gateway_error"})
                logger.error("Payment execution failed", extra={
                    "order_id": order.id,
                    "error": str(e)
                })
                return ack(500, "Execute payment failed")

        if not is_success(result):
            message = result.get("statusMessage") or "Payment failed"
            self._mark_failed(db, order.id)
            payment_callbacks_counter.add(1, {"outcome": "failed"})
            logger.warning("Payment execution rejected", extra={
                "order_id": order.id,
                "status_code": result.get("statusCode"),
                "status_message": message
            })
            return ack(400, message)

        if not self._mark_paid(db, order.id, result.get("trxID")):
            db.refresh(order)
            if order.status == "cancelled" and order.payment_status == "pending":
                # Captured by the gateway after staff cancelled; refund is manual
                payment_callbacks_counter.add(1, {"outcome": "order_cancelled"})
                logger.error("Payment captured for cancelled order", extra={
                    "order_id": order.id,
                    "trx_id": result.get("trxID")
                })
                return ack(409, "Order has been cancelled")
            payment_callbacks_counter.add(1, {"outcome": "duplicate"})
            return ack(200, "Payment already processed")

        payment_callbacks_counter.add(1, {"outcome": "paid"})
        logger.info("Payment completed", extra={
            "order_id": order.id,
            "transaction_id": order.payment_transaction_id,
            "trx_id": result.get("trxID")
        })
        return ack(200, "Payment completed successfully")

    def _compare_and_set(self, db: Session, order_id: str, values: Dict[Any, Any], *conditions) -> bool:
        values[Order.updated_at] = utcnow()
        try:
            rowcount = (
                db.query(Order)
                .filter(Order.id == order_id, Order.payment_status == "pending", *conditions)
                .update(values, synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to update payment status", extra={"order_id": order_id, "error": str(e)})
            raise DataStoreError(f"Failed to update payment status for order {order_id}: {e}")
        return rowcount == 1

    def _mark_failed(self, db: Session, order_id: str) -> bool:
        return self._compare_and_set(db, order_id, {Order.payment_status: "failed"})

    def _mark_paid(self, db: Session, order_id: str, trx_id: Optional[str]) -> bool:
        return self._compare_and_set(db, order_id, {
            Order.payment_status: "paid",
            Order.status: case((Order.status == "pending", "paid"), else_=Order.status),
            Order.payment_date: utcnow(),
            Order.gateway_trx_id: trx_id,
        }, Order.status != "cancelled")

    # Queries

    def get_payment_status(self, db: Session, transaction_id: str) -> Dict[str, Any]:
        """
        Look up a payment by its correlation id.

        Raises:
            NotFoundError: If no order carries this transaction id
        """
        order = (
            db.query(Order)
            .filter(Order.payment_transaction_id == transaction_id)
            .first()
        )
        if order is None:
            raise NotFoundError("Payment", transaction_id)
        return {
            "correlationId": order.payment_transaction_id,
            "order_id": order.id,
            "payment_status": order.payment_status,
            "status": order.status,
            "payment_channel": order.payment_channel,
            "payment_amount": order.payment_amount,
            "payment_date": order.payment_date,
        }
