"""Payments API router."""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from database import get_db
from schemas import (
    GatewayAck,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentCallbackRequest,
    PaymentStatusResponse,
)
from dependencies import get_payment_service
from services.payment_service import PaymentService

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/initiate", response_model=InitiatePaymentResponse)
async def initiate_payment(
    request: InitiatePaymentRequest,
    db: Session = Depends(get_db),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """
    Start a gateway payment session.

    The client redirects the customer to ``redirectURL`` and keeps
    ``correlationId`` to poll the payment status afterwards.
    """
    return await payment_service.initiate_payment(db, request)


@router.post("/callback", response_model=GatewayAck)
async def payment_callback(
    callback: PaymentCallbackRequest,
    db: Session = Depends(get_db),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """Gateway callback. The HTTP status mirrors ``statusCode``."""
    result = await payment_service.handle_callback(db, callback)
    return JSONResponse(status_code=result["statusCode"], content=result)


@router.get("/{correlation_id}", response_model=PaymentStatusResponse)
async def get_payment_status(
    correlation_id: str,
    db: Session = Depends(get_db),
    payment_service: PaymentService = Depends(get_payment_service)
):
    return payment_service.get_payment_status(db, correlation_id)
