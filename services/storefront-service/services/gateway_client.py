"""bKash tokenized checkout client."""
import httpx
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

from config import (
    BKASH_APP_KEY,
    BKASH_APP_SECRET,
    BKASH_CREATE_PAYMENT_URL,
    BKASH_EXECUTE_PAYMENT_URL,
    BKASH_GRANT_TOKEN_URL,
    BKASH_MERCHANT_ASSOCIATION_INFO,
    BKASH_PASSWORD,
    BKASH_USERNAME,
    GATEWAY_REQUEST_TIMEOUT_SECONDS,
    GATEWAY_TOKEN_TIMEOUT_SECONDS,
)
from errors import GatewayError
from monitoring import gateway_duration_histogram

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0000"


def is_success(response: Dict[str, Any]) -> bool:
    """The gateway signals success with statusCode "0000"; anything else is a failure."""
    return str(response.get("statusCode")) == SUCCESS_CODE


class BkashGatewayClient:
    """Client for the payment gateway's token, create and execute endpoints."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        app_key: str = BKASH_APP_KEY,
        app_secret: str = BKASH_APP_SECRET,
        username: str = BKASH_USERNAME,
        password: str = BKASH_PASSWORD,
        grant_token_url: str = BKASH_GRANT_TOKEN_URL,
        create_payment_url: str = BKASH_CREATE_PAYMENT_URL,
        execute_payment_url: str = BKASH_EXECUTE_PAYMENT_URL,
        token_timeout: float = GATEWAY_TOKEN_TIMEOUT_SECONDS,
        request_timeout: float = GATEWAY_REQUEST_TIMEOUT_SECONDS
    ):
        """
        Initialize gateway client.

        Args:
            http_client: Shared async HTTP client
            app_key: Merchant application key
            app_secret: Merchant application secret
            username: Merchant API username
            password: Merchant API password
            grant_token_url: Token grant endpoint
            create_payment_url: Payment session endpoint
            execute_payment_url: Payment execution endpoint
            token_timeout: Timeout for token requests in seconds
            request_timeout: Timeout for create/execute requests in seconds
        """
        self.http_client = http_client
        self.app_key = app_key
        self.app_secret = app_secret
        self.username = username
        self.password = password
        self.grant_token_url = grant_token_url
        self.create_payment_url = create_payment_url
        self.execute_payment_url = execute_payment_url
        self.token_timeout = token_timeout
        self.request_timeout = request_timeout

    async def _post(
        self,
        operation: str,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        timeout: float
    ) -> Dict[str, Any]:
        start_time = time.time()
        status = "success"
        try:
            response = await self.http_client.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json", "Accept": "application/json", **headers},
                timeout=timeout
            )
            response.raise_for_status()
            data = response.json()
            if operation != "grant_token" and not is_success(data):
                status = "rejected"
            return data
        except httpx.HTTPError as e:
            status = "error"
            logger.error("Payment gateway request failed", extra={
                "operation": operation,
                "url": url,
                "error": str(e)
            })
            raise
        finally:
            gateway_duration_histogram.record(
                time.time() - start_time,
                {"operation": operation, "status": status}
            )

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": token, "X-App-Key": self.app_key}

    async def grant_token(self) -> str:
        """
        Request a fresh id token (valid for about an hour).

        Raises:
            GatewayError: If the gateway answers without a token
            httpx.HTTPError: If the gateway is unreachable or times out
        """
        data = await self._post(
            "grant_token",
            self.grant_token_url,
            {"app_key": self.app_key, "app_secret": self.app_secret},
            {"username": self.username, "password": self.password},
            self.token_timeout
        )
        token = data.get("id_token")
        if not token:
            message = data.get("statusMessage") or data.get("msg") or "Failed to get authentication token"
            raise GatewayError(message, status_code=data.get("statusCode"))
        logger.info("Granted new payment gateway token")
        return token

    async def create_payment(
        self,
        token: str,
        amount: Decimal,
        currency: str,
        merchant_invoice_number: str,
        callback_url: str,
        payer_reference: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Open a payment session.

        Returns:
            Gateway response; ``paymentID`` and ``bkashURL`` are set when
            ``statusCode`` is the success code
        """
        payload = {
            "mode": "0011",
            "payerReference": payer_reference or "user",
            "callbackURL": callback_url,
            "amount": str(amount),
            "currency": currency,
            "intent": "sale",
            "merchantInvoiceNumber": merchant_invoice_number,
        }
        if BKASH_MERCHANT_ASSOCIATION_INFO:
            payload["merchantAssociationInfo"] = BKASH_MERCHANT_ASSOCIATION_INFO

        data = await self._post(
            "create_payment",
            self.create_payment_url,
            payload,
            self._auth_headers(token),
            self.request_timeout
        )
        logger.info("Payment gateway create response", extra={
            "merchant_invoice_number": merchant_invoice_number,
            "status_code": data.get("statusCode"),
            "payment_id": data.get("paymentID")
        })
        return data

    async def execute_payment(self, token: str, payment_id: str) -> Dict[str, Any]:
        """Confirm a payment session after the customer approved it."""
        data = await self._post(
            "execute_payment",
            self.execute_payment_url,
            {"paymentID": payment_id},
            self._auth_headers(token),
            self.request_timeout
        )
        logger.info("Payment gateway execute response", extra={
            "payment_id": payment_id,
            "status_code": data.get("statusCode"),
            "transaction_status": data.get("transactionStatus")
        })
        return data
