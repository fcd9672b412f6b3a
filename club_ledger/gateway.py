import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel

from .storage import utcnow

logger = logging.getLogger(__name__)


class GatewayStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class GatewayPayment(BaseModel):
    id: str
    status: GatewayStatus
    amount: Decimal
    currency: str
    receipt_url: Optional[str] = None
    note: str = ""
    created_at: datetime


class GatewayError(Exception):
    """A coded failure reported by the card processor."""

    def __init__(self, code: str, detail: Optional[str] = None):
        super().__init__(f"{code}: {detail}" if detail else code)
        self.code = code
        self.detail = detail


DECLINE_MESSAGES = {
    "CARD_DECLINED": "Your card was declined. Please check your card details or try a different card.",
    "INVALID_CVV": "Invalid CVV. Please check your card's security code.",
    "INVALID_EXPIRATION": "Invalid expiration date. Please check your card's expiry date.",
    "INVALID_POSTAL_CODE": "Invalid postal code. Please check your billing address.",
    "VERIFY_AVS_FAILURE": "Address verification failed. Please check your billing address.",
    "ADDRESS_VERIFICATION_FAILURE": "Address verification failed. Please check your billing address.",
    "VERIFY_CVV_FAILURE": "CVV verification failed. Please check your card's security code.",
    "CVV_FAILURE": "CVV verification failed. Please check your card's security code.",
    "INSUFFICIENT_FUNDS": "Insufficient funds. Please try a different card or contact your bank.",
    "EXPIRED_CARD": "Your card has expired. Please use a different card.",
    "INVALID_ACCOUNT": "Invalid account. Please check your card details.",
    "GENERIC_DECLINE": "Your card was declined. Please try a different card.",
    "CARD_NOT_SUPPORTED": "This card type is not supported. Please use a different card.",
    "CARD_MALFUNCTION": "There was an issue with your card. Please try a different card.",
    "PICKUP_RISK": "Your card has been flagged for pickup. Please contact your bank.",
    "FRAUD_DECLINE": "Your card was declined due to suspected fraud. Please contact your bank.",
    "TEMPORARY_ERROR": "A temporary error occurred. Please try again in a few moments.",
    "RATE_LIMIT_EXCEEDED": "Too many payment attempts. Please wait a moment and try again.",
}


def map_decline_code(code: Optional[str], detail: Optional[str] = None) -> str:
    """Turn a processor error code into a message that is safe to show the member."""
    message = DECLINE_MESSAGES.get(code or "")
    if message is None:
        logger.warning("Unhandled gateway error code: %s - Detail: %s", code, detail)
        message = f"Payment failed: {detail or 'Unknown error'}"
    return message


class PaymentGateway(ABC):
    """The narrow contract the ledger needs from a card processor."""

    @abstractmethod
    def create_payment(self, token: str, amount: Decimal, currency: str, note: str,
                       idempotency_key: str) -> GatewayPayment:
        ...

    @abstractmethod
    def get_payment(self, payment_id: str) -> GatewayPayment:
        ...


class StubPaymentGateway(PaymentGateway):
    """
    In-process gateway for development and tests.

    Behaves like a processor sandbox: ``cnon:card-nonce-ok`` completes, the
    tokens in ``DECLINE_TOKENS`` fail with the matching error code and
    ``PENDING_TOKEN`` leaves the payment pending. Any other token completes.
    Replaying an idempotency key returns the original payment.
    """

    OK_TOKEN = "cnon:card-nonce-ok"
    PENDING_TOKEN = "cnon:card-nonce-pending"
    DECLINE_TOKENS = {
        "cnon:card-nonce-declined": "CARD_DECLINED",
        "cnon:card-nonce-rejected-cvv": "VERIFY_CVV_FAILURE",
        "cnon:card-nonce-rejected-postalcode": "VERIFY_AVS_FAILURE",
        "cnon:card-nonce-rejected-expiration": "INVALID_EXPIRATION",
        "cnon:card-nonce-insufficient-funds": "INSUFFICIENT_FUNDS",
        "cnon:card-nonce-fraud": "FRAUD_DECLINE",
    }

    def __init__(self, receipt_base_url: str = "https://receipts.example.test"):
        self.receipt_base_url = receipt_base_url
        self.payments: dict[str, GatewayPayment] = {}
        self._by_idempotency_key: dict[str, str] = {}
        self._lock = threading.Lock()

    def create_payment(self, token: str, amount: Decimal, currency: str, note: str,
                       idempotency_key: str) -> GatewayPayment:
        with self._lock:
            existing = self._by_idempotency_key.get(idempotency_key)
            if existing:
                return self.payments[existing]

            code = self.DECLINE_TOKENS.get(token)
            if code:
                logger.info("Stub gateway declining token %s with %s", token, code)
                raise GatewayError(code, f"Sandbox token {token} declined")
            if amount <= 0:
                raise GatewayError("INVALID_VALUE", "Amount must be greater than zero")

            payment_id = uuid4().hex
            status = GatewayStatus.PENDING if token == self.PENDING_TOKEN else GatewayStatus.COMPLETED
            payment = GatewayPayment(
                id=payment_id,
                status=status,
                amount=amount,
                currency=currency.upper(),
                receipt_url=f"{self.receipt_base_url}/{payment_id}" if status == GatewayStatus.COMPLETED else None,
                note=note,
                created_at=utcnow(),
            )
            self.payments[payment_id] = payment
            self._by_idempotency_key[idempotency_key] = payment_id

        logger.info("Stub gateway created payment %s for %s %s (%s)", payment_id, amount, currency, status.value)
        return payment

    def get_payment(self, payment_id: str) -> GatewayPayment:
        payment = self.payments.get(payment_id)
        if not payment:
            raise GatewayError("NOT_FOUND", f"Payment {payment_id} not found")
        return payment
