import logging
from decimal import Decimal
from typing import Any, Optional

from square import Square
from square.core.api_error import ApiError
from square.environment import SquareEnvironment

from .gateway import GatewayError, GatewayPayment, GatewayStatus, PaymentGateway
from .models import money
from .storage import utcnow

logger = logging.getLogger(__name__)

# Square reports APPROVED for authorised but uncaptured payments
SQUARE_STATUSES = {
    "APPROVED": GatewayStatus.PENDING,
    "PENDING": GatewayStatus.PENDING,
    "COMPLETED": GatewayStatus.COMPLETED,
    "CANCELED": GatewayStatus.CANCELED,
    "FAILED": GatewayStatus.FAILED,
}


def to_minor_units(amount: Decimal) -> int:
    return int((money(amount) * 100).to_integral_value())


def from_minor_units(amount: Optional[int]) -> Decimal:
    return money(Decimal(amount or 0) / 100)


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _first_error(errors: Any) -> GatewayError:
    if errors:
        error = errors[0]
        return GatewayError(_field(error, "code") or "UNKNOWN", _field(error, "detail"))
    return GatewayError("UNKNOWN", "Square returned no payment")


class SquarePaymentGateway(PaymentGateway):
    """
    Card payments through the Square Payments API.

    Charges are autocompleted at the configured location. Square error
    payloads are reduced to their first error code so the ledger can show a
    member-facing decline message.
    """

    def __init__(self, access_token: str, location_id: str, environment: str = "sandbox",
                 client: Optional[Square] = None):
        if not access_token or not location_id:
            raise ValueError("Missing required Square configuration: access token and location id")
        self.location_id = location_id
        if client is None:
            base_url = SquareEnvironment.PRODUCTION if environment == "production" else SquareEnvironment.SANDBOX
            client = Square(token=access_token, environment=base_url)
        self.client = client

    def create_payment(self, token: str, amount: Decimal, currency: str, note: str,
                       idempotency_key: str) -> GatewayPayment:
        try:
            response = self.client.payments.create(
                source_id=token,
                idempotency_key=idempotency_key,
                amount_money={"amount": to_minor_units(amount), "currency": currency.upper()},
                location_id=self.location_id,
                note=note,
                autocomplete=True,
            )
        except ApiError as e:
            logger.error("Square payment request failed with HTTP %s", e.status_code)
            raise _first_error(_field(e.body, "errors")) from e

        payment = _field(response, "payment")
        if payment is None:
            raise _first_error(_field(response, "errors"))
        return self._to_gateway_payment(payment)

    def get_payment(self, payment_id: str) -> GatewayPayment:
        try:
            response = self.client.payments.get(payment_id=payment_id)
        except ApiError as e:
            raise _first_error(_field(e.body, "errors")) from e

        payment = _field(response, "payment")
        if payment is None:
            raise _first_error(_field(response, "errors"))
        return self._to_gateway_payment(payment)

    @staticmethod
    def _to_gateway_payment(payment: Any) -> GatewayPayment:
        amount_money = _field(payment, "amount_money")
        raw_status = _field(payment, "status") or "FAILED"
        status = SQUARE_STATUSES.get(raw_status)
        if status is None:
            logger.warning("Unknown Square payment status %s", raw_status)
            status = GatewayStatus.FAILED
        return GatewayPayment(
            id=_field(payment, "id"),
            status=status,
            amount=from_minor_units(_field(amount_money, "amount")),
            currency=_field(amount_money, "currency") or "",
            receipt_url=_field(payment, "receipt_url"),
            note=_field(payment, "note") or "",
            created_at=_field(payment, "created_at") or utcnow(),
        )
