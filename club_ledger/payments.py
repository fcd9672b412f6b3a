import logging
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from .allocation import PaymentAllocationEngine
from .balance import BalanceService
from .errors import GatewayDeclinedError, InvalidStateError
from .gateway import GatewayError, GatewayStatus, PaymentGateway, map_decline_code
from .models import BalancePaymentResult, PaymentMethod, money
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class BalancePaymentService:
    """
    Charges a member's card for some or all of what they owe.

    The member's ledger stays locked from the charge until the allocation is
    written, so two payments for one member never interleave.
    """

    def __init__(self, storage: InMemoryStorage, allocation: PaymentAllocationEngine,
                 balance: BalanceService, gateway: Optional[PaymentGateway]):
        self.storage = storage
        self.allocation = allocation
        self.balance = balance
        self.gateway = gateway

    def process_balance_payment(self, member_id: int, token: str, amount: Decimal,
                                currency: Optional[str] = None) -> BalancePaymentResult:
        amount = money(amount)
        currency = (currency or self.storage.settings.currency).upper()
        if amount <= 0:
            raise InvalidStateError("Payment amount must be greater than zero")
        if self.gateway is None:
            raise InvalidStateError("Card payments are not configured")

        logger.info("Processing balance payment for member %s: %s %s", member_id, amount, currency)

        with self.storage.transaction(member_id):
            if self.allocation.total_due(member_id) <= 0:
                raise InvalidStateError("No payments are currently due")

            try:
                payment = self.gateway.create_payment(
                    token, amount, currency,
                    note=f"Balance payment for member {member_id}",
                    idempotency_key=uuid4().hex,
                )
            except GatewayError as e:
                logger.error("Gateway rejected payment for member %s: %s", member_id, e)
                raise GatewayDeclinedError(map_decline_code(e.code, e.detail), e.code, e.detail) from e

            if payment.status != GatewayStatus.COMPLETED:
                logger.warning("Gateway payment %s for member %s ended %s", payment.id, member_id, payment.status.value)
                raise InvalidStateError("Payment was not completed successfully")

            result = self.allocation.allocate_payment(member_id, amount, payment.id, PaymentMethod.CARD)

        return BalancePaymentResult(
            payment_id=payment.id,
            receipt_url=payment.receipt_url,
            total_paid=amount,
            debt_paid=result.debt_paid,
            credit_added=result.credit_added,
            new_balance=self.balance.get_balance(member_id).current_balance,
            allocations=result.allocations,
        )
