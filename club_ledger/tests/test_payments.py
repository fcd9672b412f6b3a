"""
Unit Tests for Card Payments Against a Member's Balance
"""

import pytest
from decimal import Decimal
from types import SimpleNamespace

from square.core.api_error import ApiError

from club_ledger.config import Settings
from club_ledger.errors import GatewayDeclinedError, InvalidStateError
from club_ledger.gateway import (
    DECLINE_MESSAGES,
    GatewayError,
    GatewayStatus,
    StubPaymentGateway,
    map_decline_code,
)
from club_ledger.models import EntryStatus, PaymentMethod
from club_ledger.service import LedgerService, build_gateway
from club_ledger.square_gateway import SquarePaymentGateway
from club_ledger.storage import InMemoryStorage
from club_ledger.tests.conftest import FEE_AMOUNTS, NOW, FixedClock


MEMBER = 7
OK = StubPaymentGateway.OK_TOKEN


class TestDeclineMapping:
    """Tests for turning gateway codes into member-facing messages."""

    def test_known_code(self):
        """Known codes get their fixed message."""
        assert map_decline_code("INSUFFICIENT_FUNDS") == DECLINE_MESSAGES["INSUFFICIENT_FUNDS"]

    def test_aliases_share_a_message(self):
        """Both address verification codes read the same."""
        assert map_decline_code("VERIFY_AVS_FAILURE") == map_decline_code("ADDRESS_VERIFICATION_FAILURE")
        assert map_decline_code("CVV_FAILURE") == map_decline_code("VERIFY_CVV_FAILURE")

    def test_unknown_code_uses_detail(self):
        """Unmapped codes fall back to the gateway's detail."""
        assert map_decline_code("SOMETHING_NEW", "Gateway hiccup") == "Payment failed: Gateway hiccup"

    def test_unknown_code_without_detail(self):
        """With no detail the fallback still reads sensibly."""
        assert map_decline_code("SOMETHING_NEW") == "Payment failed: Unknown error"


class TestStubGateway:
    """Tests for the in-process gateway."""

    def test_idempotency_key_replays_payment(self):
        """The same key returns the same payment."""
        gateway = StubPaymentGateway()

        first = gateway.create_payment(OK, Decimal("5.00"), "gbp", "note", "key-1")
        second = gateway.create_payment(OK, Decimal("5.00"), "gbp", "note", "key-1")

        assert first.id == second.id
        assert first.currency == "GBP"
        assert gateway.get_payment(first.id).status == GatewayStatus.COMPLETED

    def test_decline_token(self):
        """Sandbox decline tokens raise a coded error."""
        gateway = StubPaymentGateway()

        with pytest.raises(GatewayError) as exc_info:
            gateway.create_payment("cnon:card-nonce-declined", Decimal("5.00"), "GBP", "note", "key-1")

        assert exc_info.value.code == "CARD_DECLINED"


class TestBalancePayment:
    """Tests for paying a balance by card."""

    def test_nothing_due_is_rejected_before_charging(self, service):
        """A member who owes nothing is never charged."""
        with pytest.raises(InvalidStateError):
            service.process_balance_payment(MEMBER, OK, Decimal("10.00"))

        assert service.gateway.payments == {}

    def test_payment_settles_debt_and_banks_excess(self, service):
        """A completed charge is allocated oldest first with the rest as credit."""
        training = service.issuance.create_training_fee(MEMBER, "t1", NOW)
        service.issuance.create_training_fee(MEMBER, "t2", NOW)

        result = service.process_balance_payment(MEMBER, OK, Decimal("15.00"))

        assert result.total_paid == Decimal("15.00")
        assert result.debt_paid == Decimal("12.00")
        assert result.credit_added == Decimal("3.00")
        assert result.new_balance == Decimal("3.00")
        assert result.payment_id in service.gateway.payments
        assert result.receipt_url
        paid = service.get_entry(training.id)
        assert paid.status == EntryStatus.PAID
        assert paid.payment_method == PaymentMethod.CARD
        assert paid.external_payment_id == result.payment_id

    def test_declined_card_leaves_ledger_untouched(self, service):
        """A decline surfaces the mapped message and changes nothing."""
        service.issuance.create_training_fee(MEMBER, "t1", NOW)

        with pytest.raises(GatewayDeclinedError) as exc_info:
            service.process_balance_payment(MEMBER, "cnon:card-nonce-insufficient-funds", Decimal("6.00"))

        assert exc_info.value.code == "INSUFFICIENT_FUNDS"
        assert exc_info.value.message == DECLINE_MESSAGES["INSUFFICIENT_FUNDS"]
        assert service.allocation.total_due(MEMBER) == Decimal("6.00")

    def test_pending_payment_is_not_allocated(self, service):
        """Only completed charges touch the ledger."""
        service.issuance.create_training_fee(MEMBER, "t1", NOW)

        with pytest.raises(InvalidStateError):
            service.process_balance_payment(MEMBER, StubPaymentGateway.PENDING_TOKEN, Decimal("6.00"))

        assert service.allocation.total_due(MEMBER) == Decimal("6.00")

    def test_currency_defaults_to_settings(self, service):
        """Without a currency the club currency is charged."""
        service.issuance.create_training_fee(MEMBER, "t1", NOW)

        result = service.process_balance_payment(MEMBER, OK, Decimal("6.00"))

        assert service.gateway.get_payment(result.payment_id).currency == "GBP"


class FakePayments:
    """Stands in for the Square client's payments resource."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def create(self, **request):
        self.requests.append(request)
        if self.error:
            raise self.error
        return self.response

    def get(self, payment_id):
        if self.error:
            raise self.error
        return self.response


def _square_payment(status="COMPLETED", amount=600):
    return SimpleNamespace(payment=SimpleNamespace(
        id="sq-1", status=status, amount_money=SimpleNamespace(amount=amount, currency="GBP"),
        receipt_url="https://squareup.com/receipt/preview/sq-1", note="Balance payment",
        created_at="2025-03-01T12:00:00.000Z",
    ), errors=None)


def _square_gateway(payments):
    return SquarePaymentGateway("token", "LOC-1", client=SimpleNamespace(payments=payments))


class TestSquareGateway:
    """Tests for the Square adapter."""

    def test_completed_payment(self):
        """A completed Square payment maps onto the gateway contract."""
        payments = FakePayments(_square_payment())

        payment = _square_gateway(payments).create_payment(OK, Decimal("6.00"), "gbp", "Balance payment", "key-1")

        assert payment.status == GatewayStatus.COMPLETED
        assert payment.amount == Decimal("6.00")
        assert payment.created_at == NOW
        request = payments.requests[0]
        assert request["amount_money"] == {"amount": 600, "currency": "GBP"}
        assert request["location_id"] == "LOC-1"
        assert request["idempotency_key"] == "key-1"

    def test_approved_payment_is_pending(self):
        """Authorised but uncaptured payments are not treated as complete."""
        payments = FakePayments(_square_payment(status="APPROVED"))

        payment = _square_gateway(payments).create_payment(OK, Decimal("6.00"), "GBP", "", "key-1")

        assert payment.status == GatewayStatus.PENDING

    def test_api_error_carries_first_code(self):
        """Square errors surface as gateway errors with their code and detail."""
        error = ApiError(status_code=402, body={"errors": [
            {"category": "PAYMENT_METHOD_ERROR", "code": "CVV_FAILURE", "detail": "Card verification failed."},
        ]})
        gateway = _square_gateway(FakePayments(error=error))

        with pytest.raises(GatewayError) as excinfo:
            gateway.create_payment(OK, Decimal("6.00"), "GBP", "", "key-1")

        assert excinfo.value.code == "CVV_FAILURE"
        assert excinfo.value.detail == "Card verification failed."

    def test_missing_configuration_rejected(self):
        """The adapter needs both an access token and a location."""
        with pytest.raises(ValueError):
            SquarePaymentGateway("", "LOC-1", client=SimpleNamespace(payments=FakePayments()))

    def test_decline_reaches_member_as_message(self, service):
        """A Square decline becomes a member-facing error and leaves the ledger alone."""
        error = ApiError(status_code=402, body={"errors": [{"code": "INSUFFICIENT_FUNDS", "detail": "Declined"}]})
        service.payments.gateway = _square_gateway(FakePayments(error=error))
        service.issuance.create_training_fee(MEMBER, "t1", NOW)

        with pytest.raises(GatewayDeclinedError) as excinfo:
            service.process_balance_payment(MEMBER, OK, Decimal("6.00"))

        assert excinfo.value.message == DECLINE_MESSAGES["INSUFFICIENT_FUNDS"]
        assert service.allocation.total_due(MEMBER) == Decimal("6.00")


class TestGatewaySelection:
    """Tests for choosing the card processor from settings."""

    def test_no_gateway_configured(self):
        """Without a configured processor there is no gateway."""
        assert build_gateway(Settings(fee_amounts=dict(FEE_AMOUNTS))) is None

    def test_stub_only_when_named(self):
        """The in-process stub must be asked for by name."""
        gateway = build_gateway(Settings(fee_amounts=dict(FEE_AMOUNTS), payment_gateway="stub"))

        assert isinstance(gateway, StubPaymentGateway)

    def test_square_selected(self):
        """Square is built from its access token and location."""
        settings = Settings(fee_amounts=dict(FEE_AMOUNTS), payment_gateway="square",
                            square_access_token="token", square_location_id="LOC-1")

        gateway = build_gateway(settings)

        assert isinstance(gateway, SquarePaymentGateway)
        assert gateway.location_id == "LOC-1"

    def test_square_without_credentials_fails(self):
        """Asking for Square without credentials is a configuration error."""
        with pytest.raises(ValueError):
            build_gateway(Settings(fee_amounts=dict(FEE_AMOUNTS), payment_gateway="square"))

    def test_unknown_gateway_fails(self):
        """Misspelt gateway names are not silently ignored."""
        with pytest.raises(ValueError):
            build_gateway(Settings(fee_amounts=dict(FEE_AMOUNTS), payment_gateway="sqaure"))

    def test_card_payment_refused_without_gateway(self):
        """With no processor configured any token is refused and nothing is settled."""
        settings = Settings(fee_amounts=dict(FEE_AMOUNTS))
        service = LedgerService(storage=InMemoryStorage(settings=settings, clock=FixedClock()))
        service.issuance.create_training_fee(MEMBER, "t1", NOW)

        with pytest.raises(InvalidStateError):
            service.process_balance_payment(MEMBER, "anything-at-all", Decimal("6.00"))

        assert service.gateway is None
        assert service.allocation.total_due(MEMBER) == Decimal("6.00")
