from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from club_ledger.config import Settings
from club_ledger.gateway import StubPaymentGateway
from club_ledger.service import LedgerService
from club_ledger.storage import InMemoryStorage


NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

FEE_AMOUNTS = {
    "MATCH": Decimal("12.00"),
    "TRAINING": Decimal("6.00"),
    "SOCIAL_EVENT": Decimal("0.00"),
    "YELLOW_CARD": Decimal("5.00"),
    "RED_CARD": Decimal("25.00"),
    "YEARLY_SUBS": Decimal("70.00"),
}


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


def make_service(clock=None, **overrides) -> LedgerService:
    settings = Settings(fee_amounts=dict(FEE_AMOUNTS), **overrides)
    storage = InMemoryStorage(settings=settings, clock=clock or FixedClock())
    return LedgerService(storage=storage, gateway=StubPaymentGateway())


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def service(clock):
    return make_service(clock)
