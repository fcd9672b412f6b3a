from decimal import Decimal
from typing import Optional

from .errors import ConflictError, NotFoundError
from .models import FeeConfiguration, FeeType, money
from .storage import InMemoryStorage


class FeeConfigService:
    """Fee type to base amount lookup. The engine only ever reads from it."""

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def find_all(self) -> list[FeeConfiguration]:
        configs = [FeeConfiguration(**c) for c in self.storage.fee_configs.values() if c["is_active"]]
        return sorted(configs, key=lambda c: c.fee_type.value)

    def get_current_config(self, fee_type: FeeType) -> FeeConfiguration:
        config = self.storage.fee_configs.get(fee_type)
        if not config or not config["is_active"]:
            raise NotFoundError(f"No active fee configuration found for type {fee_type.value}")
        return FeeConfiguration(**config)

    def amount_for(self, fee_type: FeeType, fallback: Optional[Decimal] = None) -> Decimal:
        try:
            return self.get_current_config(fee_type).amount
        except NotFoundError:
            if fallback is None:
                raise
            return money(fallback)

    def create(self, fee_type: FeeType, amount: Decimal, is_active: bool = True) -> FeeConfiguration:
        if fee_type in self.storage.fee_configs:
            raise ConflictError(f"Fee configuration for type {fee_type.value} already exists")
        self.storage.fee_configs[fee_type] = {
            "fee_type": fee_type, "amount": money(amount), "is_active": is_active,
        }
        return FeeConfiguration(**self.storage.fee_configs[fee_type])

    def update(self, fee_type: FeeType, amount: Optional[Decimal] = None,
               is_active: Optional[bool] = None) -> FeeConfiguration:
        config = self.storage.fee_configs.get(fee_type)
        if not config:
            raise NotFoundError(f"Fee configuration for type {fee_type.value} not found")
        if amount is not None:
            config["amount"] = money(amount)
        if is_active is not None:
            config["is_active"] = is_active
        return FeeConfiguration(**config)

    def deactivate(self, fee_type: FeeType) -> FeeConfiguration:
        return self.update(fee_type, is_active=False)
