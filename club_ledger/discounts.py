import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .errors import ConflictError, NotFoundError
from .models import (
    HALF_PRICE_DISCOUNTS,
    ZERO,
    CreateDiscountRequest,
    DiscountEligibility,
    UpdateDiscountRequest,
    as_utc,
    money,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class DiscountEligibilityRegistry:
    """Per-member discount flags with validity windows."""

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def create(self, member_id: int, request: CreateDiscountRequest) -> DiscountEligibility:
        for existing in self.storage.discount_eligibilities.values():
            if (existing["member_id"] == member_id
                    and existing["discount_type"] == request.discount_type
                    and existing["is_active"]):
                raise ConflictError(
                    f"Member {member_id} already has an active {request.discount_type.value} discount"
                )

        now = self.storage.now()
        data = {
            "id": uuid4(),
            "member_id": member_id,
            "discount_type": request.discount_type,
            "is_active": request.is_active,
            "start_date": now,
            "end_date": request.end_date,
            "verified_by": request.verified_by,
            "created_at": now,
        }
        self.storage.discount_eligibilities[data["id"]] = data
        logger.info("Registered %s discount for member %s", request.discount_type.value, member_id)
        return DiscountEligibility(**data)

    def get(self, eligibility_id: UUID) -> DiscountEligibility:
        data = self.storage.discount_eligibilities.get(eligibility_id)
        if not data:
            raise NotFoundError(f"Discount eligibility {eligibility_id} not found")
        return DiscountEligibility(**data)

    def update(self, eligibility_id: UUID, request: UpdateDiscountRequest) -> DiscountEligibility:
        data = self.storage.discount_eligibilities.get(eligibility_id)
        if not data:
            raise NotFoundError(f"Discount eligibility {eligibility_id} not found")
        if request.is_active is not None:
            data["is_active"] = request.is_active
        if "end_date" in request.model_fields_set:
            data["end_date"] = request.end_date
        return DiscountEligibility(**data)

    def deactivate(self, eligibility_id: UUID) -> DiscountEligibility:
        data = self.storage.discount_eligibilities.get(eligibility_id)
        if not data:
            raise NotFoundError(f"Discount eligibility {eligibility_id} not found")
        data["is_active"] = False
        return DiscountEligibility(**data)

    def find_by_member(self, member_id: int) -> list[DiscountEligibility]:
        found = [
            DiscountEligibility(**d) for d in self.storage.discount_eligibilities.values()
            if d["member_id"] == member_id and d["is_active"]
        ]
        found.sort(key=lambda d: d.created_at, reverse=True)
        return found

    def active_discounts(self, member_id: int, when: Optional[datetime] = None) -> list[DiscountEligibility]:
        when = as_utc(when) if when else self.storage.now()
        return [d for d in self.find_by_member(member_id) if d.applies_at(when)]

    def expired_discounts(self, member_id: int, when: Optional[datetime] = None) -> list[DiscountEligibility]:
        when = as_utc(when) if when else self.storage.now()
        return [d for d in self.find_by_member(member_id) if d.end_date is not None and d.end_date < when]

    def deactivate_expired(self, when: Optional[datetime] = None) -> int:
        when = as_utc(when) if when else self.storage.now()
        count = 0
        for data in self.storage.discount_eligibilities.values():
            if data["is_active"] and data["end_date"] is not None and data["end_date"] < when:
                data["is_active"] = False
                count += 1
        if count:
            logger.info("Deactivated %d expired discount eligibilities", count)
        return count

    def discount_for(self, member_id: int, base_amount: Decimal, when: Optional[datetime] = None) -> Decimal:
        """Half price for members with an active unemployed or student flag."""
        active = self.active_discounts(member_id, when)
        if any(d.discount_type in HALF_PRICE_DISCOUNTS for d in active):
            return money(base_amount * self.storage.settings.discount_rate)
        return ZERO
