import logging
from datetime import datetime, timedelta
from typing import Optional

from .models import EntryStatus, as_utc, counts_as_obligation
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class OverdueSweeper:
    """Moves stale DUE obligations to OVERDUE. PARTIAL entries are left alone."""

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def update_overdue_status(self, now: Optional[datetime] = None) -> int:
        now = as_utc(now) if now else self.storage.now()
        cutoff = now - timedelta(days=self.storage.settings.overdue_days)

        stale: dict[int, list] = {}
        for entry in self.storage.all_entries():
            if (entry["status"] == EntryStatus.DUE
                    and entry["due_date"] < cutoff
                    and counts_as_obligation(entry["kind"], entry["base_amount"])):
                stale.setdefault(entry["member_id"], []).append(entry["id"])

        count = 0
        for member_id, entry_ids in stale.items():
            with self.storage.transaction(member_id):
                for entry_id in entry_ids:
                    entry = self.storage.get_entry(entry_id)
                    if entry and entry["status"] == EntryStatus.DUE:
                        self.storage.update_entry(entry_id, status=EntryStatus.OVERDUE)
                        count += 1

        logger.info("Marked %d entries overdue (due before %s)", count, cutoff.isoformat())
        return count
