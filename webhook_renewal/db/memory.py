"""
In-memory subscription repository and token store.

Used when no DATABASE_URL is configured and by the service tests. State lives
for the lifetime of the process only.
"""

from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from webhook_renewal.db.repositories import SubscriptionRecord, TokenState
from webhook_renewal.errors import PersistenceError
from webhook_renewal.utils.time import ensure_utc, utcnow


class MemorySubscriptionRepository:
    """Dict-backed implementation of SubscriptionRepository."""

    def __init__(self) -> None:
        self._records: Dict[str, SubscriptionRecord] = {}

    async def create(self, record: SubscriptionRecord) -> SubscriptionRecord:
        if record.subscription_id in self._records:
            raise PersistenceError(
                f"Subscription {record.subscription_id} already exists"
            )
        now = utcnow()
        stored = replace(
            record,
            expiration_date_time=ensure_utc(record.expiration_date_time),
            created_at=now,
            updated_at=now,
        )
        self._records[stored.subscription_id] = stored
        return stored

    async def get(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        return self._records.get(subscription_id)

    async def find_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        owned = [r for r in self._records.values() if r.user_id == user_id]
        if not owned:
            return None
        return max(owned, key=lambda r: r.expiration_date_time)

    async def find_expiring(
        self, start: datetime, end: datetime
    ) -> List[SubscriptionRecord]:
        start, end = ensure_utc(start), ensure_utc(end)
        matched = [
            r
            for r in self._records.values()
            if start <= r.expiration_date_time <= end
        ]
        return sorted(matched, key=lambda r: r.expiration_date_time)

    async def find_expired(self, before: datetime) -> List[SubscriptionRecord]:
        before = ensure_utc(before)
        matched = [r for r in self._records.values() if r.expiration_date_time < before]
        return sorted(matched, key=lambda r: r.expiration_date_time)

    async def update_expiration(
        self, subscription_id: str, expiration_date_time: datetime
    ) -> bool:
        current = self._records.get(subscription_id)
        if current is None:
            return False
        self._records[subscription_id] = replace(
            current,
            expiration_date_time=ensure_utc(expiration_date_time),
            updated_at=utcnow(),
        )
        return True

    async def delete(self, subscription_id: str) -> bool:
        return self._records.pop(subscription_id, None) is not None

    async def list_all(self) -> List[SubscriptionRecord]:
        return sorted(self._records.values(), key=lambda r: r.expiration_date_time)


class MemoryTokenStore:
    """Dict-backed implementation of TokenStore."""

    def __init__(self) -> None:
        self._states: Dict[str, TokenState] = {}

    async def get(self, user_id: str) -> Optional[TokenState]:
        return self._states.get(user_id)

    async def set(self, user_id: str, state: TokenState) -> None:
        self._states[user_id] = state

    async def clear(self, user_id: str) -> None:
        self._states.pop(user_id, None)
