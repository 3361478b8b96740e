"""
Repository layer for subscription records and per-user token state.

This module defines the storage contracts shared by the admission controller
and the renewal engine, plus their SQLAlchemy implementations:
- SubscriptionRepository: subscription records keyed by provider id
- TokenStore: one access/refresh token pair per user identity

The in-memory implementations live in ``memory.py``.

Security: OAuth tokens are encrypted/decrypted by the SQL token store and never
leave it in ciphertext form.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_renewal.db.models import Subscription, UserToken
from webhook_renewal.errors import PersistenceError
from webhook_renewal.utils.crypto import CryptoService, CryptoServiceError, DecryptionError
from webhook_renewal.utils.time import ensure_utc, utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SubscriptionRecord:
    """A provider subscription as tracked locally."""

    subscription_id: str
    user_id: str
    expiration_date_time: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class TokenState:
    """
    OAuth token pair for one user.

    ``expires_at`` of None means the lifetime is unknown and the access token
    must be treated as expired.
    """

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


class SubscriptionRepository(Protocol):
    """
    Durable store of subscription records.

    All datetimes accepted and returned are timezone-aware UTC.
    """

    async def create(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Insert a new record. Raises PersistenceError if the id exists."""
        ...

    async def get(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        ...

    async def find_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        """Return the user's subscription (latest expiration wins if several)."""
        ...

    async def find_expiring(
        self, start: datetime, end: datetime
    ) -> List[SubscriptionRecord]:
        """Records with ``start <= expiration_date_time <= end``, soonest first."""
        ...

    async def find_expired(self, before: datetime) -> List[SubscriptionRecord]:
        """Records with ``expiration_date_time < before``."""
        ...

    async def update_expiration(
        self, subscription_id: str, expiration_date_time: datetime
    ) -> bool:
        """Set a new expiration. Returns False if the record does not exist."""
        ...

    async def delete(self, subscription_id: str) -> bool:
        """Remove a record. Returns False if it was already gone."""
        ...

    async def list_all(self) -> List[SubscriptionRecord]:
        ...


class TokenStore(Protocol):
    """Per-user token state storage."""

    async def get(self, user_id: str) -> Optional[TokenState]:
        ...

    async def set(self, user_id: str, state: TokenState) -> None:
        """Replace the user's token state in a single write."""
        ...

    async def clear(self, user_id: str) -> None:
        ...


def _to_record(row: Subscription) -> SubscriptionRecord:
    return SubscriptionRecord(
        subscription_id=row.subscription_id,
        user_id=row.user_id,
        expiration_date_time=ensure_utc(row.expiration_date_time),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlSubscriptionRepository:
    """
    SQLAlchemy-backed subscription repository.

    Each call runs in its own session and commits before returning, so a
    record is durable by the time the caller moves on.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(self, record: SubscriptionRecord) -> SubscriptionRecord:
        try:
            async with self.session_factory() as session:
                now = utcnow()
                row = Subscription(
                    subscription_id=record.subscription_id,
                    user_id=record.user_id,
                    expiration_date_time=ensure_utc(record.expiration_date_time),
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                await session.commit()
                return _to_record(row)
        except IntegrityError as e:
            raise PersistenceError(
                f"Subscription {record.subscription_id} already exists"
            ) from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database error creating subscription: {e}") from e

    async def get(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        try:
            async with self.session_factory() as session:
                row = await session.get(Subscription, subscription_id)
                return _to_record(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database error getting subscription: {e}") from e

    async def find_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Subscription)
                    .where(Subscription.user_id == user_id)
                    .order_by(Subscription.expiration_date_time.desc())
                    .limit(1)
                )
                row = result.scalar_one_or_none()
                return _to_record(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Database error getting subscription for user: {e}"
            ) from e

    async def find_expiring(
        self, start: datetime, end: datetime
    ) -> List[SubscriptionRecord]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Subscription)
                    .where(Subscription.expiration_date_time >= ensure_utc(start))
                    .where(Subscription.expiration_date_time <= ensure_utc(end))
                    .order_by(Subscription.expiration_date_time.asc())
                )
                return [_to_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Database error selecting expiring subscriptions: {e}"
            ) from e

    async def find_expired(self, before: datetime) -> List[SubscriptionRecord]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Subscription)
                    .where(Subscription.expiration_date_time < ensure_utc(before))
                    .order_by(Subscription.expiration_date_time.asc())
                )
                return [_to_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Database error selecting expired subscriptions: {e}"
            ) from e

    async def update_expiration(
        self, subscription_id: str, expiration_date_time: datetime
    ) -> bool:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(Subscription)
                    .where(Subscription.subscription_id == subscription_id)
                    .values(
                        expiration_date_time=ensure_utc(expiration_date_time),
                        updated_at=utcnow(),
                    )
                )
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Database error updating subscription expiration: {e}"
            ) from e

    async def delete(self, subscription_id: str) -> bool:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(Subscription).where(
                        Subscription.subscription_id == subscription_id
                    )
                )
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database error deleting subscription: {e}") from e

    async def list_all(self) -> List[SubscriptionRecord]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Subscription).order_by(
                        Subscription.expiration_date_time.asc()
                    )
                )
                return [_to_record(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database error listing subscriptions: {e}") from e


class SqlTokenStore:
    """
    SQLAlchemy-backed token store with Fernet-encrypted tokens.

    A row that can no longer be decrypted (for example after a key was retired)
    is reported as absent, which sends the user back through login.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        crypto: CryptoService,
    ):
        self.session_factory = session_factory
        self.crypto = crypto

    async def get(self, user_id: str) -> Optional[TokenState]:
        try:
            async with self.session_factory() as session:
                row = await session.get(UserToken, user_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database error getting token state: {e}") from e

        if row is None:
            return None

        try:
            access_token = self.crypto.decrypt_token(row.access_token_ciphertext)
            refresh_token = (
                self.crypto.decrypt_token(row.refresh_token_ciphertext)
                if row.refresh_token_ciphertext
                else None
            )
        except DecryptionError as e:
            logger.warning(
                "Stored tokens could not be decrypted", user_id=user_id, error=str(e)
            )
            return None

        return TokenState(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=ensure_utc(row.expires_at) if row.expires_at else None,
        )

    async def set(self, user_id: str, state: TokenState) -> None:
        try:
            access_ciphertext = self.crypto.encrypt_token(state.access_token)
            refresh_ciphertext = (
                self.crypto.encrypt_token(state.refresh_token)
                if state.refresh_token
                else None
            )
        except CryptoServiceError as e:
            raise PersistenceError(f"Token encryption failed: {e}") from e

        try:
            async with self.session_factory() as session:
                row = await session.get(UserToken, user_id)
                if row is None:
                    row = UserToken(user_id=user_id)
                    session.add(row)
                row.access_token_ciphertext = access_ciphertext
                row.refresh_token_ciphertext = refresh_ciphertext
                row.expires_at = (
                    ensure_utc(state.expires_at) if state.expires_at else None
                )
                row.updated_at = utcnow()
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database error storing token state: {e}") from e

    async def clear(self, user_id: str) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(
                    delete(UserToken).where(UserToken.user_id == user_id)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database error clearing token state: {e}") from e
