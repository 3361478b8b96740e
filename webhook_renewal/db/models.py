"""
Database models for the webhook renewal service.

This module defines SQLAlchemy models for:
- Provider subscriptions tracked for renewal
- Per-user OAuth token state with encrypted token storage

Security: OAuth tokens are encrypted at rest using Fernet encryption.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, LargeBinary, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column that always round-trips as UTC.

    PostgreSQL returns aware values already; SQLite drops the offset, so
    values are normalized to UTC on the way in and tagged UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Subscription(Base):
    """
    Provider subscription tracked for proactive renewal.

    Attributes:
        subscription_id: Provider-issued subscription identifier (immutable)
        user_id: Provider user identifier of the owner (immutable)
        expiration_date_time: Provider-confirmed lease expiration (UTC)
        created_at: Record creation timestamp
        updated_at: Last modification timestamp
    """

    __tablename__ = "subscriptions"

    subscription_id: Mapped[str] = mapped_column(
        String(255), primary_key=True, doc="Provider-issued subscription identifier"
    )

    user_id: Mapped[str] = mapped_column(
        String(255), nullable=False, doc="Provider user identifier of the owner"
    )

    expiration_date_time: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, doc="Provider-confirmed lease expiration"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=func.now(),
        doc="Record creation timestamp",
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
        doc="Last modification timestamp",
    )

    __table_args__ = (
        # At most one live subscription per user is enforced by admission,
        # not by a unique constraint
        Index("ix_subscriptions_user_id", "user_id"),
        # Renewal pass selects by expiration window
        Index("ix_subscriptions_expiration", "expiration_date_time"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.subscription_id}, user_id={self.user_id}, "
            f"expires={self.expiration_date_time})>"
        )


class UserToken(Base):
    """
    OAuth token state for one user identity.

    Attributes:
        user_id: Provider user identifier
        access_token_ciphertext: Encrypted access token
        refresh_token_ciphertext: Encrypted refresh token (if one was issued)
        expires_at: Access token expiration (NULL = unknown, treat as expired)
        updated_at: Last modification timestamp
    """

    __tablename__ = "user_tokens"

    user_id: Mapped[str] = mapped_column(
        String(255), primary_key=True, doc="Provider user identifier"
    )

    access_token_ciphertext: Mapped[bytes] = mapped_column(
        LargeBinary, nullable=False, doc="Encrypted access token (Fernet encrypted)"
    )

    refresh_token_ciphertext: Mapped[Optional[bytes]] = mapped_column(
        LargeBinary, nullable=True, doc="Encrypted refresh token (Fernet encrypted)"
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True, doc="Access token expiration timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
        doc="Last modification timestamp",
    )

    def __repr__(self) -> str:
        return f"<UserToken(user_id={self.user_id}, expires_at={self.expires_at})>"
