"""
Database module for the webhook renewal service.

Single import point for storage: engine lifecycle, models, storage contracts
and their SQL and in-memory implementations.
"""

from webhook_renewal.db.database import (
    create_tables,
    drop_tables,
    get_engine,
    get_session_factory,
    on_shutdown,
    on_startup,
    ping,
)
from webhook_renewal.db.memory import MemorySubscriptionRepository, MemoryTokenStore
from webhook_renewal.db.models import Base, Subscription, UserToken
from webhook_renewal.db.repositories import (
    SqlSubscriptionRepository,
    SqlTokenStore,
    SubscriptionRecord,
    SubscriptionRepository,
    TokenState,
    TokenStore,
)

__all__ = [
    # Engine and factory
    "get_engine",
    "get_session_factory",
    # Lifecycle
    "on_startup",
    "on_shutdown",
    "create_tables",
    "drop_tables",
    # Health
    "ping",
    # Models
    "Base",
    "Subscription",
    "UserToken",
    # Storage contracts
    "SubscriptionRecord",
    "SubscriptionRepository",
    "TokenState",
    "TokenStore",
    # Implementations
    "SqlSubscriptionRepository",
    "SqlTokenStore",
    "MemorySubscriptionRepository",
    "MemoryTokenStore",
]
