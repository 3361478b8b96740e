"""
Service wiring and FastAPI dependencies.

``build_container`` assembles stores, clients, managers and the renewal engine
once per application; routes reach them through ``request.app.state``.
"""

from dataclasses import dataclass
from typing import Annotated, Optional

import httpx
import structlog
from fastapi import Depends, HTTPException, Request, status

from webhook_renewal.config import Settings
from webhook_renewal.db.memory import MemorySubscriptionRepository, MemoryTokenStore
from webhook_renewal.db.repositories import (
    SqlSubscriptionRepository,
    SqlTokenStore,
    SubscriptionRepository,
    TokenStore,
)
from webhook_renewal.services.graph_client import GraphClient
from webhook_renewal.services.notifications import NotificationProcessor
from webhook_renewal.services.renewal_engine import RenewalEngine
from webhook_renewal.services.sessions import SESSION_COOKIE, SessionCookies
from webhook_renewal.services.subscription_manager import SubscriptionManager
from webhook_renewal.services.token_manager import TokenManager
from webhook_renewal.utils.crypto import CryptoService
from webhook_renewal.utils.locks import KeyedLocks
from webhook_renewal.utils.time import Clock, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    crypto: CryptoService
    storage_backend: str
    subscription_repository: SubscriptionRepository
    token_store: TokenStore
    locks: KeyedLocks
    graph_client: GraphClient
    token_manager: TokenManager
    subscription_manager: SubscriptionManager
    renewal_engine: RenewalEngine
    notification_processor: NotificationProcessor
    sessions: SessionCookies

    async def aclose(self) -> None:
        await self.renewal_engine.stop()
        await self.graph_client.aclose()
        await self.token_manager.aclose()


def build_container(
    settings: Settings,
    *,
    subscription_repository: Optional[SubscriptionRepository] = None,
    token_store: Optional[TokenStore] = None,
    clock: Clock = utcnow,
    graph_transport: Optional[httpx.AsyncBaseTransport] = None,
    token_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ServiceContainer:
    """
    Build every service the application needs.

    Storage is SQL when DATABASE_URL is set (the database must already be
    initialized) and in-memory otherwise; explicit stores override both.
    """
    crypto = CryptoService(settings.fernet_key)

    if subscription_repository is not None and token_store is not None:
        storage_backend = "custom"
    elif settings.database_url:
        from webhook_renewal.db.database import get_session_factory

        session_factory = get_session_factory(settings)
        subscription_repository = subscription_repository or SqlSubscriptionRepository(
            session_factory
        )
        token_store = token_store or SqlTokenStore(session_factory, crypto)
        storage_backend = "sql"
    else:
        subscription_repository = subscription_repository or MemorySubscriptionRepository()
        token_store = token_store or MemoryTokenStore()
        storage_backend = "memory"

    locks = KeyedLocks()
    graph_client = GraphClient(settings, transport=graph_transport)
    token_manager = TokenManager(
        settings, token_store, clock=clock, transport=token_transport
    )

    container = ServiceContainer(
        settings=settings,
        crypto=crypto,
        storage_backend=storage_backend,
        subscription_repository=subscription_repository,
        token_store=token_store,
        locks=locks,
        graph_client=graph_client,
        token_manager=token_manager,
        subscription_manager=SubscriptionManager(
            settings, subscription_repository, token_manager, graph_client, locks, clock=clock
        ),
        renewal_engine=RenewalEngine(
            settings, subscription_repository, token_manager, graph_client, locks, clock=clock
        ),
        notification_processor=NotificationProcessor(settings.webhook_secret),
        sessions=SessionCookies(crypto, settings.session_max_age_seconds),
    )

    logger.info("Service container built", storage_backend=storage_backend)
    return container


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return container


Container = Annotated[ServiceContainer, Depends(get_container)]


def get_optional_user_id(request: Request, container: Container) -> Optional[str]:
    """User id from the session cookie, or None when not logged in."""
    return container.sessions.read_session(request.cookies.get(SESSION_COOKIE))


def get_required_user_id(
    user_id: Annotated[Optional[str], Depends(get_optional_user_id)],
) -> str:
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user_id


OptionalUser = Annotated[Optional[str], Depends(get_optional_user_id)]
RequiredUser = Annotated[str, Depends(get_required_user_id)]
