"""
Shared test fixtures for the webhook renewal service.

Provides a controllable clock, fake Microsoft Graph and token endpoints built
on httpx.MockTransport, in-memory stores and fully wired services.
"""

import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

import httpx
from cryptography.fernet import Fernet
import pytest

# Set test environment before importing the package
os.environ.update(
    {
        "APP_ENV": "test",
        "LOG_LEVEL": "DEBUG",
    }
)
os.environ.pop("DATABASE_URL", None)
os.environ.pop("FERNET_KEYS", None)

from webhook_renewal.config import Settings
from webhook_renewal.db.memory import MemorySubscriptionRepository, MemoryTokenStore
from webhook_renewal.db.repositories import SubscriptionRecord, TokenState
from webhook_renewal.services.graph_client import GraphClient
from webhook_renewal.services.renewal_engine import RenewalEngine
from webhook_renewal.services.subscription_manager import SubscriptionManager
from webhook_renewal.services.token_manager import TokenManager
from webhook_renewal.utils.locks import KeyedLocks

T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

TEST_FERNET_KEY = Fernet.generate_key().decode()
TEST_CLIENT_STATE = "test-client-state-secret"


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeGraphProvider:
    """
    Minimal Microsoft Graph /subscriptions and /me emulation.

    Subscriptions created through POST (or seeded with ``add``) can be
    renewed and deleted; unknown ids answer 404. Failures can be scripted
    per subscription id.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.subscriptions: Dict[str, str] = {}
        self.patch_failures: Dict[str, Tuple[int, Dict[str, Any]]] = {}
        self.patch_timeouts: set = set()
        self.create_failure: Optional[Tuple[int, Dict[str, Any]]] = None
        self.me: Dict[str, Any] = {"id": "user-1", "displayName": "Test User"}
        self.messages: List[Dict[str, Any]] = []
        self.messages_failure: Optional[Tuple[int, Dict[str, Any]]] = None
        self._next_id = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def add(self, subscription_id: str, expiration: str = "2024-06-01T13:00:00Z") -> None:
        self.subscriptions[subscription_id] = expiration

    def calls(self, method: str, path_prefix: str = "") -> List[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method and self._path(r).startswith(path_prefix)
        ]

    @staticmethod
    def _path(request: httpx.Request) -> str:
        path = request.url.path
        return path[len("/v1.0"):] if path.startswith("/v1.0") else path

    @staticmethod
    def _error(status_code: int, code: str, message: str) -> httpx.Response:
        return httpx.Response(
            status_code, json={"error": {"code": code, "message": message}}
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = self._path(request)

        if path == "/me" and request.method == "GET":
            return httpx.Response(200, json=self.me)

        if path == "/me/messages" and request.method == "GET":
            if self.messages_failure:
                status_code, body = self.messages_failure
                return httpx.Response(status_code, json=body)
            top = int(request.url.params.get("$top", "10"))
            return httpx.Response(200, json={"value": self.messages[:top]})

        if path == "/subscriptions" and request.method == "POST":
            if self.create_failure:
                status_code, body = self.create_failure
                return httpx.Response(status_code, json=body)
            body = json.loads(request.content)
            self._next_id += 1
            subscription_id = f"sub-new-{self._next_id}"
            self.subscriptions[subscription_id] = body["expirationDateTime"]
            return httpx.Response(
                201,
                json={
                    "id": subscription_id,
                    "resource": body["resource"],
                    "changeType": body["changeType"],
                    "expirationDateTime": body["expirationDateTime"],
                },
            )

        if path.startswith("/subscriptions/"):
            subscription_id = path.split("/", 2)[2]

            if request.method == "PATCH":
                if subscription_id in self.patch_timeouts:
                    raise httpx.ReadTimeout("read timed out", request=request)
                if subscription_id in self.patch_failures:
                    status_code, body = self.patch_failures[subscription_id]
                    return httpx.Response(status_code, json=body)
                if subscription_id not in self.subscriptions:
                    return self._error(404, "ResourceNotFound", "Subscription not found")
                body = json.loads(request.content)
                self.subscriptions[subscription_id] = body["expirationDateTime"]
                return httpx.Response(
                    200,
                    json={
                        "id": subscription_id,
                        "expirationDateTime": body["expirationDateTime"],
                    },
                )

            if request.method == "DELETE":
                if self.subscriptions.pop(subscription_id, None) is None:
                    return self._error(404, "ResourceNotFound", "Subscription not found")
                return httpx.Response(204)

        return self._error(400, "BadRequest", f"Unexpected {request.method} {path}")


class FakeTokenEndpoint:
    """Identity provider token endpoint returning a scripted response."""

    def __init__(self):
        self.requests: List[Dict[str, str]] = []
        self.status_code = 200
        self.payload: Dict[str, Any] = {
            "access_token": "new-access-token",
            "refresh_token": "new-refresh-token",
            "expires_in": 3600,
        }
        self.raise_timeout = False

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(dict(parse_qsl(request.content.decode())))
        if self.raise_timeout:
            raise httpx.ConnectTimeout("connect timed out", request=request)
        return httpx.Response(self.status_code, json=self.payload)


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "app_env": "test",
        "app_url": "https://renewal.example.com",
        "fernet_key": TEST_FERNET_KEY,
        "webhook_secret": TEST_CLIENT_STATE,
        "graph_client_id": "test-client-id",
        "graph_client_secret": "test-client-secret",
        "renewal_enabled": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def seed_tokens(
    store,
    user_id: str,
    now: datetime,
    expires_in: Optional[timedelta] = timedelta(hours=1),
    refresh_token: Optional[str] = "refresh-token",
) -> TokenState:
    state = TokenState(
        access_token=f"access-{user_id}",
        refresh_token=refresh_token,
        expires_at=now + expires_in if expires_in is not None else None,
    )
    await store.set(user_id, state)
    return state


async def seed_subscription(
    repository, subscription_id: str, user_id: str, expiration: datetime
) -> SubscriptionRecord:
    return await repository.create(
        SubscriptionRecord(
            subscription_id=subscription_id,
            user_id=user_id,
            expiration_date_time=expiration,
        )
    )


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def graph_provider() -> FakeGraphProvider:
    return FakeGraphProvider()


@pytest.fixture
def token_endpoint() -> FakeTokenEndpoint:
    return FakeTokenEndpoint()


@pytest.fixture
def token_store() -> MemoryTokenStore:
    return MemoryTokenStore()


@pytest.fixture
def repository() -> MemorySubscriptionRepository:
    return MemorySubscriptionRepository()


@pytest.fixture
def locks() -> KeyedLocks:
    return KeyedLocks()


@pytest.fixture
async def token_manager(settings, token_store, clock, token_endpoint):
    manager = TokenManager(
        settings, token_store, clock=clock, transport=token_endpoint.transport
    )
    yield manager
    await manager.aclose()


@pytest.fixture
async def graph_client(settings, graph_provider):
    client = GraphClient(settings, transport=graph_provider.transport)
    yield client
    await client.aclose()


@pytest.fixture
def subscription_manager(
    settings, repository, token_manager, graph_client, locks, clock
) -> SubscriptionManager:
    return SubscriptionManager(
        settings, repository, token_manager, graph_client, locks, clock=clock
    )


@pytest.fixture
def renewal_engine(
    settings, repository, token_manager, graph_client, locks, clock
) -> RenewalEngine:
    return RenewalEngine(
        settings, repository, token_manager, graph_client, locks, clock=clock
    )
