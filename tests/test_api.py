"""
HTTP API tests.

The app runs with an injected service container wired to the fake provider,
the fake token endpoint and in-memory stores.
"""

import asyncio
from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from conftest import T0, TEST_CLIENT_STATE, make_settings, seed_subscription, seed_tokens
from webhook_renewal.app import create_app
from webhook_renewal.dependencies import build_container
from webhook_renewal.services.sessions import SESSION_COOKIE, STATE_COOKIE


def build_client(settings, clock, graph_provider, token_endpoint):
    container = build_container(
        settings,
        clock=clock,
        graph_transport=graph_provider.transport,
        token_transport=token_endpoint.transport,
    )
    return TestClient(create_app(settings, container=container)), container


@pytest.fixture
def api(settings, clock, graph_provider, token_endpoint):
    client, container = build_client(settings, clock, graph_provider, token_endpoint)
    with client:
        yield client, container


def log_in(client, container, user_id="user-1", with_tokens=True):
    if with_tokens:
        asyncio.run(seed_tokens(container.token_store, user_id, T0))
    client.cookies.set(SESSION_COOKIE, container.sessions.issue_session(user_id))


class TestHealthEndpoint:
    def test_health_check(self, api):
        client, _ = api

        response = client.get("/healthz")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["storage"] == {"backend": "memory"}
        assert data["webhook_url"] == "https://renewal.example.com/webhook"
        assert data["renewal_engine"]["state"] == "stopped"
        assert "refresh_attempts_total" in data["token_refresh"]

    def test_request_id_is_echoed(self, api):
        client, _ = api

        response = client.get("/healthz/live", headers={"X-Request-ID": "req-123"})

        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-123"
        assert "X-Response-Time" in response.headers

    def test_request_id_is_generated(self, api):
        client, _ = api

        response = client.get("/healthz/live")

        assert len(response.headers["X-Request-ID"]) == 36


class TestWebhookEndpoint:
    """Provider validation handshake and notification intake."""

    def test_get_echoes_validation_token(self, api):
        client, _ = api

        response = client.get("/webhook", params={"validationToken": "Validation: abc 123"})

        assert response.status_code == 200
        assert response.text == "Validation: abc 123"
        assert response.headers["content-type"].startswith("text/plain")

    def test_get_without_token_reports_readiness(self, api):
        client, _ = api

        response = client.get("/webhook")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "webhook_endpoint_ready"
        assert data["message"]
        assert datetime.fromisoformat(data["timestamp"]).tzinfo is not None


    def test_post_echoes_validation_token(self, api):
        client, _ = api

        response = client.post("/webhook?validationToken=token-xyz")

        assert response.status_code == 200
        assert response.text == "token-xyz"

    def test_post_notifications_accepted(self, api):
        client, _ = api

        response = client.post(
            "/webhook",
            json={
                "value": [
                    {"subscriptionId": "sub-1", "clientState": TEST_CLIENT_STATE},
                    {"subscriptionId": "sub-2", "clientState": "forged"},
                ]
            },
        )

        assert response.status_code == 202
        assert response.json() == {
            "success": True,
            "received": 2,
            "accepted": 1,
            "rejected": 1,
        }

    def test_post_without_value_array_is_rejected(self, api):
        client, _ = api

        response = client.post("/webhook", json={"notifications": []})

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Invalid notification format"}

    def test_post_invalid_json_is_rejected(self, api):
        client, _ = api

        response = client.post(
            "/webhook", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400


class TestSubscriptionEndpoints:
    """Subscribe / unsubscribe for the session user."""

    def test_status_when_logged_out(self, api):
        client, _ = api

        response = client.get("/api/user/status")

        assert response.status_code == 200
        assert response.json() == {
            "authenticated": False,
            "userId": None,
            "subscription": None,
        }

    def test_subscribe_requires_session(self, api):
        client, _ = api

        response = client.post("/api/subscriptions")

        assert response.status_code == 401
        data = response.json()
        assert data["error"] == "APP-401-AUTH"
        assert data["reauthenticate"] is True

    def test_tampered_session_is_ignored(self, api):
        client, _ = api
        client.cookies.set(SESSION_COOKIE, "not-a-fernet-token")

        assert client.post("/api/subscriptions").status_code == 401

    def test_subscribe_creates_then_updates(self, api, graph_provider):
        client, container = api
        log_in(client, container)

        first = client.post("/api/subscriptions")
        second = client.post("/api/subscriptions")

        assert first.status_code == 200
        assert first.json()["action"] == "created"
        assert first.json()["steps"] == ["created"]
        subscription_id = first.json()["subscription"]["subscriptionId"]
        assert first.json()["subscription"]["expirationDateTime"] == (
            (T0 + timedelta(minutes=4230)).isoformat()
        )

        assert second.json()["action"] == "updated"
        assert second.json()["subscription"]["subscriptionId"] == subscription_id

        status = client.get("/api/user/status").json()
        assert status["authenticated"] is True
        assert status["userId"] == "user-1"
        assert status["subscription"]["subscriptionId"] == subscription_id

    def test_subscribe_with_expired_login_asks_for_reauthentication(self, api):
        client, container = api
        log_in(client, container, with_tokens=False)

        response = client.post("/api/subscriptions")

        assert response.status_code == 401
        data = response.json()
        assert data["error"] == "AUTH-EXPIRED"
        assert data["reauthenticate"] is True
        assert "requestId" in data

    def test_provider_rejection_maps_to_bad_gateway(self, api, graph_provider):
        client, container = api
        log_in(client, container)
        graph_provider.create_failure = (
            403,
            {"error": {"code": "ExtensionError", "message": "Operation forbidden"}},
        )

        response = client.post("/api/subscriptions")

        assert response.status_code == 502
        data = response.json()
        assert data["error"] == "PROVIDER-REJECTED"
        assert data["providerCode"] == "ExtensionError"
        assert data["providerStatus"] == 403

    def test_provider_outage_maps_to_service_unavailable(self, api, graph_provider):
        client, container = api
        log_in(client, container)
        graph_provider.create_failure = (503, {"error": {"code": "ServiceUnavailable"}})

        response = client.post("/api/subscriptions")

        assert response.status_code == 503
        assert response.json()["error"] == "PROVIDER-UNAVAILABLE"

    def test_unsubscribe(self, api, graph_provider):
        client, container = api
        log_in(client, container)
        created = client.post("/api/subscriptions").json()

        response = client.delete("/api/subscriptions")

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "removed": True,
            "subscriptionId": created["subscription"]["subscriptionId"],
        }
        assert len(graph_provider.calls("DELETE")) == 1

    def test_unsubscribe_without_subscription(self, api):
        client, container = api
        log_in(client, container)

        response = client.delete("/api/subscriptions")

        assert response.json()["removed"] is False


class TestMessagesEndpoint:
    """Manual mail fetch for the session user."""

    def test_lists_latest_messages(self, api, graph_provider):
        client, container = api
        log_in(client, container)
        graph_provider.messages = [
            {
                "subject": "Quarterly report",
                "receivedDateTime": "2024-06-01T11:58:00Z",
                "from": {"emailAddress": {"name": "Ada", "address": "ada@example.com"}},
                "isRead": False,
            },
            {"subject": "No sender", "receivedDateTime": "2024-06-01T10:00:00Z", "isRead": True},
        ]

        response = client.get("/api/messages")

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "emails": [
                {
                    "subject": "Quarterly report",
                    "receivedDateTime": "2024-06-01T11:58:00Z",
                    "from": "Ada",
                    "isRead": False,
                },
                {
                    "subject": "No sender",
                    "receivedDateTime": "2024-06-01T10:00:00Z",
                    "from": "Unknown",
                    "isRead": True,
                },
            ],
        }
        request = graph_provider.calls("GET", "/me/messages")[0]
        assert request.headers["Authorization"] == "Bearer access-user-1"
        assert request.url.params["$top"] == "10"

    def test_top_is_forwarded(self, api, graph_provider):
        client, container = api
        log_in(client, container)

        client.get("/api/messages", params={"top": 5})

        assert graph_provider.calls("GET", "/me/messages")[0].url.params["$top"] == "5"

    def test_requires_session(self, api, graph_provider):
        client, _ = api

        response = client.get("/api/messages")

        assert response.status_code == 401
        assert response.json()["error"] == "APP-401-AUTH"
        assert graph_provider.requests == []

    def test_expired_login_asks_for_reauthentication(self, api, graph_provider):
        client, container = api
        log_in(client, container, with_tokens=False)

        response = client.get("/api/messages")

        assert response.status_code == 401
        data = response.json()
        assert data["error"] == "AUTH-EXPIRED"
        assert data["reauthenticate"] is True
        assert graph_provider.requests == []

    def test_provider_outage_maps_to_service_unavailable(self, api, graph_provider):
        client, container = api
        log_in(client, container)
        graph_provider.messages_failure = (503, {"error": {"code": "ServiceUnavailable"}})

        response = client.get("/api/messages")

        assert response.status_code == 503
        assert response.json()["error"] == "PROVIDER-UNAVAILABLE"


class TestManualRenewal:
    def test_manual_renewal_runs_one_pass(self, api, graph_provider):
        client, container = api
        asyncio.run(seed_tokens(container.token_store, "user-1", T0))
        asyncio.run(
            seed_subscription(
                container.subscription_repository, "sub-1", "user-1", T0 + timedelta(hours=1)
            )
        )
        graph_provider.add("sub-1")

        response = client.post("/api/renewal/manual")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["report"]["selected"] == 1
        assert data["report"]["renewed"] == 1
        assert container.renewal_engine.stats["ticks_completed"] == 1


class TestAuthFlow:
    """Login redirect, callback and logout."""

    def test_login_redirects_with_state_cookie(self, api):
        client, _ = api

        response = client.get("/auth/login", follow_redirects=False)

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert location.netloc == "login.microsoftonline.com"
        assert parse_qs(location.query)["client_id"] == ["test-client-id"]
        assert STATE_COOKIE in response.cookies

    def test_login_without_oauth_config(self, clock, graph_provider, token_endpoint):
        settings = make_settings(graph_client_id=None, graph_client_secret=None)
        client, _ = build_client(settings, clock, graph_provider, token_endpoint)

        with client:
            response = client.get("/auth/login", follow_redirects=False)

        assert response.status_code == 503

    def test_callback_completes_login(self, api, token_endpoint):
        client, container = api
        login = client.get("/auth/login", follow_redirects=False)
        state = parse_qs(urlparse(login.headers["location"]).query)["state"][0]

        response = client.get(
            "/auth/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == "/"
        assert token_endpoint.requests[0]["code"] == "auth-code"

        stored = asyncio.run(container.token_store.get("user-1"))
        assert stored.access_token == "new-access-token"

        status = client.get("/api/user/status").json()
        assert status["authenticated"] is True
        assert status["userId"] == "user-1"

    def test_callback_rejects_wrong_state(self, api, token_endpoint):
        client, _ = api
        client.get("/auth/login", follow_redirects=False)

        response = client.get(
            "/auth/callback",
            params={"code": "auth-code", "state": "forged"},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "AUTH-STATE-INVALID"
        assert token_endpoint.requests == []

    def test_callback_without_state_cookie(self, api):
        client, _ = api

        response = client.get(
            "/auth/callback", params={"code": "auth-code", "state": "anything"}
        )

        assert response.status_code == 400

    def test_callback_maps_provider_error(self, api):
        client, _ = api

        response = client.get("/auth/callback", params={"error": "access_denied"})

        assert response.status_code == 400
        assert response.json()["error"] == "AUTH-ACCESS-DENIED"

    def test_callback_exchange_failure(self, api, token_endpoint):
        client, _ = api
        token_endpoint.status_code = 400
        token_endpoint.payload = {"error": "invalid_grant"}
        login = client.get("/auth/login", follow_redirects=False)
        state = parse_qs(urlparse(login.headers["location"]).query)["state"][0]

        response = client.get(
            "/auth/callback",
            params={"code": "expired-code", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "AUTH-EXCHANGE-FAIL"

    def test_logout_drops_session(self, api):
        client, container = api
        log_in(client, container)

        response = client.post("/auth/logout")

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Logged out"}
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith(f"{SESSION_COOKIE}=")
        assert "Max-Age=0" in set_cookie


class TestSqlBackedApp:
    """Lifespan wiring with DATABASE_URL set."""

    def test_lifespan_opens_database_and_uses_sql_storage(self):
        settings = make_settings(database_url="sqlite+aiosqlite://")
        app = create_app(settings)

        with TestClient(app) as client:
            data = client.get("/healthz").json()
            container = app.state.container

            assert data["status"] == "ok"
            assert data["storage"]["backend"] == "sql"
            assert data["storage"]["status"] == "ok"
            assert container.storage_backend == "sql"
            assert container.renewal_engine.state.value == "stopped"
