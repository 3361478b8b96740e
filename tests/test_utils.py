"""
Tests for supporting utilities: log redaction, encryption, cookies, locks and
database URL handling.
"""

import asyncio

import pytest
from cryptography.fernet import Fernet

from conftest import TEST_FERNET_KEY, make_settings
from webhook_renewal.db.database import get_database_url
from webhook_renewal.services.sessions import SessionCookies
from webhook_renewal.utils.crypto import (
    CryptoService,
    CryptoServiceError,
    DecryptionError,
    redact_token_for_logging,
)
from webhook_renewal.utils.locks import KeyedLocks
from webhook_renewal.utils.logging import filter_sensitive_data


class TestLogRedaction:
    def test_tokens_and_secrets_are_masked(self):
        event = filter_sensitive_data(
            None,
            "info",
            {
                "event": "Token refresh successful",
                "access_token": "eyJ0eXAiOiJKV1QiLCJhbGciOi",
                "refresh_token": "short",
                "client_state": "my-shared-client-state",
                "user_id": "user-1",
            },
        )

        assert event["access_token"] == "eyJ0...ciOi"
        assert event["refresh_token"] == "***REDACTED***"
        assert "shared" not in event["client_state"]
        assert event["user_id"] == "user-1"

    def test_error_codes_are_kept(self):
        event = filter_sensitive_data(
            None,
            "warning",
            {"provider_code": "ResourceNotFound", "status_code": 404, "error_code": "invalid_grant"},
        )

        assert event == {
            "provider_code": "ResourceNotFound",
            "status_code": 404,
            "error_code": "invalid_grant",
        }


class TestCryptoService:
    def test_round_trip(self):
        crypto = CryptoService(TEST_FERNET_KEY)

        ciphertext = crypto.encrypt_token("refresh-token-value")

        assert b"refresh-token-value" not in ciphertext
        assert crypto.decrypt_token(ciphertext) == "refresh-token-value"

    def test_wrong_key_fails(self):
        ciphertext = CryptoService(TEST_FERNET_KEY).encrypt_token("value")

        with pytest.raises(DecryptionError):
            CryptoService(Fernet.generate_key().decode()).decrypt_token(ciphertext)

    def test_rotation_keys_decrypt_old_ciphertext(self, monkeypatch):
        old_key = Fernet.generate_key().decode()
        ciphertext = CryptoService(old_key).encrypt_token("value")
        monkeypatch.setenv("FERNET_KEYS", old_key)

        rotated = CryptoService(Fernet.generate_key().decode())

        assert rotated.get_key_count() == 2
        assert rotated.decrypt_token(ciphertext) == "value"

    def test_invalid_key_rejected(self):
        with pytest.raises(CryptoServiceError):
            CryptoService("not-a-key")

    def test_empty_token_rejected(self):
        with pytest.raises(CryptoServiceError):
            CryptoService(TEST_FERNET_KEY).encrypt_token("")

    def test_redact_token_for_logging(self):
        assert redact_token_for_logging("abcdefgh12345678") == "abcdefgh...5678"
        assert redact_token_for_logging("short") == "***REDACTED***"
        assert redact_token_for_logging(None) == "***REDACTED***"


class TestSessionCookies:
    @pytest.fixture
    def sessions(self):
        return SessionCookies(CryptoService(TEST_FERNET_KEY), session_max_age_seconds=3600)

    def test_session_round_trip(self, sessions):
        cookie = sessions.issue_session("user-1")

        assert "user-1" not in cookie
        assert sessions.read_session(cookie) == "user-1"

    @pytest.mark.parametrize("cookie", [None, "", "garbage", "ünïcode"])
    def test_invalid_session_reads_as_none(self, sessions, cookie):
        assert sessions.read_session(cookie) is None

    def test_state_validation(self, sessions):
        state = sessions.new_state_token()
        cookie = sessions.issue_state(state)

        assert len(state) == 64
        assert sessions.validate_state(cookie, state)
        assert not sessions.validate_state(cookie, "forged-" + state)
        assert not sessions.validate_state(None, state)
        assert not sessions.validate_state(cookie, None)

    def test_state_cookie_is_not_a_session(self, sessions):
        cookie = sessions.issue_state("some-state")

        assert sessions.read_session(cookie) is None


class TestKeyedLocks:
    async def test_is_locked(self):
        locks = KeyedLocks()

        async with locks.hold("user-1"):
            assert locks.is_locked("user-1")
            assert not locks.is_locked("user-2")

        assert not locks.is_locked("user-1")

    async def test_released_lock_is_dropped(self):
        locks = KeyedLocks()

        async with locks.hold("user-1"):
            async with locks.hold("user-2"):
                assert len(locks) == 2

        assert len(locks) == 0
        assert locks.waiters("user-1") == 0

    async def test_lock_kept_while_another_task_waits(self):
        locks = KeyedLocks()
        order = []

        async def second():
            async with locks.hold("user-1"):
                order.append("second")

        async with locks.hold("user-1"):
            task = asyncio.create_task(second())
            while locks.waiters("user-1") < 2:
                await asyncio.sleep(0)
            order.append("first")

        assert len(locks) == 1
        await task

        assert order == ["first", "second"]
        assert len(locks) == 0

    async def test_lock_dropped_after_error_in_block(self):
        locks = KeyedLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold("user-1"):
                raise RuntimeError("boom")

        assert len(locks) == 0


class TestDatabaseUrl:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("postgres://u:p@db/app", "postgresql+psycopg://u:p@db/app"),
            ("postgresql://u:p@db/app", "postgresql+psycopg://u:p@db/app"),
            ("postgresql+psycopg://u:p@db/app", "postgresql+psycopg://u:p@db/app"),
            ("sqlite:///renewal.db", "sqlite+aiosqlite:///renewal.db"),
        ],
    )
    def test_urls_are_converted_to_async_drivers(self, url, expected):
        assert get_database_url(make_settings(database_url=url)) == expected

    def test_sync_driver_rejected(self):
        with pytest.raises(ValueError):
            get_database_url(make_settings(database_url="mysql://u:p@db/app"))

    def test_missing_url_rejected(self):
        with pytest.raises(ValueError):
            get_database_url(make_settings())
