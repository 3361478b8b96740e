"""
Browser session and OAuth state cookies.

Both cookies are Fernet tokens: the payload is encrypted and authenticated,
and the Fernet timestamp bounds their lifetime on decryption. The session
cookie carries only the provider user id; tokens stay server-side.
"""

import json
import secrets
from typing import Optional

import structlog

from webhook_renewal.utils.crypto import CryptoService, DecryptionError

logger = structlog.get_logger(__name__)

SESSION_COOKIE = "wr_session"
STATE_COOKIE = "wr_oauth_state"

# OAuth round trips must finish within this window
STATE_TTL_SECONDS = 600


class SessionCookies:
    """Issue and read encrypted session and OAuth state cookies."""

    def __init__(self, crypto: CryptoService, session_max_age_seconds: int):
        self.crypto = crypto
        self.session_max_age_seconds = session_max_age_seconds

    # ===== Session =====

    def issue_session(self, user_id: str) -> str:
        payload = json.dumps({"uid": user_id})
        return self.crypto.encrypt_token(payload).decode("ascii")

    def read_session(self, cookie_value: Optional[str]) -> Optional[str]:
        """Return the user id in a session cookie, or None if absent/invalid/expired."""
        payload = self._decrypt(cookie_value, self.session_max_age_seconds)
        if payload is None:
            return None
        user_id = payload.get("uid")
        return user_id if isinstance(user_id, str) and user_id else None

    # ===== OAuth state =====

    @staticmethod
    def new_state_token() -> str:
        # 48 random bytes -> 64 character URL-safe token
        return secrets.token_urlsafe(48)

    def issue_state(self, state_token: str) -> str:
        payload = json.dumps({"state": state_token})
        return self.crypto.encrypt_token(payload).decode("ascii")

    def validate_state(self, cookie_value: Optional[str], returned_state: Optional[str]) -> bool:
        """Constant-time check of the callback ``state`` against the state cookie."""
        if not returned_state:
            return False
        payload = self._decrypt(cookie_value, STATE_TTL_SECONDS)
        if payload is None:
            return False
        expected = payload.get("state")
        if not isinstance(expected, str):
            return False
        return secrets.compare_digest(expected.encode(), returned_state.encode())

    def _decrypt(self, cookie_value: Optional[str], ttl: int) -> Optional[dict]:
        if not cookie_value:
            return None
        try:
            payload = json.loads(
                self.crypto.decrypt_token(cookie_value.encode("ascii"), ttl=ttl)
            )
        except (DecryptionError, UnicodeEncodeError, ValueError) as e:
            logger.debug("Rejected cookie", error=str(e))
            return None
        return payload if isinstance(payload, dict) else None
