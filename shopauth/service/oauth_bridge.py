from __future__ import annotations

import secrets
from urllib.parse import urlencode

from shopauth.logging import get_logger
from shopauth.service.auth import AuthResult
from shopauth.service.errors import InvalidOrExpiredCodeError
from shopauth.service.one_time_store import OneTimeStore

logger = get_logger(__name__)

CODE_TTL_SECONDS = 60


class OAuth2HandshakeBridge:
    """Hands an OAuth2 login result from the backend origin to the frontend.

    Tokens never travel in the redirect URL: the provider-success handler
    stores the result under a short-lived random code, the browser carries
    only that code, and the frontend swaps it for the tokens exactly once.
    """

    def __init__(self, store: OneTimeStore, *, frontend_url: str) -> None:
        self.store = store
        self.frontend_url = frontend_url.rstrip("/")

    def issue(self, result: AuthResult) -> str:
        code = secrets.token_urlsafe(32)
        self.store.put(code, result.to_dict())
        logger.info("oauth2_code_issued", user_id=result.user.id, provider=result.provider)
        return code

    def exchange(self, code: str) -> AuthResult:
        payload = self.store.pop(code) if code else None
        if payload is None:
            logger.warning("oauth2_code_rejected")
            raise InvalidOrExpiredCodeError("Invalid or expired code")
        return AuthResult.from_dict(payload)

    def success_redirect(self, result: AuthResult) -> str:
        return f"{self.frontend_url}/auth/oauth2/callback?{urlencode({'code': self.issue(result)})}"

    def failure_redirect(self, reason: str, provider: str) -> str:
        query = urlencode({"error": reason, "provider": provider.upper()})
        return f"{self.frontend_url}/auth/login?{query}"
