from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from shopauth.logging import get_logger
from shopauth.service.errors import InvalidTokenError
from shopauth.storage.models import User

logger = get_logger(__name__)

ALGORITHM = "HS512"

Clock = Callable[[], float]


@dataclass(frozen=True)
class IssuedToken:
    token: str
    issued_at: float
    expires_at: float


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: Optional[str]
    username: Optional[str]
    role: Optional[str]
    issued_at: float
    expires_at: float


def ms_floor(seconds: float) -> float:
    """Epoch seconds truncated to whole milliseconds, the precision of ``iat``."""
    return math.floor(seconds * 1000) / 1000


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Mints and verifies HMAC-SHA-512 signed access tokens.

    Holds nothing but the secret and a few immutable claims, so one instance is
    shared freely between request threads. ``iat`` is kept at millisecond
    precision (floored) so two tokens minted in the same second still order
    correctly against per-user revocation markers.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_seconds: int = 3600,
        clock: Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha512).digest()
        )

    def mint(self, user: User) -> IssuedToken:
        issued_at = ms_floor(self._clock())
        expires_at = issued_at + self.ttl_seconds
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role,
            "iat": issued_at,
            "exp": expires_at,
        }
        header_enc = _encode_segment(
            json.dumps({"alg": ALGORITHM, "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return IssuedToken(token=token, issued_at=issued_at, expires_at=expires_at)

    def _decode(self, token: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise InvalidTokenError("Invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("Malformed token") from None

        # Reject anything not signed the way we sign, including "none"
        try:
            header = json.loads(_decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Malformed token") from None
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("Unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input), sig_b64):
            raise InvalidTokenError("Invalid token signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Malformed token") from None
        if not isinstance(payload, dict):
            raise InvalidTokenError("Malformed token")
        return payload

    def verify(self, token: str) -> TokenClaims:
        """Return the claims of a valid token or raise ``InvalidTokenError``.

        Only signature, algorithm, issuer, audience and the validity window are
        checked here; revocation is the caller's concern.
        """
        payload = self._decode(token)
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("Invalid token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError("Invalid token audience")
        subject = payload.get("sub")
        if not subject:
            raise InvalidTokenError("Token has no subject")
        try:
            issued_at = float(payload["iat"])
            expires_at = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Token has no validity window") from None
        now = self._clock()
        if now < issued_at:
            raise InvalidTokenError("Token not yet valid")
        if now >= expires_at:
            raise InvalidTokenError("Token has expired")
        return TokenClaims(
            user_id=str(subject),
            email=payload.get("email"),
            username=payload.get("username"),
            role=payload.get("role"),
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def remaining_ttl(self, token: str) -> int:
        """Whole seconds until ``token`` expires; 0 when expired or invalid."""
        try:
            claims = self.verify(token)
        except InvalidTokenError:
            return 0
        return max(0, math.ceil(claims.expires_at - self._clock()))
