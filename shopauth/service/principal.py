from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from shopauth.service.errors import AuthenticationError


@dataclass(frozen=True)
class LocalPrincipal:
    """Caller authenticated with one of our own access tokens."""

    user_id: str
    role: Optional[str] = None


@dataclass(frozen=True)
class OAuthPrincipal:
    """Caller identified by a provider; ``attributes`` carries the local user id."""

    attributes: Mapping[str, Any] = field(default_factory=dict)
    provider: Optional[str] = None


@dataclass(frozen=True)
class RawClaims:
    claims: Mapping[str, Any] = field(default_factory=dict)


Principal = Union[LocalPrincipal, OAuthPrincipal, RawClaims]


def resolve_user_id(principal: Optional[Principal]) -> str:
    """Reduce any principal shape to the local user id, or raise 401."""
    if isinstance(principal, LocalPrincipal):
        user_id = principal.user_id
    elif isinstance(principal, OAuthPrincipal):
        user_id = principal.attributes.get("user_id") or principal.attributes.get("id")
    elif isinstance(principal, RawClaims):
        user_id = principal.claims.get("sub")
    else:
        user_id = None
    if not user_id:
        raise AuthenticationError("Authentication required")
    return str(user_id)
