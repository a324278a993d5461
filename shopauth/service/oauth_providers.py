from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlencode

import httpx

from shopauth.config import Settings
from shopauth.logging import get_logger, mask_email
from shopauth.service.auth import AuthResult, AuthService
from shopauth.service.client_context import ClientContext
from shopauth.service.errors import (
    AuthenticationError,
    ResourceNotFoundError,
    ValidationError,
)
from shopauth.service.one_time_store import OneTimeStore
from shopauth.storage.errors import ConstraintViolation
from shopauth.storage.models import User

logger = get_logger(__name__)

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "name": "Google",
        "color": "#4285F4",
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "name": "GitHub",
        "color": "#24292e",
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "facebook": {
        "name": "Facebook",
        "color": "#1877F2",
        "auth_url": "https://www.facebook.com/v18.0/dialog/oauth",
        "token_url": "https://graph.facebook.com/v18.0/oauth/access_token",
        "userinfo_url": "https://graph.facebook.com/me?fields=id,name,email,picture",
        "scope": "email public_profile",
    },
}

STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class OAuthIdentity:
    provider: str
    provider_uid: Optional[str]
    email: Optional[str]
    name: Optional[str] = None
    avatar: Optional[str] = None


def provider_metadata() -> dict:
    """Display data for the login page's provider buttons."""
    return {
        provider: {
            "name": config["name"],
            "authUrl": f"/v1/oauth2/authorization/{provider}",
            "color": config["color"],
        }
        for provider, config in OAUTH_PROVIDERS.items()
    }


def parse_userinfo(provider: str, userinfo: dict) -> OAuthIdentity:
    """Parse user info from OAuth provider into standardized format."""
    if provider == "github":
        login = userinfo.get("login")
        return OAuthIdentity(
            provider=provider,
            provider_uid=str(userinfo.get("id")) if userinfo.get("id") is not None else None,
            email=userinfo.get("email") or (f"{login}@github.com" if login else None),
            name=userinfo.get("name") or login,
            avatar=userinfo.get("avatar_url"),
        )
    if provider == "facebook":
        picture = userinfo.get("picture")
        data = picture.get("data") if isinstance(picture, dict) else None
        avatar = data.get("url") if isinstance(data, dict) else None
        return OAuthIdentity(
            provider=provider,
            provider_uid=userinfo.get("id"),
            email=userinfo.get("email"),
            name=userinfo.get("name"),
            avatar=avatar,
        )
    return OAuthIdentity(
        provider=provider,
        provider_uid=userinfo.get("id") or userinfo.get("sub"),
        email=userinfo.get("email"),
        name=userinfo.get("name"),
        avatar=userinfo.get("picture"),
    )


def split_name(name: Optional[str]) -> Tuple[str, str]:
    if name and " " in name:
        first, last = name.split(" ", 1)
        return first, last
    return (name or "User"), ""


def generate_username(email: str, provider: str) -> str:
    local_part = email.split("@")[0]
    sanitized = re.sub(r"[^a-zA-Z0-9_]", "_", local_part)
    return f"{sanitized}_{provider[:3]}"


class OAuthProviderClient:
    """Authorization-code flow against the configured social login providers."""

    def __init__(
        self,
        settings: Settings,
        auth: AuthService,
        state_store: OneTimeStore,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.auth = auth
        self.state_store = state_store
        self._transport = transport

    def _get_oauth_credentials(self, provider: str) -> Tuple[Optional[str], Optional[str]]:
        return (
            getattr(self.settings, f"oauth_{provider}_client_id", None),
            getattr(self.settings, f"oauth_{provider}_client_secret", None),
        )

    def callback_uri(self, provider: str) -> str:
        return f"{self.settings.oauth_redirect_base_url}/v1/auth/oauth2/callback/{provider}"

    def authorization_url(self, provider: str) -> str:
        if provider not in OAUTH_PROVIDERS:
            raise ResourceNotFoundError(f"Unsupported OAuth provider: {provider}")
        client_id, _ = self._get_oauth_credentials(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")

        state = secrets.token_urlsafe(24)
        self.state_store.put(state, {"provider": provider})

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self.callback_uri(provider),
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        return f"{provider_config['auth_url']}?{urlencode(params)}"

    def consume_state(self, provider: str, state: Optional[str]) -> bool:
        stored = self.state_store.pop(state) if state else None
        return bool(stored) and stored.get("provider") == provider

    async def fetch_identity(self, provider: str, code: str) -> OAuthIdentity:
        """Exchange an authorization code for the provider's view of the user."""
        client_id, client_secret = self._get_oauth_credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            raise AuthenticationError("OAuth provider is not configured")
        provider_config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self.callback_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise AuthenticationError("Provider returned no access token")

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                # GitHub requires a special header
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    raise AuthenticationError("Provider returned malformed user info")

                # A private GitHub email is only visible through the emails endpoint
                if provider == "github" and not userinfo.get("email"):
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        primary_email = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
                        if primary_email:
                            userinfo["email"] = primary_email
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
                error=str(exc),
            )
            raise AuthenticationError("OAuth code exchange failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise AuthenticationError("OAuth code exchange failed") from exc

        identity = parse_userinfo(provider, userinfo)
        if not identity.email:
            logger.error("oauth_identity_missing_email", provider=provider)
            raise AuthenticationError("Email not provided by OAuth2 provider")
        logger.info(
            "oauth_exchange_success", provider=provider, provider_uid=identity.provider_uid
        )
        return identity

    def resolve_user(self, identity: OAuthIdentity) -> User:
        """Find the local account for a provider identity, creating it on first login."""
        users = self.auth.users
        existing = users.get_user_by_email(identity.email)
        if existing is None:
            first_name, last_name = split_name(identity.name)
            username = generate_username(identity.email, identity.provider)
            if users.username_exists(username):
                username = f"{username}_{secrets.token_hex(2)}"
            try:
                user = self.auth.create_external_user(
                    identity.email,
                    username,
                    first_name=first_name,
                    last_name=last_name,
                    avatar=identity.avatar,
                )
            except ConstraintViolation as exc:
                # Created concurrently by a parallel callback
                user = users.get_user_by_email(identity.email)
                if user is None:
                    raise ResourceNotFoundError("User not found") from exc
            logger.info(
                "oauth_user_created",
                user=mask_email(identity.email),
                provider=identity.provider,
            )
            return user

        changes: dict = {}
        if identity.name and (existing.first_name is None or existing.last_name is None):
            first_name, last_name = split_name(identity.name)
            if existing.first_name is None:
                changes["first_name"] = first_name
            if existing.last_name is None:
                changes["last_name"] = last_name
        if identity.avatar and existing.avatar is None:
            changes["avatar"] = identity.avatar
        if changes:
            existing = users.update_user(existing.id, **changes) or existing
        return existing

    async def complete(
        self,
        provider: str,
        code: str,
        state: Optional[str],
        *,
        client: Optional[ClientContext] = None,
    ) -> AuthResult:
        """Finish a provider callback and sign the user in locally."""
        if provider not in OAUTH_PROVIDERS:
            raise ResourceNotFoundError(f"Unsupported OAuth provider: {provider}")
        if not self.consume_state(provider, state):
            logger.warning("oauth_state_invalid", provider=provider)
            raise AuthenticationError("Invalid or expired OAuth state")
        identity = await self.fetch_identity(provider, code)
        user = await asyncio.to_thread(self.resolve_user, identity)
        return await asyncio.to_thread(self.auth.oauth2_login, user, provider, client=client)
