from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request
from fastapi.responses import RedirectResponse

from shopauth.api.schemas import (
    AccountActionRequest,
    AuthResponse,
    Envelope,
    LoginRequest,
    MeResponse,
    OAuth2ExchangeRequest,
    PasswordChangeRequest,
    RefreshTokenRequest,
    RegisterRequest,
)
from shopauth.logging import get_logger
from shopauth.service.auth import AuthContext, AuthResult
from shopauth.service.client_context import ClientContext
from shopauth.service.errors import (
    AccountLockedError,
    ResourceNotFoundError,
    ServiceError,
)
from shopauth.service.oauth_providers import OAUTH_PROVIDERS, provider_metadata
from shopauth.service.principal import LocalPrincipal, resolve_user_id
from shopauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

DEFAULT_LOCK_REASON = "Locked by administrator"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _client(request: Request) -> ClientContext:
    runtime = get_runtime()
    return ClientContext.from_request(
        request, trust_proxy_headers=runtime.settings.trust_proxy_headers
    )


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(status="ok", data=AuthResponse.from_result(result).model_dump(by_alias=True))


def _percent(rate: float) -> str:
    return "%.2f%%" % (rate * 100)


async def get_current_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _bearer_token(authorization)
    if not token:
        raise _http_error("unauthorized", "Authentication required", status_code=401)
    runtime = get_runtime()
    return await asyncio.to_thread(runtime.auth.authenticate, token)


async def get_admin_user(
    request: Request, principal: AuthContext = Depends(get_current_user)
) -> AuthContext:
    if principal.role != "ADMIN":
        runtime = get_runtime()
        await asyncio.to_thread(
            runtime.events.record_access_denied,
            principal.email or f"user_{principal.user_id}",
            request.url.path,
            "Admin role required",
            _client(request).ip_address,
        )
        raise _http_error("forbidden", "Admin access required", status_code=403)
    return principal


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a customer account and sign it in.

    Raises:
        400: If the payload fails validation
        409: If the email or username is already registered
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.auth.register,
        body.email,
        body.username,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        client=_client(request),
    )
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: If the credentials are wrong or the account is inactive
        423: If the account is locked
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.auth.login, body.email, body.password, client=_client(request)
    )
    return _auth_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshTokenRequest):
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.auth.refresh_token, body.refresh_token)
    return _auth_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: RefreshTokenRequest):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.logout, body.refresh_token)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    user_id = resolve_user_id(LocalPrincipal(principal.user_id, principal.role))
    user = await asyncio.to_thread(runtime.auth.get_user, user_id)
    data = MeResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
        avatar=user.avatar,
        role=user.role,
        is_locked=user.is_locked,
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_current_user),
):
    """Change the caller's password and sign out every session they hold."""
    runtime = get_runtime()
    user_id = resolve_user_id(LocalPrincipal(principal.user_id, principal.role))
    await asyncio.to_thread(
        runtime.auth.change_password, user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "Password changed successfully"})


@router.post("/auth/account/lock", response_model=Envelope, tags=["admin"])
async def lock_account(
    body: AccountActionRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.auth.lock_account, body.user_id, body.reason or DEFAULT_LOCK_REASON
    )
    logger.info("admin_lock_account", admin_id=principal.user_id, user_id=body.user_id)
    return Envelope(status="ok", data={"message": "Account locked successfully"})


@router.post("/auth/account/unlock", response_model=Envelope, tags=["admin"])
async def unlock_account(
    body: AccountActionRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.unlock_account, body.user_id)
    logger.info("admin_unlock_account", admin_id=principal.user_id, user_id=body.user_id)
    return Envelope(status="ok", data={"message": "Account unlocked successfully"})


@router.get("/auth/security/stats", response_model=Envelope, tags=["admin"])
async def security_stats(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    blacklist = await asyncio.to_thread(runtime.blacklist.stats)
    events = await asyncio.to_thread(runtime.events.stats)
    data = {
        "tokenBlacklist": {
            "backend": blacklist.get("backend"),
            "currentSize": blacklist.get("current_size"),
            "maxSize": blacklist.get("max_size"),
            "markerCount": blacklist.get("marker_count"),
            "hitCount": blacklist.get("hit_count"),
            "missCount": blacklist.get("miss_count"),
            "hitRate": _percent(blacklist.get("hit_rate") or 0.0),
            "missRate": _percent(blacklist.get("miss_rate") or 0.0),
        },
        "securityEvents": {
            "failedAttemptsCount": events["current_failed_attempts_count"],
            "hitRate": _percent(events["hit_rate"]),
            "accessLogSize": events["access_log_size"],
            "storedEvents": events["stored_events"],
            "maxFailedAttempts": events["max_failed_attempts"],
            "lockoutDurationMinutes": events["lockout_duration_minutes"],
        },
    }
    return Envelope(status="ok", data=data)


@router.post("/auth/security/cleanup", response_model=Envelope, tags=["admin"])
async def security_cleanup(principal: AuthContext = Depends(get_admin_user)):
    """Run the maintenance sweep now instead of waiting for the next interval."""
    runtime = get_runtime()
    results = await asyncio.to_thread(runtime.maintenance.run)
    expired_attempts = await asyncio.to_thread(runtime.events.clear_expired_attempts)
    logger.info("admin_security_cleanup", admin_id=principal.user_id, **results)
    return Envelope(
        status="ok",
        data={
            "message": "Security cleanup completed",
            "sessionsInvalidated": results["sessions_invalidated"],
            "blacklistRemoved": results["blacklist_removed"],
            "securityEventsRemoved": results["security_events_removed"],
            "expiredAttemptsCleared": expired_attempts,
        },
    )


@router.get("/oauth2/authorization/{provider}", tags=["oauth2"])
async def oauth2_authorize(
    provider: str = Path(..., description="OAuth provider (google, github, facebook)"),
):
    """Send the browser to the provider's consent page."""
    runtime = get_runtime()
    url = await asyncio.to_thread(runtime.oauth.authorization_url, provider)
    return RedirectResponse(url, status_code=302)


@router.get("/auth/oauth2/callback/{provider}", tags=["oauth2"])
async def oauth2_callback(
    request: Request,
    provider: str = Path(...),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=512),
    error: Optional[str] = Query(None, max_length=256),
):
    """Finish the provider round trip and hand the result to the frontend.

    The browser always ends on the frontend: with a one-time ``code`` on
    success, or with an ``error`` reason on failure.
    """
    runtime = get_runtime()
    bridge = runtime.oauth_bridge
    if provider not in OAUTH_PROVIDERS or error or not code:
        logger.warning("oauth2_callback_rejected", provider=provider, provider_error=error)
        return RedirectResponse(bridge.failure_redirect("oauth2_failed", provider), status_code=302)
    try:
        result = await runtime.oauth.complete(provider, code, state, client=_client(request))
    except AccountLockedError:
        reason = "account_locked"
    except ResourceNotFoundError:
        reason = "user_not_found"
    except ServiceError as exc:
        logger.warning("oauth2_login_failed", provider=provider, error=exc.message)
        reason = "oauth2_failed"
    else:
        location = await asyncio.to_thread(bridge.success_redirect, result)
        return RedirectResponse(location, status_code=302)
    return RedirectResponse(bridge.failure_redirect(reason, provider), status_code=302)


@router.post("/auth/oauth2/exchange", response_model=Envelope, tags=["oauth2"])
async def oauth2_exchange(body: OAuth2ExchangeRequest):
    """Swap the one-time code from the callback redirect for the tokens."""
    if not body.code or not body.code.strip():
        raise _http_error("validation_error", "Code is required", status_code=400)
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.oauth_bridge.exchange, body.code.strip())
    return _auth_envelope(result)


@router.get("/auth/oauth2/providers", response_model=Envelope, tags=["oauth2"])
async def oauth2_providers():
    return Envelope(status="ok", data=provider_metadata())
