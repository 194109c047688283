from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from fitauth.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordConfirmRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    TokenRefreshRequest,
    TwoFactorVerifyRequest,
)
from fitauth.config import Role, Settings
from fitauth.logging import get_logger
from fitauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitedError,
    ServiceError,
    ValidationError,
)
from fitauth.service.runtime import Runtime
from fitauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

ACCESS_COOKIE = "access-token"
# deprecated alias of access-token, still written and read for older clients
LEGACY_ACCESS_COOKIE = "auth-token"
REFRESH_COOKIE = "refresh-token"
DEFAULT_REFRESH_REDIRECT = "/dashboard"
LOGIN_PATH = "/login"


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _request_info(request: Request) -> tuple[Optional[str], Optional[str]]:
    """Client address and user agent, honouring the usual proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.headers.get("x-real-ip") or (
            request.client.host if request.client else None
        )
    return ip_address, request.headers.get("user-agent")


def extract_access_token(request: Request) -> Optional[str]:
    for cookie_name in (LEGACY_ACCESS_COOKIE, ACCESS_COOKIE):
        token = request.cookies.get(cookie_name)
        if token:
            return token
    authorization = request.headers.get("authorization")
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


async def get_current_user(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> User:
    token = extract_access_token(request)
    if not token:
        raise AuthenticationError("Authentication required")
    claims = runtime.tokens.verify(token)
    user = runtime.store.get_user(str(claims.get("userId", "")))
    if not user or not user.is_active:
        raise AuthenticationError("Authentication required")
    return user


def require_role(*roles: Role | str):
    """Dependency factory; with no roles it only requires an authenticated user."""
    allowed = {role.value if isinstance(role, Role) else str(role).upper() for role in roles}

    async def _require_role(user: User = Depends(get_current_user)) -> User:
        if allowed and user.role not in allowed:
            logger.warning("role_check_failed", user_id=user.id, role=user.role)
            raise ForbiddenError("Insufficient permissions")
        return user

    return _require_role


def _apply_auth_cookies(
    response: Response,
    settings: Settings,
    access_token: str,
    access_max_age: int,
    *,
    refresh_token: Optional[str] = None,
    refresh_max_age: Optional[int] = None,
) -> None:
    cookie_opts = {
        "httponly": True,
        "secure": settings.is_production,
        "samesite": "lax",
        "path": "/",
    }
    for cookie_name in (ACCESS_COOKIE, LEGACY_ACCESS_COOKIE):
        response.set_cookie(cookie_name, access_token, max_age=access_max_age, **cookie_opts)
    if refresh_token:
        response.set_cookie(
            REFRESH_COOKIE, refresh_token, max_age=refresh_max_age, **cookie_opts
        )


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    for cookie_name in (ACCESS_COOKIE, LEGACY_ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            cookie_name,
            path="/",
            secure=settings.is_production,
            httponly=True,
            samesite="lax",
        )


async def _enforce_rate_limit(
    runtime: Runtime,
    action: str,
    identifier: Optional[str],
    *,
    response: Optional[Response] = None,
) -> None:
    """Consume one point for the route; raises 429 once the identifier is blocked."""
    if not runtime.settings.rate_limit_enabled:
        return
    result = await runtime.rate_limiter.check(action, identifier or "unknown")
    if response is not None:
        for name, value in result.headers().items():
            response.headers[name] = value
    if not result.allowed:
        raise RateLimitedError(
            "Too many attempts. Please try again later.",
            retry_after=result.retry_after_seconds,
            headers=result.headers(),
        )


def _safe_redirect_target(target: Optional[str]) -> str:
    if not target or not target.startswith("/") or target.startswith("//") or "\\" in target:
        return DEFAULT_REFRESH_REDIRECT
    return target


@router.post("/register", response_model=Envelope, status_code=201)
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Create a CLIENT or TRAINER account.

    Raises:
        400: invalid payload
        409: email already registered
        429: too many registrations from this address
    """
    ip_address, user_agent = _request_info(request)
    await _enforce_rate_limit(runtime, "register", ip_address, response=response)
    user = await runtime.credentials.register(
        body.email,
        body.password,
        body.name,
        role=body.role,
        phone=body.phone,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return Envelope(success=True, data={"user": user.public_dict()})


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Verify email/password and set the access, legacy and refresh cookies.

    Raises:
        401: unknown email or wrong password (same message for both)
        423: account locked after repeated failures
        429: too many attempts from this address
    """
    ip_address, user_agent = _request_info(request)
    await _enforce_rate_limit(runtime, "login", ip_address, response=response)
    try:
        user = await runtime.credentials.verify(
            body.email, body.password, ip_address=ip_address, user_agent=user_agent
        )
    except NotFoundError:
        raise InvalidCredentialsError()
    if runtime.settings.rate_limit_enabled:
        await runtime.rate_limiter.reset("login", ip_address or "unknown")

    issued = runtime.tokens.issue_login_tokens(
        user,
        remember_me=body.remember_me,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    _apply_auth_cookies(
        response,
        runtime.settings,
        issued.access_token,
        issued.access_max_age,
        refresh_token=issued.refresh_token,
        refresh_max_age=issued.refresh_max_age,
    )
    return Envelope(
        success=True,
        data={
            "user": user.public_dict(),
            "accessToken": issued.access_token,
            "requiresTwoFactor": user.two_factor_enabled,
        },
    )


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    """Revoke the cookie's refresh token, or every token of the session owner with ``logoutAll``.

    The owner comes from the access token, or from the refresh cookie once the
    access token has expired.

    Cookies are cleared even when revocation fails.
    """
    ip_address, user_agent = _request_info(request)
    logout_all = bool(body and body.logout_all)
    refresh_token = request.cookies.get(REFRESH_COOKIE, "")
    try:
        user_id = (
            runtime.tokens.session_owner(extract_access_token(request), refresh_token)
            if logout_all
            else None
        )
        if user_id:
            await runtime.tokens.revoke_all(
                user_id, ip_address=ip_address, user_agent=user_agent
            )
        else:
            await runtime.tokens.revoke(
                refresh_token,
                ip_address=ip_address,
                user_agent=user_agent,
            )
    except ServiceError as exc:
        logger.warning("logout_revocation_failed", error_code=exc.error_code, logout_all=logout_all)
    except Exception as exc:
        logger.error("logout_revocation_failed", error=str(exc), logout_all=logout_all)
    _clear_auth_cookies(response, runtime.settings)
    return Envelope(
        success=True,
        data={"message": "Logged out from all devices" if logout_all else "Logged out"},
    )


@router.get("/refresh")
async def refresh_redirect(
    request: Request,
    redirect: str = Query(DEFAULT_REFRESH_REDIRECT, max_length=2048),
    runtime: Runtime = Depends(get_runtime),
):
    """Browser flow: renew the access cookie from the refresh cookie and bounce back."""
    ip_address, user_agent = _request_info(request)
    try:
        result = await runtime.tokens.refresh(
            request.cookies.get(REFRESH_COOKIE, ""),
            ip_address=ip_address,
            user_agent=user_agent,
        )
    except ServiceError as exc:
        logger.info("refresh_redirect_failed", error_code=exc.error_code)
        failed = RedirectResponse(LOGIN_PATH, status_code=307)
        _clear_auth_cookies(failed, runtime.settings)
        return failed
    redirect_response = RedirectResponse(_safe_redirect_target(redirect), status_code=307)
    _apply_auth_cookies(
        redirect_response,
        runtime.settings,
        result.access_token,
        result.access_max_age,
        refresh_token=result.refresh_token,
        refresh_max_age=result.refresh_max_age,
    )
    return redirect_response


@router.post("/refresh", response_model=Envelope)
async def refresh(
    body: TokenRefreshRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    if not body.refresh_token:
        raise ValidationError("Refresh token required", detail={"field": "refreshToken"})
    ip_address, user_agent = _request_info(request)
    result = await runtime.tokens.refresh(
        body.refresh_token, ip_address=ip_address, user_agent=user_agent
    )
    _apply_auth_cookies(
        response,
        runtime.settings,
        result.access_token,
        result.access_max_age,
        refresh_token=result.refresh_token,
        refresh_max_age=result.refresh_max_age,
    )
    data = {"accessToken": result.access_token, "user": result.user.public_dict()}
    if result.refresh_token:
        data["refreshToken"] = result.refresh_token
    return Envelope(success=True, data=data)


@router.post("/2fa/setup", response_model=Envelope)
async def two_factor_setup(
    user: User = Depends(require_role()),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(success=True, data=await runtime.two_factor.setup(user.id))


@router.post("/2fa/verify", response_model=Envelope)
async def two_factor_verify(
    body: TwoFactorVerifyRequest,
    request: Request,
    response: Response,
    user: User = Depends(require_role()),
    runtime: Runtime = Depends(get_runtime),
):
    ip_address, user_agent = _request_info(request)
    await _enforce_rate_limit(runtime, "twoFactor", user.id, response=response)
    if body.action == "enable":
        await runtime.two_factor.verify_and_enable(
            user.id, body.token, ip_address=ip_address, user_agent=user_agent
        )
        return Envelope(
            success=True,
            data={"message": "Two-factor authentication enabled successfully"},
        )
    method = await runtime.two_factor.verify_login(
        user.id, body.token, ip_address=ip_address, user_agent=user_agent
    )
    return Envelope(
        success=True, data={"message": "2FA verification successful", "method": method}
    )


@router.post("/2fa/disable", response_model=Envelope)
async def two_factor_disable(
    body: PasswordConfirmRequest,
    request: Request,
    response: Response,
    user: User = Depends(require_role()),
    runtime: Runtime = Depends(get_runtime),
):
    ip_address, user_agent = _request_info(request)
    await _enforce_rate_limit(runtime, "sensitive", user.id, response=response)
    await runtime.two_factor.disable(
        user.id, body.password, ip_address=ip_address, user_agent=user_agent
    )
    return Envelope(success=True, data={"message": "Two-factor authentication disabled"})


@router.get("/2fa/backup-codes", response_model=Envelope)
async def backup_codes_count(
    user: User = Depends(require_role()),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(
        success=True, data={"count": runtime.two_factor.get_backup_codes_count(user.id)}
    )


@router.post("/2fa/backup-codes", response_model=Envelope)
async def regenerate_backup_codes(
    body: PasswordConfirmRequest,
    request: Request,
    response: Response,
    user: User = Depends(require_role()),
    runtime: Runtime = Depends(get_runtime),
):
    ip_address, user_agent = _request_info(request)
    await _enforce_rate_limit(runtime, "sensitive", user.id, response=response)
    codes = await runtime.two_factor.regenerate_backup_codes(
        user.id, body.password, ip_address=ip_address, user_agent=user_agent
    )
    return Envelope(success=True, data={"backupCodes": codes})


@router.post("/password-reset/request", response_model=Envelope)
async def password_reset_request(
    body: PasswordResetRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Always answers the same way so the endpoint cannot be used to probe emails."""
    ip_address, user_agent = _request_info(request)
    await _enforce_rate_limit(runtime, "passwordReset", ip_address, response=response)
    try:
        await runtime.credentials.request_password_reset(
            body.email, ip_address=ip_address, user_agent=user_agent
        )
    except NotFoundError:
        pass
    return Envelope(
        success=True,
        data={"message": "If the email exists, password reset instructions have been sent"},
    )


@router.post("/password-reset/confirm", response_model=Envelope)
async def password_reset_confirm(
    body: PasswordResetConfirm,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    ip_address, user_agent = _request_info(request)
    await _enforce_rate_limit(runtime, "passwordReset", ip_address, response=response)
    await runtime.credentials.reset_password(
        body.token, body.password, ip_address=ip_address, user_agent=user_agent
    )
    _clear_auth_cookies(response, runtime.settings)
    return Envelope(success=True, data={"message": "Password has been reset"})


@router.get("/me", response_model=Envelope)
async def me(user: User = Depends(require_role())):
    data = user.public_dict()
    data["twoFactorState"] = user.two_factor_state
    return Envelope(success=True, data={"user": data})


@router.get("/admin/audit-logs", response_model=Envelope)
async def admin_audit_logs(
    user_id: Optional[str] = Query(None, alias="userId", max_length=64),
    action: Optional[str] = Query(None, max_length=64),
    limit: int = Query(100, ge=1, le=500),
    _admin: User = Depends(require_role(Role.ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    entries = runtime.audit.list_entries(user_id=user_id, action=action, limit=limit)
    return Envelope(success=True, data={"entries": [entry.to_dict() for entry in entries]})
