from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from migente_auth.api.schemas import (
    AccountResponse,
    ActivateRequest,
    ActivationTokenRequest,
    AdminPasswordSetRequest,
    EmailAvailabilityResponse,
    Envelope,
    LegacyCredentialResponse,
    LegacyCredentialUpdate,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ResendActivationRequest,
    SignupRequest,
    SignupResponse,
    TokenRefreshRequest,
    TokenResponse,
    TokenRevokeRequest,
    _validate_email,
)
from migente_auth.logging import get_logger
from migente_auth.service.auth import AuthContext
from migente_auth.service.errors import RateLimitedError
from migente_auth.service.issuer import IssuedSession
from migente_auth.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


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


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    """Raise ``RateLimitedError`` once ``key`` exhausts its bucket."""
    limit = limit * 100 if runtime.settings.test_mode else limit
    allowed, _, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limited", key=key.split(":", 1)[0], retry_after=reset_seconds)
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after": max(1, reset_seconds)}
        )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().auth.authenticate(authorization)


async def require_admin(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not principal.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


def _token_envelope(issued: IssuedSession) -> Envelope:
    return Envelope(status="ok", data=TokenResponse(**issued.as_dict()))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Falls back to the legacy credential table for accounts that have not
    signed in since the primary store was introduced.

    Raises:
        401: If credentials are invalid or the account is not activated
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    issued = await runtime.auth.login(body.email, body.password, ip_addr=_client_ip(request))
    return _token_envelope(issued)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    """Exchange a refresh token for a new access and refresh token pair.

    The presented token is retired; presenting it again fails.
    """
    runtime = get_runtime()
    ip_addr = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"refresh:{ip_addr}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
    )
    issued = await runtime.auth.refresh(body.refresh_token, ip_addr=ip_addr)
    return _token_envelope(issued)


@router.post("/auth/revoke", response_model=Envelope, tags=["auth"])
async def revoke(body: TokenRevokeRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.revoke(
        body.refresh_token, ip_addr=_client_ip(request), reason=body.reason
    )
    return Envelope(status="ok", data={"status": "revoked"})


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: SignupRequest):
    """Create an unconfirmed account in both credential stores and email an activation link.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    user = await runtime.auth.register(
        body.email, body.password, body.profile.model_dump(exclude_none=True)
    )
    return Envelope(status="ok", data=SignupResponse(user_id=user.id))


@router.post("/auth/activate", response_model=Envelope, tags=["auth"])
async def activate(body: ActivateRequest):
    runtime = get_runtime()
    if not await runtime.auth.activate(body.user_id, body.email):
        raise _http_error("validation_error", "activation failed", status_code=400)
    return Envelope(status="ok", data={"status": "activated"})


@router.post("/auth/activate/confirm", response_model=Envelope, tags=["auth"])
async def confirm_activation(body: ActivationTokenRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"activate:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    if not await runtime.auth.confirm_activation(body.email, body.token):
        raise _http_error("validation_error", "activation failed", status_code=400)
    return Envelope(status="ok", data={"status": "activated"})


@router.post("/auth/activation/resend", response_model=Envelope, tags=["auth"])
async def resend_activation(body: ResendActivationRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    if not await runtime.auth.resend_activation(body.email):
        raise _http_error("not_found", "account not found", status_code=404)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/forgot", response_model=Envelope, status_code=202, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.forgot_password(body.email)
    return Envelope(status="ok", data={"status": "accepted"})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    # reset codes are short, so guessing is bounded per email
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        300,
    )
    if not await runtime.auth.reset_password(body.email, body.token, body.new_password):
        raise _http_error("not_found", "account not found", status_code=404)
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_user),
):
    """Change the caller's password in both stores and end their other sessions."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password:change:{principal.user_id}",
        limit=5,
        window_seconds=300,
    )
    await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"status": "changed"})


@router.get("/auth/email-available", response_model=Envelope, tags=["auth"])
async def email_available(email: str = Query(..., max_length=254)):
    try:
        normalized = _validate_email(email)
    except ValueError as exc:
        raise _http_error("validation_error", str(exc), status_code=400)
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "email-available", 60, 60)
    return Envelope(
        status="ok",
        data=EmailAvailabilityResponse(
            email=normalized, available=runtime.auth.email_available(normalized)
        ),
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=AccountResponse(**runtime.auth.get_account(principal.user_id))
    )


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_admin),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=AccountResponse(**runtime.auth.get_account(user_id)))


@router.put("/admin/users/{user_id}/password", response_model=Envelope, tags=["admin"])
async def admin_set_password(
    body: AdminPasswordSetRequest,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_admin),
):
    runtime = get_runtime()
    await runtime.auth.admin_set_password(user_id, body.new_password)
    logger.info("admin_password_set", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data={"status": "changed"})


@router.post("/admin/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_user(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_admin),
):
    runtime = get_runtime()
    await runtime.auth.deactivate(user_id)
    logger.info("admin_user_deactivated", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data={"status": "deactivated"})


@router.post("/admin/users/{user_id}/reactivate", response_model=Envelope, tags=["admin"])
async def admin_reactivate_user(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_admin),
):
    """Lift a deactivation lock. Activation links cannot do this."""
    runtime = get_runtime()
    await runtime.auth.reactivate(user_id)
    logger.info("admin_user_reactivated", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data={"status": "reactivated"})


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_purge_user(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_admin),
):
    if user_id == principal.user_id:
        raise _http_error("validation_error", "cannot delete your own account", status_code=400)
    runtime = get_runtime()
    await runtime.auth.purge_user(user_id)
    logger.info("admin_user_purged", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data={"status": "deleted"})


@router.put("/admin/credentials/{credential_id}", response_model=Envelope, tags=["admin"])
async def admin_update_credential(
    body: LegacyCredentialUpdate,
    credential_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(require_admin),
):
    """Edit an account through its legacy credential id; the primary record follows."""
    runtime = get_runtime()
    credential = await runtime.auth.update_legacy_credential(
        credential_id, email=body.email, password=body.password, active=body.active
    )
    logger.info(
        "admin_credential_updated", admin_id=principal.user_id, credential_id=credential_id
    )
    return Envelope(
        status="ok",
        data=LegacyCredentialResponse(
            id=credential.id,
            user_id=credential.user_id,
            email=credential.email,
            active=credential.active,
        ),
    )
