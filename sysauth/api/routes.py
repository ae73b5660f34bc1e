from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from sysauth.api.error_handling import auth_error_response
from sysauth.api.schemas import (
    ApproveByCodeRequest,
    ApprovalTokenRequest,
    DeviceResponse,
    Envelope,
    LoginRequest,
    MagicLinkLoginRequest,
    MagicLinkRequest,
    MfaConfirmRequest,
    MfaSetupRequest,
    MfaVerifyRequest,
    PasskeyLoginRequest,
    PermissionsUpdateRequest,
    ResendApprovalRequest,
    TokenRefreshRequest,
)
from sysauth.logging import get_logger
from sysauth.service.errors import AuthenticationError, AuthError, ForbiddenError, ServiceError
from sysauth.service.orchestrator import LoginContext
from sysauth.service.outcomes import PENDING_OUTCOMES, AuthContext, principal_payload
from sysauth.service.runtime import get_runtime
from sysauth.storage.models import Device

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

PERMISSION_USERS_READ = "system:users:read"
PERMISSION_USERS_UPDATE = "system:users:update"


def _render(outcome: Any):
    """Map a service outcome onto the HTTP envelope.

    Pending outcomes are not service failures, but clients must not treat them
    as a session, so they render as their 403 error kind.
    """
    if isinstance(outcome, AuthError):
        return auth_error_response(outcome)
    if isinstance(outcome, PENDING_OUTCOMES):
        return auth_error_response(outcome.to_error())
    return Envelope(status="ok", data=outcome.to_payload())


def _login_context(request: Request, body: Any = None) -> LoginContext:
    return LoginContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        device_id=getattr(body, "device_id", None),
        fingerprint=getattr(body, "fingerprint", None),
        remember_me=bool(getattr(body, "remember_me", False)),
        captcha_token=getattr(body, "captcha_token", None),
    )


def _device_response(device: Device) -> DeviceResponse:
    return DeviceResponse(
        session_id=device.id,
        device_id=device.device_id,
        status=device.status.value,
        display_name=device.display_name,
        device_type=device.device_type,
        ip_address=device.ip_address,
        location=device.location.display,
        risk_score=device.risk_score,
        risk_factors=list(device.risk_factors),
        trusted_at=device.trusted_at.isoformat() if device.trusted_at else None,
        last_used_at=device.last_used_at.isoformat() if device.last_used_at else None,
    )


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    if not authorization:
        raise AuthenticationError("missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("malformed authorization header")
    result = await get_runtime().auth.authenticate(token.strip())
    if isinstance(result, AuthError):
        raise ServiceError(
            result.message,
            status_code=result.status_code,
            error_code=result.code,
            detail=result.details(),
        )
    return result


def require_permission(permission: str) -> Callable:
    async def _dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not ctx.has_permission(permission):
            logger.warning(
                "permission_denied", principal_id=ctx.principal_id, permission=permission
            )
            raise ForbiddenError(
                "insufficient permissions", detail={"required": permission}
            )
        return ctx

    return _dependency


# -- sign-in -----------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Password login.

    Returns a session, or a 403 carrying an MFA, MFA-setup or device-approval
    token when the login must pause.
    """
    outcome = await get_runtime().auth.login_password(
        body.email, body.password, _login_context(request, body)
    )
    return _render(outcome)


@router.post("/auth/magic-link", response_model=Envelope, tags=["auth"])
async def request_magic_link(body: MagicLinkRequest, request: Request):
    outcome = await get_runtime().auth.request_magic_link(
        body.email, _login_context(request, body)
    )
    return _render(outcome)


@router.post("/auth/magic-link/login", response_model=Envelope, tags=["auth"])
async def magic_link_login(body: MagicLinkLoginRequest, request: Request):
    outcome = await get_runtime().auth.login_magic_link(
        body.token, _login_context(request, body)
    )
    return _render(outcome)


@router.post("/auth/passkey/options", response_model=Envelope, tags=["auth"])
async def passkey_options():
    return _render(await get_runtime().auth.begin_passkey_login())


@router.post("/auth/passkey/login", response_model=Envelope, tags=["auth"])
async def passkey_login(body: PasskeyLoginRequest, request: Request):
    outcome = await get_runtime().auth.login_passkey(
        body.challenge_id, body.assertion, _login_context(request, body)
    )
    return _render(outcome)


# -- multi-factor ------------------------------------------------------------


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(body: MfaVerifyRequest, request: Request):
    outcome = await get_runtime().auth.verify_mfa(
        body.mfa_token, body.code, _login_context(request, body)
    )
    return _render(outcome)


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(body: MfaSetupRequest):
    return _render(await get_runtime().auth.begin_mfa_setup(body.setup_token))


@router.post("/auth/mfa/confirm", response_model=Envelope, tags=["mfa"])
async def mfa_confirm(body: MfaConfirmRequest, request: Request):
    """Enable MFA and continue the paused login.

    Backup codes are returned once, either with the session or inside the
    device-approval payload.
    """
    outcome = await get_runtime().auth.confirm_mfa_setup(
        body.setup_token, body.code, _login_context(request, body)
    )
    return _render(outcome)


# -- device approval ---------------------------------------------------------


@router.post("/auth/device-approval/resend", response_model=Envelope, tags=["devices"])
async def resend_device_approval(body: ResendApprovalRequest, request: Request):
    outcome = await get_runtime().auth.resend_device_approval(
        body.approval_token, _login_context(request, body)
    )
    return _render(outcome)


@router.post("/auth/device-approval/approve", response_model=Envelope, tags=["devices"])
async def approve_device(body: ApproveByCodeRequest):
    return _render(
        await get_runtime().auth.approve_device_by_code(body.approval_token, body.code)
    )


@router.post(
    "/auth/device-approval/approve-link", response_model=Envelope, tags=["devices"]
)
async def approve_device_link(body: ApprovalTokenRequest):
    return _render(await get_runtime().auth.approve_device_by_link(body.approval_token))


@router.post("/auth/device-approval/deny", response_model=Envelope, tags=["devices"])
async def deny_device(body: ApprovalTokenRequest):
    return _render(await get_runtime().auth.deny_device(body.approval_token))


# -- session lifecycle -------------------------------------------------------


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    outcome = await get_runtime().auth.refresh(body.refresh_token, _login_context(request))
    return _render(outcome)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: TokenRefreshRequest):
    return _render(await get_runtime().auth.logout(body.refresh_token))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: AuthContext = Depends(get_auth_context)):
    return Envelope(status="ok", data=ctx.to_payload())


# -- administration ----------------------------------------------------------


@router.put(
    "/admin/principals/{principal_id}/permissions", response_model=Envelope, tags=["admin"]
)
async def update_permissions(
    body: PermissionsUpdateRequest,
    principal_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission(PERMISSION_USERS_UPDATE)),
):
    """Replace a principal's permissions and force every session to sign in again."""
    result = await get_runtime().admin.update_permissions(
        ctx.principal_id, principal_id, body.permissions
    )
    if isinstance(result, AuthError):
        return auth_error_response(result)
    return Envelope(status="ok", data={"principal_id": principal_id, "permissions": result})


@router.post(
    "/admin/principals/{principal_id}/deactivate", response_model=Envelope, tags=["admin"]
)
async def deactivate_principal(
    principal_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission(PERMISSION_USERS_UPDATE)),
):
    runtime = get_runtime()
    result = await runtime.admin.deactivate_principal(ctx.principal_id, principal_id)
    if isinstance(result, AuthError):
        return auth_error_response(result)
    return Envelope(
        status="ok",
        data=principal_payload(result, runtime.store.get_permissions(result.id)),
    )


@router.post(
    "/admin/principals/{principal_id}/unlock", response_model=Envelope, tags=["admin"]
)
async def unlock_principal(
    principal_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission(PERMISSION_USERS_UPDATE)),
):
    runtime = get_runtime()
    result = await runtime.admin.unlock_principal(ctx.principal_id, principal_id)
    if isinstance(result, AuthError):
        return auth_error_response(result)
    return Envelope(
        status="ok",
        data=principal_payload(result, runtime.store.get_permissions(result.id)),
    )


@router.get(
    "/admin/principals/{principal_id}/devices", response_model=Envelope, tags=["admin"]
)
async def list_devices(
    principal_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission(PERMISSION_USERS_READ)),
):
    result = get_runtime().admin.list_devices(principal_id)
    if isinstance(result, AuthError):
        return auth_error_response(result)
    return Envelope(
        status="ok", data={"items": [_device_response(d) for d in result]}
    )


@router.delete("/admin/devices/{session_id}", response_model=Envelope, tags=["admin"])
async def revoke_device(
    session_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_permission(PERMISSION_USERS_UPDATE)),
):
    result = await get_runtime().admin.revoke_device(ctx.principal_id, session_id)
    if isinstance(result, AuthError):
        return auth_error_response(result)
    return Envelope(status="ok", data=_device_response(result))
